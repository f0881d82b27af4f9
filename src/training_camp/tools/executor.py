"""Tool executor: permission checks, registry dispatch and span emission.

Policy rejections, unregistered tools and tool failures all come back as
:class:`ToolCallResult` values so a batch always reports every outcome.
Only storage failures while recording a span propagate as exceptions.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.lineage.models import ExecutionSpan, SpanType
from training_camp.lineage.store.base import LineageStore
from training_camp.tools.registry import ToolContext, ToolExecutionParams, ToolRegistry, ToolResult
from training_camp.tools.wire import ToolCall

log = structlog.get_logger(__name__)


class ToolFailureKind(str, Enum):
    POLICY_REJECTION = "policy_rejection"    # agent may not call this tool
    CONFIGURATION_GAP = "configuration_gap"  # permitted but not registered
    EXECUTION_FAILURE = "execution_failure"  # tool ran and failed


@dataclass
class ExecuteOptions:
    """Per-call options for :class:`ToolExecutor`.

    ``agent_id`` and ``session_id`` override the identity passed to tools;
    without an override the agent's own id is used.
    """

    agent: AgentDefinition | None = None
    attempt_id: str | None = None
    parent_span_id: str | None = None
    start_sequence: int = 0
    create_spans: bool = True
    agent_id: str | None = None
    session_id: str | None = None


@dataclass
class ToolCallResult:
    tool_call: ToolCall
    result: ToolResult
    allowed: bool
    span_id: str | None = None
    failure: ToolFailureKind | None = None


class ToolExecutor:
    """Mediates between an agent's declared tools and a :class:`ToolRegistry`."""

    def __init__(self, registry: ToolRegistry, store: LineageStore | None = None) -> None:
        self._registry = registry
        self._store = store

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def is_tool_allowed(self, tool_name: str, agent: AgentDefinition | None = None) -> bool:
        """Decide whether ``agent`` may call ``tool_name``.

        Without an agent, any registered tool is allowed. When the agent
        declares ``constraints.allowed_tools``, membership in that list is
        the only rule. Otherwise the tool must match one of the agent's
        declared tool descriptors.
        """
        if agent is None:
            return self._registry.has(tool_name)

        allowed_tools = agent.constraints.allowed_tools if agent.constraints else None
        if allowed_tools is not None:
            return tool_name in allowed_tools

        return agent.find_tool(tool_name) is not None

    async def execute_tool_call(
        self, tool_call: ToolCall, options: ExecuteOptions | None = None
    ) -> ToolCallResult:
        """Check permission, dispatch, and record a span for one call."""
        options = options or ExecuteOptions()
        start = time.perf_counter()

        if not self.is_tool_allowed(tool_call.name, options.agent):
            suffix = " for this agent" if options.agent is not None else ""
            result = ToolResult.fail(
                f'Tool "{tool_call.name}" is not allowed{suffix}',
                execution_time_ms=_elapsed_ms(start),
            )
            log.info("tool_call_rejected", tool=tool_call.name, attempt_id=options.attempt_id)
            span_id = await self._record(tool_call, result, options, output=_dump(asdict(result)))
            return ToolCallResult(
                tool_call, result, allowed=False, span_id=span_id,
                failure=ToolFailureKind.POLICY_REJECTION,
            )

        if not self._registry.has(tool_call.name):
            result = ToolResult.fail(
                f'Tool "{tool_call.name}" is not registered in the tool registry',
                execution_time_ms=_elapsed_ms(start),
            )
            log.warning("tool_not_registered", tool=tool_call.name, attempt_id=options.attempt_id)
            span_id = await self._record(tool_call, result, options, output=_dump(asdict(result)))
            return ToolCallResult(
                tool_call, result, allowed=True, span_id=span_id,
                failure=ToolFailureKind.CONFIGURATION_GAP,
            )

        agent_id = options.agent_id or (options.agent.id if options.agent else None)
        result = await self._registry.execute(
            tool_call.name,
            ToolExecutionParams(
                arguments=tool_call.arguments,
                context=ToolContext(
                    agent_id=agent_id,
                    attempt_id=options.attempt_id,
                    session_id=options.session_id,
                ),
            ),
        )
        log.debug(
            "tool_call_executed",
            tool=tool_call.name,
            success=result.success,
            duration_ms=result.execution_time_ms,
        )
        span_id = await self._record(tool_call, result, options, output=_dump(result.output))
        return ToolCallResult(
            tool_call, result, allowed=True, span_id=span_id,
            failure=None if result.success else ToolFailureKind.EXECUTION_FAILURE,
        )

    async def execute_tool_calls(
        self, tool_calls: list[ToolCall], options: ExecuteOptions | None = None
    ) -> list[ToolCallResult]:
        """Run calls one after another with sequences ``start, start+1, ...``.

        Call N+1 starts only after call N, including its span write, has
        completed.
        """
        options = options or ExecuteOptions()
        results: list[ToolCallResult] = []
        for offset, tool_call in enumerate(tool_calls):
            results.append(await self.execute_tool_call(
                tool_call, replace(options, start_sequence=options.start_sequence + offset)
            ))
        return results

    async def execute_tool_calls_parallel(
        self, tool_calls: list[ToolCall], options: ExecuteOptions | None = None
    ) -> list[ToolCallResult]:
        """Run calls concurrently; sequences follow input index, results follow input order."""
        options = options or ExecuteOptions()
        return list(await asyncio.gather(*(
            self.execute_tool_call(
                tool_call, replace(options, start_sequence=options.start_sequence + index)
            )
            for index, tool_call in enumerate(tool_calls)
        )))

    async def _record(
        self, tool_call: ToolCall, result: ToolResult, options: ExecuteOptions, *, output: str
    ) -> str | None:
        if self._store is None or not options.create_spans or options.attempt_id is None:
            return None
        span = ExecutionSpan(
            attempt_id=options.attempt_id,
            parent_span_id=options.parent_span_id,
            sequence=options.start_sequence,
            type=SpanType.TOOL_CALL,
            input=_dump({"name": tool_call.name, "arguments": tool_call.arguments}),
            output=output,
            tool_name=tool_call.name,
            tool_args=tool_call.arguments,
            tool_result=result.output,
            tool_error=result.error,
            duration_ms=result.execution_time_ms,
        )
        # Shielded so a caller-side timeout cannot drop the span write.
        saved = await asyncio.shield(self._store.create_span(span))
        return saved.id


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _dump(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
