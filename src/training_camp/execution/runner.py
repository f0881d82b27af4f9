"""Runs one attempt of an agent definition and traces it as spans.

An attempt is one llm_call span, then (for agents with tools and a
tool-calling generator) rounds of tool_call spans parented to the llm_call
that requested them, and finally one output span. Generation failures end
the attempt as failed; only storage errors propagate.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.config import LLMRole, TrainingCampConfig
from training_camp.exceptions import StorageError
from training_camp.lineage.models import (
    Attempt,
    AttemptStatus,
    ExecutionParameters,
    ExecutionSpan,
    Rollout,
    RolloutStatus,
    SpanType,
)
from training_camp.lineage.store.base import LineageStore
from training_camp.llm.generator import Generation, TextGenerator, ToolCallingGenerator
from training_camp.tools.executor import ExecuteOptions, ToolCallResult, ToolExecutor
from training_camp.tools.wire import format_tool_results_for_llm

log = structlog.get_logger(__name__)

GENERATION_UNAVAILABLE = "Text generation is not configured"


@dataclass
class RunResult:
    rollout: Rollout
    attempt: Attempt
    tool_results: list[ToolCallResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.attempt.status == AttemptStatus.SUCCEEDED


@dataclass
class _Trace:
    """Mutable per-attempt state: next sequence number and token totals."""

    attempt_id: str
    sequence: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_results: list[ToolCallResult] = field(default_factory=list)

    def next_sequence(self) -> int:
        sequence = self.sequence
        self.sequence += 1
        return sequence


class AttemptRunner:
    def __init__(
        self,
        store: LineageStore,
        executor: ToolExecutor,
        generator: TextGenerator | None = None,
        config: TrainingCampConfig | None = None,
    ) -> None:
        config = config or TrainingCampConfig()
        self._store = store
        self._executor = executor
        self._generator = generator
        self._max_tool_rounds = config.max_tool_rounds
        self._create_spans = config.create_spans

    async def run(
        self,
        lineage_id: str,
        agent: AgentDefinition,
        input: str,
        cycle: int | None = None,
    ) -> RunResult:
        if cycle is None:
            cycle = len(await self._store.list_rollouts(lineage_id)) + 1

        rollout = await self._store.create_rollout(
            Rollout(lineage_id=lineage_id, cycle=cycle, status=RolloutStatus.RUNNING)
        )
        params = agent.parameters
        attempt = await self._store.create_attempt(
            rollout.id,
            agent,
            input=input,
            model_id=params.model,
            parameters=ExecutionParameters(
                temperature=params.temperature, max_tokens=params.max_tokens, top_p=params.top_p
            ),
        )
        log.info("attempt_started", lineage_id=lineage_id, attempt_id=attempt.id, agent_version=agent.version)

        trace = _Trace(attempt_id=attempt.id)
        start = time.perf_counter()
        output: str | None = None
        error: str | None = None

        if self._generator is None or not self._generator.is_configured(LLMRole.ACTING):
            error = GENERATION_UNAVAILABLE
        else:
            try:
                output = await self._generate(agent, input, trace)
            except StorageError:
                raise
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                log.warning("attempt_generation_failed", attempt_id=attempt.id, error=error)

        if output is not None and self._create_spans:
            await self._store.create_span(ExecutionSpan(
                attempt_id=attempt.id,
                sequence=trace.next_sequence(),
                type=SpanType.OUTPUT,
                input=input,
                output=output,
            ))

        succeeded = error is None
        attempt = await self._store.update_attempt(
            attempt.id,
            status=AttemptStatus.SUCCEEDED if succeeded else AttemptStatus.FAILED,
            output=output,
            error=error,
            duration_ms=(time.perf_counter() - start) * 1000,
            prompt_tokens=trace.prompt_tokens or None,
            completion_tokens=trace.completion_tokens or None,
            total_tokens=(trace.prompt_tokens + trace.completion_tokens) or None,
        )
        rollout = await self._store.update_rollout(
            rollout.id,
            status=RolloutStatus.COMPLETED if succeeded else RolloutStatus.FAILED,
            final_attempt_id=attempt.id if succeeded else None,
            completed_at=datetime.now(UTC),
        )
        log.info(
            "attempt_finished",
            attempt_id=attempt.id,
            status=attempt.status.value,
            duration_ms=round(attempt.duration_ms, 1),
            tool_calls=len(trace.tool_results),
        )
        return RunResult(rollout=rollout, attempt=attempt, tool_results=trace.tool_results)

    async def _generate(self, agent: AgentDefinition, input: str, trace: _Trace) -> str:
        generator = self._generator
        if agent.tools and isinstance(generator, ToolCallingGenerator):
            return await self._generate_with_tools(generator, agent, input, trace)

        span_start = time.perf_counter()
        text = await generator.generate(
            agent.system_prompt,
            input,
            max_tokens=agent.parameters.max_tokens,
            temperature=agent.parameters.temperature,
            role=LLMRole.ACTING,
        )
        await self._llm_span(trace, agent, input, Generation(content=text), span_start)
        return text

    async def _generate_with_tools(
        self,
        generator: ToolCallingGenerator,
        agent: AgentDefinition,
        input: str,
        trace: _Trace,
    ) -> str:
        messages: list[dict[str, Any]] = [{"role": "user", "content": input}]
        schemas = [tool.to_function_schema() for tool in agent.tools]
        generation = Generation()

        for round_number in range(1, self._max_tool_rounds + 1):
            span_start = time.perf_counter()
            generation = await generator.generate_with_tools(
                agent.system_prompt,
                messages,
                schemas,
                max_tokens=agent.parameters.max_tokens,
                temperature=agent.parameters.temperature,
                role=LLMRole.ACTING,
            )
            llm_span_id = await self._llm_span(trace, agent, messages[-1], generation, span_start)
            if not generation.tool_calls:
                return generation.content

            results = await self._executor.execute_tool_calls(
                generation.tool_calls,
                ExecuteOptions(
                    agent=agent,
                    attempt_id=trace.attempt_id,
                    parent_span_id=llm_span_id,
                    start_sequence=trace.sequence,
                    create_spans=self._create_spans,
                ),
            )
            trace.sequence += len(results)
            trace.tool_results.extend(results)
            log.debug("tool_round_completed", attempt_id=trace.attempt_id, round=round_number, calls=len(results))

            messages.append(generation.assistant_message or {"role": "assistant", "content": generation.content})
            messages.extend(format_tool_results_for_llm(results, "openai"))

        log.warning("tool_rounds_exhausted", attempt_id=trace.attempt_id, max_rounds=self._max_tool_rounds)
        return generation.content

    async def _llm_span(
        self,
        trace: _Trace,
        agent: AgentDefinition,
        prompt: Any,
        generation: Generation,
        span_start: float,
    ) -> str | None:
        trace.prompt_tokens += generation.prompt_tokens or 0
        trace.completion_tokens += generation.completion_tokens or 0
        if not self._create_spans:
            return None
        span = await self._store.create_span(ExecutionSpan(
            attempt_id=trace.attempt_id,
            sequence=trace.next_sequence(),
            type=SpanType.LLM_CALL,
            input=prompt if isinstance(prompt, str) else str(prompt.get("content") or ""),
            output=generation.content,
            model_id=generation.model or agent.parameters.model,
            prompt_tokens=generation.prompt_tokens,
            completion_tokens=generation.completion_tokens,
            duration_ms=(time.perf_counter() - span_start) * 1000,
        ))
        return span.id
