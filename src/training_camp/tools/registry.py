"""Tool registry: name -> tool implementation, with timed, failure-safe dispatch."""

from __future__ import annotations

import inspect
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

log = structlog.get_logger(__name__)

UNKNOWN_TOOL_ERROR = "Unknown error during tool execution"


@dataclass
class ToolResult:
    """Outcome of one tool invocation.

    ``metadata["execution_time_ms"]`` is always populated once the result has
    passed through :meth:`ToolRegistry.execute`.
    """

    success: bool
    output: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def execution_time_ms(self) -> float:
        return float(self.metadata.get("execution_time_ms", 0.0))

    @classmethod
    def ok(cls, output: Any, **metadata: Any) -> ToolResult:
        return cls(success=True, output=output, metadata=dict(metadata))

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> ToolResult:
        return cls(success=False, output=None, error=error, metadata=dict(metadata))


@dataclass
class ToolContext:
    """Identity threaded into a tool invocation."""

    agent_id: str | None = None
    attempt_id: str | None = None
    session_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolExecutionParams:
    arguments: dict[str, Any] = field(default_factory=dict)
    context: ToolContext = field(default_factory=ToolContext)


class Tool(ABC):
    """A stateless tool implementation owned by a :class:`ToolRegistry`."""

    name: str
    description: str

    @abstractmethod
    async def execute(self, params: ToolExecutionParams) -> ToolResult:
        """Run the tool. May raise; the registry converts exceptions to failures."""
        ...


ToolFunction = Callable[[dict[str, Any], ToolContext], Any]


class FunctionTool(Tool):
    """Adapts a plain (sync or async) function into a :class:`Tool`.

    The function receives ``(arguments, context)``. A returned
    :class:`ToolResult` is passed through; any other value becomes a
    successful result's output.
    """

    def __init__(self, name: str, description: str, fn: ToolFunction) -> None:
        self.name = name
        self.description = description
        self._fn = fn

    async def execute(self, params: ToolExecutionParams) -> ToolResult:
        value = self._fn(params.arguments, params.context)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, ToolResult):
            return value
        return ToolResult.ok(value)


def tool(name: str, description: str) -> Callable[[ToolFunction], FunctionTool]:
    """Decorator form of :class:`FunctionTool`."""

    def wrap(fn: Callable[[dict[str, Any], ToolContext], Any | Awaitable[Any]]) -> FunctionTool:
        return FunctionTool(name, description, fn)

    return wrap


class ToolRegistry:
    """In-memory mapping of tool name to implementation.

    Populated once at start-up and read many times. Registration while
    calls are in flight is not supported.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any existing tool with the same name."""
        if tool.name in self._tools:
            log.warning("tool_overwritten", tool=tool.name)
        self._tools[tool.name] = tool
        log.debug("tool_registered", tool=tool.name)

    def register_all(self, tools: Iterable[Tool]) -> None:
        for t in tools:
            self.register(t)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptions(self) -> list[dict[str, str]]:
        """Name/description pairs, e.g. for listing tools in a prompt."""
        return [{"name": t.name, "description": t.description} for t in self._tools.values()]

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def execute(self, name: str, params: ToolExecutionParams | None = None) -> ToolResult:
        """Run a registered tool. Never raises.

        Unregistered names and tool exceptions both come back as failed
        results; ``metadata["execution_time_ms"]`` keeps the tool's own value
        when it reports one, otherwise the measured wall time.
        """
        impl = self._tools.get(name)
        if impl is None:
            return ToolResult.fail(f'Tool "{name}" is not registered', execution_time_ms=0.0)

        params = params or ToolExecutionParams()
        start = time.perf_counter()
        try:
            result = await impl.execute(params)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            log.warning("tool_execution_failed", tool=name, error=str(exc))
            return ToolResult.fail(str(exc) or UNKNOWN_TOOL_ERROR, execution_time_ms=elapsed_ms)

        elapsed_ms = (time.perf_counter() - start) * 1000
        metadata = dict(result.metadata)
        if metadata.get("execution_time_ms") is None:
            metadata["execution_time_ms"] = elapsed_ms
        return replace(result, metadata=metadata)
