"""Tests for the tool registry."""

import pytest

from _helpers import BoomTool, EchoTool

from training_camp.tools.registry import (
    UNKNOWN_TOOL_ERROR,
    FunctionTool,
    ToolContext,
    ToolExecutionParams,
    ToolRegistry,
    ToolResult,
    tool,
)


def test_register_and_lookup(registry: ToolRegistry):
    registry.register(EchoTool())
    assert registry.has("echo")
    assert "echo" in registry
    assert isinstance(registry.get("echo"), EchoTool)
    assert registry.get("missing") is None
    assert registry.names() == ["echo"]
    assert registry.descriptions() == [{"name": "echo", "description": "Returns its arguments"}]


def test_register_overwrites_by_name(registry: ToolRegistry):
    first = BoomTool("dup")
    second = BoomTool("dup")
    registry.register(first)
    registry.register(second)
    assert len(registry) == 1
    assert registry.get("dup") is second


def test_clear_empties_registry(registry: ToolRegistry):
    registry.register_all([EchoTool(), BoomTool()])
    assert len(registry) == 2
    registry.clear()
    assert len(registry) == 0
    assert not registry.has("echo")


@pytest.mark.asyncio
async def test_execute_populates_execution_time(registry: ToolRegistry):
    registry.register(EchoTool())
    result = await registry.execute("echo", ToolExecutionParams(arguments={"x": 1}))
    assert result.success is True
    assert result.output == {"x": 1}
    assert result.metadata["execution_time_ms"] >= 0


@pytest.mark.asyncio
async def test_execute_keeps_tool_reported_time(registry: ToolRegistry):
    @tool("timed", "Reports its own time")
    def timed(args, context):
        return ToolResult.ok("done", execution_time_ms=42.0)

    registry.register(timed)
    result = await registry.execute("timed")
    assert result.execution_time_ms == 42.0


@pytest.mark.asyncio
async def test_execute_unregistered_name_fails_without_raising(registry: ToolRegistry):
    result = await registry.execute("nope")
    assert result.success is False
    assert result.output is None
    assert "nope" in result.error


@pytest.mark.asyncio
async def test_execute_converts_exceptions(registry: ToolRegistry):
    registry.register(BoomTool(message="disk on fire"))
    result = await registry.execute("boom")
    assert result.success is False
    assert result.error == "disk on fire"
    assert result.metadata["execution_time_ms"] >= 0


@pytest.mark.asyncio
async def test_execute_exception_without_message(registry: ToolRegistry):
    registry.register(BoomTool(message=""))
    result = await registry.execute("boom")
    assert result.error == UNKNOWN_TOOL_ERROR


@pytest.mark.asyncio
async def test_function_tool_async_and_context():
    async def whoami(args, context: ToolContext):
        return {"agent": context.agent_id, "n": args["n"] * 2}

    fn_tool = FunctionTool("whoami", "Reports caller", whoami)
    result = await fn_tool.execute(
        ToolExecutionParams(arguments={"n": 2}, context=ToolContext(agent_id="agent-1"))
    )
    assert result.success
    assert result.output == {"agent": "agent-1", "n": 4}
