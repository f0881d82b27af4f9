"""Tests for the attempt runner."""

import pytest

from _helpers import EchoTool, ScriptedToolGenerator, StubGenerator, make_tool, seed_lineage

from training_camp.config import TrainingCampConfig
from training_camp.execution.runner import GENERATION_UNAVAILABLE, AttemptRunner
from training_camp.lineage.models import AttemptStatus, RolloutStatus, SpanType
from training_camp.lineage.store.memory import InMemoryLineageStore
from training_camp.llm.generator import Generation
from training_camp.tools.executor import ToolExecutor
from training_camp.tools.registry import ToolRegistry
from training_camp.tools.wire import ToolCall


def _runner(store, generator, **config) -> AttemptRunner:
    registry = ToolRegistry()
    registry.register(EchoTool())
    return AttemptRunner(store, ToolExecutor(registry, store), generator, TrainingCampConfig(**config))


def _tool_call(call_id: str = "c1") -> Generation:
    return Generation(
        content="",
        tool_calls=[ToolCall(id=call_id, name="echo", arguments={"x": 1})],
        prompt_tokens=10,
        completion_tokens=3,
    )


@pytest.mark.asyncio
async def test_plain_generation(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store)
    generator = StubGenerator(["A short summary."])

    result = await _runner(memory_store, generator).run(lineage.id, agent, "Summarize this paper")

    assert result.succeeded
    assert result.attempt.output == "A short summary."
    assert result.attempt.snapshot.matches(agent)
    assert result.rollout.status == RolloutStatus.COMPLETED
    assert result.rollout.final_attempt_id == result.attempt.id
    assert result.rollout.cycle == 1
    assert generator.calls[0]["system_prompt"] == agent.system_prompt
    assert generator.calls[0]["temperature"] == agent.parameters.temperature

    spans = await memory_store.list_spans(result.attempt.id)
    assert [(s.sequence, s.type) for s in spans] == [(0, SpanType.LLM_CALL), (1, SpanType.OUTPUT)]
    assert spans[1].output == "A short summary."


@pytest.mark.asyncio
async def test_cycle_counts_existing_rollouts(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store)
    runner = _runner(memory_store, StubGenerator(["one", "two"]))
    await runner.run(lineage.id, agent, "x")
    second = await runner.run(lineage.id, agent, "x")
    assert second.rollout.cycle == 2


@pytest.mark.asyncio
async def test_tool_loop_traces_calls_under_llm_span(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store, {"tools": [make_tool("echo")]})
    generator = ScriptedToolGenerator([
        _tool_call(),
        Generation(content="done", prompt_tokens=20, completion_tokens=4),
    ])

    result = await _runner(memory_store, generator).run(lineage.id, agent, "use the tool")

    assert result.succeeded
    assert result.attempt.output == "done"
    assert result.attempt.total_tokens == 37
    assert [r.result.output for r in result.tool_results] == [{"x": 1}]

    spans = await memory_store.list_spans(result.attempt.id)
    assert [s.type for s in spans] == [SpanType.LLM_CALL, SpanType.TOOL_CALL, SpanType.LLM_CALL, SpanType.OUTPUT]
    assert [s.sequence for s in spans] == [0, 1, 2, 3]
    assert spans[1].parent_span_id == spans[0].id
    assert spans[1].tool_name == "echo"

    second_round = generator.tool_rounds[1]
    assert [m["role"] for m in second_round] == ["user", "assistant", "tool"]
    assert second_round[2]["tool_call_id"] == "c1"


@pytest.mark.asyncio
async def test_tool_rounds_are_bounded(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store, {"tools": [make_tool("echo")]})
    generator = ScriptedToolGenerator([_tool_call("c1"), _tool_call("c2")])

    result = await _runner(memory_store, generator, max_tool_rounds=2).run(lineage.id, agent, "loop")

    assert result.succeeded
    assert len(generator.tool_rounds) == 2
    assert len(result.tool_results) == 2


@pytest.mark.asyncio
async def test_agent_without_tools_skips_tool_loop(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store)
    generator = ScriptedToolGenerator([], responses=["plain"])

    result = await _runner(memory_store, generator).run(lineage.id, agent, "x")

    assert result.attempt.output == "plain"
    assert generator.tool_rounds == []


@pytest.mark.asyncio
async def test_unconfigured_generator_fails_attempt(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store)
    generator = StubGenerator(configured=False)

    result = await _runner(memory_store, generator).run(lineage.id, agent, "x")

    assert not result.succeeded
    assert result.attempt.error == GENERATION_UNAVAILABLE
    assert result.rollout.status == RolloutStatus.FAILED
    assert result.rollout.final_attempt_id is None
    assert result.rollout.completed_at is not None
    assert generator.calls == []
    assert await memory_store.list_spans(result.attempt.id) == []


@pytest.mark.asyncio
async def test_generation_error_fails_attempt(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store)

    result = await _runner(memory_store, StubGenerator([RuntimeError("overloaded")])).run(lineage.id, agent, "x")

    assert result.attempt.status == AttemptStatus.FAILED
    assert result.attempt.error == "overloaded"
    assert result.attempt.output is None


@pytest.mark.asyncio
async def test_spans_can_be_disabled(memory_store: InMemoryLineageStore):
    _, lineage, agent = await seed_lineage(memory_store, {"tools": [make_tool("echo")]})
    generator = ScriptedToolGenerator([_tool_call(), Generation(content="done")])

    result = await _runner(memory_store, generator, create_spans=False).run(lineage.id, agent, "x")

    assert result.succeeded
    assert result.tool_results[0].span_id is None
    assert await memory_store.list_spans(result.attempt.id) == []
