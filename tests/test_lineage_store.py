"""Tests for the lineage stores, run against both implementations."""

import pytest

from _helpers import make_agent, seed_lineage

from training_camp.evolution.records import (
    EvolutionOutcome,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    PromptCredit,
    ScoreAnalysis,
    TrajectoryCredit,
)
from training_camp.exceptions import (
    ConstraintViolation,
    DuplicateLineageError,
    NotFoundError,
    OutcomeAlreadyRecordedError,
    SpanSequenceError,
    StorageError,
    VersionConflictError,
)
from training_camp.lineage.models import (
    AttemptStatus,
    Evaluation,
    ExecutionSpan,
    Lineage,
    Rollout,
    RolloutStatus,
    Session,
    SpanType,
)


def _record(lineage_id: str, rollout_id: str, from_version: int = 1, score: int = 4) -> EvolutionRecord:
    return EvolutionRecord(
        lineage_id=lineage_id,
        from_version=from_version,
        to_version=from_version + 1,
        trigger=EvolutionTrigger(rollout_id=rollout_id, score=score, comment="too long"),
        score_analysis=ScoreAnalysis(score=score, sentiment="neutral"),
        credit_assignment=[
            PromptCredit(segment="Be thorough.", segment_index=0, blame="high", reason="verbose"),
            TrajectoryCredit(span_id="s1", contribution=-0.5, reason="Tool call failed"),
        ],
    )


@pytest.mark.asyncio
async def test_session_crud_is_audited(store):
    session = await store.create_session(Session(name="s", need="write haiku"))
    updated = await store.update_session(session.id, name="renamed", constraints="short")
    assert updated.name == "renamed"
    assert updated.constraints == "short"
    assert updated.need == "write haiku"

    cleared = await store.update_session(session.id, constraints=None)
    assert cleared.constraints is None

    assert await store.delete_session(session.id) is True
    assert await store.get_session(session.id) is None
    assert await store.delete_session(session.id) is False

    events = [e.event_type for e in await store.list_audit(entity_type="session", entity_id=session.id)]
    assert events == ["session_deleted", "session_updated", "session_updated", "session_created"]


@pytest.mark.asyncio
async def test_update_missing_session_raises(store):
    with pytest.raises(NotFoundError):
        await store.update_session("missing", name="x")


@pytest.mark.asyncio
async def test_lineage_label_unique_per_session(store):
    session = await store.create_session(Session(name="s", need="n"))
    await store.create_lineage(Lineage(session_id=session.id, label="A"))
    with pytest.raises(DuplicateLineageError):
        await store.create_lineage(Lineage(session_id=session.id, label="A"))
    await store.create_lineage(Lineage(session_id=session.id, label="B"))
    assert [lin.label for lin in await store.list_lineages(session.id)] == ["A", "B"]


@pytest.mark.asyncio
async def test_lineage_requires_session(store):
    with pytest.raises(ConstraintViolation):
        await store.create_lineage(Lineage(session_id="nope", label="A"))


@pytest.mark.asyncio
async def test_lock_toggle_and_directives(store):
    _, lineage, _ = await seed_lineage(store)
    locked = await store.set_lineage_locked(lineage.id, True)
    assert locked.is_locked

    updated = await store.set_directives(lineage.id, sticky="be kind", oneshot="add a title")
    assert (updated.directive_sticky, updated.directive_oneshot) == ("be kind", "add a title")

    await store.clear_oneshot_directive(lineage.id)
    lineage = await store.get_lineage(lineage.id)
    assert lineage.directive_sticky == "be kind"
    assert lineage.directive_oneshot is None

    events = [e.event_type for e in await store.list_audit(entity_type="lineage")]
    assert events == ["lineage_locked"]


@pytest.mark.asyncio
async def test_latest_resolves_by_version_not_write_order(store):
    _, lineage, v1 = await seed_lineage(store)
    v3 = v1.next_version().next_version()
    await store.create_agent(v3)
    with pytest.raises(VersionConflictError):
        await store.create_agent(v1.next_version())

    latest = await store.get_latest_agent(lineage.id)
    assert latest.id == v3.id
    assert latest.version == 3
    assert [a.version for a in await store.get_agent_history(lineage.id)] == [3, 1]


@pytest.mark.asyncio
async def test_agent_round_trip(store):
    from _helpers import make_tool

    _, lineage, _ = await seed_lineage(store)
    agent = make_agent(lineage_id=lineage.id, version=2, tools=[make_tool("Calc", "calculate")], allowed_tools=["calculate"])
    await store.create_agent(agent)
    loaded = await store.get_agent(agent.id)
    assert loaded.tools == agent.tools
    assert loaded.flow == agent.flow
    assert loaded.parameters == agent.parameters
    assert loaded.constraints.allowed_tools == ["calculate"]


@pytest.mark.asyncio
async def test_latest_agents_for_session_and_delete(store):
    session, lineage_a, agent_a = await seed_lineage(store)
    lineage_b = await store.create_lineage(Lineage(session_id=session.id, label="B"))
    agent_b = await store.create_agent(make_agent(lineage_id=lineage_b.id))
    v2 = await store.create_agent(agent_a.next_version())

    latest = await store.get_latest_agents_for_session(session.id)
    assert {k: v.id for k, v in latest.items()} == {lineage_a.id: v2.id, lineage_b.id: agent_b.id}

    assert await store.delete_agent(v2.id) is True
    assert (await store.get_latest_agent(lineage_a.id)).id == agent_a.id
    assert await store.delete_agent(v2.id) is False


@pytest.mark.asyncio
async def test_deleted_version_is_never_reissued(store):
    _, lineage, v1 = await seed_lineage(store)
    v2 = await store.create_agent(v1.next_version())
    await store.delete_agent(v2.id)

    with pytest.raises(VersionConflictError):
        await store.create_agent(v1.next_version())

    v3 = await store.create_agent(v2.next_version())
    assert v3.version == 3
    assert [a.version for a in await store.get_agent_history(lineage.id)] == [3, 1]


@pytest.mark.asyncio
async def test_agent_requires_lineage(store):
    with pytest.raises(ConstraintViolation):
        await store.create_agent(make_agent(lineage_id="missing"))


@pytest.mark.asyncio
async def test_rollout_attempt_lifecycle(store):
    _, lineage, agent = await seed_lineage(store)
    rollout = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=1))
    attempt = await store.create_attempt(rollout.id, agent, input="hello")

    assert attempt.status == AttemptStatus.RUNNING
    assert attempt.snapshot.matches(agent)
    assert attempt.parameters.temperature == agent.parameters.temperature

    done = await store.update_attempt(attempt.id, status=AttemptStatus.SUCCEEDED, output="hi", duration_ms=12.5)
    assert (done.status, done.output, done.duration_ms) == (AttemptStatus.SUCCEEDED, "hi", 12.5)
    assert done.snapshot == attempt.snapshot

    finished = await store.update_rollout(rollout.id, status=RolloutStatus.COMPLETED, final_attempt_id=attempt.id)
    assert finished.final_attempt_id == attempt.id
    assert [a.id for a in await store.list_attempts(rollout.id)] == [attempt.id]
    assert [r.id for r in await store.list_rollouts(lineage.id)] == [rollout.id]


@pytest.mark.asyncio
async def test_snapshot_detects_drift(store):
    _, lineage, agent = await seed_lineage(store)
    rollout = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=1))
    attempt = await store.create_attempt(rollout.id, agent)
    drifted = agent.model_copy(update={"system_prompt": "Something else entirely."})
    assert not attempt.snapshot.matches(drifted)


@pytest.mark.asyncio
async def test_span_sequence_and_parent_rules(store):
    _, lineage, agent = await seed_lineage(store)
    rollout = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=1))
    attempt = await store.create_attempt(rollout.id, agent)
    other = await store.create_attempt(rollout.id, agent, attempt_number=2)

    root = await store.create_span(ExecutionSpan(attempt_id=attempt.id, sequence=0, type=SpanType.LLM_CALL))
    await store.create_span(ExecutionSpan(
        attempt_id=attempt.id, sequence=2, type=SpanType.TOOL_CALL, parent_span_id=root.id,
        tool_name="calculate", tool_args={"expression": "1+1"}, tool_result={"result": 2},
    ))

    with pytest.raises(SpanSequenceError):
        await store.create_span(ExecutionSpan(attempt_id=attempt.id, sequence=2, type=SpanType.OUTPUT))
    with pytest.raises(SpanSequenceError):
        await store.create_span(ExecutionSpan(
            attempt_id=other.id, sequence=1, type=SpanType.TOOL_CALL, parent_span_id=root.id,
        ))
    late = await store.create_span(ExecutionSpan(attempt_id=attempt.id, sequence=5, type=SpanType.OUTPUT))
    with pytest.raises(SpanSequenceError):
        await store.create_span(ExecutionSpan(
            attempt_id=attempt.id, sequence=3, type=SpanType.REASONING, parent_span_id=late.id,
        ))

    spans = await store.list_spans(attempt.id)
    assert [s.sequence for s in spans] == [0, 2, 5]
    assert spans[1].tool_args == {"expression": "1+1"}
    assert spans[1].tool_result == {"result": 2}


@pytest.mark.asyncio
async def test_span_requires_attempt(store):
    with pytest.raises(StorageError):
        await store.create_span(ExecutionSpan(attempt_id="missing", sequence=0, type=SpanType.OUTPUT))


@pytest.mark.asyncio
async def test_evaluations(store):
    _, lineage, _ = await seed_lineage(store)
    rollout = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=1))
    await store.create_evaluation(Evaluation(rollout_id=rollout.id, score=4))
    second = await store.create_evaluation(Evaluation(rollout_id=rollout.id, score=7, comment="better"))

    latest = await store.get_latest_evaluation(rollout.id)
    assert latest.id == second.id
    assert latest.score == 7

    with pytest.raises(ValueError):
        Evaluation(rollout_id=rollout.id, score=11)


@pytest.mark.asyncio
async def test_evolution_record_round_trip_and_outcome(store):
    _, lineage, _ = await seed_lineage(store)
    record = await store.create_evolution_record(_record(lineage.id, "r1"))

    loaded = await store.get_evolution_record(record.id)
    assert loaded.trigger.score == 4
    assert isinstance(loaded.credit_assignment[0], PromptCredit)
    assert isinstance(loaded.credit_assignment[1], TrajectoryCredit)
    assert loaded.outcome is None

    updated = await store.record_evolution_outcome(record.id, EvolutionOutcome.measure(4, 7))
    assert updated.outcome.score_delta == 3
    assert updated.outcome.hypothesis_validated is True

    with pytest.raises(OutcomeAlreadyRecordedError):
        await store.record_evolution_outcome(record.id, EvolutionOutcome.measure(4, 1))
    assert (await store.get_evolution_record(record.id)).outcome.next_score == 7

    with pytest.raises(NotFoundError):
        await store.record_evolution_outcome("missing", EvolutionOutcome.measure(4, 5))


@pytest.mark.asyncio
async def test_evolution_records_newest_first(store):
    _, lineage, _ = await seed_lineage(store)
    for version in (1, 2, 3):
        await store.create_evolution_record(_record(lineage.id, f"r{version}", from_version=version))
    records = await store.list_evolution_records(lineage.id)
    assert [r.to_version for r in records] == [4, 3, 2]


@pytest.mark.asyncio
async def test_insights(store):
    session, _, _ = await seed_lineage(store)
    weak = await store.create_insight(LearningInsight(
        session_id=session.id, pattern="add system_prompt: format_instructions",
        pattern_type="prompt_change", confidence=0.2,
    ))
    strong = await store.create_insight(LearningInsight(
        session_id=session.id, pattern="modify parameters: temperature",
        pattern_type="param_change", confidence=0.9,
    ))
    with pytest.raises(ConstraintViolation):
        await store.create_insight(LearningInsight(
            session_id=session.id, pattern=weak.pattern, pattern_type="prompt_change",
        ))

    found = await store.find_insight(session.id, weak.pattern)
    assert found.id == weak.id
    assert [i.id for i in await store.list_insights(session.id)] == [strong.id, weak.id]

    bumped = await store.update_insight(weak.model_copy(update={"success_count": 3, "contexts": ["a", "b"]}))
    assert (await store.get_insight(weak.id)).contexts == ["a", "b"]
    assert bumped.success_count == 3


@pytest.mark.asyncio
async def test_delete_session_cascades(store):
    session, lineage, agent = await seed_lineage(store)
    rollout = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=1))
    await store.delete_session(session.id)
    assert await store.get_lineage(lineage.id) is None
    assert await store.get_agent(agent.id) is None
    assert await store.get_rollout(rollout.id) is None


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_connections(tmp_path):
    from training_camp.lineage.store.sqlite import SQLiteLineageStore
    from training_camp.persistence.db import DatabaseManager

    path = tmp_path / "lineage.db"
    first = DatabaseManager(path)
    await first.initialize()
    _, lineage, agent = await seed_lineage(SQLiteLineageStore(first))
    await first.close()

    second = DatabaseManager(path)
    await second.initialize()
    try:
        latest = await SQLiteLineageStore(second).get_latest_agent(lineage.id)
        assert latest.id == agent.id
    finally:
        await second.close()
