"""Tests for training-data export."""

import json
from collections import Counter
from datetime import datetime
from pathlib import Path

import pytest

from _helpers import seed_lineage

from training_camp.evolution.engine import EvolutionEngine
from training_camp.exceptions import NotFoundError
from training_camp.export import ExportFilter, ExportFormat, TrainingExporter
from training_camp.lineage.models import AttemptStatus, Rollout, RolloutStatus

PROMPT = "Summarize this paper"


async def _finished_rollout(store, lineage_id, cycle, agent, output, status=AttemptStatus.SUCCEEDED):
    rollout = await store.create_rollout(Rollout(lineage_id=lineage_id, cycle=cycle))
    attempt = await store.create_attempt(rollout.id, agent, input=PROMPT)
    if status == AttemptStatus.SUCCEEDED:
        await store.update_attempt(attempt.id, status=status, output=output)
        await store.update_rollout(rollout.id, status=RolloutStatus.COMPLETED, final_attempt_id=attempt.id)
    else:
        await store.update_attempt(attempt.id, status=status, error="provider down")
        await store.update_rollout(rollout.id, status=RolloutStatus.FAILED)
    return rollout


async def _history(store):
    """Cycle 1 scored 3, cycle 2 scored 8, cycle 3 failed, cycle 4 still running."""
    session, lineage, v1 = await seed_lineage(store)
    engine = EvolutionEngine(store)

    first = await _finished_rollout(store, lineage.id, 1, v1, "Bad summary")
    await engine.evolve_lineage(lineage.id, first.id, 3, comment="too vague")
    v2 = await store.get_latest_agent(lineage.id)
    second = await _finished_rollout(store, lineage.id, 2, v2, "Great summary")
    await engine.evolve_lineage(lineage.id, second.id, 8)

    v3 = await store.get_latest_agent(lineage.id)
    await _finished_rollout(store, lineage.id, 3, v3, None, status=AttemptStatus.FAILED)
    running = await store.create_rollout(Rollout(lineage_id=lineage.id, cycle=4))
    await store.create_attempt(running.id, v3, input=PROMPT)
    return session, lineage, v1, v2


@pytest.mark.asyncio
async def test_jsonl_lists_every_event_newest_first(store):
    session, lineage, _, _ = await _history(store)

    result = await TrainingExporter(store).export(session.id, "jsonl")

    events = [json.loads(line) for line in result.data.splitlines()]
    assert result.format is ExportFormat.JSONL
    assert result.count == len(events) == 8
    assert result.filename.startswith("training-events-") and result.filename.endswith(".jsonl")
    assert Counter(e["event_type"] for e in events) == {
        "attempt.completed": 2,
        "attempt.failed": 1,
        "artifact.scored": 2,
        "agent.evolved": 2,
        "evolution.outcome": 1,
    }
    timestamps = [datetime.fromisoformat(e["timestamp"]) for e in events]
    assert timestamps == sorted(timestamps, reverse=True)
    assert all(e["lineage_id"] == lineage.id and e["schema_version"] == 1 for e in events)

    scored = sorted((e for e in events if e["event_type"] == "artifact.scored"), key=lambda e: e["score"])
    assert [(e["score"], e["payload"]["content"]) for e in scored] == [(3, "Bad summary"), (8, "Great summary")]


@pytest.mark.asyncio
async def test_jsonl_filters(memory_store):
    session, lineage, _, _ = await _history(memory_store)
    exporter = TrainingExporter(memory_store)

    [outcome] = await exporter.collect_events(session.id, ExportFilter(event_types=["evolution.outcome"]))
    assert (outcome.score, outcome.score_delta) == (8, 5)
    assert outcome.payload["hypothesis_validated"] is True
    assert outcome.tags == ["validated"]

    assert await exporter.collect_events(session.id, ExportFilter(min_score_delta=6)) == []
    [failed] = await exporter.collect_events(session.id, ExportFilter(tags=["failed"]))
    assert failed.event_type == "attempt.failed"
    assert failed.payload["error"] == "provider down"

    high = await exporter.collect_events(session.id, ExportFilter(min_score=7))
    assert {e.score for e in high} == {8}

    empty = await exporter.export(session.id, ExportFormat.JSONL, ExportFilter(lineage_ids=["other"]))
    assert (empty.data, empty.count) == ("", 0)


@pytest.mark.asyncio
async def test_sft_uses_the_prompt_each_attempt_ran_under(store):
    session, _, v1, v2 = await _history(store)
    exporter = TrainingExporter(store)

    result = await exporter.export(session.id, ExportFormat.SFT)

    examples = [json.loads(line) for line in result.data.splitlines()]
    assert result.count == 2
    assert examples[0]["messages"] == [
        {"role": "system", "content": v1.system_prompt},
        {"role": "user", "content": PROMPT},
        {"role": "assistant", "content": "Bad summary"},
    ]
    assert examples[1]["messages"][0]["content"] == v2.system_prompt
    assert examples[1]["messages"][2]["content"] == "Great summary"

    best = await exporter.export(session.id, "sft", ExportFilter(min_score=7))
    assert [json.loads(line)["messages"][2]["content"] for line in best.data.splitlines()] == ["Great summary"]


@pytest.mark.asyncio
async def test_sft_omits_system_message_for_deleted_agent(memory_store):
    session, _, v1, _ = await _history(memory_store)
    await memory_store.delete_agent(v1.id)

    result = await TrainingExporter(memory_store).export(session.id, ExportFormat.SFT)

    first = json.loads(result.data.splitlines()[0])
    assert [m["role"] for m in first["messages"]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_dpo_pairs_high_and_low_scores(store):
    session, _, _, _ = await _history(store)

    result = await TrainingExporter(store).export(session.id, ExportFormat.DPO)

    assert result.filename.startswith("training-dpo-")
    assert [json.loads(line) for line in result.data.splitlines()] == [
        {"prompt": PROMPT, "chosen": "Great summary", "rejected": "Bad summary"},
    ]


@pytest.mark.asyncio
async def test_dpo_skips_middling_scores(memory_store):
    session, lineage, v1 = await seed_lineage(memory_store)
    engine = EvolutionEngine(memory_store)
    for cycle, (output, score) in enumerate([("Okay", 5), ("Fine", 6)], start=1):
        agent = await memory_store.get_latest_agent(lineage.id)
        rollout = await _finished_rollout(memory_store, lineage.id, cycle, agent, output)
        await engine.evolve_lineage(lineage.id, rollout.id, score)

    result = await TrainingExporter(memory_store).export(session.id, ExportFormat.DPO)
    assert (result.data, result.count) == ("", 0)


@pytest.mark.asyncio
async def test_export_unknown_session(memory_store):
    with pytest.raises(NotFoundError):
        await TrainingExporter(memory_store).export("missing")


@pytest.mark.asyncio
async def test_write_export(memory_store, tmp_path: Path):
    session, _, _, _ = await _history(memory_store)
    result = await TrainingExporter(memory_store).export(session.id, ExportFormat.DPO)

    path = result.write(tmp_path / "exports")

    assert path.name == result.filename
    assert path.read_text(encoding="utf-8").splitlines() == result.data.splitlines()
