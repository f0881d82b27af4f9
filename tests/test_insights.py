"""Tests for learning insight aggregation."""

import pytest

from training_camp.evolution.records import (
    EvolutionChange,
    EvolutionOutcome,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    ScoreAnalysis,
    change_pattern,
    pattern_type_for,
)
from training_camp.insights.aggregator import LearningInsightAggregator, updated_insight
from training_camp.lineage.store.memory import InMemoryLineageStore

CHANGE = EvolutionChange(
    component="system_prompt", change_type="add", target="format_instructions",
    after="Use bullet points.", reason="format",
)


def _record(outcome: EvolutionOutcome | None, comment: str | None = None) -> EvolutionRecord:
    return EvolutionRecord(
        lineage_id="lin",
        from_version=1,
        to_version=2,
        trigger=EvolutionTrigger(rollout_id="r", score=4, comment=comment),
        score_analysis=ScoreAnalysis(score=4, sentiment="neutral"),
        changes=[CHANGE],
        outcome=outcome,
    )


def test_pattern_helpers():
    assert change_pattern(CHANGE) == "add system_prompt: format_instructions"
    assert pattern_type_for("system_prompt") == "prompt_change"
    assert pattern_type_for("tools") == "tool_change"
    assert pattern_type_for("parameters") == "param_change"
    assert pattern_type_for("flow") == "flow_change"


def test_updated_insight_streaming_mean_and_confidence():
    insight = LearningInsight(session_id="s", pattern="p", pattern_type="prompt_change")
    insight = updated_insight(insight, success=True, delta=3, context="a", context_window=2, full_confidence_samples=5)
    insight = updated_insight(insight, success=False, delta=-1, context="b", context_window=2, full_confidence_samples=5)
    insight = updated_insight(insight, success=True, delta=1, context="c", context_window=2, full_confidence_samples=5)

    assert (insight.success_count, insight.failure_count) == (2, 1)
    assert insight.avg_score_impact == pytest.approx(1.0)
    assert insight.confidence == pytest.approx((2 / 3) * (3 / 5))
    assert insight.contexts == ["b", "c"]


def test_confidence_saturates_after_enough_samples():
    insight = LearningInsight(session_id="s", pattern="p", pattern_type="prompt_change")
    for _ in range(7):
        insight = updated_insight(insight, success=True, delta=2, context=None, context_window=10, full_confidence_samples=5)
    assert insight.confidence == 1.0
    assert insight.contexts == []


@pytest.mark.asyncio
async def test_observe_creates_then_updates(memory_store: InMemoryLineageStore):
    aggregator = LearningInsightAggregator(memory_store)
    first = await aggregator.observe("s", "p", "param_change", success=True, delta=2)
    second = await aggregator.observe("s", "p", "param_change", success=False, delta=-2, context="too cold")

    assert first.id == second.id
    stored = await memory_store.get_insight(first.id)
    assert (stored.success_count, stored.failure_count) == (1, 1)
    assert stored.avg_score_impact == 0.0
    assert stored.contexts == ["too cold"]


@pytest.mark.asyncio
async def test_learn_from_outcome(memory_store: InMemoryLineageStore):
    aggregator = LearningInsightAggregator(memory_store)
    assert await aggregator.learn_from_outcome("s", _record(None)) == []

    insights = await aggregator.learn_from_outcome("s", _record(EvolutionOutcome.measure(4, 7)))
    assert len(insights) == 1
    assert insights[0].pattern == "add system_prompt: format_instructions"
    assert insights[0].pattern_type == "prompt_change"
    assert insights[0].success_count == 1
    assert insights[0].contexts == ["no comment"]

    await aggregator.learn_from_outcome("s", _record(EvolutionOutcome.measure(4, 4), comment="same as before"))
    top = await aggregator.top_insights("s", limit=1)
    assert top[0].failure_count == 1
    assert top[0].contexts == ["no comment", "same as before"]
