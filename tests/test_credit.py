"""Tests for prompt-level and trajectory-level credit assignment."""

import pytest

from _helpers import StubGenerator, make_agent

from training_camp.evolution.credit import (
    CreditAssigner,
    assign_prompt_credit_heuristic,
    assign_trajectory_credit,
    blame_from_relevance,
    high_blame_segments,
    problematic_spans,
    segment_prompt,
    summarize_credit,
)
from training_camp.evolution.records import FeedbackAspect, ScoreAnalysis
from training_camp.lineage.models import ExecutionSpan, SpanType

VERBOSE_PROMPT = (
    "Write comprehensive, detailed, thorough and extensive answers with no length limit.\n\n"
    "Use a formal tone."
)


def _analysis(score: int, *aspects: FeedbackAspect) -> ScoreAnalysis:
    sentiment = "negative" if score <= 3 else "neutral" if score < 7 else "positive"
    return ScoreAnalysis(score=score, sentiment=sentiment, aspects=list(aspects))


def _spans() -> list[ExecutionSpan]:
    return [
        ExecutionSpan(attempt_id="a", sequence=0, type=SpanType.LLM_CALL, output="calling tool"),
        ExecutionSpan(attempt_id="a", sequence=1, type=SpanType.TOOL_CALL, tool_name="search", tool_error="timeout"),
        ExecutionSpan(attempt_id="a", sequence=2, type=SpanType.LLM_CALL, output="draft"),
        ExecutionSpan(attempt_id="a", sequence=3, type=SpanType.OUTPUT, output="final"),
    ]


LENGTH_ISSUE = FeedbackAspect(aspect="length", sentiment="negative", quote="too long")


def test_segment_prompt_on_blank_lines_and_list_items():
    prompt = "You are a careful assistant.\n\nRules:\n- Cite every source you use\n- Keep answers short"
    assert segment_prompt(prompt) == [
        "You are a careful assistant.",
        "- Cite every source you use",
        "- Keep answers short",
    ]


def test_segment_prompt_falls_back_to_sentences():
    assert segment_prompt("Answer the question. Cite the sources you used.") == [
        "Answer the question.",
        "Cite the sources you used.",
    ]


@pytest.mark.parametrize("relevance,blame", [(0.9, "high"), (0.7, "high"), (0.5, "medium"), (0.2, "low"), (0.0, "none")])
def test_blame_thresholds(relevance, blame):
    assert blame_from_relevance(relevance) == blame


def test_prompt_heuristic_blames_matching_segment():
    credits = assign_prompt_credit_heuristic(VERBOSE_PROMPT, [LENGTH_ISSUE])
    assert [(c.segment_index, c.blame) for c in credits] == [(0, "high"), (1, "none")]
    assert credits[0].related_aspect == "length"
    assert credits[0].reason == 'Segment may contribute to length issues: "too long"'
    assert credits[1].reason == "No direct relation to feedback aspects"
    assert high_blame_segments(credits) == [credits[0]]


def test_trajectory_credit_for_poor_score():
    spans = _spans()
    credits = assign_trajectory_credit(spans, _analysis(3))
    assert [c.contribution for c in credits] == [-0.3, -0.5, -0.3, -0.5]
    assert credits[1].reason == "Tool call failed: timeout"
    assert [c.span_id for c in problematic_spans(credits)] == [s.id for s in spans]


def test_trajectory_credit_aspect_mention_adjusts_contribution():
    spans = [ExecutionSpan(attempt_id="a", sequence=0, type=SpanType.OUTPUT, output="length was fine")]
    credits = assign_trajectory_credit(spans, _analysis(8, FeedbackAspect(aspect="length", sentiment="positive")))
    assert credits[0].contribution == 0.7
    assert credits[0].reason == "Related to length: positive feedback"


@pytest.mark.asyncio
async def test_assigner_selects_trajectory_mode_for_multi_step_attempts():
    result = await CreditAssigner().assign(make_agent(), _analysis(3), _spans())
    assert result.mode == "trajectory"
    assert len(result.credits) == 4


@pytest.mark.asyncio
async def test_assigner_uses_prompt_mode_for_single_call():
    spans = _spans()[:1]
    result = await CreditAssigner().assign(make_agent(system_prompt=VERBOSE_PROMPT), _analysis(3, LENGTH_ISSUE), spans)
    assert result.mode == "prompt"
    assert result.credits[0].blame == "high"


@pytest.mark.asyncio
async def test_assigner_parses_generated_credit():
    generator = StubGenerator([
        '[{"segment_index": 1, "blame": "medium", "relatedAspect": "tone", "reason": "formal"},'
        ' {"segment_index": 7, "blame": "high"}, {"segment_index": 0, "blame": "severe"}]'
    ])
    result = await CreditAssigner(generator).assign(
        make_agent(system_prompt=VERBOSE_PROMPT), _analysis(4, FeedbackAspect(aspect="tone", sentiment="negative"))
    )
    assert [(c.segment_index, c.blame, c.related_aspect) for c in result.credits] == [(1, "medium", "tone")]
    assert result.credits[0].segment == "Use a formal tone."


@pytest.mark.asyncio
async def test_assigner_falls_back_on_unusable_generation():
    generator = StubGenerator(["I cannot help with that"])
    result = await CreditAssigner(generator).assign(make_agent(system_prompt=VERBOSE_PROMPT), _analysis(3, LENGTH_ISSUE))
    assert result.credits[0].blame == "high"


@pytest.mark.asyncio
async def test_assigner_skips_generation_without_aspects():
    generator = StubGenerator(["[]"])
    await CreditAssigner(generator).assign(make_agent(), _analysis(5))
    assert generator.calls == []


def test_summaries():
    assert summarize_credit([]) == "No credit assigned"
    prompt_credits = assign_prompt_credit_heuristic(VERBOSE_PROMPT, [LENGTH_ISSUE])
    assert summarize_credit(prompt_credits) == "Analyzed 2 prompt segments. High blame: length"
    trajectory = assign_trajectory_credit(_spans(), _analysis(3))
    assert summarize_credit(trajectory) == "Analyzed 4 execution spans. 4 problematic spans"
