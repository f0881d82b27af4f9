"""Credit assignment: which parts of an agent are responsible for a score.

Single-call agents get prompt-level credit (blame per system-prompt
segment). Multi-step agents, with several llm_call spans, get
trajectory-level credit (a contribution in [-1, 1] per span).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Literal

import structlog
from pydantic import ValidationError

from training_camp.agents.definition import AgentDefinition
from training_camp.config import LLMRole
from training_camp.evolution.records import (
    BlameLevel,
    FeedbackAspect,
    PromptCredit,
    ScoreAnalysis,
    TrajectoryCredit,
)
from training_camp.lineage.models import ExecutionSpan, SpanType
from training_camp.llm.generator import TextGenerator

log = structlog.get_logger(__name__)

CreditMode = Literal["prompt", "trajectory"]

ASPECT_SEGMENT_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    aspect: tuple(re.compile(p, re.IGNORECASE) for p in patterns)
    for aspect, patterns in {
        "length": (
            r"\b(comprehensive|detailed|thorough|extensive|brief|concise|short)\b",
            r"\b(max|limit|length|word|character|token)\b",
            r"\b(expand|elaborate|summarize|shorten)\b",
        ),
        "tone": (
            r"\b(formal|informal|professional|casual|friendly|polite)\b",
            r"\b(tone|voice|style|manner|approach)\b",
        ),
        "format": (
            r"\b(bullet|list|paragraph|structure|organize|format)\b",
            r"\b(markdown|heading|section|numbered)\b",
        ),
        "accuracy": (
            r"\b(accurate|precise|correct|verify|validate|check)\b",
            r"\b(fact|source|reference|citation)\b",
        ),
        "completeness": (
            r"\b(complete|comprehensive|cover|include|address|missing)\b",
            r"\b(all|every|each|full)\b",
        ),
        "relevance": (
            r"\b(relevant|focus|specific|targeted|related)\b",
            r"\b(scope|context|topic)\b",
        ),
        "creativity": (
            r"\b(creative|original|unique|innovative|novel)\b",
            r"\b(idea|approach|solution|perspective)\b",
        ),
    }.items()
}

_SEGMENT_SPLIT = re.compile(r"\n\n+|\n(?=[-*•]|\d+\.)")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MIN_SEGMENT_CHARS = 10

CREDIT_SYSTEM_PROMPT = """You are an AI prompt analyzer. Your task is to identify which parts of a system prompt are responsible for specific feedback.

Given:
- A segmented system prompt
- User feedback with score {score}/10
- Extracted feedback aspects

Analyze which segments relate to the feedback and assign blame levels:
- "high": Segment directly causes the issue
- "medium": Segment contributes to the issue
- "low": Segment weakly relates
- "none": Segment is unrelated

Return JSON array of assignments:
[{{"segment_index": 0, "blame": "high", "related_aspect": "length", "reason": "Instructs verbose output"}}]"""

CREDIT_USER_PROMPT = """System Prompt Segments:
{segments}

User Feedback:
Score: {score}/10
Comment: {comment}
Aspects:
{aspects}

Which segments relate to the feedback? Return ONLY the JSON array."""


@dataclass
class CreditResult:
    mode: CreditMode
    credits: list[PromptCredit] | list[TrajectoryCredit]


def segment_prompt(prompt: str) -> list[str]:
    """Split a system prompt on blank lines and list items, else on sentences."""
    segments = [s.strip() for s in _SEGMENT_SPLIT.split(prompt)]
    segments = [s for s in segments if len(s) > _MIN_SEGMENT_CHARS]
    if len(segments) <= 1:
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(prompt)]
        return [s for s in sentences if len(s) > _MIN_SEGMENT_CHARS]
    return segments


def blame_from_relevance(relevance: float) -> BlameLevel:
    if relevance >= 0.7:
        return "high"
    if relevance >= 0.4:
        return "medium"
    if relevance >= 0.1:
        return "low"
    return "none"


def segment_relevance(segment: str, aspect: FeedbackAspect) -> float:
    patterns = ASPECT_SEGMENT_PATTERNS.get(aspect.aspect, ())
    if not patterns:
        return 0.0
    matches = sum(len(p.findall(segment)) for p in patterns)
    return min(1.0, matches / (len(patterns) * 2))


def assign_prompt_credit_heuristic(prompt: str, aspects: list[FeedbackAspect]) -> list[PromptCredit]:
    credits: list[PromptCredit] = []
    for index, segment in enumerate(segment_prompt(prompt)):
        best = 0.0
        related: str | None = None
        reason = "No direct relation to feedback aspects"

        for aspect in aspects:
            relevance = segment_relevance(segment, aspect)
            if relevance <= best:
                continue
            best = relevance
            related = aspect.aspect
            if aspect.sentiment == "negative":
                quote = f': "{aspect.quote}"' if aspect.quote else ""
                reason = f"Segment may contribute to {aspect.aspect} issues{quote}"
            elif aspect.sentiment == "positive":
                reason = f"Segment contributes positively to {aspect.aspect}"

        credits.append(PromptCredit(
            segment=segment,
            segment_index=index,
            blame=blame_from_relevance(best),
            related_aspect=related,
            reason=reason,
        ))
    return credits


def assign_trajectory_credit(spans: list[ExecutionSpan], analysis: ScoreAnalysis) -> list[TrajectoryCredit]:
    """Heuristic per-span contribution by span type, tool errors and aspect mentions."""
    acceptable = analysis.score >= 5
    credits: list[TrajectoryCredit] = []

    for span in sorted(spans, key=lambda s: s.sequence):
        contribution = 0.0
        reason = "Neutral contribution"

        if span.type == SpanType.LLM_CALL:
            contribution = 0.3 if acceptable else -0.3
            reason = (
                "LLM call contributed to acceptable output"
                if acceptable else "LLM call may have produced suboptimal content"
            )
        elif span.type == SpanType.TOOL_CALL:
            if span.tool_error:
                contribution = -0.5
                reason = f"Tool call failed: {span.tool_error}"
            else:
                contribution = 0.2
                reason = f"Tool {span.tool_name} executed successfully"
        elif span.type == SpanType.TOOL_RESULT:
            if span.output:
                contribution = 0.1
                reason = "Tool provided useful results"
        elif span.type == SpanType.REASONING:
            contribution = 0.2 if acceptable else -0.1
            reason = (
                "Reasoning step contributed to output"
                if acceptable else "Reasoning may have led to suboptimal decisions"
            )
        elif span.type == SpanType.OUTPUT:
            contribution = 0.5 if acceptable else -0.5
            reason = "Final output was acceptable" if acceptable else "Final output needs improvement"

        text = f"{span.input} {span.output}".lower()
        for aspect in analysis.aspects:
            if aspect.aspect not in text:
                continue
            if aspect.sentiment == "negative":
                contribution -= 0.2
                reason = f"Related to {aspect.aspect} issue: {aspect.quote or 'negative feedback'}"
            elif aspect.sentiment == "positive":
                contribution += 0.2
                reason = f"Related to {aspect.aspect}: positive feedback"
            break

        credits.append(TrajectoryCredit(
            span_id=span.id,
            contribution=max(-1.0, min(1.0, round(contribution, 6))),
            reason=reason,
        ))
    return credits


def high_blame_segments(credits: list[PromptCredit]) -> list[PromptCredit]:
    return [c for c in credits if c.blame in ("high", "medium")]


def problematic_spans(credits: list[TrajectoryCredit]) -> list[TrajectoryCredit]:
    return [c for c in credits if c.contribution < 0]


def summarize_credit(credits: list[PromptCredit] | list[TrajectoryCredit]) -> str:
    if not credits:
        return "No credit assigned"
    if isinstance(credits[0], PromptCredit):
        high = [c.related_aspect or "unspecified" for c in credits if c.blame == "high"]
        medium = [c.related_aspect or "unspecified" for c in credits if c.blame == "medium"]
        parts = [f"Analyzed {len(credits)} prompt segments"]
        if high:
            parts.append(f"High blame: {', '.join(high)}")
        if medium:
            parts.append(f"Medium blame: {', '.join(medium)}")
        return ". ".join(parts)

    problematic = [c for c in credits if c.contribution < 0]
    helpful = [c for c in credits if c.contribution > 0.3]
    parts = [f"Analyzed {len(credits)} execution spans"]
    if problematic:
        parts.append(f"{len(problematic)} problematic spans")
    if helpful:
        parts.append(f"{len(helpful)} helpful spans")
    return ". ".join(parts)


class CreditAssigner:
    """Chooses a credit mode from the attempt's spans and assigns credit."""

    def __init__(self, generator: TextGenerator | None = None, trajectory_min_spans: int = 3) -> None:
        self._generator = generator
        self._trajectory_min_spans = trajectory_min_spans

    def uses_trajectory(self, spans: list[ExecutionSpan]) -> bool:
        if len(spans) < self._trajectory_min_spans:
            return False
        return sum(1 for s in spans if s.type == SpanType.LLM_CALL) > 1

    async def assign(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        spans: list[ExecutionSpan] | None = None,
    ) -> CreditResult:
        spans = spans or []
        if self.uses_trajectory(spans):
            return CreditResult("trajectory", assign_trajectory_credit(spans, analysis))

        if analysis.aspects:
            credits = await self._assign_with_generator(agent.system_prompt, analysis)
            if credits:
                return CreditResult("prompt", credits)

        return CreditResult("prompt", assign_prompt_credit_heuristic(agent.system_prompt, analysis.aspects))

    async def _assign_with_generator(self, prompt: str, analysis: ScoreAnalysis) -> list[PromptCredit]:
        if self._generator is None or not self._generator.is_configured(LLMRole.REFLECTING):
            return []
        segments = segment_prompt(prompt)
        if not segments:
            return []

        segment_list = "\n\n".join(
            f"[{i}] {s[:200]}{'...' if len(s) > 200 else ''}" for i, s in enumerate(segments)
        )
        aspect_list = "\n".join(
            f"- {a.aspect} ({a.sentiment}): {a.quote or 'no quote'}" for a in analysis.aspects
        )
        try:
            response = await self._generator.generate(
                CREDIT_SYSTEM_PROMPT.format(score=analysis.score),
                CREDIT_USER_PROMPT.format(
                    segments=segment_list,
                    score=analysis.score,
                    comment=analysis.comment or "(no comment)",
                    aspects=aspect_list or "(no specific aspects)",
                ),
                max_tokens=1024,
                temperature=0.3,
                role=LLMRole.REFLECTING,
            )
        except Exception as exc:
            log.warning("credit_generation_failed", error=str(exc))
            return []
        return _parse_prompt_credits(response, segments)


def _parse_prompt_credits(response: str, segments: list[str]) -> list[PromptCredit]:
    match = re.search(r"\[[\s\S]*\]", response)
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(items, list):
        return []

    credits: list[PromptCredit] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        index = item.get("segment_index", item.get("segmentIndex"))
        if not isinstance(index, int) or not 0 <= index < len(segments):
            continue
        try:
            credits.append(PromptCredit(
                segment=segments[index],
                segment_index=index,
                blame=item.get("blame", "none"),
                related_aspect=item.get("related_aspect", item.get("relatedAspect")),
                reason=str(item.get("reason", "")),
            ))
        except ValidationError:
            continue
    return credits
