"""Reward analysis: a 1-10 score plus free-text comment -> ScoreAnalysis."""

from __future__ import annotations

import json
import re

import structlog
from pydantic import ValidationError

from training_camp.config import LLMRole
from training_camp.evolution.records import FeedbackAspect, ScoreAnalysis, Sentiment, Trend
from training_camp.llm.generator import TextGenerator

log = structlog.get_logger(__name__)

ASPECT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "length": (
        "long", "short", "brief", "verbose", "concise", "wordy", "lengthy",
        "too much", "not enough", "more detail", "less detail",
    ),
    "tone": (
        "formal", "informal", "casual", "professional", "friendly",
        "cold", "warm", "harsh", "polite", "rude",
    ),
    "accuracy": (
        "wrong", "correct", "accurate", "inaccurate", "mistake",
        "error", "right", "incorrect", "precise", "imprecise",
    ),
    "format": (
        "bullets", "list", "paragraph", "structured", "organized",
        "messy", "clear", "confusing", "readable", "format",
    ),
    "completeness": (
        "incomplete", "complete", "missing", "thorough",
        "partial", "full", "comprehensive", "lacking",
    ),
    "relevance": (
        "relevant", "irrelevant", "off-topic", "on-point",
        "tangent", "focused", "scattered", "related",
    ),
    "speed": ("slow", "fast", "quick", "delayed", "immediate", "responsive"),
    "creativity": (
        "creative", "boring", "original", "generic",
        "unique", "standard", "innovative", "bland",
    ),
}

POSITIVE_INDICATORS = (
    "good", "great", "excellent", "perfect", "love", "like", "better", "best", "well",
    "nice", "helpful", "useful", "thanks", "awesome", "amazing", "improved", "correct", "right",
)

NEGATIVE_INDICATORS = (
    "bad", "terrible", "awful", "hate", "wrong", "worse", "worst", "poor", "useless",
    "unhelpful", "incorrect", "mistake", "error", "fail", "broken", "confused", "unclear", "missing",
)

_NEGATIONS = ("not ", "n't ", "no ")
_KEYWORD_CONFIDENCE = 0.6
_INFERRED_CONFIDENCE = 0.5

ASPECT_PROMPT = """Analyze this user feedback for an AI agent output and extract specific aspects being commented on.

Score: {score}/10
Comment: "{comment}"

Extract each distinct aspect mentioned (e.g., length, tone, accuracy, format, completeness, relevance, creativity).
For each aspect, determine:
1. The aspect name (lowercase, one word)
2. Whether the sentiment is positive, negative, or neutral
3. A relevant quote from the comment (if applicable)
4. Confidence level (0-1)

Return as JSON array:
[{{"aspect": "length", "sentiment": "negative", "quote": "too long", "confidence": 0.9}}]

If no specific aspects are mentioned, return an empty array [].
Return ONLY the JSON array, no other text."""


def sentiment_from_score(score: int) -> Sentiment:
    if score >= 7:
        return "positive"
    if score >= 4:
        return "neutral"
    return "negative"


def calculate_trend(score: int, previous_score: int | None) -> tuple[Trend, int]:
    if previous_score is None:
        return "stable", 0
    delta = score - previous_score
    if delta >= 2:
        return "improving", delta
    if delta <= -2:
        return "declining", delta
    return "stable", delta


def extract_aspects_from_keywords(comment: str) -> list[FeedbackAspect]:
    """Keyword-table aspect extraction, one aspect per table entry at most.

    Sentiment comes from indicator words within 20 characters of the
    keyword; a nearby negation flips it.
    """
    aspects: list[FeedbackAspect] = []
    lower = comment.lower()

    for aspect, keywords in ASPECT_KEYWORDS.items():
        for keyword in keywords:
            index = lower.find(keyword)
            if index == -1:
                continue

            quote = comment[max(0, index - 30): index + len(keyword) + 30].strip()
            context = lower[max(0, index - 20): index + len(keyword) + 20]

            has_negation = any(n in context for n in _NEGATIONS)
            has_positive = any(p in context for p in POSITIVE_INDICATORS)
            has_negative = any(n in context for n in NEGATIVE_INDICATORS)

            sentiment: Sentiment
            if has_negation:
                sentiment = "positive" if has_negative else "negative"
            elif has_negative:
                sentiment = "negative"
            elif has_positive:
                sentiment = "positive"
            else:
                sentiment = "neutral"

            aspects.append(FeedbackAspect(
                aspect=aspect,
                sentiment=sentiment,
                quote=f"...{quote}..." if len(quote) > 3 else None,
                confidence=_KEYWORD_CONFIDENCE,
            ))
            break

    return aspects


def parse_aspects(response: str) -> list[FeedbackAspect]:
    """Parse a generated JSON array of aspects; malformed output yields []."""
    match = re.search(r"\[[\s\S]*\]", response.strip())
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(items, list):
        return []

    aspects: list[FeedbackAspect] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("aspect"):
            continue
        sentiment = item.get("sentiment")
        try:
            aspects.append(FeedbackAspect(
                aspect=str(item["aspect"]).lower(),
                sentiment=sentiment if sentiment in ("positive", "neutral", "negative") else "neutral",
                quote=item.get("quote"),
                confidence=max(0.0, min(1.0, float(item.get("confidence", _KEYWORD_CONFIDENCE)))),
            ))
        except (TypeError, ValueError, ValidationError):
            continue
    return aspects


def summarize_analysis(analysis: ScoreAnalysis) -> str:
    """One-line human-readable summary of an analysis."""
    parts: list[str] = []
    if analysis.score >= 8:
        parts.append(f"Strong performance ({analysis.score}/10)")
    elif analysis.score >= 5:
        parts.append(f"Moderate performance ({analysis.score}/10)")
    else:
        parts.append(f"Needs improvement ({analysis.score}/10)")

    if analysis.delta_from_previous:
        direction = "up" if analysis.delta_from_previous > 0 else "down"
        parts.append(f"{direction} {abs(analysis.delta_from_previous)} points")

    positive = [a.aspect for a in analysis.aspects if a.sentiment == "positive"]
    negative = [a.aspect for a in analysis.aspects if a.sentiment == "negative"]
    if positive:
        parts.append(f"Positive: {', '.join(positive)}")
    if negative:
        parts.append(f"Issues: {', '.join(negative)}")

    return ". ".join(parts) + "."


class RewardAnalyzer:
    """Turns a score and comment into a :class:`ScoreAnalysis`.

    Aspects come from the text generator when it is configured and returns
    any; otherwise from the keyword table.
    """

    def __init__(self, generator: TextGenerator | None = None) -> None:
        self._generator = generator

    async def analyze(
        self,
        score: int,
        comment: str | None,
        previous_score: int | None = None,
    ) -> ScoreAnalysis:
        trend, delta = calculate_trend(score, previous_score)
        aspects: list[FeedbackAspect] = []

        if comment and comment.strip():
            aspects = await self._extract_with_generator(comment, score)
            if not aspects:
                aspects = extract_aspects_from_keywords(comment)

        if not aspects:
            if score <= 3:
                aspects = [FeedbackAspect(aspect="quality", sentiment="negative", confidence=_INFERRED_CONFIDENCE)]
            elif score >= 8:
                aspects = [FeedbackAspect(aspect="quality", sentiment="positive", confidence=_INFERRED_CONFIDENCE)]

        return ScoreAnalysis(
            score=score,
            comment=comment or None,
            sentiment=sentiment_from_score(score),
            aspects=aspects,
            trend=trend,
            delta_from_previous=delta,
        )

    async def _extract_with_generator(self, comment: str, score: int) -> list[FeedbackAspect]:
        if self._generator is None or not self._generator.is_configured(LLMRole.REFLECTING):
            return []
        try:
            response = await self._generator.generate(
                "",
                ASPECT_PROMPT.format(score=score, comment=comment),
                max_tokens=512,
                temperature=0.3,
                role=LLMRole.REFLECTING,
            )
        except Exception as exc:
            log.warning("aspect_extraction_failed", error=str(exc))
            return []
        return parse_aspects(response)
