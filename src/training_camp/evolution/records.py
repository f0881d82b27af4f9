"""Evolution records: the audit trail of every score-driven agent mutation.

Records are pydantic models so nested analysis, credit and plan values
serialize to JSON columns without hand-written converters.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field

Sentiment = Literal["positive", "neutral", "negative"]
Trend = Literal["improving", "stable", "declining"]
BlameLevel = Literal["high", "medium", "low", "none"]
EvolutionComponent = Literal["system_prompt", "tools", "flow", "parameters"]
ChangeType = Literal["add", "remove", "modify"]
PatternType = Literal["prompt_change", "tool_change", "param_change", "flow_change"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Reward analysis
# ---------------------------------------------------------------------------


class FeedbackAspect(BaseModel):
    """One aspect of the output the user commented on."""

    aspect: str
    sentiment: Sentiment
    quote: str | None = None
    confidence: float = Field(default=0.6, ge=0.0, le=1.0)


class ScoreAnalysis(BaseModel):
    score: int = Field(ge=1, le=10)
    comment: str | None = None
    sentiment: Sentiment
    aspects: list[FeedbackAspect] = Field(default_factory=list)
    trend: Trend = "stable"
    delta_from_previous: int = 0


# ---------------------------------------------------------------------------
# Credit assignment: a tagged union discriminated on ``kind``
# ---------------------------------------------------------------------------


class PromptCredit(BaseModel):
    """Blame attributed to one segment of the system prompt."""

    kind: Literal["prompt"] = "prompt"
    segment: str
    segment_index: int
    blame: BlameLevel
    related_aspect: str | None = None
    reason: str


class TrajectoryCredit(BaseModel):
    """Contribution of one execution span to the outcome, in [-1, 1]."""

    kind: Literal["trajectory"] = "trajectory"
    span_id: str
    contribution: float = Field(ge=-1.0, le=1.0)
    reason: str


CreditAssignment = Annotated[PromptCredit | TrajectoryCredit, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class EvolutionChange(BaseModel):
    component: EvolutionComponent
    change_type: ChangeType
    target: str
    before: str | None = None
    after: str | None = None
    reason: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ExpectedImpact(BaseModel):
    aspect: str
    direction: Literal["improve", "maintain"]


class EvolutionPlan(BaseModel):
    changes: list[EvolutionChange] = Field(default_factory=list)
    hypothesis: str = ""
    expected_impact: list[ExpectedImpact] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Directives(BaseModel):
    sticky: str | None = None
    oneshot: str | None = None


class EvolutionTrigger(BaseModel):
    rollout_id: str
    attempt_id: str | None = None
    score: int = Field(ge=1, le=10)
    comment: str | None = None
    directives: Directives = Field(default_factory=Directives)


class EvolutionOutcome(BaseModel):
    """Measured effect of an evolution, filled once the next rollout is scored."""

    next_score: int
    score_delta: int
    hypothesis_validated: bool

    @classmethod
    def measure(cls, trigger_score: int, next_score: int) -> EvolutionOutcome:
        delta = next_score - trigger_score
        return cls(next_score=next_score, score_delta=delta, hypothesis_validated=delta > 0)


class EvolutionRecord(BaseModel):
    """Complete record of one agent mutation within a lineage."""

    id: str = Field(default_factory=_new_id)
    lineage_id: str
    from_version: int
    to_version: int
    trigger: EvolutionTrigger
    score_analysis: ScoreAnalysis
    credit_assignment: list[CreditAssignment] = Field(default_factory=list)
    plan: EvolutionPlan = Field(default_factory=EvolutionPlan)
    changes: list[EvolutionChange] = Field(default_factory=list)
    outcome: EvolutionOutcome | None = None
    created_at: datetime = Field(default_factory=_now)


class LearningInsight(BaseModel):
    """Aggregated outcome statistics for one change pattern in a session."""

    id: str = Field(default_factory=_new_id)
    session_id: str
    pattern: str
    pattern_type: PatternType
    contexts: list[str] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    avg_score_impact: float = 0.0
    confidence: float = 0.0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def total_count(self) -> int:
        return self.success_count + self.failure_count


_PATTERN_TYPES: dict[str, PatternType] = {
    "system_prompt": "prompt_change",
    "tools": "tool_change",
    "parameters": "param_change",
    "flow": "flow_change",
}


def pattern_type_for(component: EvolutionComponent) -> PatternType:
    return _PATTERN_TYPES[component]


def change_pattern(change: EvolutionChange) -> str:
    """Insight key for a change, e.g. ``"modify system_prompt: accuracy_instructions"``."""
    return f"{change.change_type} {change.component}: {change.target}"
