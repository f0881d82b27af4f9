"""Execution lineage records: Session -> Lineage -> Rollout -> Attempt -> Span.

Relations are parent-id references, never object back-pointers; stores look
children up by id.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from training_camp.agents.definition import AgentDefinition
from training_camp.lineage.hashing import hash_flow, hash_system_prompt, hash_tools

LINEAGE_LABELS = ("A", "B", "C", "D", "E", "F", "G", "H")


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class RolloutStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SpanType(str, Enum):
    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    OUTPUT = "output"


@dataclass
class Session:
    """A training session: one user need, several competing lineages."""

    name: str
    need: str
    id: str = field(default_factory=_new_id)
    constraints: str | None = None
    input_prompt: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Lineage:
    """One of the parallel, independently evolving agent tracks in a session."""

    session_id: str
    label: str
    id: str = field(default_factory=_new_id)
    strategy_tag: str | None = None
    is_locked: bool = False
    directive_sticky: str | None = None
    directive_oneshot: str | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AgentSnapshot:
    """Identity of the agent definition an attempt ran against."""

    agent_id: str
    version: int
    system_prompt_hash: str
    tools_hash: str
    flow_hash: str

    @classmethod
    def of(cls, agent: AgentDefinition) -> AgentSnapshot:
        return cls(
            agent_id=agent.id,
            version=agent.version,
            system_prompt_hash=hash_system_prompt(agent),
            tools_hash=hash_tools(agent),
            flow_hash=hash_flow(agent),
        )

    def matches(self, agent: AgentDefinition) -> bool:
        """False if ``agent`` has drifted from this snapshot."""
        return self == AgentSnapshot.of(agent)


@dataclass
class Rollout:
    """One evaluation cycle of a lineage."""

    lineage_id: str
    cycle: int
    id: str = field(default_factory=_new_id)
    status: RolloutStatus = RolloutStatus.PENDING
    final_attempt_id: str | None = None
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None


@dataclass
class ExecutionParameters:
    temperature: float
    max_tokens: int
    top_p: float | None = None


@dataclass
class Attempt:
    """A single concrete execution of an agent definition snapshot."""

    rollout_id: str
    snapshot: AgentSnapshot
    parameters: ExecutionParameters
    id: str = field(default_factory=_new_id)
    attempt_number: int = 1
    status: AttemptStatus = AttemptStatus.RUNNING
    input: str = ""
    model_id: str = ""
    output: str | None = None
    error: str | None = None
    duration_ms: float = 0.0
    total_tokens: int | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    estimated_cost: float | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class ExecutionSpan:
    """One atomic traced step inside an attempt.

    ``sequence`` is the ordering authority within the attempt; a parent span
    always has a smaller sequence.
    """

    attempt_id: str
    sequence: int
    type: SpanType
    id: str = field(default_factory=_new_id)
    parent_span_id: str | None = None
    input: str = ""
    output: str = ""
    model_id: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: Any = None
    tool_error: str | None = None
    duration_ms: float = 0.0
    estimated_cost: float | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class Evaluation:
    """A user's 1-10 score for a rollout."""

    rollout_id: str
    score: int
    id: str = field(default_factory=_new_id)
    attempt_id: str | None = None
    comment: str | None = None
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if not 1 <= self.score <= 10:
            raise ValueError(f"Score must be between 1 and 10, got {self.score}")


@dataclass
class AuditLogEntry:
    """Append-only record of a mutating store operation."""

    event_type: str
    id: str = field(default_factory=_new_id)
    entity_type: str | None = None
    entity_id: str | None = None
    data: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_now)
