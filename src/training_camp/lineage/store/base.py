"""Protocol for pluggable lineage storage backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from training_camp.agents.definition import AgentDefinition
from training_camp.evolution.records import EvolutionOutcome, EvolutionRecord, LearningInsight
from training_camp.lineage.models import (
    Attempt,
    AttemptStatus,
    AuditLogEntry,
    Evaluation,
    ExecutionParameters,
    ExecutionSpan,
    Lineage,
    Rollout,
    RolloutStatus,
    Session,
)


class _Unset:
    """Marker for "leave this field unchanged" in partial updates."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class LineageStore(Protocol):
    """Backend interface for the execution lineage hierarchy.

    Every mutating call is one complete read-modify-write; nothing is
    buffered between calls. Storage failures raise ``StorageError``.
    """

    # Sessions
    async def create_session(self, session: Session) -> Session: ...
    async def get_session(self, session_id: str) -> Session | None: ...
    async def list_sessions(self, limit: int = 100) -> list[Session]: ...
    async def update_session(
        self,
        session_id: str,
        *,
        name: str | None = None,
        need: str | None = None,
        constraints: str | None = UNSET,
        input_prompt: str | None = UNSET,
    ) -> Session: ...
    async def delete_session(self, session_id: str) -> bool: ...

    # Lineages
    async def create_lineage(self, lineage: Lineage) -> Lineage: ...
    async def get_lineage(self, lineage_id: str) -> Lineage | None: ...
    async def list_lineages(self, session_id: str) -> list[Lineage]: ...
    async def set_lineage_locked(self, lineage_id: str, locked: bool) -> Lineage: ...
    async def set_directives(
        self,
        lineage_id: str,
        *,
        sticky: str | None = UNSET,
        oneshot: str | None = UNSET,
    ) -> Lineage: ...
    async def clear_oneshot_directive(self, lineage_id: str) -> None: ...

    # Agent definitions
    async def create_agent(self, agent: AgentDefinition) -> AgentDefinition: ...
    async def get_agent(self, agent_id: str) -> AgentDefinition | None: ...
    async def get_latest_agent(self, lineage_id: str) -> AgentDefinition | None: ...
    async def get_agent_history(self, lineage_id: str) -> list[AgentDefinition]: ...
    async def get_latest_agents_for_session(self, session_id: str) -> dict[str, AgentDefinition]: ...
    async def delete_agent(self, agent_id: str) -> bool: ...

    # Rollouts and attempts
    async def create_rollout(self, rollout: Rollout) -> Rollout: ...
    async def get_rollout(self, rollout_id: str) -> Rollout | None: ...
    async def list_rollouts(self, lineage_id: str) -> list[Rollout]: ...
    async def update_rollout(
        self,
        rollout_id: str,
        *,
        status: RolloutStatus | None = None,
        final_attempt_id: str | None = None,
        completed_at: datetime | None = None,
    ) -> Rollout: ...
    async def create_attempt(
        self,
        rollout_id: str,
        agent: AgentDefinition,
        *,
        input: str = "",
        attempt_number: int = 1,
        model_id: str | None = None,
        parameters: ExecutionParameters | None = None,
    ) -> Attempt: ...
    async def get_attempt(self, attempt_id: str) -> Attempt | None: ...
    async def list_attempts(self, rollout_id: str) -> list[Attempt]: ...
    async def update_attempt(
        self,
        attempt_id: str,
        *,
        status: AttemptStatus | None = None,
        output: str | None = None,
        error: str | None = None,
        duration_ms: float | None = None,
        total_tokens: int | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        estimated_cost: float | None = None,
    ) -> Attempt: ...

    # Spans
    async def create_span(self, span: ExecutionSpan) -> ExecutionSpan: ...
    async def list_spans(self, attempt_id: str) -> list[ExecutionSpan]: ...

    # Evaluations
    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation: ...
    async def get_latest_evaluation(self, rollout_id: str) -> Evaluation | None: ...

    # Evolution records
    async def create_evolution_record(self, record: EvolutionRecord) -> EvolutionRecord: ...
    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None: ...
    async def list_evolution_records(self, lineage_id: str) -> list[EvolutionRecord]: ...
    async def record_evolution_outcome(
        self, record_id: str, outcome: EvolutionOutcome
    ) -> EvolutionRecord: ...

    # Learning insights
    async def create_insight(self, insight: LearningInsight) -> LearningInsight: ...
    async def get_insight(self, insight_id: str) -> LearningInsight | None: ...
    async def find_insight(self, session_id: str, pattern: str) -> LearningInsight | None: ...
    async def list_insights(self, session_id: str) -> list[LearningInsight]: ...
    async def update_insight(self, insight: LearningInsight) -> LearningInsight: ...

    # Audit trail
    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry: ...
    async def list_audit(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]: ...
