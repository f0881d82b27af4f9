"""In-memory lineage store for testing and development."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.evolution.records import EvolutionOutcome, EvolutionRecord, LearningInsight
from training_camp.exceptions import (
    ConstraintViolation,
    DuplicateLineageError,
    NotFoundError,
    OutcomeAlreadyRecordedError,
    SpanSequenceError,
    VersionConflictError,
)
from training_camp.lineage.models import (
    AgentSnapshot,
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
from training_camp.lineage.store.base import UNSET

log = structlog.get_logger(__name__)


class InMemoryLineageStore:
    """Dict-backed lineage store with the same invariants as the SQLite store."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lineages: dict[str, Lineage] = {}
        self._agents: dict[str, AgentDefinition] = {}
        # highest version ever issued per lineage; survives deletes
        self._max_versions: dict[str, int] = {}
        self._rollouts: dict[str, Rollout] = {}
        self._attempts: dict[str, Attempt] = {}
        self._spans: dict[str, ExecutionSpan] = {}
        self._evaluations: list[Evaluation] = []
        self._records: dict[str, EvolutionRecord] = {}
        self._insights: dict[str, LearningInsight] = {}
        self._audit: list[AuditLogEntry] = []

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        if session.id in self._sessions:
            raise ConstraintViolation(f"Session {session.id!r} already exists")
        self._sessions[session.id] = session
        await self._log_event("session_created", "session", session.id, {"name": session.name})
        return session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def list_sessions(self, limit: int = 100) -> list[Session]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return sessions[:limit]

    async def update_session(
        self,
        session_id: str,
        *,
        name: str | None = None,
        need: str | None = None,
        constraints: str | None = UNSET,
        input_prompt: str | None = UNSET,
    ) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session", session_id)
        changes: dict[str, object] = {}
        if name is not None:
            changes["name"] = name
        if need is not None:
            changes["need"] = need
        if constraints is not UNSET:
            changes["constraints"] = constraints
        if input_prompt is not UNSET:
            changes["input_prompt"] = input_prompt
        updated = dataclasses.replace(session, **changes, updated_at=datetime.now(UTC))
        self._sessions[session_id] = updated
        await self._log_event("session_updated", "session", session_id, {"fields": sorted(changes)})
        return updated

    async def delete_session(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        lineage_ids = {lid for lid, lin in self._lineages.items() if lin.session_id == session_id}
        for lineage_id in lineage_ids:
            self._drop_lineage(lineage_id)
        self._insights = {k: v for k, v in self._insights.items() if v.session_id != session_id}
        await self._log_event("session_deleted", "session", session_id, None)
        return True

    # ------------------------------------------------------------------
    # Lineages
    # ------------------------------------------------------------------

    async def create_lineage(self, lineage: Lineage) -> Lineage:
        if lineage.session_id not in self._sessions:
            raise ConstraintViolation(f"Session {lineage.session_id!r} does not exist")
        if any(
            lin.session_id == lineage.session_id and lin.label == lineage.label
            for lin in self._lineages.values()
        ):
            raise DuplicateLineageError(lineage.session_id, lineage.label)
        self._lineages[lineage.id] = lineage
        return lineage

    async def get_lineage(self, lineage_id: str) -> Lineage | None:
        return self._lineages.get(lineage_id)

    async def list_lineages(self, session_id: str) -> list[Lineage]:
        lineages = [lin for lin in self._lineages.values() if lin.session_id == session_id]
        return sorted(lineages, key=lambda lin: lin.label)

    async def set_lineage_locked(self, lineage_id: str, locked: bool) -> Lineage:
        lineage = self._require_lineage(lineage_id)
        updated = dataclasses.replace(lineage, is_locked=locked)
        self._lineages[lineage_id] = updated
        await self._log_event(
            "lineage_locked" if locked else "lineage_unlocked", "lineage", lineage_id, None
        )
        return updated

    async def set_directives(
        self,
        lineage_id: str,
        *,
        sticky: str | None = UNSET,
        oneshot: str | None = UNSET,
    ) -> Lineage:
        lineage = self._require_lineage(lineage_id)
        changes: dict[str, object] = {}
        if sticky is not UNSET:
            changes["directive_sticky"] = sticky
        if oneshot is not UNSET:
            changes["directive_oneshot"] = oneshot
        updated = dataclasses.replace(lineage, **changes)
        self._lineages[lineage_id] = updated
        return updated

    async def clear_oneshot_directive(self, lineage_id: str) -> None:
        await self.set_directives(lineage_id, oneshot=None)

    # ------------------------------------------------------------------
    # Agent definitions
    # ------------------------------------------------------------------

    async def create_agent(self, agent: AgentDefinition) -> AgentDefinition:
        if agent.lineage_id is None:
            raise ValueError("Agent definition must belong to a lineage")
        agent.check_flow()
        self._require_lineage(agent.lineage_id, error=ConstraintViolation)
        if agent.id in self._agents:
            raise ConstraintViolation(f"Agent {agent.id!r} already exists")
        if agent.version <= self._max_versions.get(agent.lineage_id, 0):
            raise VersionConflictError(agent.lineage_id, agent.version)
        self._agents[agent.id] = agent
        self._max_versions[agent.lineage_id] = agent.version
        await self._log_event(
            "agent_created", "agent", agent.id,
            {"lineage_id": agent.lineage_id, "version": agent.version},
        )
        return agent

    async def get_agent(self, agent_id: str) -> AgentDefinition | None:
        return self._agents.get(agent_id)

    async def get_latest_agent(self, lineage_id: str) -> AgentDefinition | None:
        history = await self.get_agent_history(lineage_id)
        return history[0] if history else None

    async def get_agent_history(self, lineage_id: str) -> list[AgentDefinition]:
        agents = [a for a in self._agents.values() if a.lineage_id == lineage_id]
        return sorted(agents, key=lambda a: a.version, reverse=True)

    async def get_latest_agents_for_session(self, session_id: str) -> dict[str, AgentDefinition]:
        latest: dict[str, AgentDefinition] = {}
        for lineage in await self.list_lineages(session_id):
            agent = await self.get_latest_agent(lineage.id)
            if agent is not None:
                latest[lineage.id] = agent
        return latest

    async def delete_agent(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        await self._log_event(
            "agent_deleted", "agent", agent_id,
            {"lineage_id": agent.lineage_id, "version": agent.version},
        )
        return True

    # ------------------------------------------------------------------
    # Rollouts and attempts
    # ------------------------------------------------------------------

    async def create_rollout(self, rollout: Rollout) -> Rollout:
        self._require_lineage(rollout.lineage_id, error=ConstraintViolation)
        self._rollouts[rollout.id] = rollout
        return rollout

    async def get_rollout(self, rollout_id: str) -> Rollout | None:
        return self._rollouts.get(rollout_id)

    async def list_rollouts(self, lineage_id: str) -> list[Rollout]:
        rollouts = [r for r in self._rollouts.values() if r.lineage_id == lineage_id]
        return sorted(rollouts, key=lambda r: r.cycle)

    async def update_rollout(
        self,
        rollout_id: str,
        *,
        status: RolloutStatus | None = None,
        final_attempt_id: str | None = None,
        completed_at: datetime | None = None,
    ) -> Rollout:
        rollout = self._rollouts.get(rollout_id)
        if rollout is None:
            raise NotFoundError("Rollout", rollout_id)
        changes = _present(status=status, final_attempt_id=final_attempt_id, completed_at=completed_at)
        updated = dataclasses.replace(rollout, **changes)
        self._rollouts[rollout_id] = updated
        return updated

    async def create_attempt(
        self,
        rollout_id: str,
        agent: AgentDefinition,
        *,
        input: str = "",
        attempt_number: int = 1,
        model_id: str | None = None,
        parameters: ExecutionParameters | None = None,
    ) -> Attempt:
        if rollout_id not in self._rollouts:
            raise ConstraintViolation(f"Rollout {rollout_id!r} does not exist")
        attempt = Attempt(
            rollout_id=rollout_id,
            snapshot=AgentSnapshot.of(agent),
            parameters=parameters or ExecutionParameters(
                temperature=agent.parameters.temperature,
                max_tokens=agent.parameters.max_tokens,
                top_p=agent.parameters.top_p,
            ),
            attempt_number=attempt_number,
            input=input,
            model_id=model_id or agent.parameters.model,
        )
        self._attempts[attempt.id] = attempt
        return attempt

    async def get_attempt(self, attempt_id: str) -> Attempt | None:
        return self._attempts.get(attempt_id)

    async def list_attempts(self, rollout_id: str) -> list[Attempt]:
        attempts = [a for a in self._attempts.values() if a.rollout_id == rollout_id]
        return sorted(attempts, key=lambda a: a.attempt_number)

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
    ) -> Attempt:
        attempt = self._attempts.get(attempt_id)
        if attempt is None:
            raise NotFoundError("Attempt", attempt_id)
        changes = _present(
            status=status,
            output=output,
            error=error,
            duration_ms=duration_ms,
            total_tokens=total_tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost=estimated_cost,
        )
        updated = dataclasses.replace(attempt, **changes)
        self._attempts[attempt_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Spans
    # ------------------------------------------------------------------

    async def create_span(self, span: ExecutionSpan) -> ExecutionSpan:
        if span.attempt_id not in self._attempts:
            raise ConstraintViolation(f"Attempt {span.attempt_id!r} does not exist")
        siblings = [s for s in self._spans.values() if s.attempt_id == span.attempt_id]
        if any(s.sequence == span.sequence for s in siblings):
            raise SpanSequenceError(
                f"Attempt {span.attempt_id!r} already has a span at sequence {span.sequence}"
            )
        if span.parent_span_id is not None:
            parent = self._spans.get(span.parent_span_id)
            if parent is None or parent.attempt_id != span.attempt_id or parent.sequence >= span.sequence:
                raise SpanSequenceError(
                    f"Parent span {span.parent_span_id!r} is not an earlier span of attempt {span.attempt_id!r}"
                )
        self._spans[span.id] = span
        log.debug("span_saved", span_id=span.id, attempt_id=span.attempt_id, sequence=span.sequence)
        return span

    async def list_spans(self, attempt_id: str) -> list[ExecutionSpan]:
        spans = [s for s in self._spans.values() if s.attempt_id == attempt_id]
        return sorted(spans, key=lambda s: s.sequence)

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        if evaluation.rollout_id not in self._rollouts:
            raise ConstraintViolation(f"Rollout {evaluation.rollout_id!r} does not exist")
        self._evaluations.append(evaluation)
        await self._log_event(
            "evaluation_created", "evaluation", evaluation.id,
            {"rollout_id": evaluation.rollout_id, "score": evaluation.score},
        )
        return evaluation

    async def get_latest_evaluation(self, rollout_id: str) -> Evaluation | None:
        matching = [e for e in self._evaluations if e.rollout_id == rollout_id]
        return matching[-1] if matching else None

    # ------------------------------------------------------------------
    # Evolution records
    # ------------------------------------------------------------------

    async def create_evolution_record(self, record: EvolutionRecord) -> EvolutionRecord:
        self._require_lineage(record.lineage_id, error=ConstraintViolation)
        if record.id in self._records:
            raise ConstraintViolation(f"Evolution record {record.id!r} already exists")
        self._records[record.id] = record
        await self._log_event(
            "evolution_created", "evolution", record.id,
            {"lineage_id": record.lineage_id, "from_version": record.from_version, "to_version": record.to_version},
        )
        return record

    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None:
        return self._records.get(record_id)

    async def list_evolution_records(self, lineage_id: str) -> list[EvolutionRecord]:
        records = [r for r in self._records.values() if r.lineage_id == lineage_id]
        return sorted(records, key=lambda r: (r.to_version, r.created_at), reverse=True)

    async def record_evolution_outcome(
        self, record_id: str, outcome: EvolutionOutcome
    ) -> EvolutionRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError("EvolutionRecord", record_id)
        if record.outcome is not None:
            raise OutcomeAlreadyRecordedError(record_id)
        updated = record.model_copy(update={"outcome": outcome})
        self._records[record_id] = updated
        await self._log_event("evolution_outcome_recorded", "evolution", record_id, outcome.model_dump())
        return updated

    # ------------------------------------------------------------------
    # Learning insights
    # ------------------------------------------------------------------

    async def create_insight(self, insight: LearningInsight) -> LearningInsight:
        if await self.find_insight(insight.session_id, insight.pattern) is not None:
            raise ConstraintViolation(
                f"Session {insight.session_id!r} already has an insight for {insight.pattern!r}"
            )
        self._insights[insight.id] = insight
        return insight

    async def get_insight(self, insight_id: str) -> LearningInsight | None:
        return self._insights.get(insight_id)

    async def find_insight(self, session_id: str, pattern: str) -> LearningInsight | None:
        return next(
            (i for i in self._insights.values() if i.session_id == session_id and i.pattern == pattern),
            None,
        )

    async def list_insights(self, session_id: str) -> list[LearningInsight]:
        insights = [i for i in self._insights.values() if i.session_id == session_id]
        return sorted(insights, key=lambda i: i.confidence, reverse=True)

    async def update_insight(self, insight: LearningInsight) -> LearningInsight:
        if insight.id not in self._insights:
            raise NotFoundError("LearningInsight", insight.id)
        self._insights[insight.id] = insight
        return insight

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._audit.append(entry)
        return entry

    async def list_audit(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        entries = [
            e for e in reversed(self._audit)
            if (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        return entries[:limit]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _log_event(
        self, event_type: str, entity_type: str, entity_id: str, data: dict | None
    ) -> None:
        await self.append_audit(
            AuditLogEntry(event_type=event_type, entity_type=entity_type, entity_id=entity_id, data=data)
        )

    def _require_lineage(
        self, lineage_id: str, error: type[Exception] = NotFoundError
    ) -> Lineage:
        lineage = self._lineages.get(lineage_id)
        if lineage is None:
            if error is NotFoundError:
                raise NotFoundError("Lineage", lineage_id)
            raise error(f"Lineage {lineage_id!r} does not exist")
        return lineage

    def _drop_lineage(self, lineage_id: str) -> None:
        self._lineages.pop(lineage_id, None)
        self._max_versions.pop(lineage_id, None)
        self._agents = {k: v for k, v in self._agents.items() if v.lineage_id != lineage_id}
        self._records = {k: v for k, v in self._records.items() if v.lineage_id != lineage_id}
        rollout_ids = {k for k, v in self._rollouts.items() if v.lineage_id == lineage_id}
        attempt_ids = {k for k, v in self._attempts.items() if v.rollout_id in rollout_ids}
        self._rollouts = {k: v for k, v in self._rollouts.items() if k not in rollout_ids}
        self._attempts = {k: v for k, v in self._attempts.items() if k not in attempt_ids}
        self._spans = {k: v for k, v in self._spans.items() if v.attempt_id not in attempt_ids}
        self._evaluations = [e for e in self._evaluations if e.rollout_id not in rollout_ids]


def _present(**fields: object) -> dict[str, object]:
    """Drop fields left as None so partial updates keep the stored values."""
    return {k: v for k, v in fields.items() if v is not None}
