"""SQLite-backed lineage store for durable per-repo persistence."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.evolution.records import (
    Directives,
    EvolutionOutcome,
    EvolutionPlan,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    ScoreAnalysis,
)
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
    SpanType,
)
from training_camp.lineage.store.base import UNSET
from training_camp.persistence.db import DatabaseManager

log = structlog.get_logger(__name__)

_INSERT_SESSION = """
    INSERT INTO sessions (id, name, need, constraints, input_prompt, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_LINEAGE = """
    INSERT INTO lineages (
        id, session_id, label, strategy_tag, is_locked,
        directive_sticky, directive_oneshot, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

# versions are never reissued, even after the agent holding one is deleted
_CLAIM_VERSION = "UPDATE lineages SET max_version = MAX(max_version, ?) WHERE id = ?"

_INSERT_AGENT = """
    INSERT INTO agents (
        id, lineage_id, version, name, description, system_prompt,
        tools, flow, memory, parameters, constraints, created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_ROLLOUT = """
    INSERT INTO rollouts (id, lineage_id, cycle, status, final_attempt_id, created_at, completed_at)
    VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_ATTEMPT = """
    INSERT INTO attempts (
        id, rollout_id, attempt_number, status,
        agent_id, agent_version, system_prompt_hash, tools_hash, flow_hash,
        input, model_id, parameters, duration_ms, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_SPAN = """
    INSERT INTO spans (
        id, attempt_id, parent_span_id, sequence, type, input, output,
        model_id, prompt_tokens, completion_tokens,
        tool_name, tool_args, tool_result, tool_error,
        duration_ms, estimated_cost, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_EVALUATION = """
    INSERT INTO evaluations (id, rollout_id, attempt_id, score, comment, created_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""

_INSERT_EVOLUTION = """
    INSERT INTO evolution_records (
        id, lineage_id, from_version, to_version,
        rollout_id, attempt_id, trigger_score, trigger_comment,
        directive_sticky, directive_oneshot,
        score_analysis, credit_assignment, plan, changes,
        next_score, score_delta, hypothesis_validated, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_OUTCOME = """
    UPDATE evolution_records
    SET next_score = ?, score_delta = ?, hypothesis_validated = ?
    WHERE id = ? AND next_score IS NULL
"""

_INSERT_INSIGHT = """
    INSERT INTO learning_insights (
        id, session_id, pattern, pattern_type, contexts,
        success_count, failure_count, avg_score_impact, confidence,
        created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_INSIGHT = """
    UPDATE learning_insights
    SET contexts = ?, success_count = ?, failure_count = ?,
        avg_score_impact = ?, confidence = ?, updated_at = ?
    WHERE id = ?
"""

_INSERT_AUDIT = """
    INSERT INTO audit_log (id, event_type, entity_type, entity_id, data, created_at)
    VALUES (?, ?, ?, ?, ?, ?)
"""

_SELECT_LATEST_AGENT = "SELECT * FROM agents WHERE lineage_id = ? ORDER BY version DESC LIMIT 1"
_SELECT_AGENT_HISTORY = "SELECT * FROM agents WHERE lineage_id = ? ORDER BY version DESC"
_SELECT_LATEST_AGENTS_FOR_SESSION = """
    SELECT a.* FROM agents a
    JOIN lineages l ON l.id = a.lineage_id
    WHERE l.session_id = ?
      AND a.version = (SELECT MAX(version) FROM agents WHERE lineage_id = a.lineage_id)
    ORDER BY l.label
"""
_SELECT_LATEST_EVALUATION = """
    SELECT * FROM evaluations WHERE rollout_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1
"""
_SELECT_RECORDS_BY_LINEAGE = """
    SELECT * FROM evolution_records WHERE lineage_id = ? ORDER BY to_version DESC, created_at DESC
"""


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str) -> datetime:
    """Parse an ISO datetime string, always returning a UTC-aware datetime."""
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _parse_optional_dt(value: str | None) -> datetime | None:
    return _parse_dt(value) if value is not None else None


def _row_to_session(row: dict) -> Session:
    return Session(
        id=row["id"],
        name=row["name"],
        need=row["need"],
        constraints=row["constraints"],
        input_prompt=row["input_prompt"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_lineage(row: dict) -> Lineage:
    return Lineage(
        id=row["id"],
        session_id=row["session_id"],
        label=row["label"],
        strategy_tag=row["strategy_tag"],
        is_locked=bool(row["is_locked"]),
        directive_sticky=row["directive_sticky"],
        directive_oneshot=row["directive_oneshot"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_agent(row: dict) -> AgentDefinition:
    return AgentDefinition.model_validate({
        "id": row["id"],
        "lineage_id": row["lineage_id"],
        "version": row["version"],
        "name": row["name"],
        "description": row["description"],
        "system_prompt": row["system_prompt"],
        "tools": _loads(row["tools"]),
        "flow": _loads(row["flow"]),
        "memory": _loads(row["memory"]),
        "parameters": _loads(row["parameters"]),
        "constraints": _loads(row["constraints"]),
        "created_at": _parse_dt(row["created_at"]),
        "updated_at": _parse_dt(row["updated_at"]),
    })


def _row_to_rollout(row: dict) -> Rollout:
    return Rollout(
        id=row["id"],
        lineage_id=row["lineage_id"],
        cycle=row["cycle"],
        status=RolloutStatus(row["status"]),
        final_attempt_id=row["final_attempt_id"],
        created_at=_parse_dt(row["created_at"]),
        completed_at=_parse_optional_dt(row["completed_at"]),
    )


def _row_to_attempt(row: dict) -> Attempt:
    return Attempt(
        id=row["id"],
        rollout_id=row["rollout_id"],
        attempt_number=row["attempt_number"],
        status=AttemptStatus(row["status"]),
        snapshot=AgentSnapshot(
            agent_id=row["agent_id"],
            version=row["agent_version"],
            system_prompt_hash=row["system_prompt_hash"],
            tools_hash=row["tools_hash"],
            flow_hash=row["flow_hash"],
        ),
        input=row["input"],
        model_id=row["model_id"],
        parameters=ExecutionParameters(**_loads(row["parameters"])),
        output=row["output"],
        error=row["error"],
        duration_ms=row["duration_ms"],
        total_tokens=row["total_tokens"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        estimated_cost=row["estimated_cost"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_span(row: dict) -> ExecutionSpan:
    return ExecutionSpan(
        id=row["id"],
        attempt_id=row["attempt_id"],
        parent_span_id=row["parent_span_id"],
        sequence=row["sequence"],
        type=SpanType(row["type"]),
        input=row["input"],
        output=row["output"],
        model_id=row["model_id"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        tool_name=row["tool_name"],
        tool_args=_loads(row["tool_args"]),
        tool_result=_loads(row["tool_result"]),
        tool_error=row["tool_error"],
        duration_ms=row["duration_ms"],
        estimated_cost=row["estimated_cost"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_evaluation(row: dict) -> Evaluation:
    return Evaluation(
        id=row["id"],
        rollout_id=row["rollout_id"],
        attempt_id=row["attempt_id"],
        score=row["score"],
        comment=row["comment"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_record(row: dict) -> EvolutionRecord:
    outcome = None
    if row["next_score"] is not None:
        outcome = EvolutionOutcome(
            next_score=row["next_score"],
            score_delta=row["score_delta"],
            hypothesis_validated=bool(row["hypothesis_validated"]),
        )
    return EvolutionRecord.model_validate({
        "id": row["id"],
        "lineage_id": row["lineage_id"],
        "from_version": row["from_version"],
        "to_version": row["to_version"],
        "trigger": EvolutionTrigger(
            rollout_id=row["rollout_id"],
            attempt_id=row["attempt_id"],
            score=row["trigger_score"],
            comment=row["trigger_comment"],
            directives=Directives(sticky=row["directive_sticky"], oneshot=row["directive_oneshot"]),
        ),
        "score_analysis": ScoreAnalysis.model_validate(_loads(row["score_analysis"])),
        "credit_assignment": _loads(row["credit_assignment"]),
        "plan": EvolutionPlan.model_validate(_loads(row["plan"])),
        "changes": _loads(row["changes"]),
        "outcome": outcome,
        "created_at": _parse_dt(row["created_at"]),
    })


def _row_to_insight(row: dict) -> LearningInsight:
    return LearningInsight(
        id=row["id"],
        session_id=row["session_id"],
        pattern=row["pattern"],
        pattern_type=row["pattern_type"],
        contexts=_loads(row["contexts"]),
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        avg_score_impact=row["avg_score_impact"],
        confidence=row["confidence"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_audit(row: dict) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        event_type=row["event_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        data=_loads(row["data"]),
        created_at=_parse_dt(row["created_at"]),
    )


class SQLiteLineageStore:
    """Durable SQLite-backed lineage store.

    Each operation issues its statements one at a time through
    :class:`DatabaseManager`, which commits every write before returning.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        await self._db.execute_write(_INSERT_SESSION, (
            session.id,
            session.name,
            session.need,
            session.constraints,
            session.input_prompt,
            session.created_at.isoformat(),
            session.updated_at.isoformat(),
        ))
        await self._log_event("session_created", "session", session.id, {"name": session.name})
        return session

    async def get_session(self, session_id: str) -> Session | None:
        rows = await self._db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return _row_to_session(rows[0]) if rows else None

    async def list_sessions(self, limit: int = 100) -> list[Session]:
        rows = await self._db.execute(
            "SELECT * FROM sessions ORDER BY updated_at DESC LIMIT ?", (limit,)
        )
        return [_row_to_session(r) for r in rows]

    async def update_session(
        self,
        session_id: str,
        *,
        name: str | None = None,
        need: str | None = None,
        constraints: str | None = UNSET,
        input_prompt: str | None = UNSET,
    ) -> Session:
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if need is not None:
            changes["need"] = need
        if constraints is not UNSET:
            changes["constraints"] = constraints
        if input_prompt is not UNSET:
            changes["input_prompt"] = input_prompt
        fields = sorted(changes)
        changes["updated_at"] = datetime.now(UTC).isoformat()
        await self._update_columns("sessions", session_id, changes, entity_type="Session")
        await self._log_event("session_updated", "session", session_id, {"fields": fields})
        session = await self.get_session(session_id)
        assert session is not None
        return session

    async def delete_session(self, session_id: str) -> bool:
        count = await self._db.execute_write("DELETE FROM sessions WHERE id = ?", (session_id,))
        if count == 0:
            return False
        await self._log_event("session_deleted", "session", session_id, None)
        log.info("session_deleted", session_id=session_id)
        return True

    # ------------------------------------------------------------------
    # Lineages
    # ------------------------------------------------------------------

    async def create_lineage(self, lineage: Lineage) -> Lineage:
        try:
            await self._db.execute_write(_INSERT_LINEAGE, (
                lineage.id,
                lineage.session_id,
                lineage.label,
                lineage.strategy_tag,
                int(lineage.is_locked),
                lineage.directive_sticky,
                lineage.directive_oneshot,
                lineage.created_at.isoformat(),
            ))
        except ConstraintViolation as exc:
            if "lineages.session_id, lineages.label" in str(exc):
                raise DuplicateLineageError(lineage.session_id, lineage.label) from exc
            raise
        return lineage

    async def get_lineage(self, lineage_id: str) -> Lineage | None:
        rows = await self._db.execute("SELECT * FROM lineages WHERE id = ?", (lineage_id,))
        return _row_to_lineage(rows[0]) if rows else None

    async def list_lineages(self, session_id: str) -> list[Lineage]:
        rows = await self._db.execute(
            "SELECT * FROM lineages WHERE session_id = ? ORDER BY label", (session_id,)
        )
        return [_row_to_lineage(r) for r in rows]

    async def set_lineage_locked(self, lineage_id: str, locked: bool) -> Lineage:
        await self._update_columns("lineages", lineage_id, {"is_locked": int(locked)}, entity_type="Lineage")
        await self._log_event(
            "lineage_locked" if locked else "lineage_unlocked", "lineage", lineage_id, None
        )
        return await self._require_lineage(lineage_id)

    async def set_directives(
        self,
        lineage_id: str,
        *,
        sticky: str | None = UNSET,
        oneshot: str | None = UNSET,
    ) -> Lineage:
        changes: dict[str, Any] = {}
        if sticky is not UNSET:
            changes["directive_sticky"] = sticky
        if oneshot is not UNSET:
            changes["directive_oneshot"] = oneshot
        if changes:
            await self._update_columns("lineages", lineage_id, changes, entity_type="Lineage")
        return await self._require_lineage(lineage_id)

    async def clear_oneshot_directive(self, lineage_id: str) -> None:
        await self._update_columns(
            "lineages", lineage_id, {"directive_oneshot": None}, entity_type="Lineage"
        )

    # ------------------------------------------------------------------
    # Agent definitions
    # ------------------------------------------------------------------

    async def create_agent(self, agent: AgentDefinition) -> AgentDefinition:
        if agent.lineage_id is None:
            raise ValueError("Agent definition must belong to a lineage")
        agent.check_flow()
        rows = await self._db.execute("SELECT max_version FROM lineages WHERE id = ?", (agent.lineage_id,))
        if not rows:
            raise ConstraintViolation(f"Lineage {agent.lineage_id!r} does not exist")
        if agent.version <= rows[0]["max_version"]:
            raise VersionConflictError(agent.lineage_id, agent.version)
        data = agent.model_dump(mode="json")
        try:
            await self._db.execute_write(_INSERT_AGENT, (
                agent.id,
                agent.lineage_id,
                agent.version,
                agent.name,
                agent.description,
                agent.system_prompt,
                _dumps(data["tools"]),
                _dumps(data["flow"]),
                _dumps(data["memory"]),
                _dumps(data["parameters"]),
                _dumps(data["constraints"]),
                agent.created_at.isoformat(),
                agent.updated_at.isoformat(),
            ))
        except ConstraintViolation as exc:
            if "agents.lineage_id, agents.version" in str(exc):
                raise VersionConflictError(agent.lineage_id, agent.version) from exc
            raise
        await self._db.execute_write(_CLAIM_VERSION, (agent.version, agent.lineage_id))
        await self._log_event(
            "agent_created", "agent", agent.id,
            {"lineage_id": agent.lineage_id, "version": agent.version},
        )
        log.debug("agent_saved", agent_id=agent.id, lineage_id=agent.lineage_id, version=agent.version)
        return agent

    async def get_agent(self, agent_id: str) -> AgentDefinition | None:
        rows = await self._db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return _row_to_agent(rows[0]) if rows else None

    async def get_latest_agent(self, lineage_id: str) -> AgentDefinition | None:
        rows = await self._db.execute(_SELECT_LATEST_AGENT, (lineage_id,))
        return _row_to_agent(rows[0]) if rows else None

    async def get_agent_history(self, lineage_id: str) -> list[AgentDefinition]:
        rows = await self._db.execute(_SELECT_AGENT_HISTORY, (lineage_id,))
        return [_row_to_agent(r) for r in rows]

    async def get_latest_agents_for_session(self, session_id: str) -> dict[str, AgentDefinition]:
        rows = await self._db.execute(_SELECT_LATEST_AGENTS_FOR_SESSION, (session_id,))
        return {r["lineage_id"]: _row_to_agent(r) for r in rows}

    async def delete_agent(self, agent_id: str) -> bool:
        agent = await self.get_agent(agent_id)
        if agent is None:
            return False
        await self._db.execute_write("DELETE FROM agents WHERE id = ?", (agent_id,))
        await self._log_event(
            "agent_deleted", "agent", agent_id,
            {"lineage_id": agent.lineage_id, "version": agent.version},
        )
        return True

    # ------------------------------------------------------------------
    # Rollouts and attempts
    # ------------------------------------------------------------------

    async def create_rollout(self, rollout: Rollout) -> Rollout:
        await self._db.execute_write(_INSERT_ROLLOUT, (
            rollout.id,
            rollout.lineage_id,
            rollout.cycle,
            rollout.status.value,
            rollout.final_attempt_id,
            rollout.created_at.isoformat(),
            _iso(rollout.completed_at),
        ))
        return rollout

    async def get_rollout(self, rollout_id: str) -> Rollout | None:
        rows = await self._db.execute("SELECT * FROM rollouts WHERE id = ?", (rollout_id,))
        return _row_to_rollout(rows[0]) if rows else None

    async def list_rollouts(self, lineage_id: str) -> list[Rollout]:
        rows = await self._db.execute(
            "SELECT * FROM rollouts WHERE lineage_id = ? ORDER BY cycle", (lineage_id,)
        )
        return [_row_to_rollout(r) for r in rows]

    async def update_rollout(
        self,
        rollout_id: str,
        *,
        status: RolloutStatus | None = None,
        final_attempt_id: str | None = None,
        completed_at: datetime | None = None,
    ) -> Rollout:
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status.value
        if final_attempt_id is not None:
            changes["final_attempt_id"] = final_attempt_id
        if completed_at is not None:
            changes["completed_at"] = completed_at.isoformat()
        await self._update_columns("rollouts", rollout_id, changes, entity_type="Rollout")
        rollout = await self.get_rollout(rollout_id)
        assert rollout is not None
        return rollout

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
        snapshot = attempt.snapshot
        await self._db.execute_write(_INSERT_ATTEMPT, (
            attempt.id,
            attempt.rollout_id,
            attempt.attempt_number,
            attempt.status.value,
            snapshot.agent_id,
            snapshot.version,
            snapshot.system_prompt_hash,
            snapshot.tools_hash,
            snapshot.flow_hash,
            attempt.input,
            attempt.model_id,
            _dumps(vars(attempt.parameters)),
            attempt.duration_ms,
            attempt.created_at.isoformat(),
        ))
        return attempt

    async def get_attempt(self, attempt_id: str) -> Attempt | None:
        rows = await self._db.execute("SELECT * FROM attempts WHERE id = ?", (attempt_id,))
        return _row_to_attempt(rows[0]) if rows else None

    async def list_attempts(self, rollout_id: str) -> list[Attempt]:
        rows = await self._db.execute(
            "SELECT * FROM attempts WHERE rollout_id = ? ORDER BY attempt_number", (rollout_id,)
        )
        return [_row_to_attempt(r) for r in rows]

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
        changes = {
            k: v for k, v in {
                "status": status.value if status is not None else None,
                "output": output,
                "error": error,
                "duration_ms": duration_ms,
                "total_tokens": total_tokens,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "estimated_cost": estimated_cost,
            }.items()
            if v is not None
        }
        await self._update_columns("attempts", attempt_id, changes, entity_type="Attempt")
        attempt = await self.get_attempt(attempt_id)
        assert attempt is not None
        return attempt

    # ------------------------------------------------------------------
    # Spans
    # ------------------------------------------------------------------

    async def create_span(self, span: ExecutionSpan) -> ExecutionSpan:
        if span.parent_span_id is not None:
            rows = await self._db.execute(
                "SELECT sequence FROM spans WHERE id = ? AND attempt_id = ?",
                (span.parent_span_id, span.attempt_id),
            )
            if not rows or rows[0]["sequence"] >= span.sequence:
                raise SpanSequenceError(
                    f"Parent span {span.parent_span_id!r} is not an earlier span of attempt {span.attempt_id!r}"
                )
        try:
            await self._db.execute_write(_INSERT_SPAN, (
                span.id,
                span.attempt_id,
                span.parent_span_id,
                span.sequence,
                span.type.value,
                span.input,
                span.output,
                span.model_id,
                span.prompt_tokens,
                span.completion_tokens,
                span.tool_name,
                _dumps(span.tool_args),
                _dumps(span.tool_result),
                span.tool_error,
                span.duration_ms,
                span.estimated_cost,
                span.created_at.isoformat(),
            ))
        except ConstraintViolation as exc:
            if "spans.attempt_id, spans.sequence" in str(exc):
                raise SpanSequenceError(
                    f"Attempt {span.attempt_id!r} already has a span at sequence {span.sequence}"
                ) from exc
            raise
        log.debug("span_saved", span_id=span.id, attempt_id=span.attempt_id, sequence=span.sequence)
        return span

    async def list_spans(self, attempt_id: str) -> list[ExecutionSpan]:
        rows = await self._db.execute(
            "SELECT * FROM spans WHERE attempt_id = ? ORDER BY sequence", (attempt_id,)
        )
        return [_row_to_span(r) for r in rows]

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        await self._db.execute_write(_INSERT_EVALUATION, (
            evaluation.id,
            evaluation.rollout_id,
            evaluation.attempt_id,
            evaluation.score,
            evaluation.comment,
            evaluation.created_at.isoformat(),
        ))
        await self._log_event(
            "evaluation_created", "evaluation", evaluation.id,
            {"rollout_id": evaluation.rollout_id, "score": evaluation.score},
        )
        return evaluation

    async def get_latest_evaluation(self, rollout_id: str) -> Evaluation | None:
        rows = await self._db.execute(_SELECT_LATEST_EVALUATION, (rollout_id,))
        return _row_to_evaluation(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Evolution records
    # ------------------------------------------------------------------

    async def create_evolution_record(self, record: EvolutionRecord) -> EvolutionRecord:
        data = record.model_dump(mode="json")
        outcome = record.outcome
        await self._db.execute_write(_INSERT_EVOLUTION, (
            record.id,
            record.lineage_id,
            record.from_version,
            record.to_version,
            record.trigger.rollout_id,
            record.trigger.attempt_id,
            record.trigger.score,
            record.trigger.comment,
            record.trigger.directives.sticky,
            record.trigger.directives.oneshot,
            _dumps(data["score_analysis"]),
            _dumps(data["credit_assignment"]),
            _dumps(data["plan"]),
            _dumps(data["changes"]),
            outcome.next_score if outcome else None,
            outcome.score_delta if outcome else None,
            int(outcome.hypothesis_validated) if outcome else None,
            record.created_at.isoformat(),
        ))
        await self._log_event(
            "evolution_created", "evolution", record.id,
            {"lineage_id": record.lineage_id, "from_version": record.from_version, "to_version": record.to_version},
        )
        return record

    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None:
        rows = await self._db.execute("SELECT * FROM evolution_records WHERE id = ?", (record_id,))
        return _row_to_record(rows[0]) if rows else None

    async def list_evolution_records(self, lineage_id: str) -> list[EvolutionRecord]:
        rows = await self._db.execute(_SELECT_RECORDS_BY_LINEAGE, (lineage_id,))
        return [_row_to_record(r) for r in rows]

    async def record_evolution_outcome(
        self, record_id: str, outcome: EvolutionOutcome
    ) -> EvolutionRecord:
        count = await self._db.execute_write(_UPDATE_OUTCOME, (
            outcome.next_score,
            outcome.score_delta,
            int(outcome.hypothesis_validated),
            record_id,
        ))
        if count == 0:
            if await self.get_evolution_record(record_id) is None:
                raise NotFoundError("EvolutionRecord", record_id)
            raise OutcomeAlreadyRecordedError(record_id)
        await self._log_event("evolution_outcome_recorded", "evolution", record_id, outcome.model_dump())
        record = await self.get_evolution_record(record_id)
        assert record is not None
        return record

    # ------------------------------------------------------------------
    # Learning insights
    # ------------------------------------------------------------------

    async def create_insight(self, insight: LearningInsight) -> LearningInsight:
        await self._db.execute_write(_INSERT_INSIGHT, (
            insight.id,
            insight.session_id,
            insight.pattern,
            insight.pattern_type,
            _dumps(insight.contexts),
            insight.success_count,
            insight.failure_count,
            insight.avg_score_impact,
            insight.confidence,
            insight.created_at.isoformat(),
            insight.updated_at.isoformat(),
        ))
        return insight

    async def get_insight(self, insight_id: str) -> LearningInsight | None:
        rows = await self._db.execute("SELECT * FROM learning_insights WHERE id = ?", (insight_id,))
        return _row_to_insight(rows[0]) if rows else None

    async def find_insight(self, session_id: str, pattern: str) -> LearningInsight | None:
        rows = await self._db.execute(
            "SELECT * FROM learning_insights WHERE session_id = ? AND pattern = ?",
            (session_id, pattern),
        )
        return _row_to_insight(rows[0]) if rows else None

    async def list_insights(self, session_id: str) -> list[LearningInsight]:
        rows = await self._db.execute(
            "SELECT * FROM learning_insights WHERE session_id = ? ORDER BY confidence DESC",
            (session_id,),
        )
        return [_row_to_insight(r) for r in rows]

    async def update_insight(self, insight: LearningInsight) -> LearningInsight:
        count = await self._db.execute_write(_UPDATE_INSIGHT, (
            _dumps(insight.contexts),
            insight.success_count,
            insight.failure_count,
            insight.avg_score_impact,
            insight.confidence,
            insight.updated_at.isoformat(),
            insight.id,
        ))
        if count == 0:
            raise NotFoundError("LearningInsight", insight.id)
        return insight

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        await self._db.execute_write(_INSERT_AUDIT, (
            entry.id,
            entry.event_type,
            entry.entity_type,
            entry.entity_id,
            _dumps(entry.data),
            entry.created_at.isoformat(),
        ))
        return entry

    async def list_audit(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.execute(
            f"SELECT * FROM audit_log {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_audit(r) for r in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _log_event(
        self, event_type: str, entity_type: str, entity_id: str, data: dict | None
    ) -> None:
        await self.append_audit(
            AuditLogEntry(event_type=event_type, entity_type=entity_type, entity_id=entity_id, data=data)
        )

    async def _require_lineage(self, lineage_id: str) -> Lineage:
        lineage = await self.get_lineage(lineage_id)
        if lineage is None:
            raise NotFoundError("Lineage", lineage_id)
        return lineage

    async def _update_columns(
        self, table: str, row_id: str, changes: dict[str, Any], *, entity_type: str
    ) -> None:
        """UPDATE only the given columns; raises NotFoundError if the row is missing."""
        if not changes:
            rows = await self._db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (row_id,))
            if not rows:
                raise NotFoundError(entity_type, row_id)
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        count = await self._db.execute_write(
            f"UPDATE {table} SET {assignments} WHERE id = ?", (*changes.values(), row_id)
        )
        if count == 0:
            raise NotFoundError(entity_type, row_id)
