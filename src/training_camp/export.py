"""Training-data export from a session's stored lineage history.

Attempts, evaluations and evolution records are read back from the lineage
store and rendered as:

- ``jsonl``: one training event per line, newest first
- ``sft``: ``{"messages": [system, user, assistant]}`` per successful attempt
- ``dpo``: ``{"prompt", "chosen", "rejected"}`` pairs of high- and low-scored
  outputs for the same input within a lineage

Storage errors propagate; nothing here writes to the store.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from training_camp.evolution.records import change_pattern
from training_camp.exceptions import NotFoundError
from training_camp.lineage.models import Attempt, AttemptStatus, Evaluation, Rollout
from training_camp.lineage.store.base import LineageStore

log = structlog.get_logger(__name__)

TRAINING_SIGNAL_SCHEMA_VERSION = 1

# DPO pairing thresholds
CHOSEN_MIN_SCORE = 7
REJECTED_BELOW_SCORE = 5

TrainingEventType = Literal[
    "attempt.completed",
    "attempt.failed",
    "artifact.scored",
    "agent.evolved",
    "evolution.outcome",
]


class ExportFormat(str, Enum):
    JSONL = "jsonl"
    SFT = "sft"
    DPO = "dpo"


class TrainingEvent(BaseModel):
    id: str
    timestamp: datetime
    event_type: TrainingEventType
    schema_version: int = TRAINING_SIGNAL_SCHEMA_VERSION
    session_id: str
    lineage_id: str
    agent_id: str | None = None
    rollout_id: str | None = None
    attempt_id: str | None = None
    score: int | None = None
    score_delta: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class ExportFilter(BaseModel):
    """Selects what is exported.

    Score bounds drop anything without a score; ``min_score_delta`` drops
    anything without a measured evolution outcome.
    """

    lineage_ids: list[str] | None = None
    event_types: list[TrainingEventType] | None = None
    min_score: int | None = Field(default=None, ge=1, le=10)
    max_score: int | None = Field(default=None, ge=1, le=10)
    min_score_delta: int | None = None
    since: datetime | None = None
    until: datetime | None = None
    tags: list[str] | None = None

    def score_in_range(self, score: int | None) -> bool:
        if self.min_score is None and self.max_score is None:
            return True
        if score is None:
            return False
        if self.min_score is not None and score < self.min_score:
            return False
        return self.max_score is None or score <= self.max_score

    def accepts(self, event: TrainingEvent) -> bool:
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        if not self.score_in_range(event.score):
            return False
        if self.min_score_delta is not None and (event.score_delta is None or event.score_delta < self.min_score_delta):
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp > self.until:
            return False
        return not self.tags or any(tag in event.tags for tag in self.tags)


@dataclass
class ExportResult:
    data: str
    format: ExportFormat
    count: int
    filename: str

    def write(self, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / self.filename
        path.write_text(self.data + "\n" if self.data else "", encoding="utf-8")
        return path


@dataclass
class ScoredAttempt:
    """A finished attempt with its rollout's score and the prompt it ran under."""

    lineage_id: str
    cycle: int
    attempt: Attempt
    system_prompt: str | None
    score: int | None


def _rollout_score(evaluation: Evaluation | None, attempt: Attempt) -> int | None:
    if evaluation is None:
        return None
    if evaluation.attempt_id is not None and evaluation.attempt_id != attempt.id:
        return None
    return evaluation.score


def _jsonl(records: Iterable[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(record, ensure_ascii=False) for record in records)


def sft_examples(attempts: list[ScoredAttempt]) -> list[dict[str, Any]]:
    examples = []
    for scored in attempts:
        attempt = scored.attempt
        if attempt.status != AttemptStatus.SUCCEEDED or not attempt.input or not attempt.output:
            continue
        messages = []
        if scored.system_prompt:
            messages.append({"role": "system", "content": scored.system_prompt})
        messages.append({"role": "user", "content": attempt.input})
        messages.append({"role": "assistant", "content": attempt.output})
        examples.append({"messages": messages})
    return examples


def dpo_pairs(attempts: list[ScoredAttempt]) -> list[dict[str, str]]:
    """Pair high- and low-scored outputs of one lineage that answered the same input in different cycles."""
    by_lineage: dict[str, list[ScoredAttempt]] = {}
    for scored in attempts:
        if scored.score is not None and scored.attempt.output:
            by_lineage.setdefault(scored.lineage_id, []).append(scored)

    pairs = []
    for candidates in by_lineage.values():
        candidates.sort(key=lambda s: s.score, reverse=True)
        chosen = [s for s in candidates if s.score >= CHOSEN_MIN_SCORE]
        rejected = [s for s in candidates if s.score < REJECTED_BELOW_SCORE]
        for good in chosen:
            for bad in rejected:
                if good.cycle == bad.cycle or good.attempt.input != bad.attempt.input:
                    continue
                pairs.append({
                    "prompt": good.attempt.input,
                    "chosen": good.attempt.output,
                    "rejected": bad.attempt.output,
                })
    return pairs


class TrainingExporter:
    def __init__(self, store: LineageStore) -> None:
        self._store = store

    async def export(
        self,
        session_id: str,
        format: ExportFormat | str = ExportFormat.JSONL,
        criteria: ExportFilter | None = None,
    ) -> ExportResult:
        format = ExportFormat(format)
        criteria = criteria or ExportFilter()

        if format is ExportFormat.JSONL:
            events = await self.collect_events(session_id, criteria)
            records: list[dict[str, Any]] = [e.model_dump(mode="json") for e in events]
            stem = "training-events"
        else:
            attempts = [
                s for s in await self.scored_attempts(session_id, criteria)
                if criteria.score_in_range(s.score)
            ]
            if format is ExportFormat.SFT:
                records, stem = sft_examples(attempts), "training-sft"
            else:
                records, stem = dpo_pairs(attempts), "training-dpo"

        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
        log.info("training_data_exported", session_id=session_id, format=format.value, count=len(records))
        return ExportResult(
            data=_jsonl(records),
            format=format,
            count=len(records),
            filename=f"{stem}-{stamp}.jsonl",
        )

    async def scored_attempts(self, session_id: str, criteria: ExportFilter | None = None) -> list[ScoredAttempt]:
        """Finished attempts of the session, oldest cycle first."""
        criteria = criteria or ExportFilter()
        result: list[ScoredAttempt] = []
        prompts: dict[str, str | None] = {}
        for lineage_id, rollout in await self._rollouts(session_id, criteria):
            evaluation = await self._store.get_latest_evaluation(rollout.id)
            for attempt in await self._store.list_attempts(rollout.id):
                if attempt.status == AttemptStatus.RUNNING:
                    continue
                if criteria.since is not None and attempt.created_at < criteria.since:
                    continue
                if criteria.until is not None and attempt.created_at > criteria.until:
                    continue
                agent_id = attempt.snapshot.agent_id
                if agent_id not in prompts:
                    agent = await self._store.get_agent(agent_id)
                    prompts[agent_id] = agent.system_prompt if agent is not None else None
                result.append(ScoredAttempt(
                    lineage_id=lineage_id,
                    cycle=rollout.cycle,
                    attempt=attempt,
                    system_prompt=prompts[agent_id],
                    score=_rollout_score(evaluation, attempt),
                ))
        return result

    async def collect_events(self, session_id: str, criteria: ExportFilter | None = None) -> list[TrainingEvent]:
        """Every training event of the session that passes ``criteria``, newest first."""
        criteria = criteria or ExportFilter()
        events: list[TrainingEvent] = []

        for lineage_id, rollout in await self._rollouts(session_id, criteria):
            evaluation = await self._store.get_latest_evaluation(rollout.id)
            attempts = await self._store.list_attempts(rollout.id)
            for attempt in attempts:
                if attempt.status != AttemptStatus.RUNNING:
                    events.append(self._attempt_event(session_id, lineage_id, rollout, attempt, evaluation))
            if evaluation is not None:
                events.append(self._evaluation_event(session_id, lineage_id, rollout, attempts, evaluation))

        for lineage_id in await self._lineage_ids(session_id, criteria):
            for record in await self._store.list_evolution_records(lineage_id):
                changes = [change_pattern(c) for c in record.changes]
                events.append(TrainingEvent(
                    id=f"{record.id}:evolved",
                    timestamp=record.created_at,
                    event_type="agent.evolved",
                    session_id=session_id,
                    lineage_id=lineage_id,
                    rollout_id=record.trigger.rollout_id,
                    attempt_id=record.trigger.attempt_id,
                    score=record.trigger.score,
                    payload={
                        "from_version": record.from_version,
                        "to_version": record.to_version,
                        "changes": changes,
                        "hypothesis": record.plan.hypothesis,
                    },
                    tags=[f"v{record.to_version}"],
                ))
                if record.outcome is not None:
                    events.append(TrainingEvent(
                        id=f"{record.id}:outcome",
                        timestamp=record.created_at,
                        event_type="evolution.outcome",
                        session_id=session_id,
                        lineage_id=lineage_id,
                        rollout_id=record.trigger.rollout_id,
                        score=record.outcome.next_score,
                        score_delta=record.outcome.score_delta,
                        payload={**record.outcome.model_dump(), "changes": changes},
                        tags=["validated" if record.outcome.hypothesis_validated else "not_validated"],
                    ))

        events = [e for e in events if criteria.accepts(e)]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events

    def _attempt_event(
        self,
        session_id: str,
        lineage_id: str,
        rollout: Rollout,
        attempt: Attempt,
        evaluation: Evaluation | None,
    ) -> TrainingEvent:
        succeeded = attempt.status == AttemptStatus.SUCCEEDED
        return TrainingEvent(
            id=attempt.id,
            timestamp=attempt.created_at,
            event_type="attempt.completed" if succeeded else "attempt.failed",
            session_id=session_id,
            lineage_id=lineage_id,
            agent_id=attempt.snapshot.agent_id,
            rollout_id=rollout.id,
            attempt_id=attempt.id,
            score=_rollout_score(evaluation, attempt),
            payload={
                "agent_version": attempt.snapshot.version,
                "system_prompt_hash": attempt.snapshot.system_prompt_hash,
                "model_id": attempt.model_id,
                "input": attempt.input,
                "output": attempt.output,
                "error": attempt.error,
                "duration_ms": attempt.duration_ms,
                "total_tokens": attempt.total_tokens,
            },
            tags=[attempt.status.value, f"cycle:{rollout.cycle}"],
        )

    def _evaluation_event(
        self,
        session_id: str,
        lineage_id: str,
        rollout: Rollout,
        attempts: list[Attempt],
        evaluation: Evaluation,
    ) -> TrainingEvent:
        attempt_id = evaluation.attempt_id or rollout.final_attempt_id
        content = next((a.output for a in attempts if a.id == attempt_id), None)
        return TrainingEvent(
            id=evaluation.id,
            timestamp=evaluation.created_at,
            event_type="artifact.scored",
            session_id=session_id,
            lineage_id=lineage_id,
            rollout_id=rollout.id,
            attempt_id=attempt_id,
            score=evaluation.score,
            payload={"cycle": rollout.cycle, "content": content, "comment": evaluation.comment},
            tags=[f"cycle:{rollout.cycle}"],
        )

    async def _lineage_ids(self, session_id: str, criteria: ExportFilter) -> list[str]:
        if await self._store.get_session(session_id) is None:
            raise NotFoundError("Session", session_id)
        ids = [lineage.id for lineage in await self._store.list_lineages(session_id)]
        if criteria.lineage_ids is not None:
            ids = [i for i in ids if i in criteria.lineage_ids]
        return ids

    async def _rollouts(self, session_id: str, criteria: ExportFilter) -> list[tuple[str, Rollout]]:
        pairs = []
        for lineage_id in await self._lineage_ids(session_id, criteria):
            rollouts = sorted(await self._store.list_rollouts(lineage_id), key=lambda r: r.cycle)
            pairs.extend((lineage_id, rollout) for rollout in rollouts)
        return pairs
