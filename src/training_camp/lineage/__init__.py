"""Execution lineage: versioned agent history and nested execution traces."""

from __future__ import annotations

from training_camp.lineage.models import (
    LINEAGE_LABELS,
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

__all__ = [
    "LINEAGE_LABELS",
    "AgentSnapshot",
    "Attempt",
    "AttemptStatus",
    "AuditLogEntry",
    "Evaluation",
    "ExecutionParameters",
    "ExecutionSpan",
    "Lineage",
    "Rollout",
    "RolloutStatus",
    "Session",
    "SpanType",
]
