"""Learning insight aggregation across a session's evolutions.

Each observed change pattern keeps one row: success/failure counts, a
streaming mean of the score delta, and a confidence that grows with the
success rate and the number of samples. This is a running summary, not a
statistical estimator.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog

from training_camp.evolution.records import (
    EvolutionRecord,
    LearningInsight,
    PatternType,
    change_pattern,
    pattern_type_for,
)
from training_camp.lineage.store.base import LineageStore

log = structlog.get_logger(__name__)


def updated_insight(
    insight: LearningInsight,
    *,
    success: bool,
    delta: float,
    context: str | None,
    context_window: int,
    full_confidence_samples: int,
) -> LearningInsight:
    """Fold one observation into ``insight`` and return the new row."""
    old_count = insight.total_count
    successes = insight.success_count + (1 if success else 0)
    failures = insight.failure_count + (0 if success else 1)
    total = successes + failures

    contexts = list(insight.contexts)
    if context:
        contexts.append(context)

    return insight.model_copy(update={
        "success_count": successes,
        "failure_count": failures,
        "avg_score_impact": (insight.avg_score_impact * old_count + delta) / (old_count + 1),
        "confidence": (successes / total) * min(1.0, total / full_confidence_samples),
        "contexts": contexts[-context_window:] if context_window > 0 else [],
        "updated_at": datetime.now(UTC),
    })


class LearningInsightAggregator:
    def __init__(
        self,
        store: LineageStore,
        context_window: int = 10,
        full_confidence_samples: int = 5,
    ) -> None:
        self._store = store
        self._context_window = context_window
        self._full_confidence_samples = full_confidence_samples

    async def observe(
        self,
        session_id: str,
        pattern: str,
        pattern_type: PatternType,
        *,
        success: bool,
        delta: float,
        context: str | None = None,
    ) -> LearningInsight:
        insight = await self._store.find_insight(session_id, pattern)
        if insight is None:
            insight = await self._store.create_insight(
                LearningInsight(session_id=session_id, pattern=pattern, pattern_type=pattern_type)
            )

        updated = updated_insight(
            insight,
            success=success,
            delta=delta,
            context=context,
            context_window=self._context_window,
            full_confidence_samples=self._full_confidence_samples,
        )
        await self._store.update_insight(updated)
        log.debug(
            "insight_updated",
            pattern=pattern,
            success_count=updated.success_count,
            failure_count=updated.failure_count,
            confidence=round(updated.confidence, 3),
        )
        return updated

    async def learn_from_outcome(self, session_id: str, record: EvolutionRecord) -> list[LearningInsight]:
        """Feed every change of a record whose outcome is known into the aggregates."""
        if record.outcome is None:
            return []
        delta = record.outcome.score_delta
        context = record.trigger.comment or "no comment"
        return [
            await self.observe(
                session_id,
                change_pattern(change),
                pattern_type_for(change.component),
                success=delta > 0,
                delta=delta,
                context=context,
            )
            for change in record.changes
        ]

    async def top_insights(self, session_id: str, limit: int = 5) -> list[LearningInsight]:
        return (await self._store.list_insights(session_id))[:limit]
