"""Evolution engine: one scored rollout in, one new agent version out.

Pipeline: reward analysis -> credit assignment -> planning (checked against
history) -> score-band mutation -> plan changes applied -> record.

:meth:`EvolutionEngine.evolve` is pure: it builds the successor definition
and its record without touching the store. :meth:`evolve_lineage` is the
persisted transition used by the orchestration layer.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.config import TrainingCampConfig
from training_camp.evolution.credit import CreditAssigner, CreditMode, summarize_credit
from training_camp.evolution.mutator import AgentMutator, apply_changes
from training_camp.evolution.planner import EvolutionPlanner, summarize_plan
from training_camp.evolution.records import (
    Directives,
    EvolutionOutcome,
    EvolutionPlan,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    ScoreAnalysis,
)
from training_camp.evolution.reward import RewardAnalyzer, summarize_analysis
from training_camp.exceptions import LineageLockedError, NotFoundError
from training_camp.insights.aggregator import LearningInsightAggregator
from training_camp.lineage.models import Evaluation, ExecutionSpan
from training_camp.lineage.store.base import LineageStore
from training_camp.llm.generator import TextGenerator

log = structlog.get_logger(__name__)


@dataclass
class EvolutionResult:
    agent: AgentDefinition
    record: EvolutionRecord
    analysis: ScoreAnalysis
    plan: EvolutionPlan
    credit_mode: CreditMode
    generated: bool  # False when the template fallback produced the prompt
    summary: str


@dataclass
class EvolutionStats:
    total_evolutions: int = 0
    avg_score_improvement: float = 0.0
    success_rate: float = 0.0
    common_changes: list[str] = field(default_factory=list)


def pipeline_summary(
    analysis: ScoreAnalysis,
    plan: EvolutionPlan,
    old: AgentDefinition,
    new: AgentDefinition,
) -> str:
    parts = [f"Score: {analysis.score}/10"]
    if analysis.delta_from_previous:
        direction = "up" if analysis.delta_from_previous > 0 else "down"
        parts.append(f"({direction} {abs(analysis.delta_from_previous)} from previous)")

    issues = [a.aspect for a in analysis.aspects if a.sentiment == "negative"]
    if issues:
        parts.append(f"Issues: {', '.join(issues)}")

    if plan.changes:
        parts.append(f"Changes: {len(plan.changes)}")
        parts.extend(f"- {c.change_type} {c.component}/{c.target}" for c in plan.changes[:3])
        if len(plan.changes) > 3:
            parts.append(f"  ...and {len(plan.changes) - 3} more")
    else:
        parts.append("No significant changes needed")

    parts.append(f"Version: {old.version} -> {new.version}")
    if plan.hypothesis:
        parts.append(f"Hypothesis: {plan.hypothesis}")
    return "\n".join(parts)


class EvolutionEngine:
    def __init__(
        self,
        store: LineageStore,
        generator: TextGenerator | None = None,
        config: TrainingCampConfig | None = None,
        insights: LearningInsightAggregator | None = None,
    ) -> None:
        config = config or TrainingCampConfig()
        self._store = store
        self._insights = insights
        self._reward = RewardAnalyzer(generator)
        self._credit = CreditAssigner(generator, trajectory_min_spans=config.trajectory_min_spans)
        self._planner = EvolutionPlanner(generator)
        self._mutator = AgentMutator(generator)

    async def evolve(
        self,
        agent: AgentDefinition,
        *,
        need: str,
        score: int,
        rollout_id: str,
        attempt_id: str | None = None,
        comment: str | None = None,
        sticky_directive: str | None = None,
        oneshot_directive: str | None = None,
        previous_score: int | None = None,
        spans: list[ExecutionSpan] | None = None,
        past_records: list[EvolutionRecord] | None = None,
        insights: list[LearningInsight] | None = None,
    ) -> EvolutionResult:
        """Build the successor of ``agent`` and its evolution record. Nothing is persisted."""
        if not 1 <= score <= 10:
            raise ValueError(f"score must be between 1 and 10, got {score}")
        if agent.lineage_id is None:
            raise ValueError("Agent definition must belong to a lineage")

        analysis = await self._reward.analyze(score, comment, previous_score)
        log.debug("reward_analyzed", agent_id=agent.id, summary=summarize_analysis(analysis))

        credit = await self._credit.assign(agent, analysis, spans)
        log.debug("credit_assigned", agent_id=agent.id, mode=credit.mode, summary=summarize_credit(credit.credits))

        plan = await self._planner.plan(agent, analysis, credit.credits, past_records, insights)
        log.debug("evolution_planned", agent_id=agent.id, summary=summarize_plan(plan))

        mutation = await self._mutator.mutate(
            system_prompt=agent.system_prompt,
            parameters=agent.parameters,
            name=agent.name,
            description=agent.description,
            need=need,
            score=score,
            feedback=comment,
            sticky_directive=sticky_directive,
            oneshot_directive=oneshot_directive,
        )
        system_prompt, parameters = apply_changes(mutation.system_prompt, mutation.parameters, plan.changes)

        # tools and flow carry over; planned tool/flow changes stay on the record
        evolved = agent.next_version(
            system_prompt=system_prompt,
            parameters=parameters,
            description=mutation.description,
        )
        record = EvolutionRecord(
            lineage_id=agent.lineage_id,
            from_version=agent.version,
            to_version=evolved.version,
            trigger=EvolutionTrigger(
                rollout_id=rollout_id,
                attempt_id=attempt_id,
                score=score,
                comment=comment,
                directives=Directives(sticky=sticky_directive, oneshot=oneshot_directive),
            ),
            score_analysis=analysis,
            credit_assignment=list(credit.credits),
            plan=plan,
            changes=list(plan.changes),
        )
        return EvolutionResult(
            agent=evolved,
            record=record,
            analysis=analysis,
            plan=plan,
            credit_mode=credit.mode,
            generated=mutation.generated,
            summary=pipeline_summary(analysis, plan, agent, evolved),
        )

    async def evolve_lineage(
        self,
        lineage_id: str,
        rollout_id: str,
        score: int,
        comment: str | None = None,
        attempt_id: str | None = None,
    ) -> EvolutionResult:
        """Score a rollout and evolve the lineage's latest agent from it.

        Persists the evaluation, the new agent version and its record, clears
        the one-shot directive, and closes out the previous pending record.
        """
        lineage = await self._store.get_lineage(lineage_id)
        if lineage is None:
            raise NotFoundError("Lineage", lineage_id)
        if lineage.is_locked:
            raise LineageLockedError(lineage_id)

        session = await self._store.get_session(lineage.session_id)
        if session is None:
            raise NotFoundError("Session", lineage.session_id)
        agent = await self._store.get_latest_agent(lineage_id)
        if agent is None:
            raise NotFoundError("AgentDefinition", lineage_id)
        rollout = await self._store.get_rollout(rollout_id)
        if rollout is None or rollout.lineage_id != lineage_id:
            raise NotFoundError("Rollout", rollout_id)

        attempt_id = attempt_id or rollout.final_attempt_id
        if attempt_id is None:
            attempts = await self._store.list_attempts(rollout_id)
            attempt_id = attempts[-1].id if attempts else None
        spans = await self._store.list_spans(attempt_id) if attempt_id else []

        await self._store.create_evaluation(
            Evaluation(rollout_id=rollout_id, score=score, attempt_id=attempt_id, comment=comment)
        )

        past_records = await self._store.list_evolution_records(lineage_id)
        insights = await self._store.list_insights(session.id)
        result = await self.evolve(
            agent,
            need=session.need,
            score=score,
            rollout_id=rollout_id,
            attempt_id=attempt_id,
            comment=comment,
            sticky_directive=lineage.directive_sticky,
            oneshot_directive=lineage.directive_oneshot,
            previous_score=past_records[0].trigger.score if past_records else None,
            spans=spans,
            past_records=past_records,
            insights=insights,
        )

        await self._store.create_agent(result.agent)
        await self._store.create_evolution_record(result.record)
        if lineage.directive_oneshot:
            await self._store.clear_oneshot_directive(lineage_id)

        previous = past_records[0] if past_records else None
        if previous is not None and previous.outcome is None and previous.to_version == agent.version:
            await self.record_outcome(previous.id, score, session_id=session.id)

        log.info(
            "agent_evolved",
            lineage_id=lineage_id,
            from_version=agent.version,
            to_version=result.agent.version,
            score=score,
            changes=len(result.record.changes),
            generated=result.generated,
        )
        return result

    async def record_outcome(
        self,
        record_id: str,
        next_score: int,
        session_id: str | None = None,
    ) -> EvolutionRecord:
        """Write the measured outcome of an evolution once; feeds insights when a session is given."""
        record = await self._store.get_evolution_record(record_id)
        if record is None:
            raise NotFoundError("EvolutionRecord", record_id)

        outcome = EvolutionOutcome.measure(record.trigger.score, next_score)
        updated = await self._store.record_evolution_outcome(record_id, outcome)
        log.info(
            "evolution_outcome_recorded",
            record_id=record_id,
            score_delta=outcome.score_delta,
            hypothesis_validated=outcome.hypothesis_validated,
        )

        if self._insights is not None and session_id is not None:
            await self._insights.learn_from_outcome(session_id, updated)
        return updated

    async def evolution_stats(self, lineage_id: str) -> EvolutionStats:
        records = await self._store.list_evolution_records(lineage_id)
        if not records:
            return EvolutionStats()

        measured = [r.outcome for r in records if r.outcome is not None]
        counts = Counter(f"{c.component}/{c.target}" for r in records for c in r.changes)
        return EvolutionStats(
            total_evolutions=len(records),
            avg_score_improvement=sum(o.score_delta for o in measured) / len(measured) if measured else 0.0,
            success_rate=sum(1 for o in measured if o.score_delta > 0) / len(measured) if measured else 0.0,
            common_changes=[key for key, _ in counts.most_common(5)],
        )
