"""Evolution planning: credit assignment -> a list of targeted changes.

Base changes come from templates keyed by feedback aspect (prompt credit)
or by the kind of problematic span (trajectory credit). A generated plan
replaces them when the text generator is configured. Every change is then
checked against the lineage's past records and the session's learning
insights before it is kept.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Literal

import structlog
from pydantic import ValidationError

from training_camp.agents.definition import AgentDefinition
from training_camp.config import LLMRole
from training_camp.evolution.records import (
    EvolutionChange,
    EvolutionPlan,
    EvolutionRecord,
    ExpectedImpact,
    FeedbackAspect,
    LearningInsight,
    PromptCredit,
    ScoreAnalysis,
    Sentiment,
    TrajectoryCredit,
    pattern_type_for,
)
from training_camp.llm.generator import TextGenerator

log = structlog.get_logger(__name__)

Recommendation = Literal["apply", "modify", "skip"]
PastOutcome = Literal["improved", "worsened", "neutral"]

# aspect -> (target, reason); unknown aspects fall back to "parameters"
CHANGE_TEMPLATES: dict[str, tuple[str, str]] = {
    "length": ("length_instructions", "Adjust output length based on length feedback"),
    "tone": ("tone_instructions", "Adjust communication tone"),
    "format": ("format_instructions", "Add explicit formatting instructions"),
    "accuracy": ("accuracy_instructions", "Emphasize accuracy and verification"),
    "completeness": ("completeness_instructions", "Add completeness checklist"),
    "parameters": ("model_parameters", "Adjust model parameters for better output"),
}

# aspect -> (instruction on negative feedback, instruction otherwise)
ASPECT_INSTRUCTIONS: dict[str, tuple[str, str]] = {
    "length": (
        "Be concise and focused. Avoid unnecessary details or verbosity.",
        "Maintain your current level of detail and thoroughness.",
    ),
    "tone": (
        "Use a professional yet approachable tone. Be helpful and clear.",
        "Continue with your current communication style.",
    ),
    "format": (
        "Structure your response clearly. Use bullet points or numbered lists "
        "when presenting multiple items.",
        "Maintain your current formatting approach.",
    ),
    "accuracy": (
        "Double-check all facts and claims. If uncertain, acknowledge limitations.",
        "Continue providing accurate and verified information.",
    ),
    "completeness": (
        "Ensure you address all aspects of the request. Check for missing "
        "information before responding.",
        "Continue providing complete responses.",
    ),
    "relevance": (
        "Stay focused on the specific request. Avoid tangential information.",
        "Continue providing relevant, focused responses.",
    ),
    "creativity": (
        "Explore creative approaches and unique perspectives when appropriate.",
        "Continue with your current level of creativity.",
    ),
}

EXISTING_INSTRUCTION_PATTERNS: dict[str, re.Pattern[str]] = {
    aspect: re.compile(pattern, re.IGNORECASE)
    for aspect, pattern in {
        "length": r"(?:be (?:concise|brief|detailed|thorough)|word (?:limit|count)|(?:max|min)imum length)",
        "tone": r"(?:tone|voice|style|manner|professional|casual|friendly)",
        "format": r"(?:format|structure|bullet|list|paragraph|organize)",
        "accuracy": r"(?:accurate|precise|verify|check|fact)",
        "completeness": r"(?:complete|comprehensive|thorough|cover|include)",
        "relevance": r"(?:relevant|focus|specific|scope)",
        "creativity": r"(?:creative|original|innovative|unique)",
    }.items()
}

REASONING_GUIDANCE = "Think step by step. Validate your reasoning before providing the final answer."

_MAX_REMOVABLE_SEGMENT = 200
_PROBLEMATIC_CONTRIBUTION = -0.2
_MODIFY_CONFIDENCE_FACTOR = 0.7

PLAN_SYSTEM_PROMPT = """You are an AI agent evolution planner. Based on user feedback and credit assignment analysis, create a targeted evolution plan.

Guidelines:
1. Focus on the highest-impact changes
2. Avoid over-engineering - make minimal necessary changes
3. Each change should address a specific issue
4. Provide a testable hypothesis

Return a JSON object:
{
  "changes": [
    {
      "component": "system_prompt|tools|flow|parameters",
      "change_type": "add|remove|modify",
      "target": "what_to_change",
      "before": "current value or null",
      "after": "new value or null",
      "reason": "why this change",
      "confidence": 0.0-1.0
    }
  ],
  "hypothesis": "After these changes, we expect...",
  "expected_impact": [
    {"aspect": "aspect_name", "direction": "improve|maintain"}
  ]
}"""

PLAN_USER_PROMPT = """Agent: {name}
Current System Prompt (first 500 chars):
{prompt}

Score: {score}/10
Comment: {comment}
Aspects: {aspects}
Trend: {trend} (delta: {delta})

Credit Assignment:
{credits}

Already Proposed Changes:
{existing}

Create an evolution plan. Return ONLY the JSON object."""

_COMPONENT_ALIASES = {"systemPrompt": "system_prompt", "system-prompt": "system_prompt"}


@dataclass
class PastChange:
    change: EvolutionChange
    outcome: PastOutcome
    score_delta: int


@dataclass
class HistoryCheck:
    proposed_change: EvolutionChange
    recommendation: Recommendation
    reason: str
    similar_past_changes: list[PastChange] = field(default_factory=list)


def instruction_change(aspect: str, sentiment: Sentiment, prompt: str) -> tuple[str | None, str | None]:
    """(existing matching phrase, replacement instruction) for an aspect."""
    instructions = ASPECT_INSTRUCTIONS.get(aspect)
    if instructions is None:
        return None, None
    pattern = EXISTING_INSTRUCTION_PATTERNS.get(aspect)
    match = pattern.search(prompt) if pattern else None
    negative, positive = instructions
    return (match.group(0) if match else None), (negative if sentiment == "negative" else positive)


def plan_from_prompt_credit(
    agent: AgentDefinition,
    credits: list[PromptCredit],
    analysis: ScoreAnalysis,
) -> list[EvolutionChange]:
    changes: list[EvolutionChange] = []

    by_aspect: dict[str, list[PromptCredit]] = {}
    for credit in credits:
        if credit.blame in ("high", "medium"):
            by_aspect.setdefault(credit.related_aspect or "general", []).append(credit)

    for aspect, aspect_credits in by_aspect.items():
        feedback = next((a for a in analysis.aspects if a.aspect == aspect), None)
        sentiment: Sentiment = feedback.sentiment if feedback else "negative"
        target, reason = CHANGE_TEMPLATES.get(aspect, CHANGE_TEMPLATES["parameters"])
        before, after = instruction_change(aspect, sentiment, agent.system_prompt)

        if after:
            changes.append(EvolutionChange(
                component="system_prompt",
                change_type="modify" if before else "add",
                target=target,
                before=before,
                after=after,
                reason=reason,
                confidence=0.8 if aspect_credits[0].blame == "high" else 0.6,
            ))

        worst = next((c for c in aspect_credits if c.blame == "high"), None)
        if worst is not None and len(worst.segment) < _MAX_REMOVABLE_SEGMENT:
            changes.append(EvolutionChange(
                component="system_prompt",
                change_type="remove",
                target="problematic_segment",
                before=worst.segment,
                after=None,
                reason=f"Remove or rephrase: {worst.reason}",
                confidence=0.5,
            ))

    if analysis.score <= 4:
        temperature = agent.parameters.temperature
        changes.append(EvolutionChange(
            component="parameters",
            change_type="modify",
            target="temperature",
            before=str(temperature),
            after=str(round(max(0.3, temperature - 0.2), 4)),
            reason="Reduce temperature for more consistent output",
            confidence=0.7,
        ))

    return changes


def plan_from_trajectory_credit(credits: list[TrajectoryCredit]) -> list[EvolutionChange]:
    problematic = [c for c in credits if c.contribution < _PROBLEMATIC_CONTRIBUTION]
    tool_issues = [c for c in problematic if "tool" in c.reason.lower()]
    llm_issues = [c for c in problematic if "llm" in c.reason.lower()]
    output_issues = [c for c in problematic if "output" in c.reason.lower()]

    changes: list[EvolutionChange] = []
    if tool_issues:
        changes.append(EvolutionChange(
            component="tools",
            change_type="modify",
            target="tool_error_handling",
            after="Add graceful error handling to tools",
            reason=f"{len(tool_issues)} tool call(s) had errors",
            confidence=0.7,
        ))
    if llm_issues:
        changes.append(EvolutionChange(
            component="system_prompt",
            change_type="add",
            target="reasoning_guidance",
            after=REASONING_GUIDANCE,
            reason=f"{len(llm_issues)} LLM call(s) produced suboptimal results",
            confidence=0.6,
        ))
    if output_issues:
        changes.append(EvolutionChange(
            component="flow",
            change_type="add",
            target="output_validation",
            after="Add output validation step before final response",
            reason=f"{len(output_issues)} output issue(s) detected",
            confidence=0.5,
        ))
    return changes


def check_against_history(
    change: EvolutionChange,
    past_records: list[EvolutionRecord],
    insights: list[LearningInsight],
) -> HistoryCheck:
    """Recommend apply, modify or skip from similar past changes and insights.

    Insights are consulted last and override the record-based verdict.
    """
    similar: list[PastChange] = []
    for record in past_records:
        for past in record.changes:
            if past.component != change.component:
                continue
            if past.target != change.target and past.change_type != change.change_type:
                continue
            delta = record.outcome.score_delta if record.outcome else 0
            outcome: PastOutcome = "improved" if delta > 0 else "worsened" if delta < 0 else "neutral"
            similar.append(PastChange(change=past, outcome=outcome, score_delta=delta))

    recommendation: Recommendation = "apply"
    reason = "No conflicting history found"

    if similar:
        worsened = sum(1 for s in similar if s.outcome == "worsened")
        improved = sum(1 for s in similar if s.outcome == "improved")
        if worsened > improved and worsened >= 2:
            recommendation = "skip"
            reason = f"Similar changes worsened scores {worsened} times in the past"
        elif worsened > 0 and improved == 0:
            recommendation = "modify"
            reason = "Similar change previously worsened score, consider an alternative approach"
        elif improved > worsened:
            reason = f"Similar changes improved scores {improved} times"

    pattern_type = pattern_type_for(change.component)
    target = change.target.lower()
    for insight in insights:
        if insight.pattern_type != pattern_type and target not in insight.pattern.lower():
            continue
        if insight.failure_count > insight.success_count * 2:
            recommendation = "skip"
            reason = f'Learning insight suggests this pattern often fails: "{insight.pattern}"'
        elif insight.success_count > insight.failure_count * 2:
            recommendation = "apply"
            reason = f'Learning insight supports this pattern: "{insight.pattern}"'

    return HistoryCheck(
        proposed_change=change,
        recommendation=recommendation,
        reason=reason,
        similar_past_changes=similar,
    )


def generate_hypothesis(changes: list[EvolutionChange], analysis: ScoreAnalysis) -> str:
    if not changes:
        return "No significant changes needed, maintain current approach"
    components = list(dict.fromkeys(c.component for c in changes))
    weak = [a.aspect for a in analysis.aspects if a.sentiment == "negative"]
    if weak:
        return (
            f"After modifying {' and '.join(components)}, {' and '.join(weak)} "
            "should improve, leading to a higher score"
        )
    return f"After modifying {' and '.join(components)}, overall performance should improve"


def expected_impact(aspects: list[FeedbackAspect]) -> list[ExpectedImpact]:
    return [
        ExpectedImpact(aspect=a.aspect, direction="improve" if a.sentiment == "negative" else "maintain")
        for a in aspects
    ]


def summarize_plan(plan: EvolutionPlan) -> str:
    if not plan.changes:
        return "No changes planned"
    summary = ", ".join(f"{c.change_type} {c.component}/{c.target}" for c in plan.changes)
    return f"Plan: {summary}. Hypothesis: {plan.hypothesis}"


class EvolutionPlanner:
    def __init__(self, generator: TextGenerator | None = None) -> None:
        self._generator = generator

    async def plan(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        credits: list[PromptCredit] | list[TrajectoryCredit],
        past_records: list[EvolutionRecord] | None = None,
        insights: list[LearningInsight] | None = None,
    ) -> EvolutionPlan:
        trajectory = bool(credits) and isinstance(credits[0], TrajectoryCredit)
        if trajectory:
            base = plan_from_trajectory_credit(credits)  # type: ignore[arg-type]
        else:
            base = plan_from_prompt_credit(agent, credits, analysis)  # type: ignore[arg-type]

        plan = await self._plan_with_generator(agent, analysis, credits, base)
        if plan is None:
            plan = EvolutionPlan(
                changes=base,
                hypothesis=generate_hypothesis(base, analysis),
                expected_impact=expected_impact(analysis.aspects),
            )

        kept: list[EvolutionChange] = []
        for change in plan.changes:
            check = check_against_history(change, past_records or [], insights or [])
            if check.recommendation == "apply":
                kept.append(change)
            elif check.recommendation == "modify":
                kept.append(change.model_copy(update={
                    "confidence": change.confidence * _MODIFY_CONFIDENCE_FACTOR,
                    "reason": f"{change.reason} (Note: {check.reason})",
                }))
            else:
                log.debug("change_skipped", target=change.target, reason=check.reason)

        return plan.model_copy(update={"changes": kept})

    async def _plan_with_generator(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        credits: list[PromptCredit] | list[TrajectoryCredit],
        existing: list[EvolutionChange],
    ) -> EvolutionPlan | None:
        if self._generator is None or not self._generator.is_configured(LLMRole.EVOLVING):
            return None

        lines: list[str] = []
        for credit in credits:
            if isinstance(credit, PromptCredit) and credit.blame in ("high", "medium"):
                lines.append(
                    f"- [{credit.blame}] Segment {credit.segment_index}: "
                    f"{credit.related_aspect or 'general'} - {credit.reason}"
                )
            elif isinstance(credit, TrajectoryCredit) and credit.contribution < 0:
                lines.append(f"- [{credit.contribution:.2f}] {credit.reason}")

        prompt = agent.system_prompt
        user_prompt = PLAN_USER_PROMPT.format(
            name=agent.name,
            prompt=prompt[:500] + ("..." if len(prompt) > 500 else ""),
            score=analysis.score,
            comment=analysis.comment or "(none)",
            aspects=", ".join(f"{a.aspect}({a.sentiment})" for a in analysis.aspects) or "none",
            trend=analysis.trend,
            delta=analysis.delta_from_previous,
            credits="\n".join(lines) or "No high-blame segments identified",
            existing="\n".join(
                f"- {c.change_type} {c.component}/{c.target}: {c.reason}" for c in existing
            ) or "None proposed yet",
        )
        try:
            response = await self._generator.generate(
                PLAN_SYSTEM_PROMPT,
                user_prompt,
                max_tokens=1024,
                temperature=0.5,
                role=LLMRole.EVOLVING,
            )
        except Exception as exc:
            log.warning("plan_generation_failed", error=str(exc))
            return None
        return parse_plan(response)


def _as_text(value: object) -> str | None:
    # generated plans give parameter values as JSON numbers
    return None if value is None else str(value)


def parse_plan(response: str) -> EvolutionPlan | None:
    """Parse a generated plan object; malformed changes are dropped."""
    match = re.search(r"\{[\s\S]*\}", response)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    changes: list[EvolutionChange] = []
    for item in data.get("changes") or []:
        if not isinstance(item, dict):
            continue
        component = item.get("component")
        try:
            confidence = float(item.get("confidence") or 0.5)
            changes.append(EvolutionChange(
                component=_COMPONENT_ALIASES.get(component, component),
                change_type=item.get("change_type", item.get("changeType")),
                target=str(item.get("target", "")),
                before=_as_text(item.get("before")),
                after=_as_text(item.get("after")),
                reason=str(item.get("reason", "")),
                confidence=max(0.0, min(1.0, confidence)),
            ))
        except (TypeError, ValueError, ValidationError) as exc:
            log.debug("plan_change_dropped", component=component, error=str(exc))
            continue

    impacts: list[ExpectedImpact] = []
    for item in data.get("expected_impact", data.get("expectedImpact")) or []:
        try:
            impacts.append(ExpectedImpact.model_validate(item))
        except ValidationError:
            continue

    return EvolutionPlan(
        changes=changes,
        hypothesis=str(data.get("hypothesis") or "Changes should improve agent performance"),
        expected_impact=impacts,
    )
