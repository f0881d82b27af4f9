"""Score-band mutation of an agent's prompt, parameters and description.

Score bands:
    8-10  refine: polish wording, keep the core approach
    5-7   revise: address likely weak points, keep the direction
    1-4   overhaul: substantial rewrite within the same strategy family

Generation temperature rises as the score drops. When text generation is
unavailable or fails, a template rewrite is used instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

import structlog

from training_camp.agents.definition import AgentParameters
from training_camp.config import LLMRole
from training_camp.evolution.records import EvolutionChange
from training_camp.llm.generator import TextGenerator

log = structlog.get_logger(__name__)

Intensity = Literal["minor", "moderate", "major"]

BAND_GUIDANCE: dict[Intensity, str] = {
    "minor": (
        "- Refine and polish: make subtle improvements to clarity and precision\n"
        "- Preserve the core approach and behavior\n"
        "- Ensure consistency in tone"
    ),
    "moderate": (
        "- Revise moderately: address the likely weak points\n"
        "- Adjust emphasis on key behaviors and refine specific instructions\n"
        "- Keep the overall direction"
    ),
    "major": (
        "- Change substantially: rewrite and restructure the prompt\n"
        "- Add new behavioral guidelines and remove ineffective instructions\n"
        "- You may deviate from the current approach, but stay within the same strategy family"
    ),
}

MUTATION_SYSTEM_PROMPT = """You are an AI agent prompt engineer. Your task is to improve system prompts based on performance feedback.
Agent goal: {need}
Evolution intensity: {intensity}
{directives}
For {intensity} changes:
{guidance}

Return ONLY the improved system prompt, no explanations."""

MUTATION_USER_PROMPT = """Current system prompt (score: {score}/10):
---
{prompt}
---

Improve this prompt according to the evolution intensity level."""

DESCRIPTION_PROMPT = """Given an AI agent that was performing poorly (score: {score}/10) for the need: "{need}"
Current name: {name}
Current description: {description}
{feedback}
Suggest a brief, improved description (1-2 sentences) that reflects the evolved agent's improved capabilities.
Return ONLY the description, no explanations."""

MINOR_SUFFIX = "Be clear and precise in your responses."
MODERATE_SUFFIX = (
    "Follow these guidelines:\n"
    "1. Focus on accuracy\n"
    "2. Provide relevant details\n"
    "3. Be concise but thorough"
)
MAJOR_TEMPLATE = """CORE OBJECTIVE:
{prompt}

KEY BEHAVIORS:
- Prioritize accuracy over speed
- Validate assumptions before acting
- Provide clear explanations for decisions
- Ask for clarification when needed

QUALITY STANDARDS:
- Ensure completeness of responses
- Maintain consistency in approach
- Focus on user satisfaction"""

_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class Mutation:
    system_prompt: str
    parameters: AgentParameters
    description: str
    generated: bool
    intensity: Intensity
    temperature: float


def intensity_for(score: int) -> Intensity:
    if score >= 8:
        return "minor"
    if score >= 5:
        return "moderate"
    return "major"


def mutation_temperature(score: int) -> float:
    """0.3 at a perfect score, rising by 0.06 per point lost."""
    return round(0.3 + 0.06 * (10 - score), 2)


def combine_directives(*parts: str | None) -> str | None:
    combined = "\n".join(p for p in parts if p)
    return combined or None


def template_prompt(prompt: str, intensity: Intensity, directives: str | None) -> str:
    if intensity == "major":
        evolved = MAJOR_TEMPLATE.format(prompt=prompt)
        if directives:
            evolved += f"\n\nSPECIFIC GUIDANCE:\n{directives}"
        return evolved

    evolved = prompt
    if directives:
        evolved += f"\n\nAdditional guidance: {directives}"
    if intensity == "minor" and "Be clear and precise" not in evolved:
        evolved += f"\n\n{MINOR_SUFFIX}"
    elif intensity == "moderate" and "Follow these guidelines" not in evolved:
        evolved += f"\n\n{MODERATE_SUFFIX}"
    return evolved


def _clamp(value: float | None, low: float, high: float) -> float | None:
    # zero and unset both mean "no penalty"
    if not value:
        return None
    return max(low, min(high, value))


def evolve_parameters(params: AgentParameters, score: int) -> AgentParameters:
    intensity = intensity_for(score)
    update: dict[str, float | int | None] = {}

    if intensity == "minor":
        if score >= 9:
            update["temperature"] = max(0.1, params.temperature - 0.05)
        else:
            update["temperature"] = min(1.0, params.temperature + 0.05)
    elif intensity == "moderate":
        update["temperature"] = 0.6 if score >= 6 else 0.8
        update["frequency_penalty"] = (params.frequency_penalty or 0.0) + 0.1
        update["presence_penalty"] = (params.presence_penalty or 0.0) + 0.1
    else:
        update["temperature"] = 0.7
        update["max_tokens"] = min(4096, params.max_tokens + 512)
        update["top_p"] = 0.9
        update["frequency_penalty"] = 0.3
        update["presence_penalty"] = 0.3

    update["temperature"] = round(max(0.0, min(2.0, update["temperature"])), 4)
    update["frequency_penalty"] = _clamp(update.get("frequency_penalty", params.frequency_penalty), -2.0, 2.0)
    update["presence_penalty"] = _clamp(update.get("presence_penalty", params.presence_penalty), -2.0, 2.0)
    return params.model_copy(update=update)


def apply_changes(
    prompt: str,
    params: AgentParameters,
    changes: list[EvolutionChange],
) -> tuple[str, AgentParameters]:
    """Apply planned system_prompt and parameters changes.

    Tool and flow changes are left for the caller; they are recorded on the
    evolution record but not applied here.
    """
    for change in changes:
        if change.component == "system_prompt":
            prompt = _apply_prompt_change(prompt, change)
        elif change.component == "parameters":
            params = _apply_parameter_change(params, change)
    return _EXCESS_NEWLINES.sub("\n\n", prompt).strip(), params


def _apply_prompt_change(prompt: str, change: EvolutionChange) -> str:
    if change.change_type == "add":
        if change.after and change.after not in prompt:
            return f"{prompt}\n\n{change.after}"
    elif change.change_type == "remove":
        if change.before:
            return prompt.replace(change.before, "")
    elif change.before and change.after:
        return prompt.replace(change.before, change.after, 1)
    return prompt


def _apply_parameter_change(params: AgentParameters, change: EvolutionChange) -> AgentParameters:
    if change.target not in ("temperature", "top_p", "frequency_penalty", "presence_penalty", "max_tokens"):
        return params
    if change.change_type == "remove":
        if change.target in ("temperature", "max_tokens"):
            return params
        return params.model_copy(update={change.target: None})
    try:
        value = float(change.after) if change.after is not None else None
    except ValueError:
        log.debug("parameter_change_unparsable", target=change.target, after=change.after)
        return params
    if value is None:
        return params
    if change.target == "max_tokens":
        return params.model_copy(update={"max_tokens": max(1, int(value))})
    if change.target == "temperature":
        return params.model_copy(update={"temperature": max(0.0, min(2.0, value))})
    if change.target == "top_p":
        return params.model_copy(update={"top_p": max(0.0, min(1.0, value))})
    return params.model_copy(update={change.target: max(-2.0, min(2.0, value))})


class AgentMutator:
    def __init__(self, generator: TextGenerator | None = None) -> None:
        self._generator = generator

    def _available(self) -> bool:
        return self._generator is not None and self._generator.is_configured(LLMRole.EVOLVING)

    async def mutate(
        self,
        *,
        system_prompt: str,
        parameters: AgentParameters,
        name: str,
        description: str,
        need: str,
        score: int,
        feedback: str | None = None,
        sticky_directive: str | None = None,
        oneshot_directive: str | None = None,
    ) -> Mutation:
        if not 1 <= score <= 10:
            raise ValueError(f"score must be between 1 and 10, got {score}")

        intensity = intensity_for(score)
        temperature = mutation_temperature(score)
        directives = combine_directives(sticky_directive, oneshot_directive, feedback)

        prompt = await self._generate_prompt(system_prompt, need, score, intensity, temperature, directives)
        generated = prompt is not None
        if prompt is None:
            prompt = template_prompt(system_prompt, intensity, directives)

        if intensity == "major":
            description = await self._refresh_description(name, description, need, score, feedback) or description

        return Mutation(
            system_prompt=prompt,
            parameters=evolve_parameters(parameters, score),
            description=description,
            generated=generated,
            intensity=intensity,
            temperature=temperature,
        )

    async def _generate_prompt(
        self,
        prompt: str,
        need: str,
        score: int,
        intensity: Intensity,
        temperature: float,
        directives: str | None,
    ) -> str | None:
        if not self._available():
            return None
        try:
            response = await self._generator.generate(
                MUTATION_SYSTEM_PROMPT.format(
                    need=need,
                    intensity=intensity,
                    directives=f"User directives to incorporate: {directives}\n" if directives else "",
                    guidance=BAND_GUIDANCE[intensity],
                ),
                MUTATION_USER_PROMPT.format(score=score, prompt=prompt),
                max_tokens=2048,
                temperature=temperature,
                role=LLMRole.EVOLVING,
            )
        except Exception as exc:
            log.warning("prompt_mutation_failed", error=str(exc), intensity=intensity)
            return None
        return response.strip() or None

    async def _refresh_description(
        self,
        name: str,
        description: str,
        need: str,
        score: int,
        feedback: str | None,
    ) -> str | None:
        if not self._available():
            return None
        try:
            response = await self._generator.generate(
                "",
                DESCRIPTION_PROMPT.format(
                    score=score,
                    need=need,
                    name=name,
                    description=description,
                    feedback=f"Feedback received: {feedback}\n" if feedback else "",
                ),
                max_tokens=256,
                temperature=0.6,
                role=LLMRole.EVOLVING,
            )
        except Exception as exc:
            log.warning("description_refresh_failed", error=str(exc))
            return None
        return response.strip() or None
