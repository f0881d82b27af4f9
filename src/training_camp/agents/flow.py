"""Structural checks and templates for agent flow graphs.

A flow is a list of :class:`AgentFlowStep` nodes linked by their
``connections`` (``next``, ``on_true``, ``on_false``, ``on_error``). Errors
make a flow unusable; warnings describe flows that run but probably not as
intended.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from training_camp.agents.definition import AgentFlowStep

CONNECTION_KEYS = ("next", "on_true", "on_false", "on_error")


@dataclass
class FlowValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_flow(steps: list[AgentFlowStep]) -> FlowValidation:
    result = FlowValidation()
    by_id = {step.id: step for step in steps}

    start = next((step for step in steps if step.type == "start"), None)
    if start is None:
        result.errors.append("Flow must have a start step")
    if not any(step.type == "output" for step in steps):
        result.warnings.append("Flow has no output step and may not return a result")

    for step in steps:
        for key in CONNECTION_KEYS:
            target = step.connections.get(key)
            if target and target not in by_id:
                result.errors.append(f'Step "{step.name}" has invalid {key} connection: {target}')

        if step.type == "condition" and not (step.connections.get("on_true") or step.connections.get("on_false")):
            result.warnings.append(f'Condition step "{step.name}" has no branch connections')
        if step.type == "loop" and not step.connections.get("on_true"):
            result.warnings.append(f'Loop step "{step.name}" has no body connection (on_true)')
        if step.type == "tool" and not step.config.get("tool_name"):
            result.errors.append(f'Tool step "{step.name}" has no tool_name configured')

    reachable = _reachable(start, by_id) if start is not None else set()
    for step in steps:
        if step.type != "start" and step.id not in reachable:
            result.warnings.append(f'Step "{step.name}" is unreachable')
    return result


def _reachable(start: AgentFlowStep, by_id: dict[str, AgentFlowStep]) -> set[str]:
    seen: set[str] = set()
    pending = [start]
    while pending:
        step = pending.pop()
        if step.id in seen:
            continue
        seen.add(step.id)
        for key in CONNECTION_KEYS:
            target = by_id.get(step.connections.get(key, ""))
            if target is not None:
                pending.append(target)
    return seen


def simple_flow(template: str | None = None) -> list[AgentFlowStep]:
    """start -> prompt -> output."""
    return [
        AgentFlowStep(id="start", type="start", name="Start", connections={"next": "prompt"}),
        AgentFlowStep(
            id="prompt",
            type="prompt",
            name="Generate Response",
            config={"template": template or "{{input}}", "use_system_prompt": True, "output_variable": "response"},
            position={"x": 0.0, "y": 100.0},
            connections={"next": "output"},
        ),
        AgentFlowStep(
            id="output",
            type="output",
            name="Output",
            config={"variable": "response"},
            position={"x": 0.0, "y": 200.0},
        ),
    ]


def tool_flow(
    tool_name: str,
    tool_args: dict[str, str],
    process_template: str | None = None,
) -> list[AgentFlowStep]:
    """start -> tool -> [process prompt] -> output, with tool errors routed to an error output."""
    steps = [
        AgentFlowStep(id="start", type="start", name="Start", connections={"next": "tool"}),
        AgentFlowStep(
            id="tool",
            type="tool",
            name=f"Execute {tool_name}",
            config={"tool_name": tool_name, "args": dict(tool_args), "output_variable": "tool_result"},
            position={"x": 0.0, "y": 100.0},
            connections={"next": "process" if process_template else "output", "on_error": "error_output"},
        ),
    ]
    if process_template:
        steps.append(AgentFlowStep(
            id="process",
            type="prompt",
            name="Process Results",
            config={"template": process_template, "use_system_prompt": True, "output_variable": "response"},
            position={"x": 0.0, "y": 200.0},
            connections={"next": "output"},
        ))
    steps.append(AgentFlowStep(
        id="output",
        type="output",
        name="Output",
        config={"variable": "response" if process_template else "tool_result"},
        position={"x": 0.0, "y": 300.0 if process_template else 200.0},
    ))
    steps.append(AgentFlowStep(
        id="error_output",
        type="output",
        name="Error Output",
        config={"template": "Error executing tool: {{error}}"},
        position={"x": 200.0, "y": 200.0},
    ))
    return steps
