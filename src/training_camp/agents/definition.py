"""Agent definition models.

An ``AgentDefinition`` is immutable: evolution always produces a new record
with a fresh id and ``version + 1`` rather than mutating an existing one.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from training_camp.exceptions import InvalidFlowError

if TYPE_CHECKING:
    from training_camp.agents.flow import FlowValidation


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class ToolParameter(BaseModel):
    """One declared argument of an agent tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


class ToolConfig(BaseModel):
    """Backend configuration for an agent tool."""

    model_config = ConfigDict(frozen=True)

    endpoint: str | None = None
    method: str | None = None
    headers: dict[str, str] | None = None
    code: str | None = None
    builtin_name: str | None = None


class AgentTool(BaseModel):
    """A tool descriptor declared on an agent definition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    type: Literal["builtin", "api", "function"] = "builtin"
    config: ToolConfig = Field(default_factory=ToolConfig)
    parameters: list[ToolParameter] = Field(default_factory=list)

    def matches(self, tool_name: str) -> bool:
        """True if ``tool_name`` refers to this descriptor by name or builtin name."""
        if self.name == tool_name:
            return True
        return self.type == "builtin" and self.config.builtin_name == tool_name

    @property
    def call_name(self) -> str:
        """Name the tool is invoked by: the builtin name for builtin tools that set one."""
        if self.type == "builtin" and self.config.builtin_name:
            return self.config.builtin_name
        return self.name

    def to_function_schema(self) -> dict[str, Any]:
        """OpenAI-style function schema, as accepted by litellm."""
        properties = {
            p.name: {"type": p.type, "description": p.description} for p in self.parameters
        }
        return {
            "type": "function",
            "function": {
                "name": self.call_name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


class AgentFlowStep(BaseModel):
    """A node in the agent's execution flow graph."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    type: Literal["start", "prompt", "tool", "condition", "loop", "output"]
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    position: dict[str, float] = Field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    connections: dict[str, str] = Field(default_factory=dict)  # next / on_true / on_false / on_error


class AgentMemoryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["none", "buffer", "summary", "vector"] = "buffer"
    config: dict[str, Any] = Field(default_factory=dict)


class AgentParameters(BaseModel):
    """Sampling parameters used when the agent generates text."""

    model_config = ConfigDict(frozen=True)

    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


class AgentConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_tokens: int | None = None
    allowed_tools: list[str] | None = None
    forbidden_patterns: list[str] | None = None


class AgentDefinition(BaseModel):
    """One immutable version of an agent configuration within a lineage."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    lineage_id: str | None = None
    version: int = Field(default=1, ge=1)
    name: str
    description: str = ""
    system_prompt: str
    tools: list[AgentTool] = Field(default_factory=list)
    flow: list[AgentFlowStep] = Field(default_factory=list)
    memory: AgentMemoryConfig = Field(default_factory=AgentMemoryConfig)
    parameters: AgentParameters = Field(default_factory=AgentParameters)
    constraints: AgentConstraints | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def find_tool(self, tool_name: str) -> AgentTool | None:
        """Return the declared tool descriptor matching ``tool_name``, if any."""
        return next((t for t in self.tools if t.matches(tool_name)), None)

    def validate_flow(self) -> FlowValidation:
        from training_camp.agents.flow import validate_flow

        return validate_flow(self.flow)

    def check_flow(self) -> None:
        """Raise :class:`InvalidFlowError` if a declared flow has errors. An empty flow is allowed."""
        if not self.flow:
            return
        validation = self.validate_flow()
        if not validation.valid:
            raise InvalidFlowError(self.id, validation.errors)

    def next_version(self, **changes: Any) -> AgentDefinition:
        """Return a successor definition: fresh id, ``version + 1``, fresh timestamps."""
        now = _now()
        update = {"id": _new_id(), "version": self.version + 1, "created_at": now, "updated_at": now}
        update.update(changes)
        return self.model_copy(update=update)
