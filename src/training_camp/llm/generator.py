"""The narrow text-generation capability consumed by the core.

Every call site checks :meth:`TextGenerator.is_configured` and falls back to
deterministic behaviour when generation is absent or raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from training_camp.config import LLMRole
from training_camp.tools.wire import ToolCall

Prompt = str | list[dict[str, Any]]


@runtime_checkable
class TextGenerator(Protocol):
    def is_configured(self, role: LLMRole = LLMRole.ACTING) -> bool: ...

    async def generate(
        self,
        system_prompt: str,
        prompt: Prompt,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        role: LLMRole = LLMRole.ACTING,
    ) -> str: ...


@dataclass
class Generation:
    """One tool-aware generation: text plus any requested tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    assistant_message: dict[str, Any] | None = None  # echo back before tool results


@runtime_checkable
class ToolCallingGenerator(TextGenerator, Protocol):
    async def generate_with_tools(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        role: LLMRole = LLMRole.ACTING,
    ) -> Generation: ...
