"""LLM router with role-based model dispatch over LiteLLM.

Model strings follow LiteLLM conventions:
- "claude-sonnet-4-20250514" -> Anthropic API
- "gpt-4o" -> OpenAI API
- "ollama/llama3" -> Ollama (local)
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import structlog

from training_camp.config import LLMRole, RoleModelConfig, TrainingCampConfig
from training_camp.llm.generator import Generation, Prompt
from training_camp.tools.wire import parse_tool_calls

logger = structlog.get_logger()

# Retry settings for rate limit errors
_MAX_RETRIES = 5
_BASE_DELAY_S = 2.0
_MAX_DELAY_S = 60.0


class LLMRouter:
    """Routes generation requests to the model configured for each role.

    Implements both ``TextGenerator`` and ``ToolCallingGenerator``.
    """

    def __init__(self, config: TrainingCampConfig, min_request_interval_s: float = 0.0) -> None:
        self._role_map = config.role_models
        self._default_config = RoleModelConfig()
        self._min_interval = min_request_interval_s
        self._last_request_time: float = 0.0

    def _config_for(self, role: LLMRole) -> RoleModelConfig:
        return self._role_map.get(role, self._default_config)

    def is_configured(self, role: LLMRole = LLMRole.ACTING) -> bool:
        """True if the role has an API key, or the provider's environment supplies one."""
        config = self._config_for(role)
        if config.api_key:
            return True
        import litellm

        try:
            env = litellm.validate_environment(model=config.model)
        except Exception as exc:  # unknown provider prefixes raise here
            logger.debug("llm_environment_unknown", model=config.model, error=str(exc))
            return False
        return bool(env.get("keys_in_environment"))

    async def generate(
        self,
        system_prompt: str,
        prompt: Prompt,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        role: LLMRole = LLMRole.ACTING,
    ) -> str:
        """Generate text for a system prompt plus a user prompt or message list."""
        messages = _build_messages(system_prompt, prompt)
        kwargs: dict[str, Any] = {}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        return await self.complete(role, messages, **kwargs)

    async def complete(
        self,
        role: LLMRole,
        messages: list[dict[str, Any]],
        **kwargs: Any,
    ) -> str:
        """Send a completion request routed by role and return the message text.

        Retries automatically on rate limit errors with exponential backoff.
        """
        response = await self._acompletion(self._config_for(role), messages, **kwargs)
        content = response.choices[0].message.content or ""
        logger.debug("llm_response", role=role.value, length=len(content))
        return content

    async def generate_with_tools(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        role: LLMRole = LLMRole.ACTING,
    ) -> Generation:
        """Generate with function tools available; requested calls are parsed."""
        config = self._config_for(role)
        kwargs: dict[str, Any] = {}
        if tools:
            kwargs["tools"] = tools
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self._acompletion(
            config, _build_messages(system_prompt, messages), **kwargs
        )
        message = response.choices[0].message
        tool_calls = parse_tool_calls(message)
        usage = getattr(response, "usage", None)

        assistant_message: dict[str, Any] = {"role": "assistant", "content": message.content or ""}
        if tool_calls:
            assistant_message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in tool_calls
            ]

        return Generation(
            content=message.content or "",
            tool_calls=tool_calls,
            model=config.model,
            prompt_tokens=getattr(usage, "prompt_tokens", None),
            completion_tokens=getattr(usage, "completion_tokens", None),
            assistant_message=assistant_message,
        )

    async def _acompletion(
        self,
        config: RoleModelConfig,
        messages: list[dict[str, Any]],
        **kwargs: Any,
    ) -> Any:
        """Call LiteLLM with retry and rate limit spacing."""
        import litellm

        completion_kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "temperature": kwargs.pop("temperature", config.temperature),
            "max_tokens": kwargs.pop("max_tokens", config.max_tokens),
        }

        if config.api_key:
            completion_kwargs["api_key"] = config.api_key

        completion_kwargs.update(kwargs)

        logger.debug("llm_request", model=config.model)

        # Rate limit spacing: ensure minimum interval between requests
        if self._min_interval > 0:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                return await litellm.acompletion(**completion_kwargs)
            except litellm.RateLimitError as exc:
                last_exc = exc
                delay = min(_BASE_DELAY_S * (2**attempt), _MAX_DELAY_S)
                logger.warning(
                    "rate_limit_retry",
                    attempt=attempt + 1,
                    max_retries=_MAX_RETRIES,
                    delay_s=delay,
                    model=config.model,
                )
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]


def _build_messages(system_prompt: str, prompt: Prompt) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    if isinstance(prompt, str):
        messages.append({"role": "user", "content": prompt})
    else:
        messages.extend(prompt)
    return messages
