"""Tool-call wire shapes exchanged with text-generation backends.

Two inbound shapes are understood, plus a bare list:

* content blocks: ``{"content": [{"type": "tool_use", "id", "name", "input"}, ...]}``
* tool_calls: ``{"tool_calls": [{"id", "function": {"name", "arguments"}}, ...]}``
  where ``arguments`` is a JSON string or an object
* a bare list of call descriptors

Anything else parses to an empty list. Objects exposing attributes (such as
litellm response messages) are read the same way as dicts.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from training_camp.tools.registry import ToolResult

log = structlog.get_logger(__name__)

ResultFormat = Literal["claude", "openai"]


@dataclass
class ToolCall:
    """A tool call requested by a text-generation response."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _decode_arguments(raw: Any, call_name: str | None) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("tool_arguments_not_json", tool=call_name)
            return {}
    if isinstance(raw, dict):
        return raw
    return {}


def _parse_content_blocks(blocks: list[Any]) -> list[ToolCall]:
    return [
        ToolCall(
            id=_field(block, "id") or str(uuid.uuid4()),
            name=_field(block, "name"),
            arguments=_decode_arguments(_field(block, "input"), _field(block, "name")),
        )
        for block in blocks
        if _field(block, "type") == "tool_use" and _field(block, "name")
    ]


def _parse_openai_calls(calls: list[Any]) -> list[ToolCall]:
    parsed: list[ToolCall] = []
    for call in calls:
        function = _field(call, "function")
        name = _field(function, "name") if function is not None else None
        if not name:
            continue
        parsed.append(ToolCall(
            id=_field(call, "id") or str(uuid.uuid4()),
            name=name,
            arguments=_decode_arguments(_field(function, "arguments"), name),
        ))
    return parsed


def _parse_descriptors(items: list[Any]) -> list[ToolCall]:
    parsed: list[ToolCall] = []
    for item in items:
        function = _field(item, "function")
        name = _field(item, "name") or (_field(function, "name") if function is not None else None)
        if not name:
            continue
        raw_args = _field(item, "arguments") or _field(item, "input")
        if raw_args is None and function is not None:
            raw_args = _field(function, "arguments")
        parsed.append(ToolCall(
            id=_field(item, "id") or str(uuid.uuid4()),
            name=name,
            arguments=_decode_arguments(raw_args, name),
        ))
    return parsed


def parse_tool_calls(response: Any) -> list[ToolCall]:
    """Normalize a generation response into ``ToolCall`` values. Never raises."""
    if response is None:
        return []
    if isinstance(response, (list, tuple)):
        return _parse_descriptors(list(response))

    content = _field(response, "content")
    if isinstance(content, list):
        return _parse_content_blocks(content)

    tool_calls = _field(response, "tool_calls")
    if isinstance(tool_calls, list):
        return _parse_openai_calls(tool_calls)

    return []


def _render_content(result: ToolResult) -> str:
    if result.success:
        return json.dumps(result.output, ensure_ascii=False, default=str)
    return f"Error: {result.error}"


def format_tool_results_for_llm(
    results: list[Any],
    fmt: ResultFormat = "claude",
) -> list[dict[str, Any]]:
    """Render tool-call outcomes as messages for the next generation round.

    ``results`` holds :class:`~training_camp.tools.executor.ToolCallResult`
    values (anything with ``tool_call`` and ``result`` attributes).
    """
    if fmt == "claude":
        return [
            {
                "type": "tool_result",
                "tool_use_id": r.tool_call.id,
                "content": _render_content(r.result),
                "is_error": not r.result.success,
            }
            for r in results
        ]
    return [
        {
            "role": "tool",
            "tool_call_id": r.tool_call.id,
            "content": _render_content(r.result),
        }
        for r in results
    ]
