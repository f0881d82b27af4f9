"""Tests for tool-call parsing and result formatting."""

import json
from types import SimpleNamespace

from training_camp.tools.executor import ToolCallResult
from training_camp.tools.registry import ToolResult
from training_camp.tools.wire import ToolCall, format_tool_results_for_llm, parse_tool_calls


def test_parse_content_blocks():
    response = {
        "content": [
            {"type": "text", "text": "Let me calculate."},
            {"type": "tool_use", "id": "toolu_1", "name": "calculate", "input": {"expression": "2+2"}},
        ]
    }
    calls = parse_tool_calls(response)
    assert calls == [ToolCall(id="toolu_1", name="calculate", arguments={"expression": "2+2"})]


def test_parse_openai_tool_calls_with_string_arguments():
    response = {
        "tool_calls": [
            {"id": "call_1", "type": "function", "function": {"name": "summarize", "arguments": '{"length": "short"}'}},
            {"id": "call_2", "type": "function", "function": {"name": "calculate", "arguments": {"expression": "1"}}},
        ]
    }
    calls = parse_tool_calls(response)
    assert [c.id for c in calls] == ["call_1", "call_2"]
    assert calls[0].arguments == {"length": "short"}
    assert calls[1].arguments == {"expression": "1"}


def test_parse_reads_attribute_objects():
    message = SimpleNamespace(
        content=None,
        tool_calls=[SimpleNamespace(id="c1", function=SimpleNamespace(name="echo", arguments="{}"))],
    )
    calls = parse_tool_calls(message)
    assert len(calls) == 1
    assert calls[0].name == "echo"
    assert calls[0].arguments == {}


def test_parse_bare_descriptor_list():
    calls = parse_tool_calls([{"id": "x", "name": "echo", "arguments": {"a": 1}}, {"no": "name"}])
    assert calls == [ToolCall(id="x", name="echo", arguments={"a": 1})]


def test_parse_invalid_json_arguments_become_empty():
    calls = parse_tool_calls({"tool_calls": [{"id": "c", "function": {"name": "echo", "arguments": "{oops"}}]})
    assert calls[0].arguments == {}


def test_parse_missing_id_is_generated():
    calls = parse_tool_calls([{"name": "echo"}])
    assert calls[0].id


def test_parse_unrecognized_shapes_are_empty():
    assert parse_tool_calls(None) == []
    assert parse_tool_calls("just text") == []
    assert parse_tool_calls({"something": "else"}) == []
    assert parse_tool_calls(42) == []


def _results() -> list[ToolCallResult]:
    return [
        ToolCallResult(ToolCall("c1", "calculate", {}), ToolResult.ok({"result": 4}), allowed=True),
        ToolCallResult(ToolCall("c2", "nope", {}), ToolResult.fail("Tool \"nope\" is not allowed"), allowed=False),
    ]


def test_format_claude_tool_results():
    blocks = format_tool_results_for_llm(_results(), "claude")
    assert blocks[0] == {
        "type": "tool_result",
        "tool_use_id": "c1",
        "content": json.dumps({"result": 4}),
        "is_error": False,
    }
    assert blocks[1]["is_error"] is True
    assert blocks[1]["content"] == 'Error: Tool "nope" is not allowed'


def test_format_openai_tool_messages():
    messages = format_tool_results_for_llm(_results(), "openai")
    assert messages[0] == {"role": "tool", "tool_call_id": "c1", "content": json.dumps({"result": 4})}
    assert messages[1]["content"].startswith("Error: ")


def test_parsed_calls_keep_id_name_arguments_through_formatting():
    calls = parse_tool_calls({"content": [{"type": "tool_use", "id": "t9", "name": "echo", "input": {"k": "v"}}]})
    results = [ToolCallResult(calls[0], ToolResult.ok(calls[0].arguments), allowed=True)]
    block = format_tool_results_for_llm(results)[0]
    assert block["tool_use_id"] == "t9"
    assert json.loads(block["content"]) == {"k": "v"}
