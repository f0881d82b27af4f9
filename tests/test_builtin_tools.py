"""Tests for the built-in tools."""

import pytest

from _helpers import StubGenerator

from training_camp.tools.builtin import (
    CalculateTool,
    FormatMarkdownTool,
    SummarizeTool,
    extractive_summary,
    format_as_table,
    register_builtin_tools,
    safe_evaluate,
)
from training_camp.tools.registry import ToolExecutionParams, ToolRegistry


def _params(**arguments) -> ToolExecutionParams:
    return ToolExecutionParams(arguments=arguments)


class TestSafeEvaluate:
    def test_arithmetic(self):
        assert safe_evaluate("2 + 3 * 4") == 14
        assert safe_evaluate("(2 + 3) * 4") == 20
        assert safe_evaluate("-2 ** 2") == -4
        assert safe_evaluate("7 // 2") == 3
        assert safe_evaluate("7 / 2") == 3.5

    def test_rejects_names_and_calls(self):
        with pytest.raises(ValueError, match="Invalid expression"):
            safe_evaluate("__import__('os').system('true')")
        with pytest.raises(ValueError, match="Invalid expression"):
            safe_evaluate("x + 1")

    def test_division_by_zero(self):
        with pytest.raises(ValueError, match="Division by zero"):
            safe_evaluate("1 / 0")

    def test_syntax_error(self):
        with pytest.raises(ValueError, match="Invalid expression"):
            safe_evaluate("2 +")


@pytest.mark.asyncio
async def test_calculate_tool():
    result = await CalculateTool().execute(_params(expression="1000 * 3"))
    assert result.success
    assert result.output == {"expression": "1000 * 3", "result": 3000, "formatted": "3,000"}


@pytest.mark.asyncio
async def test_calculate_requires_expression():
    result = await CalculateTool().execute(_params())
    assert not result.success
    assert result.error == "Mathematical expression is required"


@pytest.mark.asyncio
async def test_format_list_and_blockquote():
    tool = FormatMarkdownTool()
    listed = await tool.execute(_params(content="apples, pears; plums", format="list"))
    assert listed.output["formatted"] == "- apples\n- pears\n- plums"

    quoted = await tool.execute(_params(content="a\nb", format="blockquote"))
    assert quoted.output["formatted"] == "> a\n> b"


def test_format_table_uses_first_row_as_header():
    table = format_as_table("name,age\nada,36")
    assert table.splitlines() == ["| name | age |", "| --- | --- |", "| ada | 36 |"]


@pytest.mark.asyncio
async def test_format_document_without_generator():
    result = await FormatMarkdownTool().execute(_params(content="Intro.\n\nBody text.", title="Notes"))
    assert result.output["formatted"] == "# Notes\n\nIntro.\n\n## Section 1\n\nBody text."
    assert result.output["format"] == "document"


@pytest.mark.asyncio
async def test_format_document_with_generator():
    generator = StubGenerator(["# Notes\n\nFormatted"])
    result = await FormatMarkdownTool(generator).execute(_params(content="raw"))
    assert result.output["formatted"] == "# Notes\n\nFormatted"
    assert result.metadata["source"] == "llm"


@pytest.mark.asyncio
async def test_format_document_generator_error_falls_back():
    generator = StubGenerator([RuntimeError("rate limited")])
    result = await FormatMarkdownTool(generator).execute(_params(content="Only one section"))
    assert result.success
    assert result.output["formatted"].startswith("# Document")


def test_extractive_summary_lengths():
    text = "One. Two! Three? Four. Five. Six. Seven. Eight."
    assert extractive_summary(text, "short") == "One. Two!"
    assert extractive_summary(text, "medium") == "One. Two! Three? Four."
    assert extractive_summary(text, "long") == "One. Two! Three? Four. Five. Six. Seven."


@pytest.mark.asyncio
async def test_summarize_extractive_fallback():
    content = "First sentence here. Second sentence here. Third one. Fourth one. Fifth one."
    result = await SummarizeTool(StubGenerator(configured=False)).execute(_params(content=content, length="short"))
    assert result.success
    assert result.output["summary"] == "First sentence here. Second sentence here."
    assert result.output["original_length"] == len(content)
    assert result.metadata["source"] == "extractive"


@pytest.mark.asyncio
async def test_summarize_requires_content():
    result = await SummarizeTool().execute(_params(content="   "))
    assert not result.success


def test_register_builtin_tools():
    registry = ToolRegistry()
    register_builtin_tools(registry)
    assert set(registry.names()) == {"calculate", "format_markdown", "summarize"}
