"""Built-in tools.

``calculate`` is fully deterministic. ``format_markdown`` and ``summarize``
use a text generator when one is configured and fall back to deterministic
formatting or extractive summaries otherwise.
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any

import structlog

from training_camp.config import LLMRole
from training_camp.llm.generator import TextGenerator
from training_camp.tools.registry import Tool, ToolExecutionParams, ToolRegistry, ToolResult

log = structlog.get_logger(__name__)

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MAX_EXPONENT = 1000


def _text_arg(args: dict[str, Any], *names: str) -> str:
    for name in names:
        value = args.get(name)
        if isinstance(value, str) and value:
            return value
    return ""


# ---------------------------------------------------------------------------
# calculate
# ---------------------------------------------------------------------------


def safe_evaluate(expression: str) -> float | int:
    """Evaluate an arithmetic expression without ``eval``.

    Supports numbers, parentheses, unary +/- and ``+ - * / // % **``.
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("Invalid expression") from exc
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> float | int:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
            raise ValueError("Division by zero")
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError("Exponent too large")
        return _BINARY_OPS[type(node.op)](left, right)
    raise ValueError("Invalid expression")


def format_number(value: float | int) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.6f}".rstrip("0").rstrip(".")


class CalculateTool(Tool):
    name = "calculate"
    description = "Perform mathematical calculations and return results"

    async def execute(self, params: ToolExecutionParams) -> ToolResult:
        expression = _text_arg(params.arguments, "expression", "input")
        if not expression.strip():
            return ToolResult.fail("Mathematical expression is required")
        try:
            result = safe_evaluate(expression)
        except ValueError as exc:
            return ToolResult.fail(str(exc))
        return ToolResult.ok({
            "expression": expression,
            "result": result,
            "formatted": format_number(result),
        })


# ---------------------------------------------------------------------------
# format_markdown
# ---------------------------------------------------------------------------

_SIMPLE_FORMATS = ("list", "table", "code", "blockquote")

FORMAT_PROMPT = """You are a markdown formatting expert. Format the following content into a well-structured markdown document.

Requirements:
- Use appropriate heading levels (# ## ###)
- Add bullet points or numbered lists where appropriate
- Use emphasis for important terms
- Add code blocks for any code snippets
- Maintain clear paragraph separation
- Title: "{title}"

Return ONLY the formatted markdown, no explanation."""


def format_as_list(content: str) -> str:
    items = [item.strip() for item in re.split(r"[,;\n]+", content) if item.strip()]
    return "\n".join(f"- {item}" for item in items)


def format_as_table(content: str, headers: list[str] | None = None) -> str:
    rows = [[cell.strip() for cell in re.split(r"[,\t]+", line)] for line in content.split("\n")]
    effective_headers = headers or (rows[0] if rows else ["Column 1", "Column 2"])
    data_rows = rows if headers else rows[1:]

    lines = [
        f"| {' | '.join(effective_headers)} |",
        f"| {' | '.join('---' for _ in effective_headers)} |",
    ]
    lines.extend(f"| {' | '.join(row)} |" for row in data_rows)
    return "\n".join(lines) + "\n"


def format_as_code(content: str, language: str = "text") -> str:
    return f"```{language}\n{content}\n```"


def format_as_blockquote(content: str) -> str:
    return "\n".join(f"> {line}" for line in content.split("\n"))


def format_as_document(content: str, title: str = "Document") -> str:
    sections = re.split(r"\n\n+", content)
    parts = [f"# {title}", sections[0]]
    parts.extend(f"## Section {i}\n\n{section}" for i, section in enumerate(sections[1:], start=1))
    return "\n\n".join(parts).strip()


class FormatMarkdownTool(Tool):
    name = "format_markdown"
    description = "Format content as properly structured markdown"

    def __init__(self, generator: TextGenerator | None = None) -> None:
        self._generator = generator

    async def execute(self, params: ToolExecutionParams) -> ToolResult:
        args = params.arguments
        content = _text_arg(args, "content", "input")
        fmt = _text_arg(args, "format") or "document"
        if not content.strip():
            return ToolResult.fail("Content is required for formatting")

        if fmt in _SIMPLE_FORMATS:
            return self._format_simple(content, fmt, args)

        if self._generator is not None and self._generator.is_configured(LLMRole.ACTING):
            title = _text_arg(args, "title") or "Document"
            try:
                formatted = await self._generator.generate(
                    FORMAT_PROMPT.format(title=title),
                    content,
                    temperature=0.2,
                    max_tokens=2048,
                    role=LLMRole.ACTING,
                )
            except Exception as exc:
                log.warning("format_generation_failed", error=str(exc))
            else:
                return ToolResult.ok(
                    {"original": content, "formatted": formatted.strip(), "format": fmt},
                    source="llm",
                )
        return self._format_simple(content, "document", args)

    @staticmethod
    def _format_simple(content: str, fmt: str, args: dict[str, Any]) -> ToolResult:
        if fmt == "list":
            formatted = format_as_list(content)
        elif fmt == "table":
            headers = args.get("headers")
            formatted = format_as_table(content, headers if isinstance(headers, list) else None)
        elif fmt == "code":
            formatted = format_as_code(content, _text_arg(args, "language") or "text")
        elif fmt == "blockquote":
            formatted = format_as_blockquote(content)
        else:
            formatted = format_as_document(content, _text_arg(args, "title") or "Document")
        return ToolResult.ok({"original": content, "formatted": formatted, "format": fmt})


# ---------------------------------------------------------------------------
# summarize
# ---------------------------------------------------------------------------

_LENGTH_GUIDE = {
    "short": "1-2 sentences (about 30-50 words)",
    "medium": "3-4 sentences (about 75-100 words)",
    "long": "5-7 sentences (about 150-200 words)",
}
_EXTRACTIVE_SENTENCES = {"short": 2, "medium": 4, "long": 7}

SUMMARIZE_PROMPT = """You are a summarization expert. Create a {length} summary.

Target length: {guide}

Guidelines:
- Capture the key points and main ideas
- Maintain the original tone and intent
- Be concise but comprehensive
- Do not add information not in the original

Return ONLY the summary text, no preamble or explanation."""


def extractive_summary(content: str, length: str = "medium") -> str:
    """Leading sentences of ``content``; the count depends on ``length``."""
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", content.strip()) if s.strip()]
    return " ".join(sentences[: _EXTRACTIVE_SENTENCES.get(length, 4)])


class SummarizeTool(Tool):
    name = "summarize"
    description = "Generate a summary of the provided content"

    def __init__(self, generator: TextGenerator | None = None) -> None:
        self._generator = generator

    async def execute(self, params: ToolExecutionParams) -> ToolResult:
        content = _text_arg(params.arguments, "content", "input")
        length = _text_arg(params.arguments, "length")
        if length not in _LENGTH_GUIDE:
            length = "medium"
        if not content.strip():
            return ToolResult.fail("Content is required for summarization")

        source = "extractive"
        summary = ""
        if self._generator is not None and self._generator.is_configured(LLMRole.ACTING):
            try:
                summary = (await self._generator.generate(
                    SUMMARIZE_PROMPT.format(length=length, guide=_LENGTH_GUIDE[length]),
                    content[:8000],
                    temperature=0.3,
                    max_tokens=512,
                    role=LLMRole.ACTING,
                )).strip()
                source = "llm"
            except Exception as exc:
                log.warning("summarize_generation_failed", error=str(exc))
        if not summary:
            summary = extractive_summary(content, length)
            source = "extractive"

        return ToolResult.ok(
            {
                "original_length": len(content),
                "summary_length": len(summary),
                "compression_ratio": round(len(summary) / len(content), 2),
                "summary": summary,
            },
            source=source,
        )


def builtin_tools(generator: TextGenerator | None = None) -> list[Tool]:
    return [CalculateTool(), FormatMarkdownTool(generator), SummarizeTool(generator)]


def register_builtin_tools(registry: ToolRegistry, generator: TextGenerator | None = None) -> None:
    """Register every built-in tool with ``registry``."""
    registry.register_all(builtin_tools(generator))
