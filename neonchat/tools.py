import ast
import logging
import math
import operator
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .llm import GatewayClient, first_message
from .schemas import ToolCall, ToolResult


logger = logging.getLogger("uvicorn.error")

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "web_search",
        "description": (
            "Search the web for up-to-date information on any topic. Use it when the user asks about recent "
            "events, specific data, or anything that may have changed since training."
        ),
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "The search query"}},
            "required": ["query"],
        },
    },
    {
        "name": "math",
        "description": (
            "Evaluate arithmetic expressions precisely. Use it for numeric calculations, conversions, "
            "and percentages."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "The arithmetic expression to evaluate (e.g. 2+2, 15*3.14, 100/7)",
                }
            },
            "required": ["expression"],
        },
    },
]

WEB_SEARCH_SYSTEM = (
    "You are a web search assistant. When given a search query, provide the most accurate, up-to-date "
    "information you can about the topic. Include specific facts, dates, numbers, and sources when possible. "
    "Format as a concise research brief. Always respond in the same language as the query."
)

_MATH_ALLOWED_RE = re.compile(r"^[0-9+\-*/^().\s]+$")
_IMPLICIT_MUL_RE = re.compile(r"(\d|\))\s*\(")
MAX_EXPONENT = 1000

MATH_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}
MATH_UNARY_OPS = {ast.UAdd: lambda v: v, ast.USub: lambda v: -v}


def tools_for_gateway() -> List[Dict[str, Any]]:
    """Tool schema in OpenAI function-calling form."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": {
                    "type": "object",
                    "properties": tool["parameters"]["properties"],
                    "required": tool["parameters"]["required"],
                    "additionalProperties": False,
                },
            },
        }
        for tool in TOOL_DEFINITIONS
    ]


def normalize_math_expression(expression: str) -> str:
    expr = expression.replace("^", "**")
    return _IMPLICIT_MUL_RE.sub(r"\1*(", expr)


def _safe_pow(base: Any, exponent: Any) -> Any:
    if abs(exponent) > MAX_EXPONENT:
        raise OverflowError("exponent too large")
    return operator.pow(base, exponent)


def _eval_math_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_math_node(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in MATH_BIN_OPS:
        left = _eval_math_node(node.left)
        right = _eval_math_node(node.right)
        if isinstance(node.op, ast.Pow):
            return _safe_pow(left, right)
        return MATH_BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in MATH_UNARY_OPS:
        return MATH_UNARY_OPS[type(node.op)](_eval_math_node(node.operand))
    raise ValueError("unsupported syntax")


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return repr(value) if isinstance(value, float) else str(value)


def evaluate_math(expression: str) -> str:
    """Evaluate a basic arithmetic expression; every outcome is returned as text."""
    expression = str(expression or "")
    if not expression.strip() or not _MATH_ALLOWED_RE.match(expression):
        return (
            f'Unsupported expression: "{expression}". '
            "Use only numbers and basic operators (+, -, *, /, ^, ())."
        )
    try:
        tree = ast.parse(normalize_math_expression(expression).strip(), mode="eval")
        result = _eval_math_node(tree)
    except (ZeroDivisionError, OverflowError):
        return f'Invalid result for: "{expression}"'
    except (SyntaxError, ValueError, TypeError) as exc:
        reason = exc.msg if isinstance(exc, SyntaxError) else str(exc)
        return f'Error evaluating "{expression}": {reason}'
    if isinstance(result, bool) or not isinstance(result, (int, float)):
        return f'Invalid result for: "{expression}"'
    if isinstance(result, float) and not math.isfinite(result):
        return f'Invalid result for: "{expression}"'
    try:
        formatted = _format_number(result)
    except ValueError:
        # Integers past the interpreter's digit limit cannot be rendered.
        return f'Invalid result for: "{expression}"'
    return f"{expression} = {formatted}"


@dataclass
class ToolOutcome:
    output: str
    duration_ms: int


class ToolExecutor:
    """Runs a single named tool. Never raises: failures come back as output text."""

    def __init__(self, gateway: GatewayClient, search_model: str):
        self.gateway = gateway
        self.search_model = search_model

    async def web_search(self, query: str) -> str:
        try:
            data = await self.gateway.chat_completion(
                model=self.search_model,
                messages=[
                    {"role": "system", "content": WEB_SEARCH_SYSTEM},
                    {
                        "role": "user",
                        "content": f'Search query: "{query}"\n\nProvide comprehensive, factual information about this topic.',
                    },
                ],
                temperature=0.3,
            )
        except Exception as exc:
            logger.warning("Web search failed for %r: %s", query, exc)
            return f"Search error: {exc}"
        content = first_message(data).get("content")
        return content if isinstance(content, str) and content.strip() else "No results found."

    async def execute(self, tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> ToolOutcome:
        tool_input = tool_input or {}
        start = time.monotonic()
        if tool_name == "web_search":
            query = str(tool_input.get("query") or "").strip()
            output = await self.web_search(query) if query else "Search error: empty query"
        elif tool_name == "math":
            output = evaluate_math(tool_input.get("expression", ""))
        else:
            output = f'Tool "{tool_name}" not found.'
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolOutcome(output=output, duration_ms=duration_ms)

    async def run_call(self, call: ToolCall) -> ToolResult:
        outcome = await self.execute(call.tool_name, call.arguments)
        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.tool_name,
            output=outcome.output,
            duration_ms=outcome.duration_ms,
        )
