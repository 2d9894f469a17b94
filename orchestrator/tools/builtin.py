"""
Built-in Tools
==============

Small self-contained tools that need no external service. They make the
command-line pipeline useful out of the box and exercise the full tool loop.

- utility_current_time: current date/time in a timezone
- utility_calculate: arithmetic on an expression (no names, no calls)
"""

import ast
import operator
from dataclasses import replace
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from orchestrator.tools import MCPTool, ToolDefinition, ToolErrorCode, ToolOutcome, ToolRegistry

# ==============================================================================
# Tool: Current Time
# ==============================================================================


async def _current_time(params: dict, auth: dict) -> ToolOutcome:
    """Return the current time in the requested timezone (UTC by default)."""
    name = params.get("timezone") or "UTC"
    try:
        zone = timezone.utc if name.upper() == "UTC" else ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ToolOutcome(
            success=False,
            error=f"Unknown timezone '{name}'; use an IANA name such as 'Europe/Berlin'",
            error_code=ToolErrorCode.INVALID_ARGUMENTS,
        )
    now = datetime.now(zone)
    return ToolOutcome(success=True, payload={"timezone": name, "iso": now.isoformat(), "weekday": now.strftime("%A")})


current_time_tool = MCPTool(
    definition=ToolDefinition(
        name="utility_current_time",
        description="Get the current date and time. Use when the user asks what time or day it is.",
        parameters={
            "type": "object",
            "properties": {
                "timezone": {"type": "string", "description": "IANA timezone name, e.g. 'America/New_York'"}
            },
        },
    ),
    execute=_current_time,
)


# ==============================================================================
# Tool: Calculate
# ==============================================================================

_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


def evaluate(expression: str) -> float:
    """
    Evaluate an arithmetic expression.

    Raises:
        ValueError: On anything but numbers and arithmetic operators
    """
    def walk(node):
        if isinstance(node, ast.Expression):
            return walk(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _OPERATORS:
            left, right = walk(node.left), walk(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > 100:
                raise ValueError("Exponent too large")
            return _OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in _OPERATORS:
            return _OPERATORS[type(node.op)](walk(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {e.msg}") from e
    return walk(tree)


async def _calculate(params: dict, auth: dict) -> ToolOutcome:
    expression = params["expression"]
    try:
        result = evaluate(expression)
    except ZeroDivisionError:
        return ToolOutcome(success=False, error="Division by zero", error_code=ToolErrorCode.INVALID_ARGUMENTS)
    except ValueError as e:
        return ToolOutcome(success=False, error=str(e), error_code=ToolErrorCode.INVALID_ARGUMENTS)
    return ToolOutcome(success=True, payload={"expression": expression, "result": result})


calculate_tool = MCPTool(
    definition=ToolDefinition(
        name="utility_calculate",
        description="Evaluate an arithmetic expression, e.g. '(12.5 * 4) / 3'.",
        parameters={
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "Arithmetic expression"}
            },
            "required": ["expression"],
        },
    ),
    execute=_calculate,
)


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    """Register the built-in tools on `registry`."""
    for tool in (current_time_tool, calculate_tool):
        registry.register(replace(tool))
    return registry
