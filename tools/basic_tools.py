"""General-purpose tools that need no external services."""

import math
import operator
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from tools.registry import ToolRegistry

_OPERATIONS = {
    "add": operator.add,
    "subtract": operator.sub,
    "multiply": operator.mul,
    "divide": operator.truediv,
    "power": operator.pow,
}


def _as_number(value: Any):
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text) if text.lstrip("+-").isdigit() else float(text)
    raise ValueError(f"not a number: {value!r}")


def calculator_handler(args: Dict[str, Any]) -> Dict[str, Any]:
    op = str(args.get("op", "")).lower()
    if op not in _OPERATIONS:
        return {"error": f"Unsupported operation '{op}'. Use one of: {', '.join(_OPERATIONS)}"}
    try:
        a = _as_number(args.get("a"))
        b = _as_number(args.get("b"))
    except ValueError as e:
        return {"error": f"Invalid operand: {e}"}
    if op == "divide" and b == 0:
        return {"error": "Division by zero"}
    try:
        result = _OPERATIONS[op](a, b)
    except OverflowError:
        return {"error": "Result is not a finite number"}
    if isinstance(result, float) and not math.isfinite(result):
        return {"error": "Result is not a finite number"}
    if isinstance(result, float) and result.is_integer() and op != "divide":
        result = int(result)
    return {"result": result}


CALCULATOR_SCHEMA = {
    "type": "object",
    "properties": {
        "op": {
            "type": "string",
            "enum": list(_OPERATIONS),
            "description": "Arithmetic operation to apply",
        },
        "a": {"type": "number", "description": "Left operand"},
        "b": {"type": "number", "description": "Right operand"},
    },
    "required": ["op", "a", "b"],
}


def current_time_handler(args: Dict[str, Any]) -> Dict[str, Any]:
    offset_hours = args.get("utc_offset_hours", 0) or 0
    try:
        offset = timedelta(hours=float(offset_hours))
        tz = timezone(offset)
    except (TypeError, ValueError) as e:
        return {"error": f"Invalid utc_offset_hours: {e}"}
    now = datetime.now(tz)
    return {"iso": now.isoformat(timespec="seconds"), "weekday": now.strftime("%A")}


CURRENT_TIME_SCHEMA = {
    "type": "object",
    "properties": {
        "utc_offset_hours": {
            "type": "number",
            "description": "Hours east of UTC (default 0)",
        },
    },
    "required": [],
}


BASIC_TOOLS = (
    (
        "calculator",
        calculator_handler,
        "Evaluate one arithmetic operation (add, subtract, multiply, divide, power) on two numbers.",
        CALCULATOR_SCHEMA,
        "math",
    ),
    (
        "current_time",
        current_time_handler,
        "Get the current date and time, optionally in a fixed UTC offset.",
        CURRENT_TIME_SCHEMA,
        "clock",
    ),
)


def register_basic_tools(registry: ToolRegistry, selected: Optional[Set[str]] = None) -> List[str]:
    """Register the built-in tools (only those in ``selected`` when given)."""
    registered = []
    for name, handler, description, schema, toolset in BASIC_TOOLS:
        if selected is not None and name not in selected:
            continue
        registry.register(
            name,
            handler,
            description=description,
            parameters=schema,
            toolset=toolset,
        )
        registered.append(name)
    return registered
