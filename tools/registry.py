"""
Tool registry and the single execute boundary.

Tools follow a simple pattern:
1. Register a schema (name, description, parameters) and a handler
2. The handler takes the argument dict and returns any JSON-like value
   (or ``{"error": "..."}``); it may be sync or async, and may raise
3. ``ToolRegistry.execute()`` turns whatever happened into exactly one
   ToolSuccess / ToolFailure

Nothing past this module inspects raw tool return shapes.
"""

import asyncio
import concurrent.futures
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from agent.errors import ToolExecutionError

logger = logging.getLogger(__name__)

# Sync handlers run here so a slow tool never blocks the event loop that
# drives other runs.
_tool_executor = concurrent.futures.ThreadPoolExecutor(max_workers=32)


@dataclass(frozen=True)
class ToolSuccess:
    data: Any = None


@dataclass(frozen=True)
class ToolFailure:
    message: str
    data: Any = None
    error: Optional[ToolExecutionError] = None


ToolOutcome = Union[ToolSuccess, ToolFailure]


def classify_tool_output(raw: Any) -> ToolOutcome:
    """Classify a raw tool return value.

    A dict with a truthy ``error`` field, or with ``success`` explicitly
    False, is a failure. Everything else is a success. A payload that
    legitimately carries an ``error`` key is still classified as a failure.

    The message is only ever taken from a string ``error`` / ``message``
    field; structured payloads are rendered later from ``data`` with
    binary fields stripped.
    """
    if isinstance(raw, dict):
        error = raw.get("error")
        if error:
            if isinstance(error, str):
                return ToolFailure(message=error, data=raw)
            return ToolFailure(message="Tool reported an error", data=raw)
        if raw.get("success") is False:
            message = raw.get("message")
            if not isinstance(message, str) or not message:
                message = "Tool reported failure"
            return ToolFailure(message=message, data=raw)
    return ToolSuccess(data=raw)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[[Dict[str, Any]], Any] = field(compare=False)
    toolset: str = "default"
    is_async: bool = False
    check_fn: Optional[Callable[[], bool]] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to OpenAI-compatible (nested) function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


class ToolRegistry:
    """Registry of available tools, populated once at startup."""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: Callable[[Dict[str, Any]], Any],
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        toolset: str = "default",
        is_async: Optional[bool] = None,
        check_fn: Optional[Callable[[], bool]] = None,
    ) -> ToolSpec:
        if not name:
            raise ValueError("Tool name is required")
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered")
        if is_async is None:
            is_async = inspect.iscoroutinefunction(handler)
        spec = ToolSpec(
            name=name,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            handler=handler,
            toolset=toolset,
            is_async=is_async,
            check_fn=check_fn,
        )
        self._tools[name] = spec
        return spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def available(self, name: str) -> bool:
        """Registered and (if it has one) passing its requirements check."""
        spec = self._tools.get(name)
        if spec is None:
            return False
        if spec.check_fn is None:
            return True
        try:
            return bool(spec.check_fn())
        except Exception as e:
            logger.warning("Requirements check for tool '%s' failed: %s", name, e)
            return False

    def get_definitions(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """OpenAI-format schemas for ``names`` (all tools when None), in registry order."""
        wanted = None if names is None else set(names)
        return [
            spec.to_dict()
            for spec in self._tools.values()
            if (wanted is None or spec.name in wanted) and self.available(spec.name)
        ]

    async def execute(self, name: str, args: Dict[str, Any]) -> ToolOutcome:
        """Run a tool and normalize the outcome. Never raises for tool errors."""
        spec = self._tools.get(name)
        if spec is None:
            error = ToolExecutionError(name, f"Unknown tool: {name}")
            return ToolFailure(message=error.message, error=error)

        try:
            if spec.is_async:
                raw = await spec.handler(args)
            else:
                loop = asyncio.get_running_loop()
                raw = await loop.run_in_executor(_tool_executor, spec.handler, args)
                # Sync wrappers around coroutines still hand back an awaitable.
                if inspect.isawaitable(raw):
                    raw = await raw
        except Exception as e:
            message = f"Error during tool execution: {type(e).__name__}: {e}"
            logger.error("Tool '%s' raised: %s", name, e)
            error = ToolExecutionError(name, message, cause=e)
            return ToolFailure(message=message, data={"error": message}, error=error)

        return classify_tool_output(raw)
