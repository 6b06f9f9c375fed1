"""
Tools Package

- registry: ToolRegistry, ToolSpec, and the Success/Failure execute boundary
- result_formatting: transcript text for tool outcomes (binary payloads stripped)
- basic_tools: built-in tools that need no external services
- build_registry: builds the startup registry from toolset names

Tool implementations never import the agent loop; the loop only talks to
``ToolRegistry``.
"""

from tools.registry import (
    ToolFailure,
    ToolOutcome,
    ToolRegistry,
    ToolSpec,
    ToolSuccess,
    classify_tool_output,
)
from tools.build_registry import build_tool_registry

__all__ = [
    "ToolFailure",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
    "ToolSuccess",
    "build_tool_registry",
    "classify_tool_output",
]
