"""
Tool registry builder.

Called once at process start; the returned ToolRegistry is then shared
read-only by every agent run.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from toolsets import merge_toolsets, resolve_multiple_toolsets
from tools.basic_tools import register_basic_tools
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def build_tool_registry(
    *,
    enabled_toolsets: Optional[List[str]] = None,
    disabled_toolsets: Optional[List[str]] = None,
    extra_toolsets: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> ToolRegistry:
    """
    Build a ToolRegistry holding the tools selected by toolset names.

    ``enabled_toolsets`` defaults to everything. ``extra_toolsets`` are
    config-defined groupings layered over the built-in ones.
    """
    table: Dict[str, Dict[str, Any]] = merge_toolsets(extra_toolsets)
    enabled_toolsets = enabled_toolsets or ["all"]

    selected = set(resolve_multiple_toolsets(enabled_toolsets, table))
    if disabled_toolsets:
        selected -= set(resolve_multiple_toolsets(disabled_toolsets, table))

    reg = ToolRegistry()
    registered = register_basic_tools(reg, selected=selected)

    missing = sorted(selected - set(registered))
    if missing:
        logger.warning("Toolsets reference tools with no implementation: %s", ", ".join(missing))
    logger.debug("Tool registry built with %d tools: %s", len(reg), ", ".join(reg.names()))
    return reg
