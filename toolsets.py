#!/usr/bin/env python3
"""
Toolsets Module

Named groups of tool names. Agents in config.yaml may list toolsets instead
of (or in addition to) individual tools; ``resolve_multiple_toolsets`` expands
them. Toolsets may include other toolsets.
"""

from typing import Any, Dict, List, Mapping, Optional, Set


TOOLSETS: Dict[str, Dict[str, Any]] = {
    "math": {
        "description": "Arithmetic on two operands",
        "tools": ["calculator"],
        "includes": []
    },
    "clock": {
        "description": "Current date and time",
        "tools": ["current_time"],
        "includes": []
    },
    "basic": {
        "description": "All built-in tools that need no external services",
        "tools": [],
        "includes": ["math", "clock"]
    },
}


def merge_toolsets(extra: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Dict[str, Dict[str, Any]]:
    """Return a copy of TOOLSETS with ``extra`` (e.g. from config.yaml) layered on top."""
    merged = {name: dict(ts) for name, ts in TOOLSETS.items()}
    for name, toolset in (extra or {}).items():
        merged[name] = {
            "description": toolset.get("description", ""),
            "tools": list(toolset.get("tools", [])),
            "includes": list(toolset.get("includes", [])),
        }
    return merged


def get_toolset(name: str, toolsets: Optional[Mapping[str, Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
    return (toolsets if toolsets is not None else TOOLSETS).get(name)


def resolve_toolset(
    name: str,
    visited: Set[str] = None,
    toolsets: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> List[str]:
    table = toolsets if toolsets is not None else TOOLSETS
    if visited is None:
        visited = set()
    if name in {"all", "*"}:
        all_tools: Set[str] = set()
        for toolset_name in table:
            all_tools.update(resolve_toolset(toolset_name, visited.copy(), table))
        return sorted(all_tools)
    if name in visited:
        return []
    visited.add(name)
    toolset = table.get(name)
    if not toolset:
        return []
    tools = set(toolset.get("tools", []))
    for included_name in toolset.get("includes", []):
        tools.update(resolve_toolset(included_name, visited.copy(), table))
    return sorted(tools)


def resolve_multiple_toolsets(
    toolset_names: List[str],
    toolsets: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> List[str]:
    all_tools = set()
    for name in toolset_names:
        all_tools.update(resolve_toolset(name, toolsets=toolsets))
    return sorted(all_tools)


def validate_toolset(name: str, toolsets: Optional[Mapping[str, Dict[str, Any]]] = None) -> bool:
    if name in {"all", "*"}:
        return True
    return name in (toolsets if toolsets is not None else TOOLSETS)


def get_toolset_info(name: str, toolsets: Optional[Mapping[str, Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
    toolset = get_toolset(name, toolsets)
    if not toolset:
        return None
    resolved_tools = resolve_toolset(name, toolsets=toolsets)
    return {
        "name": name,
        "description": toolset["description"],
        "direct_tools": toolset["tools"],
        "includes": toolset["includes"],
        "resolved_tools": resolved_tools,
        "tool_count": len(resolved_tools),
        "is_composite": len(toolset["includes"]) > 0
    }
