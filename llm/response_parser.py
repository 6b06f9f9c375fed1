"""Interpret a normalized model reply as exactly one action.

Order (authoritative):
1. A structured function call on the reply is the action.
2. Otherwise, text that starts with ``{`` and carries the tool envelope marker
   (``"action": "tool"``) is parsed as ``{"action": "tool", "toolName",
   "toolArgs"}``. Any parse problem falls through to 3.
3. Otherwise the raw text is the final answer.

A reply with neither a function call nor text is unparsable. Parsing never
raises; the worst case for a reply with text is a final answer.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

_ENVELOPE_MARKER_RE = re.compile(r'"action"\s*:\s*"tool"')


@dataclass(frozen=True)
class FunctionCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class LLMResponse:
    """Provider-neutral model reply. ``raw`` keeps the SDK object for debugging."""

    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    reasoning: Optional[str] = None
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ToolCallAction:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class FinalAnswerAction:
    answer: str


@dataclass(frozen=True)
class UnparsableAction:
    error: str


ParsedAction = Union[ToolCallAction, FinalAnswerAction, UnparsableAction]


def normalize_tool_args(raw: Any) -> Tuple[Dict[str, Any], bool]:
    """Normalize function-call arguments into a dict.

    Returns: (args_dict, schema_valid)

    schema_valid is True only when the arguments decode directly into a dict
    (no double-decoding and no wrapping required). Never raises.
    """
    if raw is None:
        return {}, True
    if isinstance(raw, dict):
        return raw, True
    if not isinstance(raw, str):
        return {"input": raw}, False

    if not raw.strip():
        return {}, True
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {"input": raw}, False

    if isinstance(decoded, dict):
        return decoded, True

    if isinstance(decoded, str):
        s = decoded.strip()
        if s.startswith("{") and s.endswith("}"):
            try:
                decoded2 = json.loads(s)
            except json.JSONDecodeError:
                decoded2 = None
            if isinstance(decoded2, dict):
                return decoded2, False
        return {"input": decoded}, False

    return {"input": decoded}, False


def _parse_text_envelope(text: str) -> Optional[ToolCallAction]:
    if not text.strip().startswith("{") or not _ENVELOPE_MARKER_RE.search(text):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Tool envelope in text did not parse as JSON; treating as answer")
        return None
    if not isinstance(data, dict) or data.get("action") != "tool":
        return None
    tool_name = data.get("toolName")
    if not isinstance(tool_name, str) or not tool_name:
        return None
    args, _ = normalize_tool_args(data.get("toolArgs"))
    return ToolCallAction(name=tool_name, args=args)


def parse_response(response) -> ParsedAction:
    """Turn an ``LLMResponse`` into a ParsedAction."""
    function_call = getattr(response, "function_call", None)
    if function_call is not None and function_call.name:
        return ToolCallAction(
            name=function_call.name,
            args=dict(function_call.arguments or {}),
            call_id=function_call.call_id,
        )

    text = getattr(response, "text", None)
    if text and text.strip():
        envelope = _parse_text_envelope(text)
        if envelope is not None:
            return envelope
        return FinalAnswerAction(answer=text)

    return UnparsableAction(error="No valid response from LLM")


def extract_reasoning(message) -> Optional[str]:
    """
    Extract reasoning/thinking content from a provider message object.

    Providers return reasoning in several formats:
    1. message.reasoning - direct field (DeepSeek, Qwen, etc.)
    2. message.reasoning_content - alternative name (Moonshot AI, Novita, etc.)
    3. message.reasoning_details - array of {type, summary, ...} (OpenRouter unified)

    Returns the combined text, or None if there is none.
    """
    reasoning_parts: List[str] = []

    reasoning = getattr(message, "reasoning", None)
    if isinstance(reasoning, str) and reasoning:
        reasoning_parts.append(reasoning)

    reasoning_content = getattr(message, "reasoning_content", None)
    if isinstance(reasoning_content, str) and reasoning_content:
        if reasoning_content not in reasoning_parts:
            reasoning_parts.append(reasoning_content)

    details = getattr(message, "reasoning_details", None)
    if details:
        for detail in details:
            if isinstance(detail, dict):
                summary = detail.get("summary") or detail.get("content") or detail.get("text")
                if summary and summary not in reasoning_parts:
                    reasoning_parts.append(summary)

    if reasoning_parts:
        return "\n\n".join(reasoning_parts)
    return None
