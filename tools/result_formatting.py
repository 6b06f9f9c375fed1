"""Text rendering of tool outcomes for the transcript.

The model only ever sees ``format_result_text()`` output. Large binary or
image payloads (screenshots, base64 blobs, data: URIs) are stripped from the
text; callers still get the raw value through ``ToolResultMessage.result_data``.
"""

import json
import re
from typing import Any

from relay_constants import MAX_TOOL_RESULT_CHARS
from tools.registry import ToolFailure, ToolSuccess

# Field names whose values are binary payloads regardless of size.
BINARY_FIELD_NAMES = frozenset({
    "imageData", "image_data", "image_base64",
    "screenshot", "screenshotData",
    "audio_data", "audioData",
    "binary", "bytes_base64",
})

# Strings at least this long that look like base64 are treated as binary.
BASE64_MIN_CHARS = 1024

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\r\n]+={0,2}\s*$")
_MIXED_CASE_RE = re.compile(r"(?=.*[a-z])(?=.*[A-Z])", re.S)

BINARY_PLACEHOLDER = "[binary data omitted]"


def _looks_binary(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return True
    if not isinstance(value, str):
        return False
    if value.startswith("data:") and ";base64," in value[:100]:
        return True
    return (
        len(value) >= BASE64_MIN_CHARS
        and bool(_BASE64_RE.match(value))
        and bool(_MIXED_CASE_RE.match(value))
    )


def strip_binary_fields(value: Any) -> Any:
    """Return a copy of ``value`` with binary payloads removed, recursively."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if key in BINARY_FIELD_NAMES or _looks_binary(item):
                continue
            cleaned[key] = strip_binary_fields(item)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [strip_binary_fields(item) for item in value if not _looks_binary(item)]
    return value


def truncate_text(text: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n...[truncated {len(text) - limit} chars]"


def stringify_tool_output(value: Any) -> str:
    """Canonical text form of a raw tool value (binary fields removed)."""
    if value is None:
        return ""
    if _looks_binary(value):
        return BINARY_PLACEHOLDER
    if isinstance(value, str):
        return value
    cleaned = strip_binary_fields(value)
    try:
        return json.dumps(cleaned, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(cleaned)


def _failure_text(outcome: ToolFailure) -> str:
    data = outcome.data
    if isinstance(data, dict):
        error = data.get("error")
        if error and not isinstance(error, str):
            return stringify_tool_output(error)
        message = data.get("message")
        if not error and not (isinstance(message, str) and message):
            # success=False with nothing but payload fields
            return stringify_tool_output(data)
    return stringify_tool_output(outcome.message)


def format_result_text(outcome) -> str:
    """Transcript text for a ToolSuccess / ToolFailure."""
    if isinstance(outcome, ToolSuccess):
        return truncate_text(stringify_tool_output(outcome.data))
    if isinstance(outcome, ToolFailure):
        return truncate_text(_failure_text(outcome))
    raise TypeError(f"Unknown tool outcome: {type(outcome).__name__}")
