"""Conversation messages and the per-run message log.

A run's transcript is an ordered, append-only list of four message kinds:

    UserMessage         -- text supplied by the caller
    ToolCallMessage     -- the model asked for a tool
    FinalAnswerMessage  -- the model answered
    ToolResultMessage   -- the outcome of a tool call (or a synthetic error)

Invariant: every ToolCallMessage is followed, before the next model message,
by exactly one ToolResultMessage carrying the same tool_call_id.
Synthetic error results use ``tool_call_id=None`` and answer no call.

``MessageLog.to_provider_format()`` produces OpenAI chat-completions dicts,
the shape the LLM gateway consumes for every provider.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Union


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class ToolCallMessage:
    tool_name: str
    tool_args: Dict[str, Any]
    tool_call_id: str
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class FinalAnswerMessage:
    answer: str
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class ToolResultMessage:
    tool_call_id: Optional[str]
    tool_name: str
    result_text: str
    result_data: Any = None
    is_error: bool = False
    error_text: Optional[str] = None


Message = Union[UserMessage, ToolCallMessage, FinalAnswerMessage, ToolResultMessage]

MESSAGE_TYPES = (UserMessage, ToolCallMessage, FinalAnswerMessage, ToolResultMessage)


def _unknown_message(msg) -> TypeError:
    return TypeError(f"Unknown message type: {type(msg).__name__}")


def message_to_provider_format(msg: Message) -> Optional[Dict[str, Any]]:
    """Map one message to its wire dict, or None when it has no wire form."""
    if isinstance(msg, UserMessage):
        return {"role": "user", "content": msg.text}
    if isinstance(msg, ToolCallMessage):
        return {
            "role": "assistant",
            "content": msg.reasoning,
            "tool_calls": [
                {
                    "id": msg.tool_call_id,
                    "type": "function",
                    "function": {
                        "name": msg.tool_name,
                        "arguments": json.dumps(msg.tool_args or {}, ensure_ascii=False),
                    },
                }
            ],
        }
    if isinstance(msg, FinalAnswerMessage):
        return {"role": "assistant", "content": msg.answer}
    if isinstance(msg, ToolResultMessage):
        # A tool-role message must answer a call; synthetic errors answer none.
        if msg.tool_call_id is None:
            return None
        return {
            "role": "tool",
            "tool_call_id": msg.tool_call_id,
            "name": msg.tool_name,
            "content": msg.result_text,
        }
    raise _unknown_message(msg)


def find_pairing_violations(messages: Iterable[Message]) -> List[str]:
    """Return human-readable descriptions of every call/result pairing breach.

    An empty list means the log satisfies the pairing invariant.
    """
    problems: List[str] = []
    pending: Optional[ToolCallMessage] = None
    results_for_pending = 0

    def _close_pending():
        if pending is not None and results_for_pending != 1:
            problems.append(
                f"tool call {pending.tool_call_id} ({pending.tool_name}) has "
                f"{results_for_pending} results"
            )

    for index, msg in enumerate(messages):
        if isinstance(msg, (ToolCallMessage, FinalAnswerMessage)):
            _close_pending()
            pending = msg if isinstance(msg, ToolCallMessage) else None
            results_for_pending = 0
        elif isinstance(msg, ToolResultMessage):
            if msg.tool_call_id is None:
                continue
            if pending is not None and msg.tool_call_id == pending.tool_call_id:
                results_for_pending += 1
            else:
                problems.append(
                    f"tool result at index {index} ({msg.tool_call_id}) answers no open call"
                )
        elif isinstance(msg, UserMessage):
            continue
        else:
            raise _unknown_message(msg)
    _close_pending()
    return problems


class MessageLog:
    """Ordered, append-only conversation owned by a single run."""

    def __init__(self, messages: Optional[Iterable[Message]] = None):
        self._messages: List[Message] = []
        if messages is not None:
            self.extend(messages)

    def append(self, msg: Message) -> None:
        if not isinstance(msg, MESSAGE_TYPES):
            raise _unknown_message(msg)
        self._messages.append(msg)

    def extend(self, messages: Iterable[Message]) -> None:
        for msg in messages:
            self.append(msg)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, MessageLog):
            return self._messages == other._messages
        return NotImplemented

    def __repr__(self) -> str:
        return f"MessageLog({len(self._messages)} messages)"

    @property
    def messages(self) -> List[Message]:
        """A copy of the messages; mutating it does not touch the log."""
        return list(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def copy(self) -> "MessageLog":
        return MessageLog(self._messages)

    def to_provider_format(self) -> List[Dict[str, Any]]:
        wire = []
        for msg in self._messages:
            entry = message_to_provider_format(msg)
            if entry is not None:
                wire.append(entry)
        return wire

    def filter_for_handoff(self, allowed_tool_names: Optional[Set[str]] = None) -> "MessageLog":
        """Select the messages transferred to a handoff target.

        User messages and final answers are always kept. A tool call and its
        result are kept (together) only if ``allowed_tool_names`` is None or
        contains the tool's name.
        """
        if allowed_tool_names is None:
            return self.copy()

        kept_call_ids: Set[str] = set()
        filtered = MessageLog()
        for msg in self._messages:
            if isinstance(msg, (UserMessage, FinalAnswerMessage)):
                filtered.append(msg)
            elif isinstance(msg, ToolCallMessage):
                if msg.tool_name in allowed_tool_names:
                    kept_call_ids.add(msg.tool_call_id)
                    filtered.append(msg)
            elif isinstance(msg, ToolResultMessage):
                if msg.tool_call_id is None:
                    if msg.tool_name in allowed_tool_names:
                        filtered.append(msg)
                elif msg.tool_call_id in kept_call_ids:
                    filtered.append(msg)
            else:
                raise _unknown_message(msg)
        return filtered

    def pairing_violations(self) -> List[str]:
        return find_pairing_violations(self._messages)


def coerce_message_log(messages) -> MessageLog:
    """Accept a MessageLog, an iterable of messages, or a bare user string."""
    if isinstance(messages, MessageLog):
        return messages.copy()
    if isinstance(messages, str):
        return MessageLog([UserMessage(text=messages)])
    if messages is None:
        return MessageLog()
    return MessageLog(messages)
