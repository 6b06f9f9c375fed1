"""Tests for agent.messages -- wire format, pairing check and handoff filtering."""

import json

import pytest

from agent.messages import (
    FinalAnswerMessage,
    MessageLog,
    ToolCallMessage,
    ToolResultMessage,
    UserMessage,
    coerce_message_log,
    find_pairing_violations,
)


def _pair(name, call_id, text="ok"):
    return [
        ToolCallMessage(tool_name=name, tool_args={"x": 1}, tool_call_id=call_id),
        ToolResultMessage(tool_call_id=call_id, tool_name=name, result_text=text),
    ]


def _research_log():
    log = MessageLog([UserMessage("find things")])
    log.extend(_pair("search", "c1"))
    log.extend(_pair("fetch", "c2"))
    log.extend(_pair("search", "c3"))
    log.append(FinalAnswerMessage("done"))
    return log


class TestProviderFormat:
    def test_user_and_final(self):
        log = MessageLog([UserMessage("hi"), FinalAnswerMessage("hello")])
        assert log.to_provider_format() == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_tool_call_and_result(self):
        log = MessageLog(_pair("calculator", "call_1", text="4"))
        call, result = log.to_provider_format()

        assert call["role"] == "assistant"
        assert call["tool_calls"][0]["id"] == "call_1"
        assert call["tool_calls"][0]["function"]["name"] == "calculator"
        assert json.loads(call["tool_calls"][0]["function"]["arguments"]) == {"x": 1}
        assert result == {"role": "tool", "tool_call_id": "call_1", "name": "calculator", "content": "4"}

    def test_reasoning_is_assistant_content(self):
        msg = ToolCallMessage(tool_name="t", tool_args={}, tool_call_id="c", reasoning="thinking")
        assert MessageLog([msg]).to_provider_format()[0]["content"] == "thinking"

    def test_synthetic_error_has_no_wire_form(self):
        log = MessageLog([
            UserMessage("hi"),
            ToolResultMessage(tool_call_id=None, tool_name="system_error",
                              result_text="Error: boom", is_error=True, error_text="boom"),
        ])
        assert log.to_provider_format() == [{"role": "user", "content": "hi"}]

    def test_unknown_message_rejected(self):
        log = MessageLog()
        with pytest.raises(TypeError):
            log.append({"role": "user", "content": "raw dict"})


class TestPairing:
    def test_valid_log(self):
        assert _research_log().pairing_violations() == []

    def test_missing_result(self):
        messages = [
            ToolCallMessage(tool_name="a", tool_args={}, tool_call_id="c1"),
            FinalAnswerMessage("too early"),
        ]
        problems = find_pairing_violations(messages)
        assert len(problems) == 1
        assert "c1" in problems[0]

    def test_duplicate_result(self):
        messages = _pair("a", "c1") + [
            ToolResultMessage(tool_call_id="c1", tool_name="a", result_text="again"),
        ]
        assert len(find_pairing_violations(messages)) == 1

    def test_orphan_result(self):
        messages = [ToolResultMessage(tool_call_id="nope", tool_name="a", result_text="?")]
        assert "answers no open call" in find_pairing_violations(messages)[0]

    def test_synthetic_errors_are_ignored(self):
        messages = [
            UserMessage("hi"),
            ToolResultMessage(tool_call_id=None, tool_name="system_error", result_text="Error: x"),
        ]
        assert find_pairing_violations(messages) == []


class TestFilterForHandoff:
    def test_none_keeps_everything(self):
        log = _research_log()
        assert log.filter_for_handoff(None) == log

    def test_keeps_only_allowed_pairs(self):
        filtered = _research_log().filter_for_handoff({"search"})

        calls = [m for m in filtered if isinstance(m, ToolCallMessage)]
        results = [m for m in filtered if isinstance(m, ToolResultMessage)]
        assert [c.tool_call_id for c in calls] == ["c1", "c3"]
        assert [r.tool_call_id for r in results] == ["c1", "c3"]
        assert isinstance(filtered[0], UserMessage)
        assert isinstance(filtered.last, FinalAnswerMessage)
        assert filtered.pairing_violations() == []

    def test_empty_set_drops_all_tool_traffic(self):
        filtered = _research_log().filter_for_handoff(set())
        assert [type(m) for m in filtered] == [UserMessage, FinalAnswerMessage]

    def test_original_untouched(self):
        log = _research_log()
        log.filter_for_handoff({"fetch"})
        assert len(log) == 8


class TestMessageLog:
    def test_messages_property_is_a_copy(self):
        log = MessageLog([UserMessage("hi")])
        log.messages.append(UserMessage("sneaky"))
        assert len(log) == 1

    def test_copy_is_independent(self):
        log = MessageLog([UserMessage("hi")])
        clone = log.copy()
        clone.append(FinalAnswerMessage("x"))
        assert len(log) == 1
        assert len(clone) == 2

    def test_last(self):
        assert MessageLog().last is None
        assert MessageLog([UserMessage("a"), UserMessage("b")]).last == UserMessage("b")


class TestCoerce:
    def test_string(self):
        assert coerce_message_log("hi") == MessageLog([UserMessage("hi")])

    def test_none(self):
        assert len(coerce_message_log(None)) == 0

    def test_list(self):
        assert len(coerce_message_log([UserMessage("a"), FinalAnswerMessage("b")])) == 2

    def test_log_is_copied(self):
        log = MessageLog([UserMessage("a")])
        coerced = coerce_message_log(log)
        coerced.append(UserMessage("b"))
        assert len(log) == 1
