"""Tests for agent.agent_loop -- the iteration state machine and handoffs.

The model is replaced by tests/fakes/fake_gateway.ScriptedGateway so every
run is deterministic.

Run with:
    python -m pytest tests/agent/test_agent_loop.py -v
"""

import asyncio
import dataclasses
import json

import pytest

from agent.agent_loop import AgentLoop
from agent.definitions import AgentDefinition, AgentRegistry, HandoffRule, HandoffTrigger
from agent.errors import GatewayError
from agent.messages import (
    FinalAnswerMessage,
    MessageLog,
    ToolCallMessage,
    ToolResultMessage,
    UserMessage,
)
from agent.run_result import RunStatus, TerminationReason
from agent.tracing import InMemoryTraceCollector, TraceCollector
from llm.response_parser import LLMResponse
from tests.fakes.fake_gateway import RepeatingGateway, ScriptedGateway, final_reply, tool_reply
from tools.basic_tools import register_basic_tools
from tools.registry import ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tools(state=None):
    reg = ToolRegistry()
    register_basic_tools(reg)
    reg.register("noop", lambda args: {"ok": True}, description="Does nothing")
    reg.register("always_fails", lambda args: {"error": "x"}, description="Always fails")
    reg.register("search", lambda args: {"hits": [args.get("q")]}, description="Search")
    reg.register("fetch", lambda args: "<html>page</html>", description="Fetch a page")

    def _cancel_me(args):
        state["cancel"] = True
        return {"ok": True}

    if state is not None:
        reg.register("cancel_me", _cancel_me, description="Requests cancellation")
    return reg


ALL_TOOLS = frozenset({"calculator", "noop", "always_fails", "search", "fetch", "cancel_me"})


def _agent(name="A", **overrides):
    fields = dict(
        name=name,
        system_prompt_template=f"You are agent {name}.",
        tool_names=ALL_TOOLS,
    )
    fields.update(overrides)
    return AgentDefinition(**fields)


def _loop(agents, gateway, tools=None, **kwargs):
    kwargs.setdefault("default_model", "test-model")
    kwargs.setdefault("default_max_iterations", 10)
    return AgentLoop(AgentRegistry(agents), tools or _tools(), gateway, **kwargs)


def _pick_handoff(call):
    names = [n for n in call.tool_names if n.startswith("handoff_to_")]
    return tool_reply(names[0], {"query": "keep going"})


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    @pytest.mark.asyncio
    async def test_single_turn_final_answer(self):
        gateway = ScriptedGateway([final_reply("4")])
        result = await _loop([_agent()], gateway).run("A", [UserMessage("2+2?")])

        assert result.status == RunStatus.FINAL_ANSWER
        assert result.output == "4"
        assert result.iterations == 1
        assert result.termination_reason == TerminationReason.FINAL_ANSWER
        assert [type(m) for m in result.message_log] == [UserMessage, FinalAnswerMessage]

    @pytest.mark.asyncio
    async def test_one_tool_round_trip(self):
        gateway = ScriptedGateway([
            tool_reply("calculator", {"op": "add", "a": 2, "b": 2}, call_id="call_1"),
            final_reply("4"),
        ])
        result = await _loop([_agent()], gateway).run("A", "2+2?")

        assert result.status == RunStatus.FINAL_ANSWER
        assert result.iterations == 2
        assert [type(m) for m in result.message_log] == [
            UserMessage, ToolCallMessage, ToolResultMessage, FinalAnswerMessage,
        ]
        call, tool_result = result.message_log[1], result.message_log[2]
        assert call.tool_call_id == tool_result.tool_call_id == "call_1"
        assert json.loads(tool_result.result_text) == {"result": 4}
        assert tool_result.result_data == {"result": 4}
        assert not tool_result.is_error

        # The second model call sees the tool result in provider format
        second = gateway.calls[1].messages
        assert second[-1] == {
            "role": "tool", "tool_call_id": "call_1", "name": "calculator",
            "content": tool_result.result_text,
        }

    @pytest.mark.asyncio
    async def test_budget_exhaustion_without_handoff_rule(self):
        gateway = RepeatingGateway(tool_reply("noop"))
        result = await _loop([_agent(max_iterations=3)], gateway).run("A", "loop forever")

        assert result.status == RunStatus.MAX_ITERATIONS
        assert result.iterations == 3
        assert result.error_type == "IterationBudgetExceeded"
        assert result.termination_reason == TerminationReason.MAX_ITERATIONS
        assert len(gateway.calls) == 3
        assert result.message_log.pairing_violations() == []

    @pytest.mark.asyncio
    async def test_explicit_handoff(self):
        a = _agent("A", handoff_rules=(HandoffRule("B"),))
        b = _agent("B", system_prompt_template="You are B. Task: $query")
        gateway = ScriptedGateway([
            tool_reply("handoff_to_B", {"query": "do it"}),
            final_reply("B done"),
        ])
        result = await _loop([a, b], gateway).run("A", "please delegate")

        assert result.status == RunStatus.FINAL_ANSWER
        assert result.termination_reason == TerminationReason.HANDED_OFF
        assert result.output == "B done"
        assert result.agent_name == "B"
        assert result.handoff_chain == ["A", "B"]
        assert "handoff_to_B" in gateway.calls[0].tool_names
        assert "You are B. Task: do it" in gateway.calls[1].system_prompt

    @pytest.mark.asyncio
    async def test_target_can_set_its_own_termination_reason(self):
        def _hook(result):
            return dataclasses.replace(result, termination_reason=TerminationReason.FINAL_ANSWER)

        a = _agent("A", handoff_rules=(HandoffRule("B"),))
        b = _agent("B", result_hook=_hook)
        gateway = ScriptedGateway([tool_reply("handoff_to_B", {"query": "x"}), final_reply("ok")])
        result = await _loop([a, b], gateway).run("A", "go")

        assert result.termination_reason == TerminationReason.FINAL_ANSWER


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------

class TestInvariants:
    @pytest.mark.asyncio
    async def test_failing_tool_never_ends_run_by_itself(self):
        gateway = ScriptedGateway([
            tool_reply("always_fails"),
            tool_reply("always_fails"),
            final_reply("gave up"),
        ])
        result = await _loop([_agent()], gateway).run("A", "try")

        assert result.status == RunStatus.FINAL_ANSWER
        failures = [m for m in result.message_log if isinstance(m, ToolResultMessage)]
        assert len(failures) == 2
        assert all(m.is_error and m.error_text == "x" for m in failures)

    @pytest.mark.asyncio
    async def test_failing_tool_until_budget_is_max_iterations_not_error(self):
        gateway = RepeatingGateway(tool_reply("always_fails"))
        result = await _loop([_agent(max_iterations=4)], gateway).run("A", "try")

        assert result.status == RunStatus.MAX_ITERATIONS
        assert result.iterations == 4

    @pytest.mark.asyncio
    async def test_every_tool_call_has_exactly_one_result(self):
        gateway = ScriptedGateway([
            tool_reply("search", {"q": "a"}),
            tool_reply("always_fails"),
            tool_reply("nope"),
        ])
        result = await _loop([_agent()], gateway).run("A", "go")

        assert result.status == RunStatus.ERROR
        assert result.message_log.pairing_violations() == []

    @pytest.mark.asyncio
    async def test_handoff_target_starts_at_iteration_zero(self):
        a = _agent("A", max_iterations=5, handoff_rules=(HandoffRule("B"),))
        b = _agent("B", max_iterations=2)
        gateway = ScriptedGateway([
            tool_reply("noop"),
            tool_reply("noop"),
            tool_reply("handoff_to_B", {"query": "continue"}),
            tool_reply("noop"),
            tool_reply("noop"),
        ])
        result = await _loop([a, b], gateway).run("A", "go")

        assert "step 1 of 2" in gateway.calls[3].system_prompt
        assert result.status == RunStatus.MAX_ITERATIONS
        assert result.iterations == 2
        assert result.termination_reason == TerminationReason.HANDED_OFF

    @pytest.mark.asyncio
    async def test_include_tool_results_filters_transferred_pairs(self):
        a = _agent("A", handoff_rules=(
            HandoffRule("B", include_tool_results=frozenset({"search"})),
        ))
        b = _agent("B")
        gateway = ScriptedGateway([
            tool_reply("search", {"q": "python"}),
            tool_reply("fetch", {"url": "http://example.com"}),
            tool_reply("handoff_to_B", {"query": "summarize"}),
            final_reply("summary"),
        ])
        result = await _loop([a, b], gateway).run("A", "research")

        transferred = gateway.calls[3].messages
        called = [tc["function"]["name"] for m in transferred for tc in m.get("tool_calls", [])]
        assert called == ["search"]
        assert [m["name"] for m in transferred if m["role"] == "tool"] == ["search"]

        call_names = {m.tool_name for m in result.message_log if isinstance(m, ToolCallMessage)}
        assert call_names == {"search"}

    @pytest.mark.asyncio
    async def test_iterations_never_exceed_budget(self):
        for budget in (1, 2, 5):
            gateway = RepeatingGateway(tool_reply("noop"))
            result = await _loop([_agent(max_iterations=budget)], gateway).run("A", "go")
            assert result.iterations <= budget
            assert len(gateway.calls) == budget


# ---------------------------------------------------------------------------
# Handoff details
# ---------------------------------------------------------------------------

class TestHandoff:
    @pytest.mark.asyncio
    async def test_target_log_alone_by_default(self):
        a = _agent("A", handoff_rules=(HandoffRule("B", include_tool_results=frozenset({"x"})),))
        b = _agent("B")
        gateway = ScriptedGateway([tool_reply("handoff_to_B", {"query": "q"}), final_reply("done")])
        result = await _loop([a, b], gateway).run("A", "hello")

        assert [type(m) for m in result.message_log] == [UserMessage, FinalAnswerMessage]

    @pytest.mark.asyncio
    async def test_target_flag_prepends_pre_handoff_history(self):
        a = _agent("A", handoff_rules=(HandoffRule("B"),))
        b = _agent("B", include_intermediate_steps_on_return=True)
        gateway = ScriptedGateway([tool_reply("handoff_to_B", {"query": "q"}), final_reply("done")])
        result = await _loop([a, b], gateway).run("A", "hello")

        # A: user, handoff call, handoff result; B: the same three transferred + final
        assert len(result.message_log) == 3 + 4
        assert result.message_log[1].tool_name == "handoff_to_B"
        assert isinstance(result.message_log[-1], FinalAnswerMessage)

    @pytest.mark.asyncio
    async def test_delegator_flag_is_ignored(self):
        a = _agent("A", include_intermediate_steps_on_return=True, handoff_rules=(HandoffRule("B"),))
        b = _agent("B")
        gateway = ScriptedGateway([tool_reply("handoff_to_B", {"query": "q"}), final_reply("done")])
        result = await _loop([a, b], gateway).run("A", "hello")

        assert len(result.message_log) == 4

    @pytest.mark.asyncio
    async def test_max_iterations_handoff_uses_original_args(self):
        a = _agent("A", max_iterations=2, handoff_rules=(
            HandoffRule("B", trigger=HandoffTrigger.MAX_ITERATIONS_EXCEEDED),
        ))
        b = _agent("B", system_prompt_template="Finish: $query")
        gateway = ScriptedGateway([tool_reply("noop"), tool_reply("noop"), final_reply("finished")])
        result = await _loop([a, b], gateway).run("A", "start", args={"query": "orig"})

        assert "handoff_to_B" not in gateway.calls[0].tool_names
        assert "Finish: orig" in gateway.calls[2].system_prompt
        assert result.status == RunStatus.FINAL_ANSWER
        assert result.termination_reason == TerminationReason.HANDED_OFF
        assert result.handoff_chain == ["A", "B"]

    @pytest.mark.asyncio
    async def test_target_falls_back_to_delegator_settings(self):
        a = _agent("A", model="delegator-model", temperature=0.7, max_iterations=3,
                   handoff_rules=(HandoffRule("B"),))
        b = _agent("B")
        gateway = ScriptedGateway([tool_reply("handoff_to_B", {"query": "q"}), final_reply("ok")])
        await _loop([a, b], gateway).run("A", "go")

        target_call = gateway.calls[1]
        assert target_call.model == "delegator-model"
        assert target_call.temperature == 0.7
        assert "of 3 maximum steps" in target_call.system_prompt

    @pytest.mark.asyncio
    async def test_handoff_chain_depth_is_capped(self):
        a = _agent("A", handoff_rules=(HandoffRule("B"),))
        b = _agent("B", handoff_rules=(HandoffRule("A"),))
        gateway = RepeatingGateway(_pick_handoff)
        result = await _loop([a, b], gateway, max_handoff_depth=2).run("A", "ping")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "HandoffDepthExceeded"
        assert result.handoff_chain == ["A", "B", "A"]
        assert len(gateway.calls) == 3

    @pytest.mark.asyncio
    async def test_unregistered_handoff_target_refuses_to_start(self):
        a = _agent("A", handoff_rules=(HandoffRule("ghost"),))
        gateway = ScriptedGateway([])
        result = await _loop([a], gateway).run("A", "go")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "ConfigurationError"
        assert result.iterations == 0
        assert gateway.calls == []


# ---------------------------------------------------------------------------
# Error paths
# ---------------------------------------------------------------------------

class TestErrors:
    @pytest.mark.asyncio
    async def test_gateway_failure_records_synthetic_error(self):
        gateway = ScriptedGateway([GatewayError("connection reset", provider="fake")])
        result = await _loop([_agent()], gateway).run("A", "hi")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "GatewayError"
        assert result.iterations == 1
        last = result.message_log.last
        assert isinstance(last, ToolResultMessage)
        assert last.tool_call_id is None
        assert last.tool_name == "system_error"
        assert "connection reset" in last.result_text

    @pytest.mark.asyncio
    async def test_empty_reply_is_unparsable(self):
        gateway = ScriptedGateway([LLMResponse()])
        result = await _loop([_agent()], gateway).run("A", "hi")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "UnparsableActionError"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_fatal(self):
        gateway = ScriptedGateway([tool_reply("does_not_exist")])
        result = await _loop([_agent()], gateway).run("A", "hi")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "UnknownToolRequested"
        call, error = result.message_log[1], result.message_log[2]
        assert call.tool_name == "does_not_exist"
        assert error.tool_call_id == call.tool_call_id
        assert error.is_error

    @pytest.mark.asyncio
    async def test_registered_tool_outside_agent_tool_set_is_unknown(self):
        gateway = ScriptedGateway([tool_reply("noop")])
        agent = _agent(tool_names=frozenset({"calculator"}))
        result = await _loop([agent], gateway).run("A", "hi")

        assert result.error_type == "UnknownToolRequested"
        assert gateway.calls[0].tool_names == ["calculator"]

    @pytest.mark.asyncio
    async def test_unregistered_agent_name(self):
        gateway = ScriptedGateway([])
        result = await _loop([_agent()], gateway).run("missing", "hi")

        assert result.status == RunStatus.ERROR
        assert result.error_type == "ConfigurationError"
        assert result.iterations == 0

    @pytest.mark.asyncio
    async def test_result_hook_sees_error_results(self):
        seen = []

        def _hook(result):
            seen.append(result.error_type)
            return result

        gateway = ScriptedGateway([GatewayError("down")])
        await _loop([_agent(result_hook=_hook)], gateway).run("A", "hi")

        assert seen == ["GatewayError"]


# ---------------------------------------------------------------------------
# Parsing, prompts, cancellation, tracing
# ---------------------------------------------------------------------------

class TestLoopBehavior:
    @pytest.mark.asyncio
    async def test_text_envelope_tool_call(self):
        envelope = json.dumps({"action": "tool", "toolName": "calculator",
                               "toolArgs": {"op": "multiply", "a": 6, "b": 7}})
        gateway = ScriptedGateway([LLMResponse(text=envelope), final_reply("42")])
        result = await _loop([_agent()], gateway).run("A", "6*7?")

        call, tool_result = result.message_log[1], result.message_log[2]
        assert call.tool_name == "calculator"
        assert call.tool_call_id.startswith("call_")
        assert json.loads(tool_result.result_text) == {"result": 42}

    @pytest.mark.asyncio
    async def test_progress_block_in_system_prompt(self):
        gateway = ScriptedGateway([tool_reply("noop"), final_reply("ok")])
        await _loop([_agent(max_iterations=3)], gateway).run("A", "go")

        assert gateway.calls[0].system_prompt.startswith("You are agent A.")
        assert "step 1 of 3 maximum steps" in gateway.calls[0].system_prompt
        assert "step 2 of 3 maximum steps" in gateway.calls[1].system_prompt

    @pytest.mark.asyncio
    async def test_context_providers(self):
        def _good(agent_name, iteration, max_iterations):
            return f"Context for {agent_name}"

        def _bad(agent_name, iteration, max_iterations):
            raise RuntimeError("provider down")

        gateway = ScriptedGateway([final_reply("ok")])
        result = await _loop([_agent()], gateway, context_providers=[_bad, _good]).run("A", "go")

        assert result.success
        assert "Context for A" in gateway.calls[0].system_prompt

    @pytest.mark.asyncio
    async def test_cancellation_at_iteration_boundary(self):
        state = {"cancel": False}
        gateway = RepeatingGateway(tool_reply("cancel_me"))
        loop = _loop([_agent()], gateway, tools=_tools(state))
        result = await loop.run("A", "go", is_cancelled=lambda: state["cancel"])

        assert result.status == RunStatus.CANCELLED
        assert result.termination_reason == TerminationReason.CANCELLED
        assert result.iterations == 1
        assert len(gateway.calls) == 1
        # The in-flight tool call completed before the run stopped
        assert isinstance(result.message_log.last, ToolResultMessage)

    @pytest.mark.asyncio
    async def test_trace_events(self):
        collector = InMemoryTraceCollector()
        gateway = ScriptedGateway([tool_reply("noop"), final_reply("ok")])
        await _loop([_agent()], gateway, trace_collector=collector).run("A", "go", run_id="run1")

        generations = collector.by_type("generation")
        spans = collector.by_type("span")
        assert len(generations) == 4  # before + after, two calls
        assert len(spans) == 2
        assert spans[0].id == spans[1].id
        assert spans[1].end_time is not None
        assert set(collector.trace_ids) == {"run1"}

    @pytest.mark.asyncio
    async def test_failing_collector_does_not_change_result(self):
        class _Broken(TraceCollector):
            def record(self, event, trace_id):
                raise IOError("disk full")

        gateway = ScriptedGateway([tool_reply("noop"), final_reply("ok")])
        result = await _loop([_agent()], gateway, trace_collector=_Broken()).run("A", "go")

        assert result.status == RunStatus.FINAL_ANSWER
        assert result.iterations == 2

    @pytest.mark.asyncio
    async def test_concurrent_runs_share_one_loop(self):
        def _echo(call):
            return final_reply(call.messages[-1]["content"].upper())

        loop = _loop([_agent()], RepeatingGateway(_echo))
        first, second = await asyncio.gather(loop.run("A", "alpha"), loop.run("A", "beta"))

        assert first.output == "ALPHA"
        assert second.output == "BETA"
        assert len(first.message_log) == len(second.message_log) == 2

    @pytest.mark.asyncio
    async def test_caller_log_is_not_mutated(self):
        history = MessageLog([UserMessage("hi")])
        gateway = ScriptedGateway([final_reply("hello")])
        result = await _loop([_agent()], gateway).run("A", history)

        assert len(history) == 1
        assert len(result.message_log) == 2


def test_run_sync():
    gateway = ScriptedGateway([final_reply("4")])
    result = _loop([_agent()], gateway).run_sync("A", "2+2?")

    assert result.output == "4"
    assert result.termination_reason == TerminationReason.FINAL_ANSWER
