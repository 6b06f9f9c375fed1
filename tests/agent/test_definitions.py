"""Tests for agent definitions, config resolution and the agent registry."""

import pytest

from agent.definitions import (
    AgentDefinition,
    AgentRegistry,
    HandoffRule,
    HandoffTrigger,
    build_handoff_tool_schema,
    handoff_tool_name,
    render_system_prompt,
    resolve_agent_config,
)
from agent.errors import ConfigurationError


def _agent(name="A", **kwargs):
    kwargs.setdefault("system_prompt_template", f"You are {name}.")
    return AgentDefinition(name=name, **kwargs)


class TestRegistry:
    def test_register_and_lookup(self):
        registry = AgentRegistry([_agent("A"), _agent("B")])
        assert len(registry) == 2
        assert "A" in registry
        assert registry.get("missing") is None
        assert registry.require("B").name == "B"
        assert registry.names() == ["A", "B"]

    def test_require_missing(self):
        with pytest.raises(ConfigurationError, match="not registered"):
            AgentRegistry().require("ghost")

    def test_duplicate_name(self):
        with pytest.raises(ConfigurationError, match="already registered"):
            AgentRegistry([_agent("A"), _agent("A")])

    @pytest.mark.parametrize("kwargs", [
        {"name": ""},
        {"name": "A", "system_prompt_template": "   "},
        {"name": "A", "max_iterations": 0},
    ])
    def test_invalid_definitions(self, kwargs):
        name = kwargs.pop("name")
        with pytest.raises(ConfigurationError):
            AgentRegistry().register(_agent(name, **kwargs))

    def test_two_max_iteration_rules_rejected(self):
        rules = (
            HandoffRule("B", trigger=HandoffTrigger.MAX_ITERATIONS_EXCEEDED),
            HandoffRule("C", trigger=HandoffTrigger.MAX_ITERATIONS_EXCEEDED),
        )
        with pytest.raises(ConfigurationError, match="more than one"):
            AgentRegistry([_agent("A", handoff_rules=rules)])

    def test_validate_unregistered_target(self):
        registry = AgentRegistry([_agent("A", handoff_rules=(HandoffRule("ghost"),))])
        with pytest.raises(ConfigurationError, match="ghost"):
            registry.validate()

    def test_validate_handoff_name_collision(self):
        registry = AgentRegistry([_agent("A", handoff_rules=(HandoffRule("B"),)), _agent("B")])
        registry.validate(["calculator"])
        with pytest.raises(ConfigurationError, match="collides"):
            registry.validate(["handoff_to_B"])


class TestRules:
    def test_explicit_and_max_iteration_rules(self):
        explicit = HandoffRule("B")
        budget = HandoffRule("C", trigger=HandoffTrigger.MAX_ITERATIONS_EXCEEDED)
        agent = _agent("A", handoff_rules=(explicit, budget))

        assert agent.explicit_handoff_rules() == [explicit]
        assert agent.max_iterations_rule() == budget
        assert _agent("X").max_iterations_rule() is None

    def test_trigger_values(self):
        assert HandoffTrigger("llm_tool_call") is HandoffTrigger.EXPLICIT_TOOL_CALL
        assert HandoffTrigger("max_iterations") is HandoffTrigger.MAX_ITERATIONS_EXCEEDED


class TestHandoffToolSchema:
    def test_schema_shape(self):
        target = _agent("researcher", description="Finds sources.")
        schema = build_handoff_tool_schema(target)

        assert handoff_tool_name("researcher") == "handoff_to_researcher"
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "handoff_to_researcher"
        assert "Agent Description: Finds sources." in schema["function"]["description"]
        assert schema["function"]["parameters"]["required"] == ["query"]

    def test_custom_input_schema(self):
        custom = {"type": "object", "properties": {"topic": {"type": "string"}}}
        schema = build_handoff_tool_schema(_agent("B", input_schema=custom))
        assert schema["function"]["parameters"] == custom


class TestResolve:
    def test_render_system_prompt(self):
        assert render_system_prompt("Task: $query", {"query": "sum"}) == "Task: sum"
        assert render_system_prompt("Keep $unknown", {"query": "x"}) == "Keep $unknown"
        assert render_system_prompt("No args", None) == "No args"

    def test_fallbacks_applied(self):
        resolved = resolve_agent_config(
            _agent("A"),
            fallback_model="m",
            fallback_max_iterations=7,
            fallback_temperature=0.3,
            fallback_tool_names=frozenset({"calculator"}),
        )
        assert resolved.name == "A"
        assert resolved.model == "m"
        assert resolved.max_iterations == 7
        assert resolved.temperature == 0.3
        assert resolved.tool_names == frozenset({"calculator"})

    def test_own_values_win(self):
        resolved = resolve_agent_config(
            _agent("A", model="own", max_iterations=2, temperature=0.0,
                   tool_names=frozenset({"search"})),
            fallback_model="m",
            fallback_max_iterations=7,
            fallback_temperature=0.9,
            fallback_tool_names=frozenset({"calculator"}),
            args={"query": "q"},
        )
        assert resolved.model == "own"
        assert resolved.max_iterations == 2
        # 0.0 is a real value, not "unset"
        assert resolved.temperature == 0.0
        assert resolved.tool_names == frozenset({"search"})

    def test_invalid_budget(self):
        with pytest.raises(ConfigurationError):
            resolve_agent_config(
                _agent("A"), fallback_model="m", fallback_max_iterations=0, fallback_temperature=0.1,
            )
