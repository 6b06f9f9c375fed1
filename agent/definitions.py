"""Agent definitions, handoff rules, and the agent registry.

Definitions are created once at startup and never mutated. The registry is a
plain value built by the caller and injected into every AgentLoop; after
``validate()`` it is treated as read-only shared state.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from string import Template
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from agent.errors import ConfigurationError
from relay_constants import HANDOFF_TOOL_PREFIX

logger = logging.getLogger(__name__)


class HandoffTrigger(str, Enum):
    EXPLICIT_TOOL_CALL = "llm_tool_call"
    MAX_ITERATIONS_EXCEEDED = "max_iterations"


DEFAULT_INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "The task for the agent, restated so it can be completed without the rest of the conversation.",
        },
        "reasoning": {
            "type": "string",
            "description": "Why this agent is the right one for the task.",
        },
    },
    "required": ["query"],
}


@dataclass(frozen=True)
class HandoffRule:
    target_agent_name: str
    trigger: HandoffTrigger = HandoffTrigger.EXPLICIT_TOOL_CALL
    # None (or empty) transfers the full history; otherwise only call/result
    # pairs for these tools survive the transfer.
    include_tool_results: Optional[FrozenSet[str]] = None

    @property
    def is_explicit(self) -> bool:
        return self.trigger == HandoffTrigger.EXPLICIT_TOOL_CALL


@dataclass(frozen=True)
class AgentDefinition:
    """Static configuration of a named agent.

    Optional fields left as None fall back to the delegating agent's value
    during a handoff, or to the loop defaults for a top-level run.
    ``system_prompt_template`` may reference run arguments as ``$name``.
    """

    name: str
    system_prompt_template: str
    tool_names: FrozenSet[str] = frozenset()
    max_iterations: Optional[int] = None
    temperature: Optional[float] = None
    handoff_rules: Tuple[HandoffRule, ...] = ()
    model: Optional[str] = None
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=lambda: dict(DEFAULT_INPUT_SCHEMA))
    include_intermediate_steps_on_return: bool = False
    # Optional rewrite of every RunResult this agent produces (e.g. to set a
    # custom termination reason or reshape the output).
    result_hook: Optional[Callable[[Any], Any]] = field(default=None, compare=False)

    def explicit_handoff_rules(self) -> List[HandoffRule]:
        return [rule for rule in self.handoff_rules if rule.is_explicit]

    def max_iterations_rule(self) -> Optional[HandoffRule]:
        for rule in self.handoff_rules:
            if rule.trigger == HandoffTrigger.MAX_ITERATIONS_EXCEEDED:
                return rule
        return None


def handoff_tool_name(target_agent_name: str) -> str:
    return f"{HANDOFF_TOOL_PREFIX}{target_agent_name}"


def build_handoff_tool_schema(target: AgentDefinition) -> Dict[str, Any]:
    """OpenAI-format schema for the synthesized ``handoff_to_<target>`` tool."""
    description = (
        f"Handoff the current task to the specialized agent: {target.name}. "
        f"Use this agent when the task requires {target.name}'s capabilities."
    )
    if target.description:
        description += f" Agent Description: {target.description}"
    return {
        "type": "function",
        "function": {
            "name": handoff_tool_name(target.name),
            "description": description,
            "parameters": dict(target.input_schema),
        },
    }


def render_system_prompt(template: str, args: Optional[Mapping[str, Any]] = None) -> str:
    """Substitute ``$name`` placeholders from run args; unknown ones stay as-is."""
    if not args:
        return template
    return Template(template).safe_substitute({k: str(v) for k, v in args.items()})


@dataclass(frozen=True)
class ResolvedAgentConfig:
    """Everything a single agent run needs, with all fallbacks applied."""

    agent: AgentDefinition
    model: str
    system_prompt: str
    tool_names: FrozenSet[str]
    max_iterations: int
    temperature: float

    @property
    def name(self) -> str:
        return self.agent.name


def resolve_agent_config(
    agent: AgentDefinition,
    *,
    fallback_model: str,
    fallback_max_iterations: int,
    fallback_temperature: float,
    fallback_system_prompt: str = "",
    fallback_tool_names: FrozenSet[str] = frozenset(),
    args: Optional[Mapping[str, Any]] = None,
) -> ResolvedAgentConfig:
    template = agent.system_prompt_template or fallback_system_prompt
    if not template:
        raise ConfigurationError(f"Agent '{agent.name}' has no system prompt")
    max_iterations = agent.max_iterations or fallback_max_iterations
    if max_iterations < 1:
        raise ConfigurationError(
            f"Agent '{agent.name}' has invalid max_iterations {max_iterations}"
        )
    return ResolvedAgentConfig(
        agent=agent,
        model=agent.model or fallback_model,
        system_prompt=render_system_prompt(template, args),
        tool_names=frozenset(agent.tool_names) or frozenset(fallback_tool_names),
        max_iterations=max_iterations,
        temperature=agent.temperature if agent.temperature is not None else fallback_temperature,
    )


class AgentRegistry:
    """Name -> AgentDefinition mapping, populated once at startup."""

    def __init__(self, agents: Optional[Iterable[AgentDefinition]] = None):
        self._agents: Dict[str, AgentDefinition] = {}
        for agent in agents or ():
            self.register(agent)

    def register(self, agent: AgentDefinition) -> None:
        if not agent.name or not agent.name.strip():
            raise ConfigurationError("Agent definition is missing a name")
        if not agent.system_prompt_template or not agent.system_prompt_template.strip():
            raise ConfigurationError(f"Agent '{agent.name}' has no system prompt")
        if agent.max_iterations is not None and agent.max_iterations < 1:
            raise ConfigurationError(
                f"Agent '{agent.name}' has invalid max_iterations {agent.max_iterations}"
            )
        if agent.name in self._agents:
            raise ConfigurationError(f"Agent '{agent.name}' is already registered")
        if sum(1 for r in agent.handoff_rules if not r.is_explicit) > 1:
            raise ConfigurationError(
                f"Agent '{agent.name}' has more than one max_iterations handoff rule"
            )
        self._agents[agent.name] = agent
        logger.debug("Registered agent %s (%d tools, %d handoff rules)",
                     agent.name, len(agent.tool_names), len(agent.handoff_rules))

    def get(self, name: str) -> Optional[AgentDefinition]:
        return self._agents.get(name)

    def require(self, name: str) -> AgentDefinition:
        agent = self._agents.get(name)
        if agent is None:
            raise ConfigurationError(f"Agent '{name}' is not registered")
        return agent

    def __contains__(self, name: str) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def names(self) -> List[str]:
        return list(self._agents)

    def list_agents(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    def validate(self, tool_names: Optional[Iterable[str]] = None) -> None:
        """Check cross-references. Raises ConfigurationError on the first problem.

        When ``tool_names`` is given, handoff tool names must not shadow a
        registered tool.
        """
        known_tools = set(tool_names or ())
        for agent in self._agents.values():
            for rule in agent.handoff_rules:
                if rule.target_agent_name not in self._agents:
                    raise ConfigurationError(
                        f"Agent '{agent.name}' hands off to unregistered agent "
                        f"'{rule.target_agent_name}'"
                    )
                if rule.is_explicit and handoff_tool_name(rule.target_agent_name) in known_tools:
                    raise ConfigurationError(
                        f"Handoff tool '{handoff_tool_name(rule.target_agent_name)}' "
                        f"collides with a registered tool"
                    )
