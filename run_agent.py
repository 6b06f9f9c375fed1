#!/usr/bin/env python3
"""
Relay Agent Runner

Command-line entry point: loads agents from config.yaml, builds the tool
registry and LLM gateway once, runs one query through the orchestration
loop, and prints the result.

Usage:
    python run_agent.py --query="What is 17 * 23?"
    python run_agent.py --agent=math_agent --query="2+2?" --max_iterations=3
    python run_agent.py --list_agents
    python run_agent.py --list_tools

Programmatic use:
    from run_agent import build_agent_loop
    from agent.config import load_config

    loop, default_agent = build_agent_loop(load_config())
    result = loop.run_sync(default_agent, "2+2?")
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

import fire

from agent.agent_loop import AgentLoop
from agent.config import RelayConfig, agents_from_config, load_config, load_env_files
from agent.config_validator import run_validation
from agent.definitions import AgentDefinition, AgentRegistry
from agent.errors import ConfigurationError
from agent.tracing import JsonlTraceCollector
from agent.trajectory import save_run_trajectory
from llm.gateway import LLMGateway
from tools.build_registry import build_tool_registry
from toolsets import get_toolset_info, merge_toolsets

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "assistant"
DEFAULT_AGENT_PROMPT = (
    "You are a helpful assistant. Use the available tools when they help, "
    "and answer directly when you can."
)


def build_agent_loop(
    config: RelayConfig,
    *,
    model: Optional[str] = None,
    max_iterations: Optional[int] = None,
    trace_file: Optional[str] = None,
    gateway=None,
) -> Tuple[AgentLoop, str]:
    """Build the shared registries, gateway and loop. Returns (loop, default agent name).

    With no agents in the config a single general-purpose agent with every
    registered tool is used.
    """
    tools = build_tool_registry(
        enabled_toolsets=config.enabled_toolsets,
        disabled_toolsets=config.disabled_toolsets,
        extra_toolsets=config.toolsets,
    )

    if config.agents:
        agents = agents_from_config(config, tools.names())
        default_agent = config.default_agent or config.agents[0].name
    else:
        agents = AgentRegistry([
            AgentDefinition(
                name=DEFAULT_AGENT_NAME,
                system_prompt_template=DEFAULT_AGENT_PROMPT,
                tool_names=frozenset(tools.names()),
                description="General-purpose assistant",
            )
        ])
        default_agent = DEFAULT_AGENT_NAME

    if gateway is None:
        gateway = LLMGateway(
            model_providers=config.models,
            default_provider=config.provider,
            provider_settings={
                pid: settings.model_dump(exclude_none=True)
                for pid, settings in config.providers.items()
            },
        )

    loop = AgentLoop(
        agents,
        tools,
        gateway,
        default_model=model or config.model,
        default_max_iterations=max_iterations or config.max_iterations,
        default_temperature=config.temperature,
        trace_collector=JsonlTraceCollector(trace_file) if trace_file else None,
        max_handoff_depth=config.max_handoff_depth,
    )
    return loop, default_agent


def _print_agents(loop: AgentLoop, default_agent: str):
    print("Available agents:")
    print("-" * 50)
    for agent in loop.agents.list_agents():
        marker = " (default)" if agent.name == default_agent else ""
        print(f"  {agent.name}{marker}")
        if agent.description:
            print(f"    {agent.description}")
        if agent.tool_names:
            print(f"    Tools: {', '.join(sorted(agent.tool_names))}")
        for rule in agent.handoff_rules:
            print(f"    Handoff -> {rule.target_agent_name} ({rule.trigger.value})")


def _print_tools(loop: AgentLoop, config: RelayConfig):
    print("Available tools:")
    print("-" * 50)
    for spec in loop.tools.list_tools():
        status = "ok" if loop.tools.available(spec.name) else "unavailable"
        print(f"  {spec.name:15} [{spec.toolset}] {status}")
        print(f"    {spec.description}")
    print("\nToolsets:")
    table = merge_toolsets(config.toolsets)
    for name in sorted(table):
        info = get_toolset_info(name, table)
        print(f"  {name:15} - {info['description']}")
        print(f"    Tools: {', '.join(info['resolved_tools']) or 'none'}")


def main(
    query: str = None,
    agent: str = None,
    config: str = None,
    model: str = None,
    max_iterations: int = None,
    list_agents: bool = False,
    list_tools: bool = False,
    validate: bool = False,
    save_trajectories: bool = False,
    trace_file: str = None,
    verbose: bool = False,
):
    """
    Main function for running an agent directly.

    Args:
        query (str): User query for the agent.
        agent (str): Agent to start with. Defaults to config.yaml's default_agent.
        config (str): Path to a config.yaml. Defaults to $RELAY_HOME/config.yaml.
        model (str): Default model for agents that do not set one.
        max_iterations (int): Default iteration budget for agents that do not set one.
        list_agents (bool): List configured agents and exit.
        list_tools (bool): List registered tools and toolsets and exit.
        validate (bool): Check configuration and API keys, then exit.
        save_trajectories (bool): Append the run to trajectory_samples.jsonl
            (or failed_trajectories.jsonl).
        trace_file (str): Write trace events as JSONL to this file.
        verbose (bool): Enable debug logging.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not verbose:
        for noisy in ("openai", "httpx", "httpcore"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    load_env_files(Path(__file__).parent)

    try:
        relay_config = load_config(config)
        loop, default_agent = build_agent_loop(
            relay_config, model=model, max_iterations=max_iterations, trace_file=trace_file
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}")
        return

    if validate:
        report = run_validation(relay_config, loop.tools.names())
        for pid, is_set, message in report["api_keys"]:
            print(f"  [{'ok' if is_set else 'missing'}] {pid}: {message}")
        for warning in report["warnings"]:
            print(f"  warning: {warning}")
        for error in report["errors"]:
            print(f"  error: {error}")
        return

    if list_agents:
        _print_agents(loop, default_agent)
        return

    if list_tools:
        _print_tools(loop, relay_config)
        return

    if not query:
        print("No query given. Use --query='...' (or --list_agents / --list_tools).")
        return

    agent_name = agent or default_agent
    print(f"Agent: {agent_name}")
    print(f"Query: {query}")
    print("=" * 50)

    result = loop.run_sync(agent_name, query, args={"query": query})

    print("=" * 50)
    print(f"Status: {result.status.value} ({result.termination_reason.value})")
    print(f"Iterations: {result.iterations}")
    print(f"Agents: {' -> '.join(result.handoff_chain)}")
    print(f"Messages: {len(result.message_log)}")
    if result.output:
        print("\nFINAL RESPONSE:")
        print("-" * 30)
        print(result.output)
    if result.error_text:
        print(f"\nError ({result.error_type}): {result.error_text}")

    if save_trajectories:
        started = loop.agents.get(agent_name)
        save_run_trajectory(
            result,
            model=(started.model if started and started.model else loop.default_model),
            system_prompt=started.system_prompt_template if started else "",
            tool_schemas=loop.tools.get_definitions(),
        )


if __name__ == "__main__":
    fire.Fire(main)
