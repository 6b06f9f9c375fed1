"""Configuration loading.

Layout of the relay home directory (``~/.relay``, override with RELAY_HOME):

    ~/.relay/
        .env          API keys (OPENAI_API_KEY, LITELLM_BASE_URL, ...)
        config.yaml   model defaults, provider table, toolsets, agents

Example ``config.yaml``::

    model: gpt-4.1-mini
    max_iterations: 10
    models:
      claude-sonnet-4: litellm
    default_agent: orchestrator
    agents:
      - name: orchestrator
        system_prompt: You coordinate work. Delegate arithmetic.
        handoffs:
          - target: math_agent
      - name: math_agent
        description: Does arithmetic with the calculator tool.
        system_prompt: Solve $query step by step.
        tools: [calculator]
        max_iterations: 5

The YAML is parsed with ``yaml.safe_load`` and validated with pydantic models;
any problem surfaces as ``ConfigurationError`` at startup.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from agent.definitions import (
    DEFAULT_INPUT_SCHEMA,
    AgentDefinition,
    AgentRegistry,
    HandoffRule,
    HandoffTrigger,
)
from agent.errors import ConfigurationError
from relay_constants import (
    CONFIG_FILENAME,
    DEFAULT_MAX_HANDOFF_DEPTH,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_TEMPERATURE,
    RELAY_HOME_ENV,
)
from toolsets import merge_toolsets, resolve_multiple_toolsets

logger = logging.getLogger(__name__)


def get_relay_home() -> Path:
    return Path(os.getenv(RELAY_HOME_ENV, Path.home() / ".relay"))


def load_env_files(project_dir: Optional[Path] = None) -> Optional[Path]:
    """Load .env from the relay home first, then the project root as dev fallback.

    Returns the file that was loaded, or None.
    """
    user_env = get_relay_home() / ".env"
    project_env = (project_dir or Path.cwd()) / ".env"
    for env_path in (user_env, project_env):
        if not env_path.exists():
            continue
        try:
            load_dotenv(dotenv_path=env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=env_path, encoding="latin-1")
        logger.info("Loaded environment variables from %s", env_path)
        return env_path
    logger.info("No .env file found. Using system environment variables.")
    return None


class HandoffRuleModel(BaseModel):
    target: str = Field(description="Name of the agent that takes over")
    trigger: HandoffTrigger = Field(
        default=HandoffTrigger.EXPLICIT_TOOL_CALL,
        description="llm_tool_call (model decides) or max_iterations (budget ran out)",
    )
    include_tool_results: Optional[List[str]] = Field(
        default=None,
        description="Only transfer call/result pairs for these tools; unset transfers everything",
    )


class AgentConfigModel(BaseModel):
    name: str
    system_prompt: str
    description: str = ""
    tools: List[str] = Field(default_factory=list)
    toolsets: List[str] = Field(default_factory=list)
    model: Optional[str] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    handoffs: List[HandoffRuleModel] = Field(default_factory=list)
    input_schema: Optional[Dict[str, Any]] = None
    include_intermediate_steps_on_return: bool = False


class ProviderSettingsModel(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None


class RelayConfig(BaseModel):
    model: str = DEFAULT_MODEL
    provider: str = DEFAULT_PROVIDER
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_handoff_depth: int = Field(default=DEFAULT_MAX_HANDOFF_DEPTH, ge=0)
    # model name -> provider id, consulted before the prefix rules
    models: Dict[str, str] = Field(default_factory=dict)
    providers: Dict[str, ProviderSettingsModel] = Field(default_factory=dict)
    # extra toolsets: name -> {"tools": [...], "includes": [...]}
    toolsets: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    enabled_toolsets: Optional[List[str]] = None
    disabled_toolsets: Optional[List[str]] = None
    agents: List[AgentConfigModel] = Field(default_factory=list)
    default_agent: Optional[str] = None


def _format_validation_error(source: str, e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location or '<root>'}: {err.get('msg', 'invalid')}")
    return f"Invalid configuration in {source}: " + "; ".join(problems)


def parse_config(data: Optional[Dict[str, Any]], source: str = "<config>") -> RelayConfig:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid configuration in {source}: top level must be a mapping")
    try:
        return RelayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(source, e), cause=e) from e


def load_config(path: Optional[Union[str, Path]] = None) -> RelayConfig:
    """Load config.yaml (default: the relay home's). A missing default file yields defaults."""
    explicit = path is not None
    config_path = Path(path) if explicit else get_relay_home() / CONFIG_FILENAME
    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Config file not found: {config_path}")
        logger.debug("No config file at %s; using defaults", config_path)
        return RelayConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}", cause=e) from e

    config = parse_config(data, source=str(config_path))
    logger.info("Loaded config from %s (%d agents)", config_path, len(config.agents))
    return config


def agent_from_config(model: AgentConfigModel,
                      toolset_table: Optional[Dict[str, Dict[str, Any]]] = None) -> AgentDefinition:
    tool_names = set(model.tools)
    if model.toolsets:
        tool_names.update(resolve_multiple_toolsets(model.toolsets, merge_toolsets(toolset_table)))
    rules = tuple(
        HandoffRule(
            target_agent_name=h.target,
            trigger=h.trigger,
            include_tool_results=frozenset(h.include_tool_results) if h.include_tool_results else None,
        )
        for h in model.handoffs
    )
    return AgentDefinition(
        name=model.name,
        system_prompt_template=model.system_prompt,
        tool_names=frozenset(tool_names),
        max_iterations=model.max_iterations,
        temperature=model.temperature,
        handoff_rules=rules,
        model=model.model,
        description=model.description,
        input_schema=dict(model.input_schema or DEFAULT_INPUT_SCHEMA),
        include_intermediate_steps_on_return=model.include_intermediate_steps_on_return,
    )


def agents_from_config(config: RelayConfig, tool_names: Optional[List[str]] = None) -> AgentRegistry:
    """Build and validate the agent registry. Raises ConfigurationError."""
    registry = AgentRegistry(agent_from_config(a, config.toolsets) for a in config.agents)
    registry.validate(tool_names)
    if config.default_agent and config.default_agent not in registry:
        raise ConfigurationError(f"default_agent '{config.default_agent}' is not defined")
    return registry
