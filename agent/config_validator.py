"""Configuration validation utilities.

Validates config.yaml and environment setup before running an agent.
"""

import os
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from agent.config import RelayConfig, agents_from_config, get_relay_home
from agent.errors import ConfigurationError
from llm.provider_registry import (
    get_provider,
    has_any_provider_key,
    is_supported_provider,
    resolve_provider_for_model,
)
from relay_constants import CONFIG_FILENAME
from toolsets import merge_toolsets, validate_toolset

logger = logging.getLogger(__name__)


def _configured_providers(config: RelayConfig) -> List[str]:
    """Providers that some configured model actually resolves to."""
    models = [config.model] + [a.model for a in config.agents if a.model]
    providers = []
    for model in models:
        pid = resolve_provider_for_model(model, model_table=config.models, default=config.provider)
        if pid not in providers:
            providers.append(pid)
    return providers


def validate_api_keys(config: RelayConfig,
                      env_get: Callable[[str], Optional[str]] = os.getenv) -> List[Tuple[str, bool, str]]:
    """Check API keys for every provider the config routes models to.

    Returns:
        List of (provider_id, is_set, message) tuples
    """
    results = []
    for pid in _configured_providers(config):
        meta = get_provider(pid)
        if meta is None:
            results.append((pid, False, f"Unknown provider '{pid}'"))
            continue
        explicit = config.providers.get(pid)
        if (explicit and explicit.api_key) or has_any_provider_key(pid, env_get=env_get):
            results.append((pid, True, f"{meta.label} configured"))
        elif not meta.requires_api_key:
            results.append((pid, True, f"{meta.label} (no API key required)"))
        else:
            results.append((pid, False, f"Not set. Set one of: {', '.join(meta.api_key_env_vars)}"))
    return results


def validate_relay_home() -> Tuple[bool, str]:
    """Validate the relay home directory.

    Returns:
        (is_valid, message) tuple
    """
    relay_home = get_relay_home()
    if not relay_home.exists():
        return (False, f"{relay_home} does not exist")
    config_file = relay_home / CONFIG_FILENAME
    if not config_file.exists():
        return (False, f"No {CONFIG_FILENAME} found at {config_file}")
    return (True, f"Valid ({config_file})")


def validate_model_config(model: str, model_table: Optional[Dict[str, str]] = None) -> Tuple[bool, str]:
    """Validate that a model string is usable.

    Returns:
        (is_valid, message) tuple
    """
    if not model:
        return (False, "No model specified")
    pid = resolve_provider_for_model(model, model_table=model_table)
    if not is_supported_provider(pid):
        return (False, f"Model {model} maps to unsupported provider '{pid}'")
    return (True, f"Model: {model}, Provider: {pid}")


def validate_agents(config: RelayConfig, tool_names: Optional[List[str]] = None) -> List[str]:
    """Return agent-definition problems (empty when the agents are usable)."""
    errors = []
    try:
        agents_from_config(config, tool_names)
    except ConfigurationError as e:
        errors.append(e.message)

    table = merge_toolsets(config.toolsets)
    for agent in config.agents:
        for toolset in agent.toolsets:
            if not validate_toolset(toolset, table):
                errors.append(f"Agent '{agent.name}' references unknown toolset '{toolset}'")

    if tool_names is not None:
        known = set(tool_names)
        for agent in config.agents:
            for tool in agent.tools:
                if tool not in known:
                    errors.append(f"Agent '{agent.name}' references unknown tool '{tool}'")
    return errors


def run_validation(config: RelayConfig, tool_names: Optional[List[str]] = None,
                   env_get: Callable[[str], Optional[str]] = os.getenv) -> Dict[str, Any]:
    """Run all validation checks.

    Returns:
        Dictionary with validation results
    """
    results = {
        "api_keys": validate_api_keys(config, env_get=env_get),
        "relay_home": validate_relay_home(),
        "model": validate_model_config(config.model, config.models),
        "errors": [],
        "warnings": [],
    }

    for pid, is_set, message in results["api_keys"]:
        if not is_set:
            results["errors"].append(f"{pid}: {message}")

    model_valid, model_msg = results["model"]
    if not model_valid:
        results["errors"].append(model_msg)

    results["errors"].extend(validate_agents(config, tool_names))

    home_valid, home_msg = results["relay_home"]
    if not home_valid:
        results["warnings"].append(f"RELAY_HOME issue: {home_msg}")

    if not config.agents:
        results["warnings"].append("No agents defined; the CLI falls back to a single default agent")

    results["is_valid"] = len(results["errors"]) == 0
    return results
