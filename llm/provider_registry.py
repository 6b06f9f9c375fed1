"""
Central provider registry for model calls.

Maps model names to provider identifiers and holds per-provider metadata:
where to send requests, which environment variables carry credentials, and
which tool-schema shape the provider's API expects.

This module is intentionally lightweight and dependency-safe so the gateway,
the config validator and the CLI can share the same resolution behavior.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from relay_constants import (
    DEFAULT_PROVIDER,
    LITELLM_BASE_URL,
    OPENAI_BASE_URL,
    OPENROUTER_BASE_URL,
)

EnvGetter = Callable[[str], Optional[str]]

# Tool schema shapes
FLAT = "flat"      # {"type": "function", "name", "description", "parameters"}
NESTED = "nested"  # {"type": "function", "function": {"name", ...}}


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    api: str  # "responses" or "chat_completions"
    tool_schema_style: str
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    model_prefixes: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    requires_api_key: bool = True
    # Models (by name prefix) that reject a sampling temperature.
    fixed_temperature_prefixes: Tuple[str, ...] = ()


PROVIDERS: Dict[str, ProviderMeta] = {
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        api="responses",
        tool_schema_style=FLAT,
        default_base_url=OPENAI_BASE_URL,
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
        model_prefixes=("gpt-", "o1", "o3", "o4", "chatgpt-"),
        fixed_temperature_prefixes=("o1", "o3", "o4", "gpt-5"),
    ),
    "litellm": ProviderMeta(
        id="litellm",
        label="LiteLLM proxy",
        api="chat_completions",
        tool_schema_style=NESTED,
        default_base_url=LITELLM_BASE_URL,
        api_key_env_vars=("LITELLM_API_KEY",),
        base_url_env_var="LITELLM_BASE_URL",
        aliases=("lite-llm", "proxy"),
        requires_api_key=False,
    ),
    "openrouter": ProviderMeta(
        id="openrouter",
        label="OpenRouter",
        api="chat_completions",
        tool_schema_style=NESTED,
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
        aliases=("or",),
    ),
    "custom": ProviderMeta(
        id="custom",
        label="Custom OpenAI-compatible endpoint",
        api="chat_completions",
        tool_schema_style=NESTED,
        api_key_env_vars=("CUSTOM_API_KEY",),
        base_url_env_var="CUSTOM_BASE_URL",
        requires_api_key=False,
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = DEFAULT_PROVIDER) -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def is_supported_provider(provider_id: str) -> bool:
    return normalize_provider_id(provider_id) in PROVIDERS


def list_provider_ids() -> List[str]:
    return list(PROVIDERS)


def resolve_provider_for_model(
    model: str,
    *,
    model_table: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_PROVIDER,
) -> str:
    """
    Resolve the provider that serves ``model``.

    Order:
    1) explicit model -> provider table (config.yaml ``models``)
    2) "<provider>/<model>" names go to OpenRouter
    3) known model-name prefixes (gpt-*, o3*, ...)
    4) ``default``
    """
    name = (model or "").strip()
    if model_table and name in model_table:
        return normalize_provider_id(model_table[name], default=default)
    if "/" in name:
        return "openrouter"
    lowered = name.lower()
    for pid, meta in PROVIDERS.items():
        if any(lowered.startswith(prefix) for prefix in meta.model_prefixes):
            return pid
    return normalize_provider_id(default)


def iter_api_key_env_vars(provider_id: str) -> Iterable[str]:
    meta = get_provider(provider_id)
    if not meta:
        return ()
    return meta.api_key_env_vars


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    for env_var in iter_api_key_env_vars(provider_id):
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve the base URL with consistent precedence.

    Order:
    1) explicit base URL (config.yaml / caller)
    2) provider-specific base URL env override
    3) provider default base URL
    """
    if isinstance(explicit_base_url, str) and explicit_base_url.strip():
        return explicit_base_url.strip().rstrip("/")
    meta = get_provider(provider_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


def has_any_provider_key(provider_id: str, *, env_get: EnvGetter = os.getenv) -> bool:
    for env_var in iter_api_key_env_vars(provider_id):
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return True
    return False


def to_flat_tool_schema(tool: Mapping) -> Dict:
    """Nested chat-completions schema -> flat responses-API schema."""
    if "function" not in tool:
        return dict(tool)
    func = tool["function"]
    return {
        "type": "function",
        "name": func["name"],
        "description": func.get("description", ""),
        "parameters": func.get("parameters", {}),
    }


def to_nested_tool_schema(tool: Mapping) -> Dict:
    """Flat schema -> nested chat-completions schema. Nested input passes through."""
    if "function" in tool:
        return dict(tool)
    return {
        "type": "function",
        "function": {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "parameters": tool.get("parameters", {}),
        },
    }


def translate_tool_schemas(provider_id: str, tools: Iterable[Mapping]) -> List[Dict]:
    """Translate tool schemas into the shape ``provider_id`` expects."""
    meta = get_provider(provider_id)
    style = meta.tool_schema_style if meta else NESTED
    convert = to_flat_tool_schema if style == FLAT else to_nested_tool_schema
    return [convert(tool) for tool in tools]


def model_accepts_temperature(provider_id: str, model: str) -> bool:
    """False for reasoning models that only run at their fixed temperature."""
    meta = get_provider(provider_id)
    if not meta:
        return True
    lowered = (model or "").strip().lower()
    return not any(lowered.startswith(prefix) for prefix in meta.fixed_temperature_prefixes)
