"""
LLM Gateway

One entry point, ``LLMGateway.call()``, for every provider. Each provider is
served by a client speaking one of two wire shapes through the ``openai`` SDK:

- ``OpenAIResponsesClient``: the Responses API with flat tool schemas
  (the ``openai`` provider)
- ``OpenAIChatClient``: chat completions with nested tool schemas
  (LiteLLM proxies, OpenRouter, custom OpenAI-compatible endpoints)

Whatever the provider returns is normalized into an ``LLMResponse``. Any
transport or provider failure surfaces as ``GatewayError``; there are no
retries here.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional

import openai
from openai import AsyncOpenAI

from agent.errors import GatewayError
from llm.provider_registry import (
    get_provider,
    model_accepts_temperature,
    normalize_provider_id,
    resolve_provider_api_key,
    resolve_provider_base_url,
    resolve_provider_for_model,
    translate_tool_schemas,
)
from llm.response_parser import FunctionCall, LLMResponse, extract_reasoning, normalize_tool_args
from relay_constants import DEFAULT_PROVIDER

logger = logging.getLogger(__name__)

# Local proxies frequently run without auth, but the SDK insists on a key.
_PLACEHOLDER_API_KEY = "not-needed"


class ProviderClient:
    """One provider's wire protocol. Subclasses implement ``complete``."""

    provider_id = ""

    async def complete(
        self,
        model: str,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tool_schemas: List[Dict[str, Any]],
        temperature: float,
    ) -> LLMResponse:
        raise NotImplementedError


def _first_function_call(name: Optional[str], arguments: Any, call_id: Optional[str]) -> Optional[FunctionCall]:
    if not name:
        return None
    args, schema_valid = normalize_tool_args(arguments)
    if not schema_valid:
        logger.debug("Normalized non-object arguments for tool %s", name)
    return FunctionCall(name=name, arguments=args, call_id=call_id)


class OpenAIChatClient(ProviderClient):
    """Chat-completions client (nested tool schemas, one tool call per turn)."""

    def __init__(self, client: AsyncOpenAI, provider_id: str = "litellm"):
        self.client = client
        self.provider_id = provider_id

    async def complete(self, model, system_prompt, messages, tool_schemas, temperature) -> LLMResponse:
        api_messages = [{"role": "system", "content": system_prompt}] + list(messages)
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": api_messages,
        }
        if model_accepts_temperature(self.provider_id, model):
            kwargs["temperature"] = temperature
        if tool_schemas:
            kwargs["tools"] = translate_tool_schemas(self.provider_id, tool_schemas)
            kwargs["parallel_tool_calls"] = False

        response = await self.client.chat.completions.create(**kwargs)
        if not response.choices:
            return LLMResponse(raw=response)

        message = response.choices[0].message
        function_call = None
        tool_calls = getattr(message, "tool_calls", None) or []
        if tool_calls:
            if len(tool_calls) > 1:
                logger.warning("%s returned %d tool calls; using the first",
                               self.provider_id, len(tool_calls))
            tc = tool_calls[0]
            function_call = _first_function_call(tc.function.name, tc.function.arguments, tc.id)

        return LLMResponse(
            text=message.content,
            function_call=function_call,
            reasoning=extract_reasoning(message),
            raw=response,
        )


def chat_messages_to_responses_input(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert chat-completions messages into Responses API input items."""
    items: List[Dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role", "")
        if role == "tool":
            items.append({
                "type": "function_call_output",
                "call_id": msg.get("tool_call_id", ""),
                "output": msg.get("content") or "",
            })
        elif role == "assistant" and msg.get("tool_calls"):
            if msg.get("content"):
                items.append({"role": "assistant", "content": msg["content"]})
            for tc in msg["tool_calls"]:
                func = tc.get("function", {})
                items.append({
                    "type": "function_call",
                    "call_id": tc.get("id", ""),
                    "name": func.get("name", ""),
                    "arguments": func.get("arguments", "{}"),
                })
        elif role in ("user", "assistant"):
            items.append({"role": role, "content": msg.get("content") or ""})
        else:
            logger.debug("Dropping message with role %r from responses input", role)
    return items


def _item_field(item, name: str, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


class OpenAIResponsesClient(ProviderClient):
    """Responses API client (flat tool schemas)."""

    provider_id = "openai"

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def complete(self, model, system_prompt, messages, tool_schemas, temperature) -> LLMResponse:
        kwargs: Dict[str, Any] = {
            "model": model,
            "instructions": system_prompt,
            "input": chat_messages_to_responses_input(messages),
        }
        if model_accepts_temperature(self.provider_id, model):
            kwargs["temperature"] = temperature
        if tool_schemas:
            kwargs["tools"] = translate_tool_schemas(self.provider_id, tool_schemas)
            kwargs["parallel_tool_calls"] = False

        response = await self.client.responses.create(**kwargs)

        text_parts: List[str] = []
        reasoning_parts: List[str] = []
        function_call = None
        for item in _item_field(response, "output", None) or []:
            item_type = _item_field(item, "type")
            if item_type == "message":
                for part in _item_field(item, "content", None) or []:
                    if _item_field(part, "type") == "output_text":
                        text_parts.append(_item_field(part, "text", ""))
            elif item_type == "function_call":
                if function_call is None:
                    function_call = _first_function_call(
                        _item_field(item, "name"),
                        _item_field(item, "arguments"),
                        _item_field(item, "call_id"),
                    )
                else:
                    logger.warning("Responses API returned more than one function call; using the first")
            elif item_type == "reasoning":
                for summary in _item_field(item, "summary", None) or []:
                    summary_text = _item_field(summary, "text")
                    if summary_text:
                        reasoning_parts.append(summary_text)

        return LLMResponse(
            text="".join(text_parts) if text_parts else None,
            function_call=function_call,
            reasoning="\n\n".join(reasoning_parts) if reasoning_parts else None,
            raw=response,
        )


def create_provider_client(
    provider_id: str,
    *,
    env_get: Callable[[str], Optional[str]] = os.getenv,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ProviderClient:
    """Build the SDK-backed client for ``provider_id`` from the provider table."""
    meta = get_provider(provider_id)
    if meta is None:
        raise GatewayError(f"Unsupported provider: {provider_id}", provider=provider_id)

    resolved_key = resolve_provider_api_key(meta.id, env_get=env_get, explicit_api_key=api_key)
    if not resolved_key:
        if meta.requires_api_key:
            raise GatewayError(
                f"No API key for provider '{meta.id}'. Set one of: {', '.join(meta.api_key_env_vars)}",
                provider=meta.id,
            )
        resolved_key = _PLACEHOLDER_API_KEY
    resolved_url = resolve_provider_base_url(meta.id, env_get=env_get, explicit_base_url=base_url)
    if not resolved_url:
        raise GatewayError(
            f"No base URL for provider '{meta.id}'. Set {meta.base_url_env_var}",
            provider=meta.id,
        )

    sdk_client = AsyncOpenAI(api_key=resolved_key, base_url=resolved_url)
    logger.debug("Created %s client for %s", meta.api, resolved_url)
    if meta.api == "responses":
        return OpenAIResponsesClient(sdk_client)
    return OpenAIChatClient(sdk_client, provider_id=meta.id)


class LLMGateway:
    """Provider-agnostic model access shared by every run.

    Clients are created on first use per provider and reused afterwards.
    ``model_providers`` is the explicit model -> provider table consulted
    before the prefix rules.
    """

    def __init__(
        self,
        clients: Optional[Mapping[str, ProviderClient]] = None,
        model_providers: Optional[Mapping[str, str]] = None,
        default_provider: str = DEFAULT_PROVIDER,
        env_get: Callable[[str], Optional[str]] = os.getenv,
        provider_settings: Optional[Mapping[str, Mapping[str, str]]] = None,
    ):
        self._clients: Dict[str, ProviderClient] = dict(clients or {})
        self.model_providers = dict(model_providers or {})
        self.default_provider = normalize_provider_id(default_provider)
        self._env_get = env_get
        self._provider_settings = {k: dict(v) for k, v in (provider_settings or {}).items()}

    def resolve_provider(self, model: str) -> str:
        return resolve_provider_for_model(
            model, model_table=self.model_providers, default=self.default_provider
        )

    def client_for(self, provider: str) -> ProviderClient:
        provider = normalize_provider_id(provider, default=self.default_provider)
        client = self._clients.get(provider)
        if client is None:
            settings = self._provider_settings.get(provider, {})
            client = create_provider_client(
                provider,
                env_get=self._env_get,
                api_key=settings.get("api_key"),
                base_url=settings.get("base_url"),
            )
            self._clients[provider] = client
        return client

    async def call(
        self,
        provider: Optional[str],
        model: str,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tool_schemas: List[Dict[str, Any]],
        temperature: float,
    ) -> LLMResponse:
        """Send one request. ``provider=None`` resolves it from ``model``."""
        provider = provider or self.resolve_provider(model)
        try:
            client = self.client_for(provider)
            return await client.complete(model, system_prompt, messages, tool_schemas, temperature)
        except GatewayError:
            raise
        except openai.APIStatusError as e:
            raise GatewayError(
                f"{provider} returned HTTP {e.status_code}: {e.message}",
                provider=provider, model=model, status_code=e.status_code, cause=e,
            ) from e
        except openai.APIError as e:
            raise GatewayError(
                f"{provider} request failed: {e}",
                provider=provider, model=model, cause=e,
            ) from e
        except Exception as e:
            raise GatewayError(
                f"{provider} call failed: {type(e).__name__}: {e}",
                provider=provider, model=model, cause=e,
            ) from e
