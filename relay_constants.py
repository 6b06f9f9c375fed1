"""Shared constants for Relay Agent.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
LITELLM_BASE_URL = "http://localhost:4000/v1"

RELAY_HOME_ENV = "RELAY_HOME"
CONFIG_FILENAME = "config.yaml"

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_PROVIDER = "openai"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TEMPERATURE = 0.0
DEFAULT_MAX_HANDOFF_DEPTH = 5

# Synthesized tool names for LLM-triggered handoffs: handoff_to_<agent name>
HANDOFF_TOOL_PREFIX = "handoff_to_"

# tool_name recorded on synthetic error results that answer no tool call
SYSTEM_ERROR_TOOL_NAME = "system_error"

MAX_TOOL_RESULT_CHARS = 100_000
