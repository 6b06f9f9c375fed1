"""Error taxonomy for agent runs.

Only ``ConfigurationError`` is ever raised to callers (at startup, while
agents and config are being loaded). Everything else is caught by the loop
and reported through ``RunResult.error_type`` / ``RunResult.error_text``.
"""

from typing import Optional


class AgentRunError(Exception):
    """Base class for everything that can end (or be recorded during) a run."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConfigurationError(AgentRunError):
    """Missing agent fields, duplicate names, or unregistered handoff targets."""
    pass


class GatewayError(AgentRunError):
    """Transport or provider failure while calling a model."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        model: str = "",
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class UnparsableActionError(AgentRunError):
    """The model reply was neither a tool call nor usable text."""
    pass


class UnknownToolRequested(AgentRunError):
    """The model named a tool that is not available to the running agent."""

    def __init__(self, tool_name: str, available=()):
        super().__init__(
            f"Agent requested unknown tool: {tool_name}. "
            f"Available tools: {sorted(available)}"
        )
        self.tool_name = tool_name


class ToolExecutionError(AgentRunError):
    """A tool raised. Non-fatal: recorded as a failed tool result."""

    def __init__(self, tool_name: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.tool_name = tool_name


class IterationBudgetExceeded(AgentRunError):
    def __init__(self, max_iterations: int):
        super().__init__(f"Agent reached maximum iterations ({max_iterations})")
        self.max_iterations = max_iterations


class HandoffDepthExceeded(AgentRunError):
    def __init__(self, chain, max_depth: int):
        super().__init__(
            f"Handoff chain exceeded maximum depth {max_depth}: {' -> '.join(chain)}"
        )
        self.chain = list(chain)
        self.max_depth = max_depth
