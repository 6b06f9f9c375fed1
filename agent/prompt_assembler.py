"""Per-iteration system prompt assembly.

The prompt sent on each iteration is layered:

    1. the agent's rendered system prompt (static for the run)
    2. a "Current Progress" block naming the step and the budget
    3. blocks from external context providers (may change every step)

Only the first layer is fixed for the run; the other two are rebuilt on
every call.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

logger = logging.getLogger(__name__)

# (agent_name, iteration, max_iterations) -> extra prompt text or None
ContextProvider = Callable[[str, int, int], Union[Optional[str], Awaitable[Optional[str]]]]


def progress_block(iteration: int, max_iterations: int) -> str:
    return (
        "## Current Progress\n"
        f"- You are currently on step {iteration + 1} of {max_iterations} maximum steps.\n"
        "- Focus on making meaningful progress with each step."
    )


class PromptAssembler:
    """Assembles the system prompt for each iteration of one agent run.

    Args:
        base_prompt: The agent's system prompt with run args already applied.
        agent_name: Passed through to context providers.
        context_providers: Callables returning extra text (sync or async).
            A provider that raises is logged and skipped.
    """

    def __init__(
        self,
        base_prompt: str,
        *,
        agent_name: str = "",
        context_providers: Sequence[ContextProvider] = (),
    ):
        self._base_prompt = base_prompt.strip()
        self._agent_name = agent_name
        self._context_providers = list(context_providers)

    async def _context_blocks(self, iteration: int, max_iterations: int):
        blocks = []
        for provider in self._context_providers:
            try:
                block: Any = provider(self._agent_name, iteration, max_iterations)
                if inspect.isawaitable(block):
                    block = await block
            except Exception as e:
                logger.warning("Context provider %r failed: %s", provider, e)
                continue
            if block:
                blocks.append(str(block).strip())
        return blocks

    async def build(self, iteration: int, max_iterations: int) -> str:
        """Return the full system prompt for 0-indexed ``iteration``."""
        prompt_parts = [self._base_prompt, progress_block(iteration, max_iterations)]
        prompt_parts.extend(await self._context_blocks(iteration, max_iterations))
        return "\n\n".join(part for part in prompt_parts if part)

