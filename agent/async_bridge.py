"""Sync-to-async bridge.

Single source of truth for running the async agent loop from synchronous
code (the CLI, scripts, ``AgentLoop.run_sync``).

Dependency direction:
    run_agent.py ──> agent/async_bridge.py <── agent/agent_loop.py
    (This module depends on neither.)
"""

import asyncio
import concurrent.futures


def run_async(coro):
    """Run an async coroutine from a sync context.

    If the current thread already has a running event loop (e.g. a caller
    inside its own async stack), we spin up a disposable thread so
    asyncio.run() can create its own loop without conflicting. No timeout is
    applied; the coroutine runs to completion.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    return asyncio.run(coro)
