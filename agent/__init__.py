"""Agent internals -- definitions, the orchestration loop, and its helpers.

Module Overview
---------------
**messages.py**
    The four message kinds and the per-run MessageLog, including the
    provider wire format and the handoff filter.

**definitions.py**
    AgentDefinition, HandoffRule, AgentRegistry, and config resolution
    with fallbacks.

**agent_loop.py**
    AgentLoop: the iteration state machine, tool dispatch, and handoffs.

**handoff.py**
    HandoffResolver: message transfer, target config, args, result merge.

**prompt_assembler.py**
    Per-iteration system prompt (agent prompt + progress + context blocks).

**run_result.py / errors.py**
    RunResult, status and termination-reason enums, the error taxonomy.

**tracing.py**
    Optional observability events and collectors.

**config.py / config_validator.py**
    config.yaml + .env loading (PyYAML, python-dotenv, pydantic) and checks.

**trajectory.py**
    ShareGPT-format JSONL export of finished runs.

**async_bridge.py**
    run_async() for synchronous callers.

Architecture
------------
1. **Explicit registries**: agents and tools are plain values built once at
   startup and injected into AgentLoop; nothing is a process-wide singleton.

2. **No circular imports**: tools/ and llm/ never import the loop; the loop
   talks to them only through ToolRegistry and the gateway's call().

3. **Results, not exceptions**: every run ends in a RunResult. Only
   ConfigurationError is raised, and only while loading configuration.
"""
