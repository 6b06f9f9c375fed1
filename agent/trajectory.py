"""Trajectory export for finished runs.

Converts a run's MessageLog into ShareGPT-style turns and appends them to a
JSONL file for later analysis.

Functions:
    convert_scratchpad_to_think(content):
        Converts <REASONING_SCRATCHPAD> tags to <think> tags.

    message_log_to_trajectory(message_log, system_prompt, tool_schemas):
        Builds the ShareGPT ``conversations`` list.

    save_trajectory(trajectory, model, completed, filename, metadata):
        Appends a trajectory entry to a JSONL file. Completed trajectories
        go to trajectory_samples.jsonl, failed ones to failed_trajectories.jsonl.

Output Format (ShareGPT):
    {
        "conversations": [
            {"from": "system", "value": "..."},
            {"from": "human", "value": "..."},
            {"from": "gpt", "value": "<think>\\n</think>\\n<tool_call>...</tool_call>"},
            {"from": "tool", "value": "<tool_response>...</tool_response>"},
            {"from": "gpt", "value": "..."}
        ],
        "timestamp": "2024-01-01T00:00:00",
        "model": "gpt-4.1-mini",
        "completed": true
    }
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from agent.messages import (
    FinalAnswerMessage,
    MessageLog,
    ToolCallMessage,
    ToolResultMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)


def convert_scratchpad_to_think(content: str) -> str:
    """Convert <REASONING_SCRATCHPAD> tags to <think> tags."""
    if not content or "<REASONING_SCRATCHPAD>" not in content:
        return content
    return content.replace("<REASONING_SCRATCHPAD>", "<think>").replace("</REASONING_SCRATCHPAD>", "</think>")


def _think_prefix(reasoning: Optional[str]) -> str:
    # Every gpt turn carries a <think> block, empty when there was no reasoning
    if reasoning and reasoning.strip():
        return f"<think>\n{reasoning}\n</think>\n"
    return "<think>\n</think>\n"


def _tool_response_content(result_text: str) -> Any:
    try:
        if result_text.strip().startswith(("{", "[")):
            return json.loads(result_text)
    except json.JSONDecodeError:
        pass
    return result_text


def message_log_to_trajectory(
    message_log: MessageLog,
    system_prompt: str = "",
    tool_schemas: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, str]]:
    """Convert a MessageLog into ShareGPT turns.

    Consecutive tool results are merged into a single ``tool`` turn.
    """
    trajectory: List[Dict[str, str]] = []

    system_value = system_prompt
    if tool_schemas:
        tools_text = json.dumps(tool_schemas, ensure_ascii=False)
        system_value = f"{system_prompt}\n<tools>\n{tools_text}\n</tools>".strip()
    if system_value:
        trajectory.append({"from": "system", "value": system_value})

    pending_responses: List[str] = []

    def _flush_responses():
        if pending_responses:
            trajectory.append({"from": "tool", "value": "\n".join(pending_responses)})
            pending_responses.clear()

    for msg in message_log:
        if isinstance(msg, ToolResultMessage):
            payload = {
                "tool_call_id": msg.tool_call_id or "",
                "name": msg.tool_name,
                "content": _tool_response_content(msg.result_text),
            }
            pending_responses.append(
                f"<tool_response>\n{json.dumps(payload, ensure_ascii=False)}\n</tool_response>"
            )
            continue

        _flush_responses()
        if isinstance(msg, UserMessage):
            trajectory.append({"from": "human", "value": msg.text})
        elif isinstance(msg, ToolCallMessage):
            call_json = json.dumps({"name": msg.tool_name, "arguments": msg.tool_args}, ensure_ascii=False)
            content = _think_prefix(msg.reasoning) + f"<tool_call>\n{call_json}\n</tool_call>"
            trajectory.append({"from": "gpt", "value": content})
        elif isinstance(msg, FinalAnswerMessage):
            content = _think_prefix(msg.reasoning) + convert_scratchpad_to_think(msg.answer)
            trajectory.append({"from": "gpt", "value": content})
        else:
            raise TypeError(f"Unknown message type: {type(msg).__name__}")

    _flush_responses()
    return trajectory


def save_trajectory(trajectory: List[Dict[str, Any]], model: str,
                    completed: bool, filename: str = None,
                    metadata: Optional[Dict[str, Any]] = None):
    """Append a trajectory entry to a JSONL file.

    Args:
        trajectory: The ShareGPT-format conversation list.
        model: Model name for metadata.
        completed: Whether the conversation completed successfully.
        filename: Override output filename. Defaults to trajectory_samples.jsonl
                  or failed_trajectories.jsonl based on ``completed``.
        metadata: Extra top-level fields (agent name, status, ...).
    """
    if filename is None:
        filename = "trajectory_samples.jsonl" if completed else "failed_trajectories.jsonl"

    entry = {
        "conversations": trajectory,
        "timestamp": datetime.now().isoformat(),
        "model": model,
        "completed": completed,
    }
    if metadata:
        entry.update(metadata)

    try:
        with open(filename, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        logger.info("Trajectory saved to %s", filename)
    except Exception as e:
        logger.warning("Failed to save trajectory: %s", e)


def save_run_trajectory(result, *, model: str, system_prompt: str = "",
                        tool_schemas: Optional[List[Dict[str, Any]]] = None,
                        filename: str = None):
    """Convenience wrapper: export a finished RunResult."""
    trajectory = message_log_to_trajectory(result.message_log, system_prompt, tool_schemas)
    save_trajectory(
        trajectory,
        model=model,
        completed=result.success,
        filename=filename,
        metadata={
            "agent": result.agent_name,
            "status": result.status.value,
            "iterations": result.iterations,
            "handoff_chain": list(result.handoff_chain),
        },
    )
