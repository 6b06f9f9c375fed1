"""
Handoff resolution.

A handoff moves an in-progress run from a delegating agent to a target
agent. The resolver owns the four decisions involved; the loop owns the
recursive run itself:

    select_messages  which part of the delegator's log the target sees
    resolve_target   the target's config, falling back to the delegator's
    choose_args      tool-call args (explicit) or the original run args
    merge_result     the combined RunResult returned to the caller
"""

import logging
from typing import Any, Dict, Mapping, Optional

from agent.definitions import (
    AgentRegistry,
    HandoffRule,
    ResolvedAgentConfig,
    resolve_agent_config,
)
from agent.messages import MessageLog
from agent.run_result import RunResult, TerminationReason

logger = logging.getLogger(__name__)


class HandoffResolver:
    def __init__(self, agents: AgentRegistry):
        self.agents = agents

    def select_messages(self, rule: HandoffRule, message_log: MessageLog) -> MessageLog:
        """Messages transferred to the target. An unset or empty filter transfers everything."""
        if rule.include_tool_results:
            return message_log.filter_for_handoff(set(rule.include_tool_results))
        return message_log.copy()

    def resolve_target(
        self,
        rule: HandoffRule,
        delegator: ResolvedAgentConfig,
        args: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedAgentConfig:
        """Resolve the target's run config. Raises ConfigurationError if it is not registered."""
        target = self.agents.require(rule.target_agent_name)
        return resolve_agent_config(
            target,
            fallback_model=delegator.model,
            fallback_max_iterations=delegator.max_iterations,
            fallback_temperature=delegator.temperature,
            fallback_system_prompt=delegator.agent.system_prompt_template,
            fallback_tool_names=delegator.tool_names,
            args=args,
        )

    @staticmethod
    def choose_args(
        rule: HandoffRule,
        tool_args: Optional[Mapping[str, Any]],
        original_args: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        if rule.is_explicit:
            return dict(tool_args or {})
        return dict(original_args or {})

    @staticmethod
    def merge_result(
        target: ResolvedAgentConfig,
        target_result: RunResult,
        pre_handoff_log: MessageLog,
    ) -> RunResult:
        """Combine the target's result with the delegator's history.

        The target's own ``include_intermediate_steps_on_return`` decides
        whether the returned log is the target's alone or the delegator's
        history followed by the target's. An unset termination reason
        becomes HANDED_OFF.
        """
        if target.agent.include_intermediate_steps_on_return:
            combined = pre_handoff_log.copy()
            combined.extend(target_result.message_log)
        else:
            combined = target_result.message_log

        merged = RunResult(
            status=target_result.status,
            iterations=target_result.iterations,
            message_log=combined,
            output=target_result.output,
            error_text=target_result.error_text,
            error_type=target_result.error_type,
            termination_reason=target_result.termination_reason,
            agent_name=target_result.agent_name,
            handoff_chain=list(target_result.handoff_chain),
        )
        return merged.with_default_reason(TerminationReason.HANDED_OFF)
