"""
AgentLoop -- Multi-Turn Agent Engine with Handoffs

Drives one agent through model-call-plus-action iterations until it reaches
a terminal state:

    FINAL_ANSWER    the model answered
    ERROR           gateway failure, unparsable reply, unknown tool,
                    configuration problem, handoff chain too deep
    MAX_ITERATIONS  the iteration budget ran out with no handoff rule
    CANCELLED       the caller's ``is_cancelled()`` turned true
    (handoff)       the run continues as a fresh run of another agent and
                    the target's result, merged, is returned

Each iteration:
    1. build the system prompt (agent prompt + progress + context blocks)
    2. call the gateway with the whole log and the agent's tool schemas,
       including synthesized ``handoff_to_<agent>`` tools
    3. parse the reply into exactly one action and dispatch it

Tool failures never end a run; the model sees the failure text and decides
what to do next. Every terminal path returns a RunResult.

The loop object only holds read-only collaborators (agent registry, tool
registry, gateway), so any number of runs may share one instance
concurrently. All per-run state lives in local variables of the run.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from agent.async_bridge import run_async
from agent.definitions import (
    AgentDefinition,
    AgentRegistry,
    HandoffRule,
    ResolvedAgentConfig,
    build_handoff_tool_schema,
    handoff_tool_name,
    resolve_agent_config,
)
from agent.errors import (
    AgentRunError,
    ConfigurationError,
    GatewayError,
    HandoffDepthExceeded,
    IterationBudgetExceeded,
    UnknownToolRequested,
    UnparsableActionError,
)
from agent.handoff import HandoffResolver
from agent.messages import (
    FinalAnswerMessage,
    MessageLog,
    ToolCallMessage,
    ToolResultMessage,
    coerce_message_log,
)
from agent.prompt_assembler import ContextProvider, PromptAssembler
from agent.run_result import RunResult, RunStatus, TerminationReason
from agent.tracing import TraceCollector, emit, start_event
from llm.response_parser import FinalAnswerAction, ToolCallAction, UnparsableAction, parse_response
from relay_constants import (
    DEFAULT_MAX_HANDOFF_DEPTH,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    SYSTEM_ERROR_TOOL_NAME,
)
from tools.registry import ToolFailure, ToolRegistry
from tools.result_formatting import format_result_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RunContext:
    """Per-run values threaded through recursive handoffs."""

    run_id: str
    is_cancelled: Optional[Callable[[], bool]] = None

    def cancelled(self) -> bool:
        if self.is_cancelled is None:
            return False
        try:
            return bool(self.is_cancelled())
        except Exception as e:
            logger.warning("[%s] is_cancelled() raised, treating as not cancelled: %s", self.run_id, e)
            return False


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class AgentLoop:
    """
    Runs agents from an AgentRegistry against a ToolRegistry and an LLM gateway.

    Args:
        agents: Registered agent definitions (read-only).
        tools: Registered tools (read-only).
        gateway: Object with ``resolve_provider(model)`` and
                 ``async call(provider, model, system_prompt, messages,
                 tool_schemas, temperature)``; normally ``llm.gateway.LLMGateway``.
        default_model: Model for agents that name none.
        default_max_iterations: Iteration budget for agents that set none.
        default_temperature: Temperature for agents that set none.
        trace_collector: Optional observability sink.
        context_providers: Extra system-prompt blocks, evaluated every iteration.
        max_handoff_depth: Maximum number of handoffs in one run's chain.
    """

    def __init__(
        self,
        agents: AgentRegistry,
        tools: ToolRegistry,
        gateway,
        *,
        default_model: str = DEFAULT_MODEL,
        default_max_iterations: int = DEFAULT_MAX_ITERATIONS,
        default_temperature: float = DEFAULT_TEMPERATURE,
        trace_collector: Optional[TraceCollector] = None,
        context_providers: Sequence[ContextProvider] = (),
        max_handoff_depth: int = DEFAULT_MAX_HANDOFF_DEPTH,
    ):
        self.agents = agents
        self.tools = tools
        self.gateway = gateway
        self.default_model = default_model
        self.default_max_iterations = default_max_iterations
        self.default_temperature = default_temperature
        self.trace_collector = trace_collector
        self.context_providers = tuple(context_providers)
        self.max_handoff_depth = max_handoff_depth
        self.resolver = HandoffResolver(agents)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        agent: Union[str, AgentDefinition],
        messages=None,
        args: Optional[Mapping[str, Any]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Run ``agent`` on ``messages`` (a MessageLog, a list of messages, or a
        bare user string) until it terminates.

        ``args`` are the run arguments: they fill ``$name`` placeholders in
        the system prompt and are forwarded on max-iterations handoffs.
        """
        ctx = _RunContext(run_id=run_id or uuid.uuid4().hex[:8], is_cancelled=is_cancelled)
        message_log = coerce_message_log(messages)
        args = dict(args or {})

        if isinstance(agent, str):
            try:
                agent = self.agents.require(agent)
            except ConfigurationError as e:
                logger.error("[%s] %s", ctx.run_id, e.message)
                return self._error_result(agent, e, 0, message_log, [agent]).with_default_reason()

        try:
            resolved = resolve_agent_config(
                agent,
                fallback_model=self.default_model,
                fallback_max_iterations=self.default_max_iterations,
                fallback_temperature=self.default_temperature,
                args=args,
            )
        except ConfigurationError as e:
            logger.error("[%s] %s", ctx.run_id, e.message)
            return self._error_result(agent.name, e, 0, message_log, [agent.name]).with_default_reason()

        result = await self._run_agent(resolved, message_log, args, ctx, chain=[])
        result = result.with_default_reason()
        logger.info(
            "[%s] run finished: status=%s reason=%s iterations=%d chain=%s",
            ctx.run_id, result.status.value, result.termination_reason.value,
            result.iterations, " -> ".join(result.handoff_chain),
        )
        return result

    def run_sync(self, agent, messages=None, args=None, is_cancelled=None, run_id=None) -> RunResult:
        """Blocking wrapper around ``run()`` for synchronous callers."""
        return run_async(self.run(agent, messages, args, is_cancelled, run_id))

    # ------------------------------------------------------------------
    # Single-agent run
    # ------------------------------------------------------------------

    def _tool_setup(self, resolved: ResolvedAgentConfig):
        """Return (ordinary tool names, handoff tool name -> rule, tool schemas)."""
        tool_names: List[str] = []
        for name in sorted(resolved.tool_names):
            if name in self.tools:
                if self.tools.available(name):
                    tool_names.append(name)
            else:
                logger.warning("Agent '%s' lists unknown tool '%s'; ignoring it", resolved.name, name)

        handoff_rules: Dict[str, HandoffRule] = {}
        handoff_schemas: List[Dict[str, Any]] = []
        for rule in resolved.agent.explicit_handoff_rules():
            target = self.agents.require(rule.target_agent_name)
            tool_name = handoff_tool_name(target.name)
            if tool_name in handoff_rules:
                continue
            handoff_rules[tool_name] = rule
            handoff_schemas.append(build_handoff_tool_schema(target))

        schemas = self.tools.get_definitions(tool_names) + handoff_schemas
        return tool_names, handoff_rules, schemas

    async def _run_agent(
        self,
        resolved: ResolvedAgentConfig,
        message_log: MessageLog,
        args: Dict[str, Any],
        ctx: _RunContext,
        chain: List[str],
    ) -> RunResult:
        agent_name = resolved.name
        chain = chain + [agent_name]
        log = message_log
        max_iterations = resolved.max_iterations

        try:
            tool_names, handoff_rules, tool_schemas = self._tool_setup(resolved)
        except ConfigurationError as e:
            logger.error("[%s] %s: %s", ctx.run_id, agent_name, e.message)
            return self._error_result(agent_name, e, 0, log, chain)

        provider = self.gateway.resolve_provider(resolved.model)
        assembler = PromptAssembler(
            resolved.system_prompt,
            agent_name=agent_name,
            context_providers=self.context_providers,
        )
        logger.info(
            "[%s] %s starting (model=%s, provider=%s, max_iterations=%d, tools=%d, handoffs=%d)",
            ctx.run_id, agent_name, resolved.model, provider, max_iterations,
            len(tool_names), len(handoff_rules),
        )

        iterations = 0
        for iteration in range(max_iterations):
            if ctx.cancelled():
                return self._finish(resolved, self._cancelled_result(agent_name, iterations, log, chain, ctx))

            iterations = iteration + 1
            logger.debug("[%s] %s iteration %d/%d", ctx.run_id, agent_name, iterations, max_iterations)
            system_prompt = await assembler.build(iteration, max_iterations)

            generation = start_event(
                f"LLM Generation: {agent_name}",
                "generation",
                input={"system_prompt": system_prompt, "messages": len(log)},
                agent=agent_name,
                model=resolved.model,
                provider=provider,
                iteration=iterations,
            )
            emit(self.trace_collector, generation, ctx.run_id)
            try:
                response = await self.gateway.call(
                    provider,
                    resolved.model,
                    system_prompt,
                    log.to_provider_format(),
                    tool_schemas,
                    resolved.temperature,
                )
            except GatewayError as e:
                logger.error("[%s] %s gateway call failed: %s", ctx.run_id, agent_name, e.message)
                emit(self.trace_collector, generation.finished(error=e.message), ctx.run_id)
                self._append_system_error(log, f"LLM call failed: {e.message}")
                return self._finish(resolved, self._error_result(agent_name, e, iterations, log, chain))

            action = parse_response(response)
            emit(
                self.trace_collector,
                generation.finished(output={"text": response.text, "action": type(action).__name__}),
                ctx.run_id,
            )

            if isinstance(action, FinalAnswerAction):
                log.append(FinalAnswerMessage(answer=action.answer, reasoning=response.reasoning))
                logger.info("[%s] %s produced a final answer after %d iterations",
                            ctx.run_id, agent_name, iterations)
                return self._finish(resolved, RunResult(
                    status=RunStatus.FINAL_ANSWER,
                    iterations=iterations,
                    message_log=log,
                    output=action.answer,
                    agent_name=agent_name,
                    handoff_chain=chain,
                ))

            if isinstance(action, UnparsableAction):
                error = UnparsableActionError(action.error)
                logger.error("[%s] %s: %s", ctx.run_id, agent_name, error.message)
                self._append_system_error(log, error.message)
                return self._finish(resolved, self._error_result(agent_name, error, iterations, log, chain))

            if not isinstance(action, ToolCallAction):
                raise TypeError(f"Unknown action type: {type(action).__name__}")

            call_id = action.call_id or _new_call_id()
            log.append(ToolCallMessage(
                tool_name=action.name,
                tool_args=action.args,
                tool_call_id=call_id,
                reasoning=response.reasoning,
            ))

            if action.name in handoff_rules:
                rule = handoff_rules[action.name]
                log.append(ToolResultMessage(
                    tool_call_id=call_id,
                    tool_name=action.name,
                    result_text=f"Handing off to {rule.target_agent_name}",
                ))
                return await self._handoff(
                    resolved, rule, log, args, ctx, chain, iterations, tool_args=action.args
                )

            if action.name not in tool_names:
                error = UnknownToolRequested(action.name, tool_names + list(handoff_rules))
                logger.error("[%s] %s: %s", ctx.run_id, agent_name, error.message)
                log.append(ToolResultMessage(
                    tool_call_id=call_id,
                    tool_name=action.name,
                    result_text=f"Error: {error.message}",
                    is_error=True,
                    error_text=error.message,
                ))
                return self._finish(resolved, self._error_result(agent_name, error, iterations, log, chain))

            await self._execute_tool(action.name, action.args, call_id, log, ctx, agent_name, iterations)

        # Budget exhausted without a terminal action
        rule = resolved.agent.max_iterations_rule()
        if rule is not None:
            if ctx.cancelled():
                return self._finish(resolved, self._cancelled_result(agent_name, iterations, log, chain, ctx))
            logger.info("[%s] %s reached max iterations (%d); handing off to %s",
                        ctx.run_id, agent_name, max_iterations, rule.target_agent_name)
            return await self._handoff(resolved, rule, log, args, ctx, chain, iterations, tool_args=None)

        error = IterationBudgetExceeded(max_iterations)
        logger.warning("[%s] %s: %s", ctx.run_id, agent_name, error.message)
        result = self._error_result(agent_name, error, iterations, log, chain)
        result.status = RunStatus.MAX_ITERATIONS
        return self._finish(resolved, result)

    async def _execute_tool(self, name, args, call_id, log, ctx, agent_name, iteration):
        span = start_event(
            f"Tool: {name}",
            "span",
            input=args,
            agent=agent_name,
            tool_call_id=call_id,
            iteration=iteration,
        )
        emit(self.trace_collector, span, ctx.run_id)

        outcome = await self.tools.execute(name, args)
        text = format_result_text(outcome)
        if isinstance(outcome, ToolFailure):
            logger.info("[%s] %s tool %s failed: %s", ctx.run_id, agent_name, name, outcome.message[:200])
            log.append(ToolResultMessage(
                tool_call_id=call_id,
                tool_name=name,
                result_text=text,
                result_data=outcome.data,
                is_error=True,
                error_text=outcome.message,
            ))
        else:
            logger.debug("[%s] %s tool %s ok (%d chars)", ctx.run_id, agent_name, name, len(text))
            log.append(ToolResultMessage(
                tool_call_id=call_id,
                tool_name=name,
                result_text=text,
                result_data=outcome.data,
            ))

        emit(
            self.trace_collector,
            span.finished(output=text, is_error=isinstance(outcome, ToolFailure)),
            ctx.run_id,
        )

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    async def _handoff(
        self,
        delegator: ResolvedAgentConfig,
        rule: HandoffRule,
        log: MessageLog,
        original_args: Dict[str, Any],
        ctx: _RunContext,
        chain: List[str],
        iterations: int,
        tool_args: Optional[Mapping[str, Any]],
    ) -> RunResult:
        if len(chain) > self.max_handoff_depth:
            error = HandoffDepthExceeded(chain + [rule.target_agent_name], self.max_handoff_depth)
            logger.error("[%s] %s", ctx.run_id, error.message)
            return self._error_result(delegator.name, error, iterations, log, chain)

        target_args = self.resolver.choose_args(rule, tool_args, original_args)
        try:
            target = self.resolver.resolve_target(rule, delegator, target_args)
        except ConfigurationError as e:
            logger.error("[%s] handoff from %s failed: %s", ctx.run_id, delegator.name, e.message)
            return self._error_result(delegator.name, e, iterations, log, chain)

        transferred = self.resolver.select_messages(rule, log)
        event = start_event(
            f"Handoff: {delegator.name} -> {target.name}",
            "event",
            input={"trigger": rule.trigger.value, "args": target_args,
                   "transferred_messages": len(transferred)},
            from_agent=delegator.name,
            to_agent=target.name,
            iteration=iterations,
        )
        emit(self.trace_collector, event, ctx.run_id)
        logger.info("[%s] %s handed off to %s (%s, %d messages transferred)",
                    ctx.run_id, delegator.name, target.name, rule.trigger.value, len(transferred))

        target_result = await self._run_agent(target, transferred, target_args, ctx, chain)
        merged = self.resolver.merge_result(target, target_result, log)
        emit(self.trace_collector, event.finished(output={"status": merged.status.value}), ctx.run_id)
        return merged

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _append_system_error(log: MessageLog, text: str):
        log.append(ToolResultMessage(
            tool_call_id=None,
            tool_name=SYSTEM_ERROR_TOOL_NAME,
            result_text=f"Error: {text}",
            is_error=True,
            error_text=text,
        ))

    @staticmethod
    def _error_result(agent_name: str, error: AgentRunError, iterations: int,
                      log: MessageLog, chain: List[str]) -> RunResult:
        return RunResult(
            status=RunStatus.ERROR,
            iterations=iterations,
            message_log=log,
            error_text=error.message,
            error_type=type(error).__name__,
            agent_name=agent_name,
            handoff_chain=list(chain),
        )

    @staticmethod
    def _cancelled_result(agent_name, iterations, log, chain, ctx) -> RunResult:
        logger.info("[%s] %s cancelled after %d iterations", ctx.run_id, agent_name, iterations)
        return RunResult(
            status=RunStatus.CANCELLED,
            iterations=iterations,
            message_log=log,
            termination_reason=TerminationReason.CANCELLED,
            agent_name=agent_name,
            handoff_chain=list(chain),
        )

    @staticmethod
    def _finish(resolved: ResolvedAgentConfig, result: RunResult) -> RunResult:
        """Apply the agent's result hook, if any. A failing hook leaves the result unchanged."""
        hook = resolved.agent.result_hook
        if hook is None:
            return result
        try:
            rewritten = hook(result)
        except Exception as e:
            logger.warning("Result hook for agent '%s' failed: %s", resolved.name, e)
            return result
        if isinstance(rewritten, RunResult):
            return rewritten
        return result
