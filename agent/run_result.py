"""Terminal result of an agent run."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from agent.messages import MessageLog


class RunStatus(str, Enum):
    FINAL_ANSWER = "final_answer"
    ERROR = "error"
    MAX_ITERATIONS = "max_iterations"
    HANDED_OFF = "handed_off"
    CANCELLED = "cancelled"


class TerminationReason(str, Enum):
    FINAL_ANSWER = "final_answer"
    ERROR = "error"
    MAX_ITERATIONS = "max_iterations"
    HANDED_OFF = "handed_off"
    CANCELLED = "cancelled"


_REASON_FOR_STATUS = {
    RunStatus.FINAL_ANSWER: TerminationReason.FINAL_ANSWER,
    RunStatus.ERROR: TerminationReason.ERROR,
    RunStatus.MAX_ITERATIONS: TerminationReason.MAX_ITERATIONS,
    RunStatus.HANDED_OFF: TerminationReason.HANDED_OFF,
    RunStatus.CANCELLED: TerminationReason.CANCELLED,
}


@dataclass
class RunResult:
    status: RunStatus
    iterations: int
    message_log: MessageLog
    output: Optional[str] = None
    error_text: Optional[str] = None
    # Class name from agent.errors when the run ended on an error condition
    error_type: Optional[str] = None
    # None until something sets it explicitly; see with_default_reason()
    termination_reason: Optional[TerminationReason] = None
    agent_name: str = ""
    # Every agent that took part, delegator first
    handoff_chain: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.FINAL_ANSWER

    def with_default_reason(self, reason: Optional[TerminationReason] = None) -> "RunResult":
        """Return a copy whose unset termination reason is filled in.

        Without an explicit ``reason`` the default is derived from the status.
        """
        if self.termination_reason is not None:
            return self
        return replace(self, termination_reason=reason or _REASON_FOR_STATUS[self.status])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "output": self.output,
            "error_text": self.error_text,
            "error_type": self.error_type,
            "iterations": self.iterations,
            "termination_reason": (
                self.termination_reason.value if self.termination_reason else None
            ),
            "agent_name": self.agent_name,
            "handoff_chain": list(self.handoff_chain),
            "message_count": len(self.message_log),
        }
