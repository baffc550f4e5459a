"""
Turn Result - outcome of processing one user message
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ResultType(str, Enum):
    """Type of turn result"""
    QUESTION = "question"          # stage still collecting fields
    ADVANCED = "advanced"          # moved to another stage
    ACTION_ERROR = "action_error"  # action failed and the error policy paused
    COMPLETED = "completed"        # reached a terminal stage
    HANDOFF = "handoff"            # handed over to another flow
    ENDED = "ended"                # flow terminated by the error policy


@dataclass
class TurnResult:
    """
    Result of one executor turn.

    `response` is what the user sees. The raw tool error is kept in `error`
    for logs and in-process callers only; it is never copied into
    `response` and never serialized by `to_dict`.
    """

    response: str = ""
    result_type: ResultType = ResultType.QUESTION

    # Navigation
    stage: Optional[str] = None
    previous_stage: Optional[str] = None

    # Data collection
    extracted: Dict[str, Any] = field(default_factory=dict)
    accepted: Dict[str, Any] = field(default_factory=dict)
    rejected: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    missing_fields: List[str] = field(default_factory=list)

    # Actions
    action_triggered: Optional[str] = None
    action_result: Optional[Dict[str, Any]] = None

    # Error handling
    error: Optional[str] = None
    error_code: Optional[str] = None
    is_technical_error: bool = False

    # Handoff
    handoff_flow_slug: Optional[str] = None
    handoff_mode: Optional[str] = None

    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_error(self) -> bool:
        return self.error is not None

    def is_terminal(self) -> bool:
        return self.result_type in (ResultType.COMPLETED, ResultType.HANDOFF, ResultType.ENDED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "response": self.response,
            "result_type": self.result_type.value,
            "stage": self.stage,
            "previous_stage": self.previous_stage,
            "extracted": self.extracted,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "missing_fields": self.missing_fields,
            "action_triggered": self.action_triggered,
            "action_result": self.action_result,
            "is_error": self.is_error(),
            "is_technical_error": self.is_technical_error,
            "error_code": self.error_code,
            "handoff_flow_slug": self.handoff_flow_slug,
            "handoff_mode": self.handoff_mode,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    def __str__(self) -> str:
        status = "OK" if not self.is_error() else f"ERROR: {self.error_code or 'action'}"
        return f"TurnResult({self.result_type.value}, stage={self.stage}, status={status})"


# Factory functions for common results

def question_result(stage: str, missing_fields: List[str], response: str = "") -> TurnResult:
    """Stage still waiting for fields"""
    return TurnResult(
        response=response,
        result_type=ResultType.QUESTION,
        stage=stage,
        previous_stage=stage,
        missing_fields=missing_fields,
    )


def advanced_result(previous_stage: str, stage: str, response: str = "") -> TurnResult:
    """Transitioned to another stage"""
    return TurnResult(
        response=response,
        result_type=ResultType.ADVANCED,
        stage=stage,
        previous_stage=previous_stage,
    )


def action_error_result(
    stage: str,
    error: str,
    error_code: Optional[str] = None,
    is_technical: bool = False,
    response: str = "",
) -> TurnResult:
    """Action failed and the flow paused on the same stage"""
    return TurnResult(
        response=response,
        result_type=ResultType.ACTION_ERROR,
        stage=stage,
        previous_stage=stage,
        error=error,
        error_code=error_code,
        is_technical_error=is_technical,
    )


def completed_result(stage: str, response: str = "") -> TurnResult:
    """Flow reached a terminal stage"""
    return TurnResult(
        response=response,
        result_type=ResultType.COMPLETED,
        stage=stage,
        previous_stage=stage,
    )


def handoff_result(stage: str, flow_slug: str, mode: str, response: str = "") -> TurnResult:
    """Flow completed and handed over to another flow"""
    return TurnResult(
        response=response,
        result_type=ResultType.HANDOFF,
        stage=stage,
        previous_stage=stage,
        handoff_flow_slug=flow_slug,
        handoff_mode=mode,
    )


def ended_result(stage: str, response: str = "", error: Optional[str] = None) -> TurnResult:
    """Flow terminated by the error policy"""
    return TurnResult(
        response=response,
        result_type=ResultType.ENDED,
        stage=stage,
        previous_stage=stage,
        error=error,
    )
