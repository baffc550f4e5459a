"""
Flow Module - deterministic flow engine

This module provides:
- Condition evaluation over user data
- Field validation and normalization
- Stage completion checks and transitions
- Error policy for failed actions
- Load-time flow validation

The turn loop (flowcore.flow.executor) builds on these and on the
extraction guard; import it from its module.
"""

from .evaluator import ConditionEvaluator, evaluator, evaluate_condition, is_present
from .field_kinds import FieldKind, detect_field_kind
from .field_validation import (
    FieldValidator,
    ValidationReason,
    ValidationResult,
    ValidationBatch,
    field_validator,
    validate_field,
)
from .transitions import StageTransitionEngine, transition_engine
from .error_policy import (
    ErrorPolicyEngine,
    ErrorDecision,
    ErrorSource,
    ErrorAnalysis,
    resolve_error,
    classify_error,
)
from .validator import (
    FlowValidator,
    FlowValidationError,
    validate_flow,
    load_flow_definition,
)
from .context import (
    ExtractionContext,
    FlowSession,
    SessionStatus,
)
from .result import (
    TurnResult,
    ResultType,
    question_result,
    advanced_result,
    action_error_result,
    completed_result,
    handoff_result,
    ended_result,
)

__all__ = [
    # Evaluator
    "ConditionEvaluator",
    "evaluator",
    "evaluate_condition",
    "is_present",

    # Fields
    "FieldKind",
    "detect_field_kind",
    "FieldValidator",
    "ValidationReason",
    "ValidationResult",
    "ValidationBatch",
    "field_validator",
    "validate_field",

    # Transitions
    "StageTransitionEngine",
    "transition_engine",

    # Error policy
    "ErrorPolicyEngine",
    "ErrorDecision",
    "ErrorSource",
    "ErrorAnalysis",
    "resolve_error",
    "classify_error",

    # Validator
    "FlowValidator",
    "FlowValidationError",
    "validate_flow",
    "load_flow_definition",

    # Context
    "ExtractionContext",
    "FlowSession",
    "SessionStatus",

    # Result
    "TurnResult",
    "ResultType",
    "question_result",
    "advanced_result",
    "action_error_result",
    "completed_result",
    "handoff_result",
    "ended_result",
]
