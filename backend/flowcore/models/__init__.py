from .flow import (
    # Enums
    FieldType,
    ErrorBehavior,
    HandoffMode,
    UnhandledErrorStrategy,

    # Flow document
    FieldDefinition,
    ErrorHandlingConfig,
    ErrorCodeHandler,
    StageAction,
    ConditionalRule,
    ConditionalNextStage,
    CustomCompletionCheck,
    StageOrchestration,
    Stage,
    OnComplete,
    ErrorHandlingStrategy,
    FlowConfig,
    FlowBody,
    FlowDefinition,

    # Tools
    ToolResult,
)

__all__ = [
    # Enums
    "FieldType", "ErrorBehavior", "HandoffMode", "UnhandledErrorStrategy",

    # Flow document
    "FieldDefinition", "ErrorHandlingConfig", "ErrorCodeHandler", "StageAction",
    "ConditionalRule", "ConditionalNextStage", "CustomCompletionCheck",
    "StageOrchestration", "Stage", "OnComplete", "ErrorHandlingStrategy",
    "FlowConfig", "FlowBody", "FlowDefinition",

    # Tools
    "ToolResult",
]
