from .config import settings, get_settings
from .exceptions import (
    FlowCoreError,
    ConditionSyntaxError,
    FlowDefinitionError,
    UnknownStageError,
    ToolNotFoundError,
)

__all__ = [
    "settings",
    "get_settings",
    "FlowCoreError",
    "ConditionSyntaxError",
    "FlowDefinitionError",
    "UnknownStageError",
    "ToolNotFoundError",
]
