"""
Exceptions raised by the flow core
"""
from typing import List, Optional


class FlowCoreError(Exception):
    """Base class for flow core errors"""


class ConditionSyntaxError(FlowCoreError):
    """A condition expression does not match the condition grammar"""

    def __init__(self, message: str, expression: str = "", position: Optional[int] = None):
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"{message}{where}: {expression!r}")


class FlowDefinitionError(FlowCoreError):
    """A flow definition failed load-time validation"""

    def __init__(self, slug: str, errors: List[str]):
        self.slug = slug
        self.errors = errors
        super().__init__(f"Invalid flow definition '{slug}': {'; '.join(errors)}")


class UnknownStageError(FlowCoreError):
    """A stage slug does not exist in the flow"""

    def __init__(self, stage: str, flow_slug: str = ""):
        self.stage = stage
        self.flow_slug = flow_slug
        super().__init__(f"Stage '{stage}' not found in flow '{flow_slug}'")


class ToolNotFoundError(FlowCoreError):
    """No tool is registered under the requested name"""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' is not registered")
