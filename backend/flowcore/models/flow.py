"""
Flow definition models - declarative stage graph loaded from flow JSON
"""
from enum import Enum
from typing import Optional, Any, List, Dict, Union
from pydantic import BaseModel, Field, model_validator


class FieldType(str, Enum):
    """Value types a flow field can declare"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class ErrorBehavior(str, Enum):
    """Recovery behaviors available to the error policy"""
    PAUSE = "pause"
    NEW_STAGE = "newStage"
    CONTINUE = "continue"
    END_FLOW = "endFlow"


class HandoffMode(str, Enum):
    """How a completed flow hands the user over to the next flow"""
    SEAMLESS = "seamless"
    ASK = "ask"


class UnhandledErrorStrategy(str, Enum):
    """What to do when a recovery transition itself fails"""
    KILL_FLOW = "killFlow"
    SKIP = "skip"


# ============ FIELDS ============

class FieldDefinition(BaseModel):
    """Definition of one collectable field"""

    model_config = {"extra": "allow", "populate_by_name": True}

    type: FieldType = FieldType.STRING
    description: str = ""
    enum: Optional[List[str]] = None
    pattern: Optional[str] = None
    min_length: Optional[int] = Field(default=None, alias="minLength")
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    prohibited_words_list: Optional[str] = Field(default=None, alias="prohibitedWordsList")

    @property
    def is_string(self) -> bool:
        return self.type == FieldType.STRING


# ============ ERROR HANDLING ============

class ErrorHandlingConfig(BaseModel):
    """Generic error handling declared on an action or a stage"""

    model_config = {"extra": "allow", "populate_by_name": True}

    behavior: ErrorBehavior = ErrorBehavior.PAUSE
    next_stage: Optional[str] = Field(default=None, alias="nextStage")
    message: Optional[str] = None
    reset_fields: List[str] = Field(default_factory=list, alias="resetFields")
    # Accepted for compatibility with older flow files; delivery is external
    email_to: Optional[str] = Field(default=None, alias="emailTo")
    email_subject: Optional[str] = Field(default=None, alias="emailSubject")
    include_details: bool = Field(default=False, alias="includeDetails")


class ErrorCodeHandler(BaseModel):
    """Override applied when a tool fails with a specific error code"""

    model_config = {"extra": "allow", "populate_by_name": True}

    behavior: Optional[ErrorBehavior] = None
    next_stage: Optional[str] = Field(default=None, alias="nextStage")
    message: Optional[str] = None
    update_user_data: Dict[str, Any] = Field(default_factory=dict, alias="updateUserData")
    reset_fields: List[str] = Field(default_factory=list, alias="resetFields")


# ============ STAGES ============

class StageAction(BaseModel):
    """Side effect executed through the tool executor when a stage completes"""

    model_config = {"extra": "allow", "populate_by_name": True}

    tool_name: str = Field(alias="toolName")
    condition: Optional[str] = None
    allow_re_execution_on_error: bool = Field(default=False, alias="allowReExecutionOnError")
    on_error_code: Dict[str, ErrorCodeHandler] = Field(default_factory=dict, alias="onErrorCode")
    on_error: Optional[ErrorHandlingConfig] = Field(default=None, alias="onError")


class ConditionalRule(BaseModel):
    """One rule of a conditional next stage"""

    model_config = {"extra": "allow", "populate_by_name": True}

    condition: str
    if_true: str = Field(alias="ifTrue")
    if_false: Optional[str] = Field(default=None, alias="ifFalse")


class ConditionalNextStage(BaseModel):
    """Ordered conditional rules with a mandatory fallback"""

    model_config = {"extra": "allow", "populate_by_name": True}

    conditional: List[ConditionalRule] = Field(default_factory=list)
    fallback: str


class CustomCompletionCheck(BaseModel):
    """Lets a stage complete with a subset of its fields when a condition holds"""

    model_config = {"extra": "allow", "populate_by_name": True}

    condition: str
    required_fields: List[str] = Field(default_factory=list, alias="requiredFields")


class StageOrchestration(BaseModel):
    model_config = {"extra": "allow", "populate_by_name": True}

    custom_completion_check: Optional[CustomCompletionCheck] = Field(
        default=None, alias="customCompletionCheck"
    )


class Stage(BaseModel):
    """A named stage of the flow state machine"""

    model_config = {"extra": "allow", "populate_by_name": True}

    name: Optional[str] = None
    description: str = ""
    prompt: Optional[str] = None
    fields_to_collect: List[str] = Field(default_factory=list, alias="fieldsToCollect")
    completion_condition: Optional[str] = Field(default=None, alias="completionCondition")
    orchestration: Optional[StageOrchestration] = None
    action: Optional[StageAction] = None
    on_error: Optional[ErrorHandlingConfig] = Field(default=None, alias="onError")
    next_stage: Optional[Union[str, ConditionalNextStage]] = Field(default=None, alias="nextStage")

    @property
    def custom_completion(self) -> Optional[CustomCompletionCheck]:
        if self.orchestration is None:
            return None
        return self.orchestration.custom_completion_check

    def next_stage_targets(self) -> List[str]:
        """All stage slugs this stage can transition to (including error recovery)."""
        targets: List[str] = []
        if isinstance(self.next_stage, str):
            targets.append(self.next_stage)
        elif isinstance(self.next_stage, ConditionalNextStage):
            for rule in self.next_stage.conditional:
                targets.append(rule.if_true)
                if rule.if_false:
                    targets.append(rule.if_false)
            targets.append(self.next_stage.fallback)
        return targets

    def error_targets(self) -> List[str]:
        targets: List[str] = []
        configs = [self.on_error]
        if self.action:
            configs.append(self.action.on_error)
            targets.extend(
                h.next_stage for h in self.action.on_error_code.values() if h.next_stage
            )
        targets.extend(c.next_stage for c in configs if c is not None and c.next_stage)
        return targets


# ============ FLOW ============

class OnComplete(BaseModel):
    """Handoff to another flow once this flow reaches a terminal stage"""

    model_config = {"extra": "allow", "populate_by_name": True}

    start_flow_slug: str = Field(alias="startFlowSlug")
    mode: HandoffMode = HandoffMode.SEAMLESS
    preserve_fields: List[str] = Field(default_factory=list, alias="preserveFields")


class ErrorHandlingStrategy(BaseModel):
    model_config = {"extra": "allow", "populate_by_name": True}

    on_unhandled_error: UnhandledErrorStrategy = Field(
        default=UnhandledErrorStrategy.SKIP, alias="onUnhandledError"
    )


class FlowConfig(BaseModel):
    """Flow level configuration"""

    model_config = {"extra": "allow", "populate_by_name": True}

    initial_stage: str = Field(alias="initialStage")
    on_complete: Optional[OnComplete] = Field(default=None, alias="onComplete")
    is_router_flow: bool = Field(default=False, alias="isRouterFlow")
    default_for_new_users: bool = Field(default=False, alias="defaultForNewUsers")
    error_handling_strategy: ErrorHandlingStrategy = Field(
        default_factory=ErrorHandlingStrategy, alias="errorHandlingStrategy"
    )


class FlowBody(BaseModel):
    """The `definition` part of a flow document"""

    model_config = {"extra": "allow", "populate_by_name": True}

    config: FlowConfig
    fields: Dict[str, FieldDefinition] = Field(default_factory=dict)
    stages: Dict[str, Stage] = Field(default_factory=dict)


class FlowDefinition(BaseModel):
    """A complete, versioned flow document"""

    model_config = {"extra": "allow", "populate_by_name": True}

    name: str
    slug: str
    description: str = ""
    version: Union[int, str] = 1
    definition: FlowBody

    @property
    def config(self) -> FlowConfig:
        return self.definition.config

    @property
    def fields(self) -> Dict[str, FieldDefinition]:
        return self.definition.fields

    @property
    def stages(self) -> Dict[str, Stage]:
        return self.definition.stages

    def get_stage(self, slug: str) -> Optional[Stage]:
        return self.definition.stages.get(slug)

    def stage_fields(self, slug: str) -> Dict[str, FieldDefinition]:
        """Field definitions collected by a stage, in declaration order."""
        stage = self.get_stage(slug)
        if stage is None:
            return {}
        return {
            field_slug: self.fields[field_slug]
            for field_slug in stage.fields_to_collect
            if field_slug in self.fields
        }


# ============ TOOLS ============

class ToolResult(BaseModel):
    """Outcome of a tool execution - the only contract with side-effecting integrations"""

    model_config = {"extra": "allow", "populate_by_name": True}

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    status: Optional[int] = None
    save_results: Optional[Dict[str, Any]] = Field(default=None, alias="saveResults")

    @model_validator(mode="after")
    def check_error_matches_success(self) -> "ToolResult":
        if self.success and self.error:
            raise ValueError("successful tool result must not carry an error")
        if not self.success and not self.error:
            raise ValueError("failed tool result must carry an error")
        return self

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None, save_results: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(success=True, data=data, save_results=save_results)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None, status: Optional[int] = None) -> "ToolResult":
        return cls(success=False, error=error, error_code=error_code, status=status)
