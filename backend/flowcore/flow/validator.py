"""
Flow Validator - load-time validation of flow definitions
"""
import re
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..core.exceptions import FlowDefinitionError
from ..models.flow import ConditionalNextStage, ErrorBehavior, FlowDefinition, Stage
from .evaluator import ConditionEvaluator
from .context import RESERVED_PREFIX

logger = logging.getLogger(__name__)


class FlowValidationError:
    """Represents a validation error"""

    def __init__(
        self,
        code: str,
        message: str,
        stage: Optional[str] = None,
        severity: str = "error"  # error, warning
    ):
        self.code = code
        self.message = message
        self.stage = stage
        self.severity = severity
        self.timestamp = datetime.now()

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat()
        }

    def __str__(self) -> str:
        stage_info = f" [Stage: {self.stage}]" if self.stage else ""
        return f"[{self.severity.upper()}] {self.code}: {self.message}{stage_info}"


class FlowValidator:
    """
    Validates flow definitions before they are used.

    Features:
    - Schema validation through the pydantic models
    - Initial stage, transition and error recovery targets exist
    - fieldsToCollect entries exist in the field schema
    - Every condition parses (mixed AND/OR without parentheses is rejected)
    - Action tool names are registered (when a registry is supplied)
    - Warnings for unreachable stages and conditions on unknown fields
    """

    @classmethod
    def validate(
        cls,
        flow: Union[Dict[str, Any], FlowDefinition],
        tool_names: Optional[Iterable[str]] = None,
    ) -> Tuple[bool, List[FlowValidationError]]:
        """
        Validate a flow definition.

        Args:
            flow: Flow document (raw dict or parsed model)
            tool_names: Registered tool names; None skips the tool check

        Returns:
            Tuple of (is_valid, list of errors and warnings)
        """
        errors: List[FlowValidationError] = []

        # 1. Schema
        definition, schema_errors = cls._parse(flow)
        errors.extend(schema_errors)
        if definition is None:
            cls._log(errors)
            return False, errors

        stage_slugs = set(definition.stages.keys())
        field_slugs = set(definition.fields.keys())

        # 2. Structure
        errors.extend(cls._validate_structure(definition, stage_slugs))

        # 3. Stages
        known_tools = set(tool_names) if tool_names is not None else None
        for slug, stage in definition.stages.items():
            errors.extend(cls._validate_stage(slug, stage, stage_slugs, field_slugs, known_tools))

        # 4. Fields
        errors.extend(cls._validate_fields(definition))

        # 5. Reachability
        errors.extend(cls._detect_orphan_stages(definition))

        is_valid = not any(e.is_error for e in errors)
        cls._log(errors)
        return is_valid, errors

    @staticmethod
    def _log(errors: List[FlowValidationError]) -> None:
        if not errors:
            return
        logger.warning(f"Flow validation found {len(errors)} issues")
        for error in errors:
            if error.is_error:
                logger.error(str(error))
            else:
                logger.warning(str(error))

    @classmethod
    def _parse(cls, flow: Union[Dict[str, Any], FlowDefinition]) -> Tuple[Optional[FlowDefinition], List[FlowValidationError]]:
        if isinstance(flow, FlowDefinition):
            return flow, []
        if not isinstance(flow, dict):
            return None, [FlowValidationError("INVALID_TYPE", "Flow definition must be an object")]
        try:
            return FlowDefinition.model_validate(flow), []
        except ValidationError as e:
            errors = []
            for item in e.errors():
                location = ".".join(str(part) for part in item.get("loc", ()))
                errors.append(FlowValidationError(
                    "INVALID_SCHEMA",
                    f"{location}: {item.get('msg', 'invalid value')}"
                ))
            return None, errors

    @classmethod
    def _validate_structure(cls, definition: FlowDefinition, stage_slugs: Set[str]) -> List[FlowValidationError]:
        """Validate flow level structure"""
        errors = []

        if not stage_slugs:
            errors.append(FlowValidationError("NO_STAGES", "Flow must define at least one stage"))
            return errors

        initial = definition.config.initial_stage
        if initial not in stage_slugs:
            errors.append(FlowValidationError(
                "INVALID_INITIAL_STAGE",
                f"Initial stage '{initial}' not found in stages"
            ))

        on_complete = definition.config.on_complete
        if on_complete is not None:
            if not on_complete.start_flow_slug.strip():
                errors.append(FlowValidationError(
                    "INVALID_HANDOFF",
                    "onComplete.startFlowSlug must not be empty"
                ))
            if on_complete.start_flow_slug == definition.slug:
                errors.append(FlowValidationError(
                    "INVALID_HANDOFF",
                    "onComplete must hand off to a different flow",
                    severity="warning"
                ))
            for field_slug in on_complete.preserve_fields:
                if field_slug not in definition.fields:
                    errors.append(FlowValidationError(
                        "UNKNOWN_PRESERVED_FIELD",
                        f"Preserved field '{field_slug}' is not defined in this flow",
                        severity="warning"
                    ))

        return errors

    @classmethod
    def _validate_stage(
        cls,
        slug: str,
        stage: Stage,
        stage_slugs: Set[str],
        field_slugs: Set[str],
        known_tools: Optional[Set[str]],
    ) -> List[FlowValidationError]:
        """Validate a single stage"""
        errors = []

        for field_slug in stage.fields_to_collect:
            if field_slug not in field_slugs:
                errors.append(FlowValidationError(
                    "UNKNOWN_FIELD",
                    f"Field '{field_slug}' in fieldsToCollect is not defined",
                    slug
                ))

        # Transitions
        if isinstance(stage.next_stage, ConditionalNextStage) and not stage.next_stage.fallback.strip():
            errors.append(FlowValidationError(
                "MISSING_FALLBACK",
                "Conditional nextStage must declare a fallback",
                slug
            ))
        for target in stage.next_stage_targets():
            if target and target not in stage_slugs:
                errors.append(FlowValidationError(
                    "INVALID_TRANSITION",
                    f"Next stage '{target}' not found",
                    slug
                ))

        for target in stage.error_targets():
            if target not in stage_slugs:
                errors.append(FlowValidationError(
                    "INVALID_ERROR_TARGET",
                    f"Error recovery stage '{target}' not found",
                    slug
                ))

        # Conditions
        for label, expression in cls._stage_conditions(stage):
            problems = ConditionEvaluator.validate(expression)
            for problem in problems:
                errors.append(FlowValidationError(
                    "INVALID_CONDITION",
                    f"{label}: {problem}",
                    slug
                ))
            if problems:
                continue
            for name in ConditionEvaluator.referenced_fields(expression):
                if name not in field_slugs and not name.startswith(RESERVED_PREFIX):
                    errors.append(FlowValidationError(
                        "UNKNOWN_CONDITION_FIELD",
                        f"{label} references unknown field '{name}'",
                        slug,
                        severity="warning"
                    ))

        custom = stage.custom_completion
        if custom is not None:
            for field_slug in custom.required_fields:
                if field_slug not in field_slugs:
                    errors.append(FlowValidationError(
                        "UNKNOWN_FIELD",
                        f"Field '{field_slug}' in customCompletionCheck.requiredFields is not defined",
                        slug
                    ))

        # Action
        if stage.action is not None:
            errors.extend(cls._validate_action(slug, stage, known_tools))

        if stage.on_error is not None and stage.on_error.behavior == ErrorBehavior.NEW_STAGE and not stage.on_error.next_stage:
            errors.append(FlowValidationError(
                "MISSING_ERROR_TARGET",
                "onError behavior 'newStage' without nextStage falls back to pause",
                slug,
                severity="warning"
            ))

        return errors

    @classmethod
    def _validate_action(cls, slug: str, stage: Stage, known_tools: Optional[Set[str]]) -> List[FlowValidationError]:
        errors = []
        action = stage.action

        if not action.tool_name.strip():
            errors.append(FlowValidationError("MISSING_TOOL", "Action must name a tool", slug))
        elif known_tools is not None and action.tool_name not in known_tools:
            errors.append(FlowValidationError(
                "UNKNOWN_TOOL",
                f"Tool '{action.tool_name}' is not registered",
                slug
            ))

        handlers = list(action.on_error_code.items())
        if action.on_error is not None:
            handlers.append(("onError", action.on_error))
        for code, handler in handlers:
            if handler.behavior == ErrorBehavior.NEW_STAGE and not handler.next_stage:
                errors.append(FlowValidationError(
                    "MISSING_ERROR_TARGET",
                    f"Error handler '{code}' uses newStage without nextStage (falls back to pause)",
                    slug,
                    severity="warning"
                ))

        return errors

    @staticmethod
    def _stage_conditions(stage: Stage) -> List[Tuple[str, str]]:
        conditions = []
        if stage.completion_condition:
            conditions.append(("completionCondition", stage.completion_condition))
        if stage.custom_completion is not None:
            conditions.append(("customCompletionCheck.condition", stage.custom_completion.condition))
        if stage.action is not None and stage.action.condition:
            conditions.append(("action.condition", stage.action.condition))
        if isinstance(stage.next_stage, ConditionalNextStage):
            for index, rule in enumerate(stage.next_stage.conditional):
                conditions.append((f"nextStage.conditional[{index}]", rule.condition))
        return conditions

    @classmethod
    def _validate_fields(cls, definition: FlowDefinition) -> List[FlowValidationError]:
        errors = []
        for field_slug, field_def in definition.fields.items():
            if field_def.pattern:
                try:
                    re.compile(field_def.pattern)
                except re.error as e:
                    errors.append(FlowValidationError(
                        "INVALID_PATTERN",
                        f"Field '{field_slug}' pattern does not compile ({e}); it will be ignored",
                        severity="warning"
                    ))
            if field_def.enum is not None and len(field_def.enum) == 0:
                errors.append(FlowValidationError(
                    "EMPTY_ENUM",
                    f"Field '{field_slug}' declares an empty enum",
                    severity="warning"
                ))
        return errors

    @classmethod
    def _detect_orphan_stages(cls, definition: FlowDefinition) -> List[FlowValidationError]:
        """Detect stages that are not reachable from the initial stage"""
        errors = []
        start = definition.config.initial_stage
        if start not in definition.stages:
            return errors

        reachable = set()
        queue = [start]
        while queue:
            current = queue.pop(0)
            if current in reachable:
                continue
            reachable.add(current)
            stage = definition.stages.get(current)
            if stage is None:
                continue
            for target in stage.next_stage_targets() + stage.error_targets():
                if target and target not in reachable:
                    queue.append(target)

        for orphan in sorted(set(definition.stages.keys()) - reachable):
            errors.append(FlowValidationError(
                "ORPHAN_STAGE",
                f"Stage '{orphan}' is not reachable from the initial stage",
                orphan,
                severity="warning"
            ))

        return errors


def validate_flow(
    flow: Union[Dict[str, Any], FlowDefinition],
    tool_names: Optional[Iterable[str]] = None,
) -> Tuple[bool, List[FlowValidationError]]:
    """Convenience function to validate a flow"""
    return FlowValidator.validate(flow, tool_names)


def load_flow_definition(
    data: Union[Dict[str, Any], FlowDefinition],
    tool_names: Optional[Iterable[str]] = None,
) -> FlowDefinition:
    """
    Parse and validate a flow document.

    Raises:
        FlowDefinitionError: with every blocking error when the flow is invalid
    """
    is_valid, errors = FlowValidator.validate(data, tool_names)
    if not is_valid:
        if isinstance(data, FlowDefinition):
            slug = data.slug
        elif isinstance(data, dict):
            slug = str(data.get("slug", ""))
        else:
            slug = ""
        raise FlowDefinitionError(slug, [str(e) for e in errors if e.is_error])
    if isinstance(data, FlowDefinition):
        return data
    return FlowDefinition.model_validate(data)
