"""
Stage Transition Engine - completion checks and next stage resolution
"""
import logging
from typing import Any, Dict, List, Optional

from ..core.exceptions import UnknownStageError
from ..models.flow import ConditionalNextStage, FlowDefinition, OnComplete, Stage
from .evaluator import ConditionEvaluator, is_present

logger = logging.getLogger(__name__)


class StageTransitionEngine:
    """
    Deterministic state machine over stage slugs.

    Never calls the LLM. Conditions go through the ConditionEvaluator.
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    # ----- Lookup -----

    @staticmethod
    def initial_stage(flow: FlowDefinition) -> str:
        initial = flow.config.initial_stage
        if initial not in flow.stages:
            raise UnknownStageError(initial, flow.slug)
        return initial

    @staticmethod
    def get_stage(flow: FlowDefinition, stage_slug: str) -> Stage:
        stage = flow.get_stage(stage_slug)
        if stage is None:
            raise UnknownStageError(stage_slug, flow.slug)
        return stage

    # ----- Completion -----

    @staticmethod
    def missing_fields(stage: Stage, user_data: Optional[Dict[str, Any]]) -> List[str]:
        """Fields of the stage without a present value (False counts as present)."""
        data = user_data or {}
        return [f for f in stage.fields_to_collect if not is_present(data.get(f))]

    def is_stage_completed(self, stage: Stage, user_data: Optional[Dict[str, Any]]) -> bool:
        """
        Check whether a stage has everything it needs.

        A customCompletionCheck whose condition holds completes the stage with
        its requiredFields (or with the condition alone). Otherwise every field
        must be present and the completionCondition, when declared, must hold.
        """
        data = user_data or {}

        custom = stage.custom_completion
        if custom is not None and self.evaluator.evaluate(custom.condition, data):
            if not custom.required_fields:
                logger.debug("Stage completed by custom completion condition")
                return True
            if all(is_present(data.get(f)) for f in custom.required_fields):
                logger.debug("Stage completed by custom completion with required fields")
                return True

        if self.missing_fields(stage, data):
            return False

        if stage.completion_condition:
            return self.evaluator.evaluate(stage.completion_condition, data)

        return True

    def should_run_action(self, stage: Stage, user_data: Optional[Dict[str, Any]]) -> bool:
        """True when the stage has an action and its condition (if any) holds."""
        if stage.action is None:
            return False
        if not stage.action.condition:
            return True
        try:
            return self.evaluator.evaluate(stage.action.condition, user_data or {})
        except Exception as e:
            logger.warning(f"Action condition failed for tool '{stage.action.tool_name}': {e}")
            return False

    # ----- Transitions -----

    def resolve_next_stage(self, stage: Stage, user_data: Optional[Dict[str, Any]]) -> Optional[str]:
        """
        Pick the next stage slug.

        Returns:
            The next stage, or None when the stage is terminal
        """
        next_stage = stage.next_stage
        if next_stage is None:
            return None
        if isinstance(next_stage, str):
            return next_stage or None

        data = user_data or {}
        for rule in next_stage.conditional:
            if self.evaluator.evaluate(rule.condition, data):
                logger.debug(f"Conditional rule matched: {rule.condition} -> {rule.if_true}")
                return rule.if_true
            if rule.if_false:
                logger.debug(f"Conditional rule failed: {rule.condition} -> {rule.if_false}")
                return rule.if_false
        return next_stage.fallback

    @staticmethod
    def is_terminal(stage: Stage) -> bool:
        if isinstance(stage.next_stage, ConditionalNextStage):
            return False
        return not stage.next_stage

    @staticmethod
    def handoff(flow: FlowDefinition) -> Optional[OnComplete]:
        """The flow handoff to run once a terminal stage completes, if any."""
        on_complete = flow.config.on_complete
        if on_complete is None or on_complete.start_flow_slug == flow.slug:
            return None
        return on_complete

    @staticmethod
    def preserved_data(on_complete: OnComplete, user_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Values carried over to the next flow on handoff."""
        data = user_data or {}
        return {
            f: data[f] for f in on_complete.preserve_fields
            if is_present(data.get(f))
        }


# Default engine
transition_engine = StageTransitionEngine()
