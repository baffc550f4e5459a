"""
Unit tests for StageTransitionEngine.
"""
import pytest

from flowcore.core.exceptions import UnknownStageError
from flowcore.flow.transitions import StageTransitionEngine
from flowcore.models.flow import FlowDefinition, OnComplete, Stage


@pytest.fixture
def engine():
    return StageTransitionEngine()


class TestLookup:
    """Tests for stage lookup."""

    def test_initial_stage(self, engine, sample_flow):
        assert engine.initial_stage(sample_flow) == "contact"

    def test_unknown_stage(self, engine, sample_flow):
        with pytest.raises(UnknownStageError):
            engine.get_stage(sample_flow, "nowhere")


class TestCompletion:
    """Tests for stage completion."""

    def test_missing_fields(self, engine, sample_flow):
        stage = sample_flow.get_stage("contact")
        missing = engine.missing_fields(stage, {"full_name": "דנה כהן", "mobile_phone": ""})
        assert missing == ["mobile_phone", "relation_to_business"]

    def test_all_fields_present(self, engine, sample_flow):
        stage = sample_flow.get_stage("contact")
        data = {"full_name": "דנה כהן", "mobile_phone": "0501234567", "relation_to_business": "בעלים"}
        assert engine.is_stage_completed(stage, data)

    def test_false_counts_as_collected(self, engine, sample_flow):
        """A boolean False answer completes a field."""
        stage = sample_flow.get_stage("premises")
        assert engine.is_stage_completed(stage, {"has_physical_premises": False, "employees_count": 4})

    def test_custom_completion_with_required_fields(self, engine, sample_flow):
        """No premises: the employee count alone completes the stage."""
        stage = sample_flow.get_stage("premises")
        assert not engine.is_stage_completed(stage, {"has_physical_premises": False})
        assert engine.is_stage_completed(stage, {"has_physical_premises": False, "employees_count": 3})

    def test_custom_completion_not_matching(self, engine, sample_flow):
        """With premises every field is needed."""
        stage = sample_flow.get_stage("premises")
        assert not engine.is_stage_completed(stage, {"has_physical_premises": True})

    def test_custom_completion_condition_alone(self, engine):
        stage = Stage.model_validate({
            "fieldsToCollect": ["a", "b"],
            "orchestration": {"customCompletionCheck": {"condition": "a = 'skip'"}},
        })
        assert engine.is_stage_completed(stage, {"a": "skip"})
        assert not engine.is_stage_completed(stage, {"a": "other"})

    def test_completion_condition(self, engine):
        stage = Stage.model_validate({
            "fieldsToCollect": ["consent"],
            "completionCondition": "consent = true",
        })
        assert engine.is_stage_completed(stage, {"consent": True})
        assert not engine.is_stage_completed(stage, {"consent": False})

    def test_action_only_stage_is_complete(self, engine, sample_flow):
        assert engine.is_stage_completed(sample_flow.get_stage("submit"), {})


class TestActions:
    """Tests for action gating."""

    def test_stage_without_action(self, engine, sample_flow):
        assert not engine.should_run_action(sample_flow.get_stage("contact"), {})

    def test_unconditional_action(self, engine, sample_flow):
        assert engine.should_run_action(sample_flow.get_stage("submit"), {})

    def test_conditional_action(self, engine):
        stage = Stage.model_validate({
            "action": {"toolName": "notify", "condition": "wants_updates = true"},
        })
        assert engine.should_run_action(stage, {"wants_updates": "כן"})
        assert not engine.should_run_action(stage, {"wants_updates": False})


class TestNextStage:
    """Tests for next stage resolution."""

    def test_plain_next_stage(self, engine, sample_flow):
        assert engine.resolve_next_stage(sample_flow.get_stage("contact"), {}) == "business_details"

    def test_conditional_match(self, engine, sample_flow):
        stage = sample_flow.get_stage("business_details")
        assert engine.resolve_next_stage(stage, {"business_legal_entity_type": "עמותה"}) == "nonprofit_details"

    def test_conditional_fallback(self, engine, sample_flow):
        stage = sample_flow.get_stage("business_details")
        assert engine.resolve_next_stage(stage, {"business_legal_entity_type": "חברה פרטית"}) == "premises"

    def test_if_false_branch(self, engine):
        """ifFalse is taken as soon as its rule fails."""
        stage = Stage.model_validate({"nextStage": {
            "conditional": [
                {"condition": "a = true", "ifTrue": "x", "ifFalse": "y"},
                {"condition": "b = true", "ifTrue": "z"},
            ],
            "fallback": "w",
        }})
        assert engine.resolve_next_stage(stage, {"a": True}) == "x"
        assert engine.resolve_next_stage(stage, {"a": False, "b": True}) == "y"

    def test_terminal_stage(self, engine, sample_flow):
        stage = sample_flow.get_stage("done")
        assert engine.is_terminal(stage)
        assert engine.resolve_next_stage(stage, {}) is None


class TestHandoff:
    """Tests for flow handoff."""

    def test_no_handoff_configured(self, engine, sample_flow):
        assert engine.handoff(sample_flow) is None

    def test_handoff_to_self_is_ignored(self, engine, sample_flow_data):
        sample_flow_data["definition"]["config"]["onComplete"] = {"startFlowSlug": "business_onboarding"}
        flow = FlowDefinition.model_validate(sample_flow_data)
        assert engine.handoff(flow) is None

    def test_preserved_data(self, engine):
        on_complete = OnComplete.model_validate({
            "startFlowSlug": "quote",
            "preserveFields": ["full_name", "email", "has_physical_premises"],
        })
        data = {"full_name": "דנה", "email": "", "has_physical_premises": False, "other": 1}
        assert engine.preserved_data(on_complete, data) == {"full_name": "דנה", "has_physical_premises": False}
