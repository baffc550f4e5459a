"""
Unit tests for FlowValidator.
"""
import pytest

from flowcore.core.exceptions import FlowDefinitionError
from flowcore.flow.validator import FlowValidator, load_flow_definition, validate_flow

TOOLS = ["lookup_business_registry", "submit_application"]


def codes(errors, severity=None):
    return [e.code for e in errors if severity is None or e.severity == severity]


class TestValidFlow:
    """Tests for the bundled flow."""

    def test_sample_flow_is_valid(self, sample_flow_data):
        is_valid, errors = FlowValidator.validate(sample_flow_data, TOOLS)
        assert is_valid
        assert errors == []

    def test_parsed_model_accepted(self, sample_flow):
        is_valid, _ = validate_flow(sample_flow)
        assert is_valid

    def test_load_returns_model(self, sample_flow_data):
        flow = load_flow_definition(sample_flow_data, TOOLS)
        assert flow.slug == "business_onboarding"
        assert flow.config.initial_stage == "contact"


class TestStructure:
    """Tests for flow level problems."""

    def test_schema_error(self):
        is_valid, errors = FlowValidator.validate({"name": "x", "slug": "x"})
        assert not is_valid
        assert "INVALID_SCHEMA" in codes(errors)

    def test_not_an_object(self):
        is_valid, errors = FlowValidator.validate(["stages"])
        assert not is_valid
        assert codes(errors) == ["INVALID_TYPE"]

    def test_no_stages(self):
        flow = {"name": "x", "slug": "x", "definition": {"config": {"initialStage": "a"}}}
        is_valid, errors = FlowValidator.validate(flow)
        assert not is_valid
        assert "NO_STAGES" in codes(errors)

    def test_missing_initial_stage(self, sample_flow_data):
        sample_flow_data["definition"]["config"]["initialStage"] = "welcome"
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert not is_valid
        assert "INVALID_INITIAL_STAGE" in codes(errors)

    def test_self_handoff_is_warning(self, sample_flow_data):
        sample_flow_data["definition"]["config"]["onComplete"] = {
            "startFlowSlug": "business_onboarding",
            "preserveFields": ["full_name", "nickname"],
        }
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert is_valid
        assert codes(errors, "warning") == ["INVALID_HANDOFF", "UNKNOWN_PRESERVED_FIELD"]


class TestStages:
    """Tests for stage level problems."""

    def test_unknown_field(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["contact"]["fieldsToCollect"].append("nickname")
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert not is_valid
        error = next(e for e in errors if e.code == "UNKNOWN_FIELD")
        assert error.stage == "contact"
        assert "nickname" in error.message

    def test_unknown_transition(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["nonprofit_details"]["nextStage"] = "premisses"
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert not is_valid
        assert "INVALID_TRANSITION" in codes(errors)

    def test_unknown_error_target(self, sample_flow_data):
        action = sample_flow_data["definition"]["stages"]["submit"]["action"]
        action["onError"] = {"behavior": "newStage", "nextStage": "manual_review"}
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert not is_valid
        assert "INVALID_ERROR_TARGET" in codes(errors)

    def test_mixed_and_or_rejected(self, sample_flow_data):
        rules = sample_flow_data["definition"]["stages"]["premises"]["nextStage"]["conditional"]
        rules[0]["condition"] = "has_physical_premises = true AND employees_count = 1 OR email = 'x'"
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert not is_valid
        error = next(e for e in errors if e.code == "INVALID_CONDITION")
        assert error.stage == "premises"
        assert error.message.startswith("nextStage.conditional[0]")

    def test_unknown_condition_field_is_warning(self, sample_flow_data):
        rules = sample_flow_data["definition"]["stages"]["premises"]["nextStage"]["conditional"]
        rules[0]["condition"] = "has_storage = true"
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert is_valid
        assert codes(errors, "warning") == ["UNKNOWN_CONDITION_FIELD"]

    def test_unknown_tool(self, sample_flow_data):
        is_valid, errors = FlowValidator.validate(sample_flow_data, ["submit_application"])
        assert not is_valid
        error = next(e for e in errors if e.code == "UNKNOWN_TOOL")
        assert error.stage == "business_details"

    def test_tools_not_checked_without_registry(self, sample_flow_data):
        is_valid, _ = FlowValidator.validate(sample_flow_data)
        assert is_valid

    def test_new_stage_without_target_is_warning(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["submit"]["action"]["onError"] = {"behavior": "newStage"}
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert is_valid
        assert "MISSING_ERROR_TARGET" in codes(errors, "warning")


class TestWarnings:
    """Tests for non-blocking findings."""

    def test_orphan_stage(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["legacy"] = {"fieldsToCollect": ["email"]}
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert is_valid
        orphan = next(e for e in errors if e.code == "ORPHAN_STAGE")
        assert orphan.stage == "legacy"

    def test_bad_pattern_and_empty_enum(self, sample_flow_data):
        fields = sample_flow_data["definition"]["fields"]
        fields["business_zip"]["pattern"] = "^[0-9"
        fields["business_segment"]["enum"] = []
        is_valid, errors = FlowValidator.validate(sample_flow_data)
        assert is_valid
        assert sorted(codes(errors, "warning")) == ["EMPTY_ENUM", "INVALID_PATTERN"]

    def test_error_to_dict(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["legacy"] = {}
        _, errors = FlowValidator.validate(sample_flow_data)
        data = errors[0].to_dict()
        assert data["code"] == "ORPHAN_STAGE"
        assert data["severity"] == "warning"
        assert "timestamp" in data


class TestLoad:
    """Tests for load_flow_definition."""

    def test_invalid_flow_raises(self, sample_flow_data):
        sample_flow_data["definition"]["config"]["initialStage"] = "welcome"
        with pytest.raises(FlowDefinitionError) as exc_info:
            load_flow_definition(sample_flow_data)
        assert exc_info.value.slug == "business_onboarding"
        assert any("INVALID_INITIAL_STAGE" in e for e in exc_info.value.errors)

    def test_warnings_do_not_block(self, sample_flow_data):
        sample_flow_data["definition"]["stages"]["legacy"] = {}
        flow = load_flow_definition(sample_flow_data)
        assert "legacy" in flow.stages
