"""
Unit tests for ErrorPolicyEngine.
"""
import pytest

from flowcore.flow.error_policy import (
    ACTIONABLE_RETRY_MESSAGE,
    ACTIONABLE_RETRY_MESSAGE_NO_FIELDS,
    GENERIC_END_MESSAGE,
    GENERIC_TECHNICAL_MESSAGE,
    ErrorPolicyEngine,
    ErrorSource,
    classify_error,
)
from flowcore.models.flow import ErrorBehavior, Stage


def make_stage(action=None, on_error=None, fields=("business_registration_id",)):
    data = {"fieldsToCollect": list(fields)}
    if action is not None:
        data["action"] = action
    if on_error is not None:
        data["onError"] = on_error
    return Stage.model_validate(data)


class TestClassification:
    """Tests for technical error detection."""

    @pytest.mark.parametrize("error", [
        "Connection refused",
        "Request timeout",
        "HTTP 502 from tool 'lookup'",
        "Unexpected token < in JSON at position 0",
        "upstream returned 503",
        "שגיאת שרת פנימית",
        "Gateway timeout while calling the registry",
        "Request failed with status 429",
        "Lookup returned 503",
        "Duplicate row for user_id=77 in table accounts (internal ref #A9)",
        "",
    ])
    def test_technical(self, error):
        assert classify_error(error).is_technical

    @pytest.mark.parametrize("error", [
        "Business not found in the registry",
        "המספר שהוזן אינו קיים ברשם החברות",
        "Payment gateway already exists for this organisation",
        "Branch 455 was not found in the registry",
    ])
    def test_user_actionable(self, error):
        assert not classify_error(error).is_technical

    def test_business_gateway_is_not_protocol_vocabulary(self):
        analysis = classify_error("Payment gateway already exists for this organisation")
        assert analysis.matched_keyword is None

    def test_status_code_needs_context(self):
        assert classify_error("Request failed with status 429").matched_keyword == "429"
        assert classify_error("HTTP status code: 404").is_technical
        assert not classify_error("Customer number 404 is not eligible").is_technical

    def test_internal_identifiers_are_technical(self):
        analysis = classify_error("Row rejected: account_id=12")
        assert analysis.is_technical
        assert analysis.matched_keyword == "account_id="


class TestResolutionOrder:
    """Error code handler, then onError, then pause."""

    def test_error_code_handler_wins(self, sample_flow):
        stage = sample_flow.get_stage("business_details")
        decision = ErrorPolicyEngine.resolve(
            "Business not found", "NOT_FOUND", stage.action, "business_details", stage,
        )
        assert decision.source == ErrorSource.ERROR_CODE
        assert decision.behavior == ErrorBehavior.PAUSE
        assert decision.reset_fields == ["business_registration_id"]
        assert decision.message.startswith("לא מצאנו עסק")

    def test_on_error_for_other_codes(self, sample_flow):
        stage = sample_flow.get_stage("business_details")
        decision = ErrorPolicyEngine.resolve(
            "Request timeout", "TIMEOUT", stage.action, "business_details", stage,
        )
        assert decision.source == ErrorSource.CONFIG
        assert decision.behavior == ErrorBehavior.CONTINUE

    def test_handler_without_behavior_falls_through(self):
        """A behavior-less handler only contributes its data changes."""
        action = {
            "toolName": "lookup",
            "onErrorCode": {"EXPIRED": {"updateUserData": {"registry_status": "expired"}, "resetFields": ["a"]}},
            "onError": {"behavior": "newStage", "nextStage": "manual_review", "resetFields": ["b"]},
        }
        stage = make_stage(action=action)
        decision = ErrorPolicyEngine.resolve("expired", "EXPIRED", stage.action, "s", stage)
        assert decision.source == ErrorSource.CONFIG
        assert decision.behavior == ErrorBehavior.NEW_STAGE
        assert decision.next_stage == "manual_review"
        assert decision.update_user_data == {"registry_status": "expired"}
        assert decision.reset_fields == ["a", "b"]

    def test_stage_on_error_used_without_action_config(self):
        stage = make_stage(action={"toolName": "lookup"}, on_error={"behavior": "endFlow"})
        decision = ErrorPolicyEngine.resolve("Not eligible", None, stage.action, "s", stage)
        assert decision.behavior == ErrorBehavior.END_FLOW
        assert decision.message == GENERIC_END_MESSAGE["en"]

    def test_default_is_pause(self):
        stage = make_stage(action={"toolName": "lookup"})
        decision = ErrorPolicyEngine.resolve("ID does not match", None, stage.action, "s", stage)
        assert decision.source == ErrorSource.DEFAULT
        assert decision.behavior == ErrorBehavior.PAUSE
        assert not decision.is_technical
        assert decision.message == ACTIONABLE_RETRY_MESSAGE_NO_FIELDS["en"]
        assert "ID does not match" not in decision.message

    def test_new_stage_without_target_pauses(self):
        stage = make_stage(action={"toolName": "lookup", "onError": {"behavior": "newStage"}})
        decision = ErrorPolicyEngine.resolve("failed", None, stage.action, "s", stage)
        assert decision.behavior == ErrorBehavior.PAUSE
        assert decision.next_stage is None


class TestMessages:
    """Raw technical errors never reach the user."""

    def test_technical_error_gets_generic_message(self):
        stage = make_stage(action={"toolName": "lookup"})
        decision = ErrorPolicyEngine.resolve(
            "ECONNREFUSED 10.0.0.1:443", None, stage.action, "s", stage, user_message="510000003 בבקשה",
        )
        assert decision.is_technical
        assert decision.message == GENERIC_TECHNICAL_MESSAGE["he"]
        assert "ECONNREFUSED" not in decision.message

    def test_actionable_pause_names_the_fields(self):
        """The re-prompt lists the stage fields, never the tool's text."""
        stage = make_stage(action={"toolName": "lookup"})
        decision = ErrorPolicyEngine.resolve(
            "Registration 510000003 belongs to a closed business",
            None,
            stage.action,
            "business_details",
            stage,
            user_message="510000003",
            field_labels=["שם העסק", 'מספר ח"פ'],
        )
        assert decision.message == ACTIONABLE_RETRY_MESSAGE["en"].format(fields='שם העסק, מספר ח"פ')

        decision = ErrorPolicyEngine.resolve(
            "Registration belongs to a closed business",
            None,
            stage.action,
            "business_details",
            stage,
            user_message="זה המספר 510000003",
            field_labels=["שם העסק"],
        )
        assert decision.message == ACTIONABLE_RETRY_MESSAGE["he"].format(fields="שם העסק")
        assert "closed" not in decision.message

    def test_internal_error_is_masked(self):
        stage = make_stage(action={"toolName": "lookup"})
        decision = ErrorPolicyEngine.resolve(
            "Duplicate row for user_id=77 in table accounts (internal ref #A9)",
            None,
            stage.action,
            "business_details",
            stage,
            user_message="שלחתי",
        )
        assert decision.is_technical
        assert decision.message == GENERIC_TECHNICAL_MESSAGE["he"]

    def test_action_only_pause_is_technical(self):
        """Nothing to fix on a stage without fields."""
        stage = make_stage(action={"toolName": "submit"}, fields=())
        decision = ErrorPolicyEngine.resolve("Quote rejected", None, stage.action, "submit", stage)
        assert decision.is_technical
        assert decision.message == GENERIC_TECHNICAL_MESSAGE["en"]

    def test_template_substitution(self):
        stage = make_stage(action={
            "toolName": "lookup",
            "onError": {"behavior": "pause", "message": "Stage {stage} ({conversationId}): {error}"},
        })
        error = "Registry says the number belongs to a closed business, please check it"
        decision = ErrorPolicyEngine.resolve(
            error, None, stage.action, "business_details", stage, conversation_id="c-9",
        )
        assert decision.message == "Stage business_details (c-9): " + error[:50]
        assert not decision.message.endswith("check it")

    def test_technical_error_template_not_rendered(self):
        """A template that would show a technical error falls back to the generic text."""
        stage = make_stage(action={
            "toolName": "lookup",
            "onError": {"behavior": "pause", "message": "Failed: {error}"},
        })
        decision = ErrorPolicyEngine.resolve("HTTP 500", None, stage.action, "s", stage)
        assert decision.message == GENERIC_TECHNICAL_MESSAGE["en"]

    def test_template_without_error_is_kept(self):
        stage = make_stage(action={
            "toolName": "lookup",
            "onError": {"behavior": "pause", "message": "נבדוק ונחזור אליך"},
        })
        decision = ErrorPolicyEngine.resolve("HTTP 500", None, stage.action, "s", stage)
        assert decision.message == "נבדוק ונחזור אליך"
