"""
Integration tests for the HTTP API.
"""
import copy
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from flowcore.api.dependencies import Engine, get_engine
from flowcore.api.main import app
from flowcore.services.sessions import SessionStore


@pytest.fixture
def engine(flow_registry, user_data_store, tool_registry):
    engine = Engine(
        flows=flow_registry,
        user_data_store=user_data_store,
        tools=tool_registry,
        sessions=SessionStore(),
    )
    guard = MagicMock()
    guard.extract = AsyncMock(return_value={
        "full_name": "דנה כהן",
        "mobile_phone": "+972 50 123 4567",
        "relation_to_business": "בעלת העסק",
    })
    engine.executor.guard = guard
    return engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    """Tests for service endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"


class TestFlowsApi:
    """Tests for /api/flows."""

    def test_list_flows(self, client):
        response = client.get("/api/flows")
        assert response.status_code == 200
        flows = response.json()
        assert [f["slug"] for f in flows] == ["business_onboarding"]
        assert flows[0]["initialStage"] == "contact"
        assert flows[0]["stages"][0] == "contact"

    def test_get_flow(self, client):
        response = client.get("/api/flows/business_onboarding")
        assert response.status_code == 200
        assert response.json()["definition"]["config"]["initialStage"] == "contact"

    def test_get_unknown_flow(self, client):
        assert client.get("/api/flows/unknown").status_code == 404

    def test_validate_flow(self, client, sample_flow_data):
        sample_flow_data["definition"]["config"]["initialStage"] = "welcome"
        response = client.post("/api/flows/validate", json=sample_flow_data)
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert [e["code"] for e in body["errors"]] == ["INVALID_INITIAL_STAGE"]

    def test_validate_checks_registered_tools(self, client, sample_flow_data):
        sample_flow_data["definition"]["stages"]["submit"]["action"]["toolName"] = "send_fax"
        body = client.post("/api/flows/validate", json=sample_flow_data).json()
        assert body["valid"] is False
        assert body["errors"][0]["code"] == "UNKNOWN_TOOL"

    def test_register_flow(self, client, engine, sample_flow_data):
        flow = copy.deepcopy(sample_flow_data)
        flow["slug"] = "business_onboarding_v2"
        response = client.post("/api/flows", json=flow)
        assert response.status_code == 201
        assert response.json()["slug"] == "business_onboarding_v2"
        assert "business_onboarding_v2" in engine.flows

    def test_register_invalid_flow(self, client, engine, sample_flow_data):
        sample_flow_data["slug"] = "broken"
        sample_flow_data["definition"]["stages"]["contact"]["nextStage"] = "nowhere"
        response = client.post("/api/flows", json=sample_flow_data)
        assert response.status_code == 422
        assert response.json()["detail"]["errors"]
        assert "broken" not in engine.flows


class TestConversationsApi:
    """Tests for /api/conversations."""

    def test_create_on_default_flow(self, client):
        response = client.post("/api/conversations", json={"userId": "user-1", "conversationId": "conv-9"})
        assert response.status_code == 201
        session = response.json()
        assert session["conversation_id"] == "conv-9"
        assert session["flow_slug"] == "business_onboarding"
        assert session["stage"] == "contact"
        assert session["status"] == "active"

    def test_create_on_unknown_flow(self, client):
        response = client.post("/api/conversations", json={"userId": "user-1", "flowSlug": "missing"})
        assert response.status_code == 404

    def test_message_turn(self, client):
        client.post("/api/conversations", json={"userId": "user-1", "conversationId": "conv-9"})

        response = client.post("/api/conversations/conv-9/messages", json={
            "message": "דנה כהן, 050-1234567, בעלת העסק",
        })

        assert response.status_code == 200
        result = response.json()
        assert result["result_type"] == "advanced"
        assert result["previous_stage"] == "contact"
        assert result["stage"] == "business_details"
        assert result["accepted"]["mobile_phone"] == "0501234567"
        assert result["accepted"]["relation_to_business"] == "בעלים"
        assert result["response"]

        state = client.get("/api/conversations/conv-9").json()
        assert state["session"]["stage"] == "business_details"
        assert state["session"]["turn_count"] == 1
        assert state["userData"]["mobile_phone"] == "0501234567"

    def test_message_to_unknown_conversation(self, client):
        response = client.post("/api/conversations/nope/messages", json={"message": "שלום"})
        assert response.status_code == 404

    def test_empty_message_rejected(self, client):
        client.post("/api/conversations", json={"userId": "user-1", "conversationId": "conv-9"})
        response = client.post("/api/conversations/conv-9/messages", json={"message": ""})
        assert response.status_code == 422

    def test_turn_failure_returns_500(self, client, engine):
        client.post("/api/conversations", json={"userId": "user-1", "conversationId": "conv-9"})
        engine.executor.process_message = AsyncMock(side_effect=RuntimeError("store down"))

        response = client.post("/api/conversations/conv-9/messages", json={"message": "שלום"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to process message"

    def test_get_unknown_conversation(self, client):
        assert client.get("/api/conversations/nope").status_code == 404
