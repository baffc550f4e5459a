"""
Pytest configuration and shared fixtures for flowcore tests.
"""
import copy
import json
from pathlib import Path
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from flowcore.flow.context import FlowSession
from flowcore.models.flow import FlowDefinition, ToolResult
from flowcore.services.flows import FlowRegistry
from flowcore.services.tools import ToolRegistry
from flowcore.services.user_data import InMemoryUserDataStore

FLOWS_DIR = Path(__file__).resolve().parent.parent / "flowcore" / "data" / "flows"


def load_flow_file(name: str) -> Dict[str, Any]:
    with open(FLOWS_DIR / name, encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def sample_flow_data() -> Dict[str, Any]:
    """Business onboarding flow document (fresh copy per test)."""
    return copy.deepcopy(load_flow_file("business_onboarding.json"))


@pytest.fixture
def sample_flow(sample_flow_data) -> FlowDefinition:
    """Parsed business onboarding flow."""
    return FlowDefinition.model_validate(sample_flow_data)


@pytest.fixture
def fields_schema(sample_flow):
    """Field definitions of the business onboarding flow."""
    return sample_flow.fields


@pytest.fixture
def user_data_store() -> InMemoryUserDataStore:
    return InMemoryUserDataStore()


@pytest.fixture
def tool_registry() -> ToolRegistry:
    """Registry where both onboarding tools succeed."""
    registry = ToolRegistry()

    @registry.tool("lookup_business_registry")
    async def lookup_business_registry(payload, context):
        return ToolResult.ok({"found": True}, save_results={"registry_status": "active"})

    @registry.tool("submit_application")
    async def submit_application(payload, context):
        return ToolResult.ok({"applicationId": "APP-1"})

    return registry


@pytest.fixture
def flow_registry(sample_flow_data, tool_registry) -> FlowRegistry:
    registry = FlowRegistry(tool_names=tool_registry.tool_names())
    registry.register(sample_flow_data)
    return registry


@pytest.fixture
def mock_llm() -> MagicMock:
    """LLM service double: no extraction, fixed response."""
    llm = MagicMock()
    llm.extract_fields = AsyncMock(return_value={})
    llm.generate_response = AsyncMock(return_value="תודה, נמשיך.")
    return llm


@pytest.fixture
def make_session():
    """Factory for sessions on the onboarding flow."""
    def _make(stage: str = "contact", user_id: str = "user-1", **kwargs) -> FlowSession:
        return FlowSession(
            conversation_id=kwargs.pop("conversation_id", "conv-1"),
            user_id=user_id,
            flow_slug=kwargs.pop("flow_slug", "business_onboarding"),
            stage=stage,
            **kwargs,
        )
    return _make
