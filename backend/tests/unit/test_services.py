"""
Unit tests for the service layer (user data, tools, flows, sessions, LLM helpers).
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage

from flowcore.core.config import settings
from flowcore.core.exceptions import FlowDefinitionError
from flowcore.models.flow import ToolResult
from flowcore.services.flows import FlowRegistry
from flowcore.services.llm import parse_json_object, to_messages
from flowcore.services.sessions import SessionStore
from flowcore.services.tools import HttpToolExecutor, ToolRegistry
from flowcore.services.user_data import (
    InMemoryUserDataStore,
    SupabaseUserDataStore,
    create_user_data_store,
    decode_value,
    encode_value,
)


class TestValueEncoding:
    """Tests for typed user data values."""

    @pytest.mark.parametrize("value, tag, raw", [
        (True, "boolean", "true"),
        (False, "boolean", "false"),
        (7, "number", "7"),
        (2.5, "number", "2.5"),
        ("לא ידוע", "string", "לא ידוע"),
        (["office"], "json", '["office"]'),
    ])
    def test_encode(self, value, tag, raw):
        assert encode_value(value) == (tag, raw)

    def test_decode(self):
        assert decode_value("boolean", "false") is False
        assert decode_value("number", "12") == 12
        assert decode_value("json", '{"a": 1}') == {"a": 1}
        assert decode_value(None, "שלום") == "שלום"
        assert decode_value("string", None) is None

    def test_undecodable_number_kept_as_text(self):
        assert decode_value("number", "twelve") == "twelve"


class TestInMemoryUserDataStore:
    """Tests for InMemoryUserDataStore."""

    async def test_patch_and_delete(self):
        store = InMemoryUserDataStore()
        await store.set_user_data("u", "f", {"a": 1, "b": False})
        await store.set_user_data("u", "f", {"a": None, "c": "x"})
        assert await store.get_user_data("u", "f") == {"b": False, "c": "x"}

    async def test_flows_are_isolated(self):
        store = InMemoryUserDataStore()
        await store.set_user_data("u", "f1", {"a": 1})
        assert await store.get_user_data("u", "f2") == {}

    async def test_returns_copy(self):
        store = InMemoryUserDataStore()
        await store.set_user_data("u", "f", {"a": 1})
        data = await store.get_user_data("u", "f")
        data["a"] = 2
        assert (await store.get_user_data("u", "f"))["a"] == 1

    def test_factory(self):
        assert isinstance(create_user_data_store("memory"), InMemoryUserDataStore)
        assert isinstance(create_user_data_store("redis"), InMemoryUserDataStore)
        assert isinstance(create_user_data_store("supabase"), SupabaseUserDataStore)


class TestSupabaseUserDataStore:
    """Tests for SupabaseUserDataStore with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        with patch("flowcore.services.user_data.get_supabase_client", return_value=client):
            yield client

    async def test_get_decodes_rows(self, client):
        rows = [
            {"key": "has_physical_premises", "value": "false", "type": "boolean"},
            {"key": "employees_count", "value": "4", "type": "number"},
            {"key": "business_city", "value": "חיפה", "type": "string"},
        ]
        query = client.table.return_value.select.return_value.eq.return_value.eq.return_value
        query.execute.return_value = MagicMock(data=rows)

        data = await SupabaseUserDataStore().get_user_data("u", "f")

        assert data == {"has_physical_premises": False, "employees_count": 4, "business_city": "חיפה"}
        client.table.assert_called_with("flowcore_user_data")

    async def test_patch_is_one_upsert(self, client):
        """Cleared keys go in the same upsert as the changed ones."""
        table = client.table.return_value

        await SupabaseUserDataStore().set_user_data("u", "f", {"email": "a@b.co", "zip": None}, "conv-1")

        table.upsert.assert_called_once()
        rows = {row["key"]: row for row in table.upsert.call_args.args[0]}
        assert rows["email"]["type"] == "string"
        assert rows["email"]["value"] == "a@b.co"
        assert rows["email"]["conversation_id"] == "conv-1"
        assert rows["zip"]["value"] is None
        assert rows["zip"]["type"] is None
        assert table.upsert.call_args.kwargs["on_conflict"] == "user_id,flow_id,key"
        table.delete.assert_not_called()

    async def test_cleared_rows_are_not_returned(self, client):
        rows = [
            {"key": "email", "value": "a@b.co", "type": "string"},
            {"key": "zip", "value": None, "type": None},
        ]
        query = client.table.return_value.select.return_value.eq.return_value.eq.return_value
        query.execute.return_value = MagicMock(data=rows)

        assert await SupabaseUserDataStore().get_user_data("u", "f") == {"email": "a@b.co"}


class TestToolRegistry:
    """Tests for ToolRegistry."""

    async def test_execute_registered_tool(self):
        registry = ToolRegistry()

        @registry.tool("echo")
        async def echo(payload, context):
            return ToolResult.ok({"echo": payload["value"]})

        result = await registry.execute("echo", {"value": 3}, {})
        assert result.success
        assert result.data == {"echo": 3}
        assert registry.tool_names() == ["echo"]

    async def test_unknown_tool(self):
        result = await ToolRegistry().execute("missing", {}, {})
        assert not result.success
        assert result.error_code == "TOOL_NOT_FOUND"

    async def test_exception_becomes_result(self):
        registry = ToolRegistry()

        @registry.tool("broken")
        async def broken(payload, context):
            raise ValueError("bad payload")

        result = await registry.execute("broken", {}, {})
        assert result.error_code == "TOOL_EXCEPTION"
        assert "bad payload" in result.error

    def test_tool_result_consistency(self):
        with pytest.raises(ValueError):
            ToolResult(success=True, error="oops")
        with pytest.raises(ValueError):
            ToolResult(success=False)


class TestHttpToolExecutor:
    """Tests for HttpToolExecutor with a mocked httpx client."""

    @staticmethod
    def mock_client(response=None, error=None):
        client = MagicMock()
        client.post = AsyncMock(return_value=response, side_effect=error)
        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=client)
        ctx.__aexit__ = AsyncMock(return_value=False)
        return client, ctx

    async def test_success(self):
        client, ctx = self.mock_client(httpx.Response(200, json={"success": True, "data": {"id": 1}}))
        executor = HttpToolExecutor(base_url="https://tools.example.com/")
        with patch("flowcore.services.tools.httpx.AsyncClient", return_value=ctx):
            result = await executor.execute("lookup", {"a": 1}, {"stage": "s"})

        assert result.success
        assert result.data == {"id": 1}
        url = client.post.call_args.args[0]
        assert url == "https://tools.example.com/lookup"
        assert client.post.call_args.kwargs["json"] == {"tool": "lookup", "payload": {"a": 1}, "context": {"stage": "s"}}

    @pytest.mark.parametrize("status, code", [(404, "TOOL_NOT_FOUND"), (502, "HTTP_ERROR"), (400, "HTTP_ERROR")])
    async def test_error_status(self, status, code):
        _, ctx = self.mock_client(httpx.Response(status))
        executor = HttpToolExecutor(base_url="https://tools.example.com")
        with patch("flowcore.services.tools.httpx.AsyncClient", return_value=ctx):
            result = await executor.execute("lookup", {}, {})

        assert not result.success
        assert result.error_code == code
        assert result.status == status

    async def test_timeout(self):
        _, ctx = self.mock_client(error=httpx.ReadTimeout("slow"))
        executor = HttpToolExecutor(base_url="https://tools.example.com")
        with patch("flowcore.services.tools.httpx.AsyncClient", return_value=ctx):
            result = await executor.execute("lookup", {}, {})

        assert result.error_code == "TIMEOUT"

    async def test_unlisted_tool_not_called(self):
        executor = HttpToolExecutor(base_url="https://tools.example.com", tool_names=["lookup"])
        with patch("flowcore.services.tools.httpx.AsyncClient") as client_cls:
            result = await executor.execute("submit", {}, {})

        assert result.error_code == "TOOL_NOT_FOUND"
        client_cls.assert_not_called()


class TestFlowRegistry:
    """Tests for FlowRegistry."""

    def test_load_directory(self):
        registry = FlowRegistry()
        loaded = registry.load_directory(settings.FLOWS_DIR)
        assert [f.slug for f in loaded] == ["business_onboarding"]
        assert "business_onboarding" in registry
        assert registry.default_flow().slug == "business_onboarding"

    def test_missing_directory(self, tmp_path):
        assert FlowRegistry().load_directory(str(tmp_path / "nope")) == []

    def test_invalid_flow_not_stored(self, sample_flow_data):
        registry = FlowRegistry(tool_names=["submit_application"])
        with pytest.raises(FlowDefinitionError):
            registry.register(sample_flow_data)
        assert len(registry) == 0

    def test_default_flow_falls_back_to_first(self, sample_flow_data):
        sample_flow_data["definition"]["config"]["defaultForNewUsers"] = False
        registry = FlowRegistry()
        registry.register(sample_flow_data)
        assert registry.default_flow().slug == "business_onboarding"


class TestSessionStore:
    """Tests for SessionStore."""

    def test_create_and_get(self):
        store = SessionStore()
        session = store.create("user-1", "business_onboarding", "contact")
        assert store.get(session.conversation_id) is session
        assert session.stage == "contact"

    def test_list_for_user(self):
        store = SessionStore()
        store.create("user-1", "f", "a", conversation_id="c1")
        store.create("user-2", "f", "a", conversation_id="c2")
        assert [s.conversation_id for s in store.list_for_user("user-1")] == ["c1"]


class TestLLMHelpers:
    """Tests for model reply parsing."""

    def test_parse_fenced_json(self):
        assert parse_json_object('```json\n{"full_name": "דנה"}\n```') == {"full_name": "דנה"}

    @pytest.mark.parametrize("content", ["", "not json", "[1, 2]", None])
    def test_parse_invalid(self, content):
        assert parse_json_object(content) == {}

    def test_to_messages(self):
        messages = to_messages([("user", "שלום"), ("assistant", "היי")])
        assert isinstance(messages[0], HumanMessage)
        assert isinstance(messages[1], AIMessage)
