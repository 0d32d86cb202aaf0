"""
Tests for the MCP server surface.

The decorated handlers are called directly with a fake HubSpot client
attached to the server, the same way the lifespan attaches the real one.
"""

import json
import os

import pytest
from mcp import types
from mcp.shared.exceptions import McpError
from mcp.shared.memory import create_connected_server_and_client_session

from hubspot_mcp import server as server_module
from hubspot_mcp.client import HubSpotClient, HubSpotError

EXPECTED_TOOLS = {
    "hubspot_create_contact",
    "hubspot_create_company",
    "hubspot_get_company_activity",
    "hubspot_get_recent_engagements",
    "hubspot_get_active_companies",
    "hubspot_get_active_contacts",
    "hubspot_update_contact",
    "hubspot_update_company",
}


class RecordingHubSpot:
    """Stands in for HubSpotClient and records each call."""

    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple[str, tuple, dict]] = []
        self.error = error
        self.closed = False

    async def close(self):
        self.closed = True

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error

    async def create_contact(self, firstname, lastname, email=None, properties=None):
        self._record("create_contact", firstname, lastname, email=email, properties=properties)
        return {"id": "1", "properties": {"firstname": firstname, "lastname": lastname}}

    async def create_company(self, name, properties=None):
        self._record("create_company", name, properties=properties)
        return {"id": "2", "properties": {"name": name}}

    async def get_company_activity(self, company_id):
        self._record("get_company_activity", company_id)
        return [{"id": 1, "type": "NOTE", "content": "hi"}]

    async def get_recent_engagements(self, days=7, limit=50):
        self._record("get_recent_engagements", days=days, limit=limit)
        return []

    async def get_recent_companies(self, limit=10):
        self._record("get_recent_companies", limit=limit)
        return [{"id": "3"}]

    async def get_recent_contacts(self, limit=10):
        self._record("get_recent_contacts", limit=limit)
        return [{"id": "4"}]

    async def update_contact(self, contact_id, properties):
        self._record("update_contact", contact_id, properties)
        return {"message": "Contact updated successfully", "contactId": contact_id, "properties": properties}

    async def update_company(self, company_id, properties):
        self._record("update_company", company_id, properties)
        return {"message": "Company updated successfully", "companyId": company_id, "properties": properties}


@pytest.fixture
def hubspot(monkeypatch):
    fake = RecordingHubSpot()
    monkeypatch.setattr(server_module.server, "hubspot", fake, raising=False)
    return fake


def _text(result):
    assert isinstance(result, list)
    assert len(result) == 1
    return result[0].text


# =============================================================================
# Discovery
# =============================================================================


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_lists_all_tools(self):
        tools = await server_module.list_tools()

        assert {tool.name for tool in tools} == EXPECTED_TOOLS
        for tool in tools:
            assert tool.inputSchema["type"] == "object"

    @pytest.mark.asyncio
    async def test_required_arguments_declared(self):
        tools = {tool.name: tool for tool in await server_module.list_tools()}

        assert tools["hubspot_create_contact"].inputSchema["required"] == ["firstname", "lastname"]
        assert tools["hubspot_update_company"].inputSchema["required"] == ["company_id", "properties"]
        assert "required" not in tools["hubspot_get_recent_engagements"].inputSchema

    @pytest.mark.asyncio
    async def test_numeric_arguments_accept_any_number(self):
        """Should declare counts as plain numbers so the handler does the int cast."""
        tools = {tool.name: tool for tool in await server_module.list_tools()}

        days = tools["hubspot_get_recent_engagements"].inputSchema["properties"]["days"]
        assert days == {
            "type": "number",
            "description": "Number of days to look back (default: 7)",
            "default": 7,
        }
        for name in ("hubspot_get_active_companies", "hubspot_get_active_contacts"):
            assert tools[name].inputSchema["properties"]["limit"]["type"] == "number"

    @pytest.mark.asyncio
    async def test_resources_readable(self):
        resources = await server_module.list_resources()

        assert {str(resource.uri) for resource in resources} == {
            "document:hubspot/tools",
            "document:hubspot/configuration",
        }
        contents = await server_module.read_resource("document:hubspot/tools")
        assert "hubspot_get_company_activity" in contents[0].content
        assert contents[0].mime_type == "text/markdown"

    @pytest.mark.asyncio
    async def test_unknown_resource(self):
        with pytest.raises(ValueError):
            await server_module.read_resource("document:hubspot/missing")

    @pytest.mark.asyncio
    async def test_prompts(self):
        prompts = await server_module.list_prompts()
        assert {prompt.name for prompt in prompts} == {"summarise-recent-activity", "add-company-and-contact"}

        result = await server_module.get_prompt("summarise-recent-activity")
        assert result.messages[0].role == "user"
        assert "7 days" in result.messages[0].content.text

        with pytest.raises(ValueError):
            await server_module.get_prompt("nope")


# =============================================================================
# Dispatch
# =============================================================================


class TestCallTool:
    @pytest.mark.asyncio
    async def test_unknown_tool_is_method_not_found(self, hubspot):
        """Should signal method-not-found for unregistered tool names."""
        with pytest.raises(McpError) as excinfo:
            await server_module.call_tool("hubspot_delete_everything", {})

        assert excinfo.value.error.code == types.METHOD_NOT_FOUND
        assert hubspot.calls == []

    @pytest.mark.asyncio
    async def test_create_contact_dispatch(self, hubspot):
        result = await server_module.call_tool(
            "hubspot_create_contact",
            {"firstname": "Ada", "lastname": "Lovelace", "email": "ada@example.com", "properties": {"company": "AE"}},
        )

        assert json.loads(_text(result))["id"] == "1"
        assert hubspot.calls == [
            (
                "create_contact",
                ("Ada", "Lovelace"),
                {"email": "ada@example.com", "properties": {"company": "AE"}},
            )
        ]

    @pytest.mark.asyncio
    async def test_response_is_pretty_json(self, hubspot):
        result = await server_module.call_tool("hubspot_get_company_activity", {"company_id": 123})

        text = _text(result)
        assert text == json.dumps([{"content": "hi", "id": 1, "type": "NOTE"}], indent=2, sort_keys=True)
        assert hubspot.calls == [("get_company_activity", ("123",), {})]

    @pytest.mark.asyncio
    async def test_defaults_and_casts(self, hubspot):
        """Should fill defaults and cast numeric arguments."""
        await server_module.call_tool("hubspot_get_recent_engagements", {})
        await server_module.call_tool("hubspot_get_recent_engagements", {"days": 3.0, "limit": "20"})
        await server_module.call_tool("hubspot_get_active_companies", None)
        await server_module.call_tool("hubspot_get_active_contacts", {"limit": 5})

        assert hubspot.calls == [
            ("get_recent_engagements", (), {"days": 7, "limit": 50}),
            ("get_recent_engagements", (), {"days": 3, "limit": 20}),
            ("get_recent_companies", (), {"limit": 10}),
            ("get_recent_contacts", (), {"limit": 5}),
        ]

    @pytest.mark.asyncio
    async def test_update_dispatch(self, hubspot):
        await server_module.call_tool("hubspot_update_contact", {"contact_id": "9", "properties": {"phone": "1"}})
        result = await server_module.call_tool(
            "hubspot_update_company", {"company_id": 10, "properties": {"industry": "RETAIL"}}
        )

        assert json.loads(_text(result))["companyId"] == "10"
        assert hubspot.calls[0] == ("update_contact", ("9", {"phone": "1"}), {})
        assert hubspot.calls[1] == ("update_company", ("10", {"industry": "RETAIL"}), {})

    @pytest.mark.asyncio
    async def test_create_company_dispatch(self, hubspot):
        await server_module.call_tool("hubspot_create_company", {"name": "Acme"})

        assert hubspot.calls == [("create_company", ("Acme",), {"properties": None})]

    @pytest.mark.asyncio
    async def test_missing_argument_is_textual_error(self, hubspot):
        result = await server_module.call_tool("hubspot_update_contact", {"contact_id": "9"})

        assert isinstance(result, types.CallToolResult)
        assert result.isError is True
        assert "Missing required argument 'properties'" in result.content[0].text
        assert hubspot.calls == []

    @pytest.mark.asyncio
    async def test_properties_must_be_object(self, hubspot):
        result = await server_module.call_tool("hubspot_create_company", {"name": "Acme", "properties": "x"})

        assert result.isError is True
        assert "properties must be provided as an object" in result.content[0].text

    @pytest.mark.asyncio
    async def test_api_error_is_textual_error(self, monkeypatch):
        """Should surface HubSpotError as an isError text payload."""
        failing = RecordingHubSpot(error=HubSpotError("rate limit hit (status 429)", status_code=429))
        monkeypatch.setattr(server_module.server, "hubspot", failing, raising=False)

        result = await server_module.call_tool("hubspot_get_active_companies", {"limit": 1})

        assert result.isError is True
        assert result.content[0].text == "HubSpot API error: rate limit hit (status 429)"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_textual_error(self, monkeypatch):
        failing = RecordingHubSpot(error=KeyError("results"))
        monkeypatch.setattr(server_module.server, "hubspot", failing, raising=False)

        result = await server_module.call_tool("hubspot_get_active_contacts", {})

        assert result.isError is True
        assert result.content[0].text.startswith("Tool execution error:")

    @pytest.mark.asyncio
    async def test_client_not_initialised(self, monkeypatch):
        monkeypatch.setattr(server_module.server, "hubspot", None, raising=False)

        result = await server_module.call_tool("hubspot_get_active_contacts", {})

        assert result.isError is True
        assert "not initialised" in result.content[0].text


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    # setenv first so monkeypatch restores the original (possibly unset) value.
    monkeypatch.setenv(server_module.ACCESS_TOKEN_ENV, "placeholder")
    monkeypatch.delenv(server_module.ACCESS_TOKEN_ENV)
    monkeypatch.setattr(server_module, "load_dotenv", lambda *args, **kwargs: False)
    return monkeypatch


class TestConfiguration:
    def test_cli_flag_sets_token(self, clean_env):
        server_module._parse_args(["--access-token", "pat-cli"])

        assert os.environ[server_module.ACCESS_TOKEN_ENV] == "pat-cli"

    def test_missing_token_exits(self, clean_env):
        with pytest.raises(SystemExit):
            server_module._parse_args([])

    def test_env_token_accepted(self, clean_env):
        clean_env.setenv(server_module.ACCESS_TOKEN_ENV, "pat-env")

        args = server_module._parse_args(["--log-level", "debug"])

        assert args.access_token is None
        assert args.log_level == "debug"

    @pytest.mark.asyncio
    async def test_lifespan_creates_and_closes_client(self, clean_env):
        clean_env.setenv(server_module.ACCESS_TOKEN_ENV, "pat-env")
        clean_env.setenv("HUBSPOT_BASE_URL", "https://hubspot.test/")
        clean_env.setattr(server_module.server, "hubspot", None, raising=False)

        async with server_module.lifespan(server_module.server):
            hubspot = server_module.server.hubspot
            assert isinstance(hubspot, HubSpotClient)
            assert hubspot.client.base_url.host == "hubspot.test"

        assert hubspot.client.is_closed

    @pytest.mark.asyncio
    async def test_lifespan_requires_token(self, clean_env):
        with pytest.raises(RuntimeError):
            async with server_module.lifespan(server_module.server):
                pass


# =============================================================================
# Protocol round trip
# =============================================================================


class TestClientSession:
    """Exercises the handlers through the SDK's request dispatch, as a host sees them."""

    @pytest.fixture
    def session_hubspot(self, clean_env):
        fake = RecordingHubSpot()
        clean_env.setenv(server_module.ACCESS_TOKEN_ENV, "pat-env")
        clean_env.setattr(server_module, "HubSpotClient", lambda *args, **kwargs: fake)
        clean_env.setattr(server_module.server, "hubspot", None, raising=False)
        return fake

    @pytest.mark.asyncio
    async def test_tools_over_session(self, session_hubspot):
        async with create_connected_server_and_client_session(server_module.server) as session:
            listed = await session.list_tools()
            result = await session.call_tool("hubspot_get_recent_engagements", {"days": 2.5, "limit": 10})

        assert {tool.name for tool in listed.tools} == EXPECTED_TOOLS
        assert result.isError is False
        assert json.loads(result.content[0].text) == []
        assert session_hubspot.calls == [("get_recent_engagements", (), {"days": 2, "limit": 10})]
        assert session_hubspot.closed is True

    @pytest.mark.asyncio
    async def test_unknown_tool_reaches_host_as_error_result(self, session_hubspot):
        """Should report an unknown tool as an error result rather than a dropped session."""
        async with create_connected_server_and_client_session(server_module.server) as session:
            result = await session.call_tool("nope", {})

        assert result.isError is True
        assert "Unknown tool: nope" in result.content[0].text
        assert session_hubspot.calls == []

    @pytest.mark.asyncio
    async def test_api_error_reaches_host_as_text(self, session_hubspot):
        session_hubspot.error = HubSpotError("resource not found (status 404)", status_code=404)

        async with create_connected_server_and_client_session(server_module.server) as session:
            result = await session.call_tool("hubspot_get_company_activity", {"company_id": "9"})

        assert result.isError is True
        assert result.content[0].text == "HubSpot API error: resource not found (status 404)"
