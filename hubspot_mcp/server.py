"""Model Context Protocol server exposing HubSpot CRM tools."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Sequence

import anyio
from dotenv import load_dotenv
from mcp import types
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError

from hubspot_mcp.client import DEFAULT_BASE_URL, HubSpotClient, HubSpotError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_ENV = "HUBSPOT_ACCESS_TOKEN"


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True)


@asynccontextmanager
async def lifespan(app: Server):
    """Configure the HubSpot client for the server lifecycle."""
    load_dotenv()  # values already in the environment (e.g. from --access-token) win

    access_token = os.getenv(ACCESS_TOKEN_ENV)
    if not access_token:
        raise RuntimeError(
            f"{ACCESS_TOKEN_ENV} environment variable is required. "
            "Set it or pass --access-token when launching the server."
        )
    base_url = os.getenv("HUBSPOT_BASE_URL", DEFAULT_BASE_URL)
    timeout = float(os.getenv("HUBSPOT_TIMEOUT_SECONDS", "30"))

    hubspot = HubSpotClient(access_token, base_url=base_url, timeout=timeout)
    app.hubspot = hubspot  # type: ignore[attr-defined]
    logger.info("HubSpot MCP server started (base URL %s)", base_url)

    try:
        yield
    finally:
        await hubspot.close()


server = Server(
    name="hubspot-manager",
    version="0.1.0",
    instructions=(
        "Use these tools to read and update HubSpot CRM records.\n"
        "\n"
        "- Before creating a contact or company, the server searches for an exact name match "
        "(plus company for contacts) and returns the existing record instead of creating a duplicate.\n"
        "- Updates require the numeric HubSpot record ID. Look it up with hubspot_get_active_contacts or "
        "hubspot_get_active_companies first. Unknown IDs are reported, not treated as errors.\n"
        "- Activity tools return engagements (notes, emails, tasks, meetings, calls) flattened into a "
        "uniform shape; see document:hubspot/tools for the per-type content fields."
    ),
    website_url="https://developers.hubspot.com/docs/api/crm/understanding-the-crm",
    lifespan=lifespan,
)


RESOURCE_DEFINITIONS: dict[str, dict[str, str]] = {
    "hubspot-tools": {
        "name": "hubspot-tools",
        "title": "HubSpot Tool Reference",
        "uri": "document:hubspot/tools",
        "description": "What each HubSpot tool does and the shape of the engagement records it returns.",
        "mime_type": "text/markdown",
        "content": (
            "# HubSpot Tool Reference\n"
            "\n"
            "## Records\n"
            "\n"
            "- `hubspot_get_active_companies` / `hubspot_get_active_contacts`: most recently modified records, "
            "newest first. Each record has `id`, `properties`, `createdAt`, `updatedAt` and `archived`.\n"
            "- `hubspot_create_contact` / `hubspot_create_company`: returns the created record, or "
            "`{\"message\": \"... already exists\", \"contact\"|\"company\": <record>}` when an exact match exists.\n"
            "- `hubspot_update_contact` / `hubspot_update_company`: returns a confirmation with the properties "
            "sent, or `{\"message\": \"... not found, no update performed\"}` when the ID does not exist.\n"
            "\n"
            "## Engagements\n"
            "\n"
            "`hubspot_get_company_activity` and `hubspot_get_recent_engagements` return a list of:\n"
            "\n"
            "```\n"
            "id, type, created_at, last_updated, created_by, modified_by, timestamp, associations, content\n"
            "```\n"
            "\n"
            "`content` depends on `type`:\n"
            "\n"
            "- `NOTE`: the note body as a string\n"
            "- `EMAIL`: `subject`, `from`, `to`, `cc`, `bcc`, `sender`, `body`\n"
            "- `TASK`: `subject`, `body`, `status`, `for_object_type`\n"
            "- `MEETING`: `title`, `body`, `start_time`, `end_time`, `internal_notes`\n"
            "- `CALL`: `body`, `from_number`, `to_number`, `duration_ms`, `status`, `disposition`\n"
            "\n"
            "Other engagement types are returned without a `content` field.\n"
        ),
    },
    "hubspot-configuration": {
        "name": "hubspot-configuration",
        "title": "HubSpot MCP Configuration",
        "uri": "document:hubspot/configuration",
        "description": "Environment variables and command-line flags understood by the HubSpot MCP server.",
        "mime_type": "text/markdown",
        "content": (
            "# HubSpot MCP Configuration\n"
            "\n"
            "- `HUBSPOT_ACCESS_TOKEN` (or `--access-token`): private app access token. Required.\n"
            f"- `HUBSPOT_BASE_URL`: REST API root (defaults to `{DEFAULT_BASE_URL}`).\n"
            "- `HUBSPOT_TIMEOUT_SECONDS`: request timeout (defaults to `30`).\n"
            "- `HUBSPOT_LOG_LEVEL` (or `--log-level`): log level written to stderr (defaults to `INFO`).\n"
            "\n"
            "Values may also be placed in a `.env` file in the working directory. "
            "Variables already set in the environment take precedence.\n"
        ),
    },
}

RESOURCE_DEFINITIONS_BY_URI = {info["uri"]: info for info in RESOURCE_DEFINITIONS.values()}

PROMPT_DEFINITIONS: dict[str, dict[str, str]] = {
    "summarise-recent-activity": {
        "description": "Summarise CRM activity from the past week.",
        "text": (
            "Fetch the HubSpot engagements modified in the last 7 days and summarise them by type. "
            "List any open tasks and upcoming meetings separately, and name the companies involved."
        ),
    },
    "add-company-and-contact": {
        "description": "Create a company and a contact that works there, without duplicating existing records.",
        "text": (
            "Create the company first with hubspot_create_company, then create the contact with "
            "hubspot_create_contact, passing the company name in properties.company. If either already "
            "exists, report the existing record instead of creating another."
        ),
    },
}


TOOL_DEFINITIONS: list[types.Tool] = [
    types.Tool(
        name="hubspot_create_contact",
        description="Create a new contact in HubSpot (returns the existing contact if one matches).",
        inputSchema={
            "type": "object",
            "properties": {
                "firstname": {"type": "string", "description": "Contact's first name"},
                "lastname": {"type": "string", "description": "Contact's last name"},
                "email": {"type": "string", "description": "Contact's email address"},
                "properties": {
                    "type": "object",
                    "description": "Additional contact properties",
                    "additionalProperties": True,
                },
            },
            "required": ["firstname", "lastname"],
        },
    ),
    types.Tool(
        name="hubspot_create_company",
        description="Create a new company in HubSpot (returns the existing company if one matches).",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Company name"},
                "properties": {
                    "type": "object",
                    "description": "Additional company properties",
                    "additionalProperties": True,
                },
            },
            "required": ["name"],
        },
    ),
    types.Tool(
        name="hubspot_get_company_activity",
        description="Get activity history for a specific company",
        inputSchema={
            "type": "object",
            "properties": {
                "company_id": {"type": "string", "description": "HubSpot company ID"},
            },
            "required": ["company_id"],
        },
    ),
    types.Tool(
        name="hubspot_get_recent_engagements",
        description="Get recent engagement activities across all contacts and companies",
        inputSchema={
            "type": "object",
            "properties": {
                "days": {
                    "type": "number",
                    "description": "Number of days to look back (default: 7)",
                    "default": 7,
                },
                "limit": {
                    "type": "number",
                    "description": "Maximum number of engagements to return (default: 50)",
                    "default": 50,
                },
            },
        },
    ),
    types.Tool(
        name="hubspot_get_active_companies",
        description="Get most recently active companies from HubSpot",
        inputSchema={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "number",
                    "description": "Maximum number of companies to return (default: 10)",
                    "default": 10,
                },
            },
        },
    ),
    types.Tool(
        name="hubspot_get_active_contacts",
        description="Get most recently active contacts from HubSpot",
        inputSchema={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "number",
                    "description": "Maximum number of contacts to return (default: 10)",
                    "default": 10,
                },
            },
        },
    ),
    types.Tool(
        name="hubspot_update_contact",
        description="Update an existing contact in HubSpot (ignores if contact does not exist)",
        inputSchema={
            "type": "object",
            "properties": {
                "contact_id": {"type": "string", "description": "HubSpot contact ID to update"},
                "properties": {
                    "type": "object",
                    "description": "Contact properties to update",
                    "additionalProperties": True,
                },
            },
            "required": ["contact_id", "properties"],
        },
    ),
    types.Tool(
        name="hubspot_update_company",
        description="Update an existing company in HubSpot (ignores if company does not exist)",
        inputSchema={
            "type": "object",
            "properties": {
                "company_id": {"type": "string", "description": "HubSpot company ID to update"},
                "properties": {
                    "type": "object",
                    "description": "Company properties to update",
                    "additionalProperties": True,
                },
            },
            "required": ["company_id", "properties"],
        },
    ),
]

TOOL_NAMES = frozenset(tool.name for tool in TOOL_DEFINITIONS)


@server.list_tools()
async def list_tools(_req: types.ListToolsRequest | None = None) -> list[types.Tool]:
    return TOOL_DEFINITIONS


@server.list_resources()
async def list_resources(_req: types.ListResourcesRequest | None = None) -> list[types.Resource]:
    return [
        types.Resource(
            name=info["name"],
            uri=info["uri"],
            description=info["description"],
            mimeType=info["mime_type"],
            title=info["title"],
        )
        for info in RESOURCE_DEFINITIONS.values()
    ]


@server.read_resource()
async def read_resource(uri: Any) -> list[ReadResourceContents]:
    info = RESOURCE_DEFINITIONS_BY_URI.get(str(uri))
    if not info:
        raise ValueError(f"Unknown resource URI: {uri}")
    return [ReadResourceContents(content=info["content"], mime_type=info["mime_type"])]


@server.list_prompts()
async def list_prompts(_req: types.ListPromptsRequest | None = None) -> list[types.Prompt]:
    return [
        types.Prompt(name=name, description=info["description"])
        for name, info in PROMPT_DEFINITIONS.items()
    ]


@server.get_prompt()
async def get_prompt(name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
    info = PROMPT_DEFINITIONS.get(name)
    if not info:
        raise ValueError(f"Prompt '{name}' not found.")
    return types.GetPromptResult(
        description=info["description"],
        messages=[
            types.PromptMessage(
                role="user",
                content=types.TextContent(type="text", text=info["text"]),
            )
        ],
    )


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value in (None, ""):
        raise ValueError(f"Missing required argument '{key}'.")
    return value


def _properties(
    arguments: dict[str, Any],
    key: str = "properties",
    *,
    required: bool = False,
) -> dict[str, Any] | None:
    value = _require(arguments, key) if required else arguments.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be provided as an object.")
    return value


def _int(arguments: dict[str, Any], key: str, default: int) -> int:
    value = arguments.get(key)
    return default if value is None else int(value)


def _client() -> HubSpotClient:
    """Get the HubSpotClient created by the server lifespan."""
    hubspot = getattr(server, "hubspot", None)
    if hubspot is None:
        raise RuntimeError("HubSpot client not initialised.")
    return hubspot


async def _dispatch(client: HubSpotClient, tool_name: str, arguments: dict[str, Any]) -> Any:
    if tool_name == "hubspot_create_contact":
        return await client.create_contact(
            str(_require(arguments, "firstname")),
            str(_require(arguments, "lastname")),
            email=arguments.get("email") or None,
            properties=_properties(arguments),
        )

    if tool_name == "hubspot_create_company":
        return await client.create_company(
            str(_require(arguments, "name")),
            properties=_properties(arguments),
        )

    if tool_name == "hubspot_get_company_activity":
        return await client.get_company_activity(str(_require(arguments, "company_id")))

    if tool_name == "hubspot_get_recent_engagements":
        return await client.get_recent_engagements(
            days=_int(arguments, "days", 7),
            limit=_int(arguments, "limit", 50),
        )

    if tool_name == "hubspot_get_active_companies":
        return await client.get_recent_companies(limit=_int(arguments, "limit", 10))

    if tool_name == "hubspot_get_active_contacts":
        return await client.get_recent_contacts(limit=_int(arguments, "limit", 10))

    if tool_name == "hubspot_update_contact":
        return await client.update_contact(
            str(_require(arguments, "contact_id")),
            _properties(arguments, required=True),
        )

    if tool_name == "hubspot_update_company":
        return await client.update_company(
            str(_require(arguments, "company_id")),
            _properties(arguments, required=True),
        )

    raise ValueError(f"Unknown tool: {tool_name}")


@server.call_tool()
async def call_tool(
    tool_name: str,
    arguments: dict[str, Any] | None,
) -> list[types.TextContent] | types.CallToolResult:
    if tool_name not in TOOL_NAMES:
        raise McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Unknown tool: {tool_name}"))

    try:
        payload = await _dispatch(_client(), tool_name, dict(arguments or {}))
        return [types.TextContent(type="text", text=_json(payload))]
    except HubSpotError as exc:
        logger.exception("Error executing tool %s", tool_name)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"HubSpot API error: {exc}")],
            isError=True,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error executing tool %s", tool_name)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"Tool execution error: {exc}")],
            isError=True,
        )


async def serve() -> None:
    initialization_options = server.create_initialization_options()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, initialization_options)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="HubSpot CRM tools over the Model Context Protocol (stdio).")
    parser.add_argument(
        "--access-token",
        help=f"HubSpot private app access token (defaults to ${ACCESS_TOKEN_ENV}).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level written to stderr (defaults to $HUBSPOT_LOG_LEVEL or INFO).",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    if args.access_token:
        os.environ[ACCESS_TOKEN_ENV] = args.access_token
    if not os.getenv(ACCESS_TOKEN_ENV):
        parser.error(f"{ACCESS_TOKEN_ENV} environment variable or --access-token is required")
    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    level = (args.log_level or os.getenv("HUBSPOT_LOG_LEVEL") or "INFO").upper()
    # stdout carries the protocol; logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    anyio.run(serve)


if __name__ == "__main__":
    main()
