"""
MCP Server for AgentRelay.

An ``mcp`` SDK ``Server`` exposing the tool catalogue and the agent list
resource over stdio for local MCP clients.
"""
import json
import logging
from typing import Any, Optional

import mcp.types as types
from mcp.server import Server

from agentrelay.config import SERVER_NAME
from agentrelay.db.agents import AgentRegistry
from agentrelay.db.models import Session, utcnow
from agentrelay.errors import ExecutionError
from agentrelay.services.executor import CommandExecutor
from agentrelay.tools.dispatch import (
    AGENT_LIST_URI,
    ToolContext,
    dispatch_tool,
    read_agent_list,
)
from agentrelay.tools.catalog import tool_definitions

logger = logging.getLogger(__name__)

server = Server(SERVER_NAME)


# ═════════════════════════════════════════════
# stdio binding
# ═════════════════════════════════════════════

_context: Optional[ToolContext] = None


def bind(registry: AgentRegistry, executor: CommandExecutor, user_id: Optional[str] = None) -> ToolContext:
    """Attach the stdio server to live services. No event stream over stdio."""
    global _context
    session = None
    if user_id:
        now = utcnow()
        session = Session(
            id="stdio",
            user_id=user_id,
            capabilities={"tools": True, "resources": True, "streaming": False},
            created_at=now,
            last_activity=now,
        )
    _context = ToolContext(registry=registry, executor=executor, session=session)
    return _context


def _require_context() -> ToolContext:
    if _context is None:
        raise RuntimeError("MCP server is not bound to a registry; call bind() first")
    return _context


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return tool_definitions()


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    result = await dispatch_tool(_require_context(), name, arguments)
    text = "\n".join(block["text"] for block in result["content"])
    if result.get("isError"):
        # The SDK reports a raised handler error as an isError tool result.
        raise ExecutionError(text, code="TOOL_FAILED", details=result.get("structuredContent") or {})
    return [types.TextContent(**block) for block in result["content"]]


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    return [
        types.Resource(
            uri=AGENT_LIST_URI,
            name="Agent list",
            description="Agents owned by the stdio caller (all agents when no caller is set).",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    ctx = _require_context()
    uri_str = str(uri)
    if uri_str == AGENT_LIST_URI:
        owner = ctx.session.user_id if ctx.session else None
        return read_agent_list(ctx.registry, owner)
    return json.dumps({"error": f"Unknown resource URI: {uri_str}"})
