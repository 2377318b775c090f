"""
Protocol dispatch layer for AgentRelay.

Two levels:
  - ``dispatch_tool`` routes a ``tools/call`` to one of the ``handle_*``
    functions below (``TOOLS_DISPATCH``).
  - ``ProtocolDispatcher.handle_message`` answers one JSON-RPC envelope
    taken off a session's request queue, mapping every fault to a JSON-RPC
    error carrying the caller's correlation id.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import mcp.types as types
from mcp.types import LATEST_PROTOCOL_VERSION

from agentrelay.config import ALLOWED_GIT_SCHEMES, SERVER_NAME, SERVER_VERSION
from agentrelay.db.agents import AgentRegistry
from agentrelay.db.models import AGENT_KINDS, Session, StreamEvent
from agentrelay.errors import (
    INTERNAL_ERROR,
    AgentNotReady,
    ExecutionError,
    InvalidParams,
    MethodNotFound,
    UnknownSession,
    rpc_error,
    rpc_fault,
    rpc_result,
)
from agentrelay.security import ensure_command_allowed, validate_git_url
from agentrelay.services.executor import CommandExecutor
from agentrelay.tools.catalog import tool_definitions
from agentrelay.transport.broadcast import EventBroadcaster
from agentrelay.transport.sessions import SessionRegistry

logger = logging.getLogger(__name__)

AGENT_LIST_URI = "agent://list"


@dataclass
class ToolContext:
    """What a tool handler may touch while serving one call."""
    registry: AgentRegistry
    executor: CommandExecutor
    broadcaster: Optional[EventBroadcaster] = None
    session: Optional[Session] = None
    allowed_git_schemes: tuple = field(default=ALLOWED_GIT_SCHEMES)

    def publish(self, event_type: str, data: str) -> int:
        if self.broadcaster is None or self.session is None:
            return 0
        if not self.session.capabilities.get("streaming", False):
            return 0
        return self.broadcaster.publish(self.session.id, StreamEvent(type=event_type, data=data))


def _require(arguments: dict[str, Any], name: str) -> Any:
    value = arguments.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidParams(f"Missing required argument: {name}")
    return value


def _caller(ctx: ToolContext, arguments: dict[str, Any]) -> str:
    """``userId`` from the arguments, else the session's caller."""
    user_id = arguments.get("userId") or (ctx.session.user_id if ctx.session else None)
    if not user_id:
        raise InvalidParams("Missing required argument: userId")
    return user_id


def tool_result(payload: Any, text: Optional[str] = None, is_error: bool = False) -> dict[str, Any]:
    """Wire form of a tool result: text block plus the structured payload."""
    if text is None:
        text = json.dumps(payload, indent=2)
    block = types.TextContent(type="text", text=text)
    return {
        "content": [block.model_dump(exclude_none=True)],
        "structuredContent": payload,
        "isError": is_error,
    }


# ─────────────────────────────────────────────
# Tool handlers
# ─────────────────────────────────────────────

async def handle_execute_tool(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    agent_ref = _require(arguments, "agentId")
    command = _require(arguments, "command")
    if not isinstance(command, str):
        raise InvalidParams("command must be a string")
    streaming = arguments.get("streaming", True)

    def emit(event_type: str, data: str) -> None:
        if streaming:
            ctx.publish(event_type, data)

    try:
        agent = ctx.registry.require_agent(agent_ref, _caller(ctx, arguments))
        if agent.status != "active":
            raise AgentNotReady(
                f"Agent {agent.name} is not ready (status: {agent.status})",
                details={"status": agent.status},
            )
        ensure_command_allowed(command)

        logger.info(f"Executing command for agent {agent.name} ({agent.id})")
        emit("status", f"Running {agent.kind} in {agent.name}: {command}")
        await ctx.registry.update_last_used(agent.id)
        result = await ctx.executor.run_tool(agent.kind, command, agent.workspace_dir)
    except ExecutionError as e:
        emit("error", str(e))
        raise

    if result.output:
        emit("output", result.output)
    if result.success:
        emit("complete", f"Command completed in {result.execution_time_ms}ms")
    else:
        emit("error", result.error or "Command failed")

    payload = {
        "success": result.success,
        "output": result.output,
        "error": result.error,
        "executionTimeMs": result.execution_time_ms,
        "timedOut": result.timed_out,
        "agentId": agent.id,
    }
    return tool_result(
        payload,
        text=result.output or result.error or "Command executed.",
        is_error=not result.success,
    )


async def handle_create_agent(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    user_id = _caller(ctx, arguments)
    repo_url = _require(arguments, "repoUrl")
    kind = arguments.get("type") or "claude"
    if kind not in AGENT_KINDS:
        raise InvalidParams(f"type must be one of {AGENT_KINDS}")
    if not validate_git_url(repo_url, ctx.allowed_git_schemes):
        raise InvalidParams(f"Invalid repository URL: {repo_url}")

    agent = await ctx.registry.create_agent(
        owner=user_id,
        repo_url=repo_url,
        name=arguments.get("name"),
        kind=kind,
        branch=arguments.get("branch"),
        channel_id=arguments.get("channelId"),
    )
    record = agent.to_record()
    return tool_result(record, text=f"Agent '{agent.name}' created.\n{json.dumps(record, indent=2)}")


async def handle_list_agents(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    user_id = _caller(ctx, arguments)
    agents = ctx.registry.list_agents(owner=user_id, channel_id=arguments.get("channelId"))
    records = [a.to_record() for a in agents]
    if not records:
        return tool_result({"agents": []}, text="No agents registered.")
    return tool_result({"agents": records}, text=json.dumps(records, indent=2))


async def handle_get_agent(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    agent = ctx.registry.require_agent(_require(arguments, "agentId"), _caller(ctx, arguments))
    record = agent.to_record()
    if agent.status == "active":
        try:
            record["repository"] = await ctx.registry.repository_info(agent.id, agent.owner)
        except ExecutionError as e:
            logger.warning(f"Repository info unavailable for {agent.id}: {e}")
            record["repository"] = None
    else:
        record["repository"] = None
    return tool_result(record)


async def handle_delete_agent(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    agent = await ctx.registry.delete_agent(_require(arguments, "agentId"), _caller(ctx, arguments))
    payload = {"ok": True, "agentId": agent.id, "name": agent.name}
    return tool_result(payload, text=f"Agent '{agent.name}' deleted.")


async def handle_update_agent(ctx: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    agent = await ctx.registry.update_repository(
        _require(arguments, "agentId"),
        _caller(ctx, arguments),
        pull_latest=arguments.get("pullLatest", True),
        branch=arguments.get("branch"),
    )
    payload = {"ok": True, "agentId": agent.id, "branch": agent.branch, "status": agent.status}
    return tool_result(payload, text=f"Agent '{agent.name}' updated (branch: {agent.branch or 'default'}).")


TOOLS_DISPATCH = {
    "execute_tool": handle_execute_tool,
    "execute_claude": handle_execute_tool,
    "create_agent": handle_create_agent,
    "list_agents": handle_list_agents,
    "get_agent": handle_get_agent,
    "delete_agent": handle_delete_agent,
    "update_agent": handle_update_agent,
}


async def dispatch_tool(ctx: ToolContext, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        raise MethodNotFound(f"Unknown tool: {name}")
    return await handler(ctx, arguments or {})


# ─────────────────────────────────────────────
# Resources
# ─────────────────────────────────────────────

def list_resource_entries() -> list[dict[str, Any]]:
    resource = types.Resource(
        uri=AGENT_LIST_URI,
        name="Agent list",
        description="Agents owned by the session's caller.",
        mimeType="application/json",
    )
    return [resource.model_dump(mode="json", exclude_none=True)]


def read_agent_list(registry: AgentRegistry, owner: Optional[str]) -> str:
    return json.dumps([a.to_record() for a in registry.list_agents(owner=owner)], indent=2)


# ─────────────────────────────────────────────
# JSON-RPC
# ─────────────────────────────────────────────

class ProtocolDispatcher:
    def __init__(
        self,
        sessions: SessionRegistry,
        registry: AgentRegistry,
        executor: CommandExecutor,
        broadcaster: EventBroadcaster,
        allowed_git_schemes: tuple = ALLOWED_GIT_SCHEMES,
    ) -> None:
        self.sessions = sessions
        self.registry = registry
        self.executor = executor
        self.broadcaster = broadcaster
        self.allowed_git_schemes = allowed_git_schemes
        self._methods = {
            "ping": self._ping,
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
        }

    def context(self, session: Optional[Session]) -> ToolContext:
        return ToolContext(
            registry=self.registry,
            executor=self.executor,
            broadcaster=self.broadcaster,
            session=session,
            allowed_git_schemes=self.allowed_git_schemes,
        )

    async def handle_message(self, session_id: str, message: dict) -> dict:
        """Answer one JSON-RPC request; never raises."""
        request_id = message.get("id") if isinstance(message, dict) else None
        try:
            if not isinstance(message, dict) or not isinstance(message.get("method"), str):
                raise InvalidParams("Invalid request: method is required")
            session = self.sessions.get(session_id)
            if session is None:
                raise UnknownSession(f"Unknown session: {session_id}")
            method = message["method"].replace(".", "/")
            handler = self._methods.get(method)
            if handler is None:
                raise MethodNotFound(f"Method not found: {message['method']}")
            params = message.get("params") or {}
            if not isinstance(params, dict):
                raise InvalidParams("params must be an object")
            result = await handler(session, params)
        except ExecutionError as e:
            logger.info(f"Request {request_id} failed: {e.code}: {e}")
            return rpc_fault(request_id, e)
        except Exception as e:
            logger.exception(f"Internal error handling request {request_id}")
            return rpc_error(request_id, INTERNAL_ERROR, "Internal error", {"detail": str(e)})
        return rpc_result(request_id, result)

    async def _ping(self, session: Session, params: dict) -> dict:
        return {}

    async def _initialize(self, session: Session, params: dict) -> dict:
        return {
            "sessionId": session.id,
            "capabilities": dict(session.capabilities),
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    async def _tools_list(self, session: Session, params: dict) -> dict:
        return {"tools": [t.model_dump(mode="json", exclude_none=True) for t in tool_definitions()]}

    async def _tools_call(self, session: Session, params: dict) -> dict:
        if not session.capabilities.get("tools", False):
            raise MethodNotFound("Tools are not enabled for this session")
        name = _require(params, "name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParams("arguments must be an object")
        return await dispatch_tool(self.context(session), name, arguments)

    async def _resources_list(self, session: Session, params: dict) -> dict:
        if not session.capabilities.get("resources", False):
            raise MethodNotFound("Resources are not enabled for this session")
        return {"resources": list_resource_entries()}

    async def _resources_read(self, session: Session, params: dict) -> dict:
        if not session.capabilities.get("resources", False):
            raise MethodNotFound("Resources are not enabled for this session")
        uri = _require(params, "uri")
        if uri != AGENT_LIST_URI:
            raise InvalidParams(f"Unknown resource: {uri}")
        return {"contents": [{
            "uri": uri,
            "mimeType": "application/json",
            "text": read_agent_list(self.registry, session.user_id),
        }]}
