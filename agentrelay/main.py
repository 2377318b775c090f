"""
AgentRelay main entry point.

Starts a FastAPI HTTP server that:
  1. Opens sessions at /mcp/initialize (session id in the Mcp-Session-Id header)
  2. Accepts JSON-RPC requests at /mcp, answered in per-session FIFO order
  3. Streams per-session progress events over SSE at /mcp/events
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from agentrelay.config import HOST, LOG_LEVEL, PORT, SERVER_NAME, SERVER_VERSION, WORKSPACE_DIR, get_config_dict
from agentrelay.db.agents import AgentRegistry
from agentrelay.errors import INVALID_REQUEST, ExecutionError, UnknownSession, rpc_error, rpc_fault
from agentrelay.services.executor import CommandExecutor
from agentrelay.services.provisioner import WorkspaceProvisioner
from agentrelay.tools.dispatch import ProtocolDispatcher
from agentrelay.transport.broadcast import HEARTBEAT, EventBroadcaster
from agentrelay.transport.channel import RequestChannel
from agentrelay.transport.sessions import SessionRegistry
from agentrelay.transport.sse import HEARTBEAT_FRAME, format_sse_event

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("agentrelay")

SESSION_HEADER = "Mcp-Session-Id"


@dataclass
class Services:
    sessions: SessionRegistry
    registry: AgentRegistry
    executor: CommandExecutor
    broadcaster: EventBroadcaster
    dispatcher: ProtocolDispatcher
    channel: RequestChannel


def build_services(
    workspace_dir=WORKSPACE_DIR,
    provisioner: Optional[WorkspaceProvisioner] = None,
    executor: Optional[CommandExecutor] = None,
    sessions: Optional[SessionRegistry] = None,
    broadcaster: Optional[EventBroadcaster] = None,
    **dispatcher_options: Any,
) -> Services:
    """Wire the components together; session close cascades to listeners and queued requests."""
    sessions = sessions or SessionRegistry()
    broadcaster = broadcaster or EventBroadcaster()
    registry = AgentRegistry(workspace_dir, provisioner=provisioner)
    executor = executor or CommandExecutor()
    dispatcher = ProtocolDispatcher(sessions, registry, executor, broadcaster, **dispatcher_options)
    channel = RequestChannel(sessions, dispatcher.handle_message)
    sessions.add_close_hook(broadcaster.close_all)
    sessions.add_close_hook(channel.drop)
    return Services(sessions, registry, executor, broadcaster, dispatcher, channel)


# ── Suppress leftover ASGI RuntimeErrors caused by client disconnects ──────────
class _AsgiDisconnectFilter(logging.Filter):
    """
    Filters uvicorn 'Exception in ASGI application' records caused by event
    stream clients going away mid-response.
    """
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)


for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


class InitializeParams(BaseModel):
    userId: Optional[str] = None
    capabilities: Optional[dict[str, bool]] = None


class InitializeRequest(BaseModel):
    jsonrpc: str = "2.0"
    method: str = "initialize"
    params: InitializeParams = InitializeParams()
    id: Any = None
    userId: Optional[str] = None


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: load the agent catalog, start background tasks
        await services.registry.initialize()
        if not await services.registry.provisioner.check_git_installed():
            logger.warning("git not found on PATH; agent creation will fail")
        services.sessions.start()
        services.broadcaster.start()
        logger.info(f"AgentRelay running at http://{HOST}:{PORT} (workspace: {services.registry.workspace_dir})")
        yield
        # Shutdown: stop background tasks, close every session
        await services.broadcaster.stop()
        await services.sessions.stop()
        await services.sessions.close_all()

    app = FastAPI(
        title="AgentRelay",
        description="Session-oriented JSON-RPC relay for AI CLI agents working in git workspaces.",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # ─────────────────────────────────────────────
    # Session bootstrap
    # ─────────────────────────────────────────────

    @app.post("/mcp/initialize")
    async def mcp_initialize(body: InitializeRequest):
        user_id = body.params.userId or body.userId
        if not user_id:
            return JSONResponse(
                rpc_error(body.id, INVALID_REQUEST, "userId is required"),
                status_code=400,
            )
        session = services.sessions.open(user_id, body.params.capabilities)
        result = await services.dispatcher.handle_message(
            session.id, {"jsonrpc": "2.0", "method": "initialize", "id": body.id},
        )
        return JSONResponse(result, headers={SESSION_HEADER: session.id})

    # ─────────────────────────────────────────────
    # Request channel
    # ─────────────────────────────────────────────

    @app.post("/mcp")
    async def mcp_request(request: Request, mcp_session_id: Optional[str] = Header(default=None)):
        try:
            message = await request.json()
        except ValueError:
            return JSONResponse(rpc_error(None, -32700, "Parse error"), status_code=400)
        request_id = message.get("id") if isinstance(message, dict) else None
        if not isinstance(message, dict):
            return JSONResponse(rpc_error(None, INVALID_REQUEST, "Invalid request"), status_code=400)
        try:
            if not mcp_session_id or mcp_session_id not in services.sessions:
                raise UnknownSession(f"Unknown session: {mcp_session_id}")
            response = await services.channel.request(mcp_session_id, message)
        except ExecutionError as e:
            return JSONResponse(rpc_fault(request_id, e), status_code=400)
        return JSONResponse(response)

    # ─────────────────────────────────────────────
    # Event channel (SSE)
    # ─────────────────────────────────────────────

    @app.get("/mcp/events")
    async def mcp_events(
        request: Request,
        mcp_session_id: Optional[str] = Header(default=None),
        sessionId: Optional[str] = None,
    ):
        session = services.sessions.get(mcp_session_id or sessionId)
        if session is None:
            fault = UnknownSession(f"Unknown session: {mcp_session_id or sessionId}")
            return JSONResponse(rpc_fault(None, fault), status_code=400)
        if not session.capabilities.get("streaming", False):
            return JSONResponse(
                rpc_error(None, INVALID_REQUEST, "Streaming is not enabled for this session"),
                status_code=400,
            )
        services.sessions.touch(session.id)
        handle = services.broadcaster.attach(session.id)

        async def event_generator():
            try:
                async for item in handle:
                    if item is HEARTBEAT:
                        yield HEARTBEAT_FRAME
                    else:
                        yield format_sse_event(item)
            finally:
                services.broadcaster.detach(handle)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # ─────────────────────────────────────────────
    # Session management
    # ─────────────────────────────────────────────

    @app.get("/mcp/session/{session_id}")
    async def mcp_session_get(session_id: str):
        session = services.sessions.get(session_id)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return {**session.to_dict(), "listeners": services.broadcaster.listener_count(session_id)}

    @app.delete("/mcp/session/{session_id}")
    async def mcp_session_delete(session_id: str):
        if not await services.sessions.close(session_id):
            return JSONResponse({"error": "Session not found"}, status_code=404)
        return {"message": "Session deleted", "sessionId": session_id}

    # ─────────────────────────────────────────────
    # Health check
    # ─────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": SERVER_NAME,
            "version": SERVER_VERSION,
            "sessions": len(services.sessions),
            "config": get_config_dict(),
        }

    return app


app = create_app()


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("agentrelay.main:app", host=HOST, port=PORT, reload=True)
