"""
Remote client for an AgentRelay server.

Wraps session bootstrap, JSON-RPC calls and a resilient event-stream
subscription. The subscription reconnects with exponential backoff; after too
many consecutive failures it emits ``disconnected`` and stops. It never
re-initializes the session by itself.

Events:
    ``stream``        every event dict received
    ``status`` / ``output`` / ``error`` / ``complete``
                      the event's ``data`` text, per type
    ``state``         the new ``ConnectionState``
    ``reconnecting``  ``{"attempt", "delay"}`` before each backoff sleep
    ``disconnected``  ``{"attempts"}`` once retries are exhausted
"""
import asyncio
import inspect
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from agentrelay.config import RECONNECT_BASE_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY
from agentrelay.transport.sse import iter_sse_events

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"
    DISCONNECTED = "disconnected"


@dataclass
class ReconnectPolicy:
    base_delay: float = RECONNECT_BASE_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    max_attempts: int = RECONNECT_MAX_ATTEMPTS

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class RemoteError(Exception):
    """A JSON-RPC error returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_error(cls, error: dict) -> "RemoteError":
        return cls(error.get("code", -32603), error.get("message", "Unknown error"), error.get("data"))


def _json_body(resp: httpx.Response) -> dict:
    """
    Decode a JSON-RPC reply. A non-JSON body (a proxy error page, say) raises
    the HTTP status error first, or ``RemoteError`` if the status was 2xx.
    """
    try:
        body = resp.json()
    except ValueError:
        resp.raise_for_status()
        raise RemoteError(-32700, f"Non-JSON response from {resp.request.url}")
    if not isinstance(body, dict):
        resp.raise_for_status()
        raise RemoteError(-32700, f"Unexpected response from {resp.request.url}")
    return body


class RemoteClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        policy: Optional[ReconnectPolicy] = None,
    ) -> None:
        self._http = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)
        self._sleep = sleep
        self.policy = policy or ReconnectPolicy()
        self.session_id: Optional[str] = None
        self.capabilities: dict[str, bool] = {}
        self.state = ConnectionState.DISCONNECTED
        self._handlers: defaultdict[str, list[Callable]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._stream_task: Optional[asyncio.Task] = None
        self._failures = 0
        self._closing = False

    # ─────────────────────────────────────────────
    # Event handlers
    # ─────────────────────────────────────────────

    def on(self, event: str, handler: Callable) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Callable] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def _emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler for '{event}' failed")

    async def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            self.state = state
            await self._emit("state", state)

    # ─────────────────────────────────────────────
    # Session + requests
    # ─────────────────────────────────────────────

    async def initialize(self, user_id: str, capabilities: Optional[dict[str, bool]] = None) -> dict:
        """Open a session. Failures propagate; there is no retry."""
        params: dict[str, Any] = {"userId": user_id}
        if capabilities is not None:
            params["capabilities"] = capabilities
        resp = await self._http.post(
            "/mcp/initialize",
            json={"jsonrpc": "2.0", "method": "initialize", "params": params, "id": next(self._ids)},
        )
        body = _json_body(resp)
        if "error" in body:
            raise RemoteError.from_error(body["error"])
        resp.raise_for_status()
        result = body["result"]
        self.session_id = resp.headers.get(SESSION_HEADER) or result.get("sessionId")
        self.capabilities = result.get("capabilities", {})
        logger.info(f"Session initialized: {self.session_id}")
        await self._emit("initialized", result)
        return result

    async def request(self, method: str, params: Optional[dict] = None) -> Any:
        if not self.session_id:
            raise RuntimeError("Client is not initialized; call initialize() first")
        message = {"jsonrpc": "2.0", "method": method, "params": params or {}, "id": next(self._ids)}
        resp = await self._http.post("/mcp", json=message, headers={SESSION_HEADER: self.session_id})
        body = _json_body(resp)
        if "error" in body:
            raise RemoteError.from_error(body["error"])
        resp.raise_for_status()
        return body.get("result")

    async def ping(self) -> Any:
        return await self.request("ping")

    async def list_tools(self) -> list[dict]:
        return (await self.request("tools/list"))["tools"]

    async def call_tool(self, name: str, arguments: Optional[dict] = None) -> dict:
        return await self.request("tools/call", {"name": name, "arguments": arguments or {}})

    async def list_resources(self) -> list[dict]:
        return (await self.request("resources/list"))["resources"]

    async def read_resource(self, uri: str) -> list[dict]:
        return (await self.request("resources/read", {"uri": uri}))["contents"]

    # ── Tool wrappers ───────────────────────────

    async def execute_tool(self, agent_id: str, command: str, user_id: Optional[str] = None,
                           streaming: bool = True) -> dict:
        args = {"agentId": agent_id, "command": command, "streaming": streaming}
        if user_id:
            args["userId"] = user_id
        return await self.call_tool("execute_tool", args)

    async def create_agent(self, user_id: str, repo_url: str, branch: Optional[str] = None,
                           name: Optional[str] = None, kind: str = "claude",
                           channel_id: Optional[str] = None) -> dict:
        args = {"userId": user_id, "repoUrl": repo_url, "type": kind}
        for key, value in (("branch", branch), ("name", name), ("channelId", channel_id)):
            if value:
                args[key] = value
        return await self.call_tool("create_agent", args)

    async def list_agents(self, user_id: str, channel_id: Optional[str] = None) -> dict:
        args = {"userId": user_id}
        if channel_id:
            args["channelId"] = channel_id
        return await self.call_tool("list_agents", args)

    async def get_agent(self, agent_id: str, user_id: str) -> dict:
        return await self.call_tool("get_agent", {"agentId": agent_id, "userId": user_id})

    async def delete_agent(self, agent_id: str, user_id: str) -> dict:
        return await self.call_tool("delete_agent", {"agentId": agent_id, "userId": user_id})

    async def update_agent(self, agent_id: str, user_id: str, pull_latest: bool = True,
                           branch: Optional[str] = None) -> dict:
        args = {"agentId": agent_id, "userId": user_id, "pullLatest": pull_latest}
        if branch:
            args["branch"] = branch
        return await self.call_tool("update_agent", args)

    # ─────────────────────────────────────────────
    # Event stream
    # ─────────────────────────────────────────────

    def start_stream(self) -> asyncio.Task:
        if not self.session_id:
            raise RuntimeError("Client is not initialized; call initialize() first")
        if self._stream_task is None or self._stream_task.done():
            self._stream_task = asyncio.create_task(self._stream_loop())
        return self._stream_task

    async def _consume_stream(self) -> None:
        async with self._http.stream(
            "GET", "/mcp/events",
            headers={SESSION_HEADER: self.session_id, "Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._http.timeout.connect, read=None),
        ) as resp:
            resp.raise_for_status()
            await self._set_state(ConnectionState.CONNECTED)
            self._failures = 0
            async for event in iter_sse_events(resp.aiter_lines()):
                await self._emit("stream", event)
                await self._emit(event.get("type", "message"), event.get("data"))

    async def _stream_loop(self) -> None:
        self._failures = 0
        while not self._closing:
            await self._set_state(ConnectionState.CONNECTING)
            try:
                await self._consume_stream()
                logger.info("Event stream closed by server")
            except httpx.HTTPError as e:
                logger.warning(f"Event stream connection failed: {e}")
            if self._closing:
                break

            self._failures += 1
            if self._failures > self.policy.max_attempts:
                logger.error(f"Event stream lost after {self.policy.max_attempts} reconnect attempts")
                await self._set_state(ConnectionState.DISCONNECTED)
                await self._emit("disconnected", {"attempts": self._failures - 1})
                return

            delay = self.policy.delay(self._failures)
            await self._set_state(ConnectionState.BACKING_OFF)
            await self._emit("reconnecting", {"attempt": self._failures, "delay": delay})
            logger.info(f"Reconnecting event stream in {delay}s (attempt {self._failures})")
            await self._sleep(delay)
        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop_stream(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.state = ConnectionState.DISCONNECTED

    async def close(self) -> None:
        """Stop the stream, delete the session (best-effort) and release the HTTP client."""
        self._closing = True
        await self.stop_stream()
        if self.session_id:
            try:
                await self._http.delete(f"/mcp/session/{self.session_id}")
            except httpx.HTTPError as e:
                logger.warning(f"Session delete failed: {e}")
            self.session_id = None
        await self._http.aclose()

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
