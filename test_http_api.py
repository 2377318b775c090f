"""
HTTP surface tests through FastAPI's TestClient.

The /mcp/events stream is read to its end; a second thread drives the session
and deletes it so the stream terminates.
"""
import json
import threading
import time

import pytest
from fastapi.testclient import TestClient

from agentrelay.main import build_services, create_app
from conftest import FakeExecutor, FakeProvisioner

REPO = "https://example.com/r.git"


# ─────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────

@pytest.fixture
def services(workspace):
    return build_services(workspace, provisioner=FakeProvisioner(), executor=FakeExecutor())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def _initialize(client, user_id="u1", **params):
    resp = client.post("/mcp/initialize", json={
        "jsonrpc": "2.0", "method": "initialize", "params": {"userId": user_id, **params}, "id": 0,
    })
    assert resp.status_code == 200
    return resp.headers["Mcp-Session-Id"], resp.json()["result"]


def _rpc(client, session_id, method, params=None, request_id=1):
    return client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "method": method, "params": params or {}, "id": request_id},
        headers={"Mcp-Session-Id": session_id},
    )


# ─────────────────────────────────────────────
# Session bootstrap
# ─────────────────────────────────────────────

def test_initialize_returns_session_header_and_capabilities(client):
    session_id, result = _initialize(client)
    assert result["sessionId"] == session_id
    assert result["capabilities"] == {"tools": True, "resources": True, "streaming": True}
    assert result["serverInfo"]["name"] == "agentrelay"
    assert result["protocolVersion"]


def test_initialize_accepts_top_level_user_id(client):
    resp = client.post("/mcp/initialize", json={"jsonrpc": "2.0", "method": "initialize", "userId": "u9", "id": 1})
    assert resp.status_code == 200
    session = client.get(f"/mcp/session/{resp.headers['Mcp-Session-Id']}").json()
    assert session["userId"] == "u9"


def test_initialize_without_user_is_rejected(client):
    resp = client.post("/mcp/initialize", json={"jsonrpc": "2.0", "method": "initialize", "params": {}, "id": 1})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == -32600


# ─────────────────────────────────────────────
# Request channel
# ─────────────────────────────────────────────

def test_request_with_unknown_session_is_400(client):
    resp = _rpc(client, "no-such-session", "ping")
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == -32000
    assert body["id"] == 1


def test_request_without_session_header_is_400(client):
    resp = client.post("/mcp", json={"jsonrpc": "2.0", "method": "ping", "id": 1})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == -32000


def test_ping_and_tool_roundtrip(client, services):
    session_id, _ = _initialize(client)

    assert _rpc(client, session_id, "ping").json()["result"] == {}

    created = _rpc(client, session_id, "tools/call", {
        "name": "create_agent", "arguments": {"userId": "u1", "repoUrl": REPO, "name": "alpha"},
    }, request_id=2).json()
    agent_id = created["result"]["structuredContent"]["id"]
    assert created["id"] == 2

    executed = _rpc(client, session_id, "tools/call", {
        "name": "execute_tool", "arguments": {"agentId": agent_id, "command": "hello"},
    }, request_id=3).json()
    assert executed["result"]["structuredContent"]["output"] == "ran: hello"

    listed = _rpc(client, session_id, "tools/call", {
        "name": "list_agents", "arguments": {"userId": "u1"},
    }).json()
    assert [a["id"] for a in listed["result"]["structuredContent"]["agents"]] == [agent_id]


def test_unknown_method_is_json_rpc_error(client):
    session_id, _ = _initialize(client)
    resp = _rpc(client, session_id, "agents/teleport", request_id="t")
    assert resp.status_code == 200
    assert resp.json()["error"]["code"] == -32601
    assert resp.json()["id"] == "t"


# ─────────────────────────────────────────────
# Session management
# ─────────────────────────────────────────────

def test_session_get_and_delete(client, services):
    session_id, _ = _initialize(client)
    handle = services.broadcaster.attach(session_id)

    info = client.get(f"/mcp/session/{session_id}").json()
    assert info["id"] == session_id
    assert info["listeners"] == 1

    resp = client.delete(f"/mcp/session/{session_id}")
    assert resp.json() == {"message": "Session deleted", "sessionId": session_id}
    assert handle.closed
    assert client.get(f"/mcp/session/{session_id}").status_code == 404
    assert client.delete(f"/mcp/session/{session_id}").status_code == 404
    assert _rpc(client, session_id, "ping").status_code == 400


def _sse_frames(lines):
    frames, current = [], {}
    for line in lines:
        if not line:
            if "data" in current:
                frames.append((current.get("event"), json.loads(current["data"])))
            current = {}
        elif not line.startswith(":"):
            field, _, value = line.partition(": ")
            current[field] = value
    if "data" in current:
        frames.append((current.get("event"), json.loads(current["data"])))
    return frames


def test_event_stream_carries_tool_progress_until_session_delete(client, services):
    session_id, _ = _initialize(client)
    agent_id = _rpc(client, session_id, "tools/call", {
        "name": "create_agent", "arguments": {"userId": "u1", "repoUrl": REPO},
    }).json()["result"]["structuredContent"]["id"]
    results = {}

    def drive_session():
        # The stream response only returns once it ends, so the session is
        # driven from a second thread sharing the app's event loop.
        deadline = time.monotonic() + 5
        while not services.broadcaster.listener_count(session_id) and time.monotonic() < deadline:
            time.sleep(0.01)
        results["execute"] = _rpc(client, session_id, "tools/call", {
            "name": "execute_tool", "arguments": {"agentId": agent_id, "command": "hello"},
        }, request_id=5).json()
        results["delete"] = client.delete(f"/mcp/session/{session_id}").status_code

    worker = threading.Thread(target=drive_session, daemon=True)
    worker.start()
    with client.stream("GET", "/mcp/events", headers={"Mcp-Session-Id": session_id}) as resp:
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = _sse_frames(resp.iter_lines())
    worker.join(timeout=5)

    assert results["execute"]["result"]["structuredContent"]["success"] is True
    assert results["delete"] == 200
    assert [event for event, _ in frames] == ["status", "status", "output", "complete"]
    assert frames[0][1]["data"] == "Connected"
    assert frames[2][1]["data"] == "ran: hello"
    assert all(payload["type"] == event for event, payload in frames)
    assert services.broadcaster.listener_count(session_id) == 0


def test_events_for_unknown_session_is_400(client):
    resp = client.get("/mcp/events", headers={"Mcp-Session-Id": "missing"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == -32000


def test_events_rejected_when_streaming_disabled(client):
    session_id, result = _initialize(client, capabilities={"streaming": False})
    assert result["capabilities"]["streaming"] is False
    resp = client.get(f"/mcp/events?sessionId={session_id}")
    assert resp.status_code == 400


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["config"]["SESSION_TIMEOUT"] == 600
