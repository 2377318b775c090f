"""
Data models (dataclasses) for AgentRelay.
These are plain Python objects used across the registry, transport, and tool layers.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Any

AGENT_KINDS = ("claude", "gemini")
AGENT_STATUSES = ("initializing", "active", "inactive", "error")
STREAM_EVENT_TYPES = ("status", "output", "error", "complete")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Agent:
    id: str
    name: str
    kind: str                   # claude | gemini
    repo_url: str
    workspace_dir: str          # <root>/agents/<id>/repo
    owner: str                  # opaque caller identifier, immutable
    created_at: datetime
    last_used: datetime
    status: str = "initializing"  # initializing | active | inactive | error
    branch: Optional[str] = None
    channel_id: Optional[str] = None
    error: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        """Catalog / wire representation (camelCase keys)."""
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "repoUrl": self.repo_url,
            "branch": self.branch,
            "workspaceDir": self.workspace_dir,
            "owner": self.owner,
            "channel": self.channel_id,
            "createdAt": self.created_at.isoformat(),
            "lastUsed": self.last_used.isoformat(),
            "status": self.status,
            "error": self.error,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Agent":
        return cls(
            id=record["id"],
            name=record["name"],
            kind=record.get("kind") or "claude",
            repo_url=record["repoUrl"],
            branch=record.get("branch"),
            workspace_dir=record["workspaceDir"],
            owner=record["owner"],
            channel_id=record.get("channel"),
            created_at=_parse_dt(record["createdAt"]),
            last_used=_parse_dt(record["lastUsed"]),
            status=record.get("status") or "inactive",
            error=record.get("error"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    capabilities: dict[str, bool]
    created_at: datetime
    last_activity: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "capabilities": dict(self.capabilities),
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


@dataclass
class StreamEvent:
    """
    Ephemeral progress notification pushed to every listener of a session.
    Never persisted.
    """
    type: str            # status | output | error | complete
    data: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp.isoformat()}


@dataclass
class CommandResult:
    success: bool
    execution_time_ms: int
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
