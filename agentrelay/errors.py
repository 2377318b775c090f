"""
Fault taxonomy shared by the registry, provisioner, dispatcher and transport.

Every fault carries a stable string ``code`` (what callers branch on) and the
JSON-RPC ``rpc_code`` used when it is reported on the wire.
"""
from typing import Any, Optional


class ExecutionError(Exception):
    """Base class for every fault reported back to a caller."""

    code = "EXECUTION_ERROR"
    rpc_code = -32603

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_rpc_error(self) -> dict[str, Any]:
        return {
            "code": self.rpc_code,
            "message": str(self),
            "data": {"code": self.code, **self.details},
        }


# ── Caller faults ───────────────────────────

class UnknownSession(ExecutionError):
    code = "UNKNOWN_SESSION"
    rpc_code = -32000


class MethodNotFound(ExecutionError):
    code = "METHOD_NOT_FOUND"
    rpc_code = -32601


class InvalidParams(ExecutionError):
    code = "INVALID_PARAMS"
    rpc_code = -32602


class Unauthorized(ExecutionError):
    code = "UNAUTHORIZED"
    rpc_code = -32003


class AgentNotFound(ExecutionError):
    code = "AGENT_NOT_FOUND"
    rpc_code = -32004


class ForbiddenCommand(ExecutionError):
    code = "FORBIDDEN_COMMAND"
    rpc_code = -32005


class AgentNotReady(ExecutionError):
    code = "AGENT_NOT_READY"
    rpc_code = -32006


class AgentNameTaken(ExecutionError):
    code = "NAME_TAKEN"
    rpc_code = -32009


class DirectoryExists(ExecutionError):
    code = "DIR_EXISTS"
    rpc_code = -32010


class WorkspaceNotFound(ExecutionError):
    code = "DIR_NOT_FOUND"
    rpc_code = -32011


# ── External-operation failures ─────────────

class CloneFailed(ExecutionError):
    code = "CLONE_FAILED"
    rpc_code = -32020


class UpdateFailed(ExecutionError):
    code = "UPDATE_FAILED"
    rpc_code = -32021


class BranchSwitchFailed(ExecutionError):
    code = "BRANCH_SWITCH_FAILED"
    rpc_code = -32022


class AgentCreateFailed(ExecutionError):
    code = "AGENT_CREATE_FAILED"
    rpc_code = -32023


class ProcessTimeout(ExecutionError):
    """A bounded process ran past its limit and was killed."""

    code = "TIMEOUT"
    rpc_code = -32030

    def __init__(self, message: str, timeout: float, details: Optional[dict] = None) -> None:
        self.timeout = timeout
        super().__init__(message, details={"timeout": timeout, **(details or {})})


class ProcessFailed(ExecutionError):
    """A process exited non-zero. Wrapped by the operation that ran it."""

    code = "PROCESS_FAILED"

    def __init__(self, message: str, returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message, details={"returncode": returncode})


# ── JSON-RPC helpers ────────────────────────

INTERNAL_ERROR = -32603
INVALID_REQUEST = -32600


def rpc_error(request_id: Any, code: int, message: str, data: Optional[dict] = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "error": error, "id": request_id}


def rpc_fault(request_id: Any, exc: ExecutionError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "error": exc.to_rpc_error(), "id": request_id}


def rpc_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": request_id}
