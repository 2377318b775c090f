"""
Session registry.

A session is the logical conversation between one remote caller and the
server. It exists from ``open`` until an explicit ``close`` or until the sweep
finds it idle for longer than ``SESSION_TIMEOUT``. Closing a session runs the
registered close hooks, which tear down its listeners and pending requests.
"""
import asyncio
import inspect
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

from agentrelay.config import SESSION_SWEEP_INTERVAL, SESSION_TIMEOUT
from agentrelay.db.models import Session, utcnow

logger = logging.getLogger(__name__)

SERVER_CAPABILITIES = {"tools": True, "resources": True, "streaming": True}

CloseHook = Callable[[str], Union[None, Awaitable[None]]]


class SessionRegistry:
    def __init__(
        self,
        timeout: float = SESSION_TIMEOUT,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
    ) -> None:
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._sessions: dict[str, Session] = {}
        self._close_hooks: list[CloseHook] = []
        self._sweep_task: Optional[asyncio.Task] = None

    def add_close_hook(self, hook: CloseHook) -> None:
        self._close_hooks.append(hook)

    def open(self, user_id: str, capabilities: Optional[dict] = None) -> Session:
        """
        Create a session for ``user_id``.

        Requested capabilities are intersected with what the server offers;
        omitted ones default to the server's value.
        """
        requested = capabilities or {}
        granted = {
            name: bool(requested.get(name, offered)) and offered
            for name, offered in SERVER_CAPABILITIES.items()
        }
        now = utcnow()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            capabilities=granted,
            created_at=now,
            last_activity=now,
        )
        self._sessions[session.id] = session
        logger.info(f"Session opened: {session.id} for {user_id}")
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = utcnow()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        for hook in self._close_hooks:
            try:
                result = hook(session_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Close hook failed for session {session_id}")
        logger.info(f"Session closed: {session_id}")
        return True

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Close every session idle for longer than the timeout. Returns their ids."""
        now = now or utcnow()
        limit = timedelta(seconds=self.timeout)
        expired = [
            sid for sid, s in self._sessions.items()
            if now - s.last_activity > limit
        ]
        for sid in expired:
            logger.info(f"Session {sid} idle for more than {self.timeout}s, closing")
            await self.close(sid)
        return expired

    # ─────────────────────────────────────────────
    # Background sweep
    # ─────────────────────────────────────────────

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.close(sid)
