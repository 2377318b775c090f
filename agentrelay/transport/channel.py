"""
Request/response channel.

Each session owns a FIFO of pending JSON-RPC requests. Submitting a request
appends it and wakes the session's drain task, which hands the oldest
unanswered entry to the protocol handler and completes it before touching the
next one. Responses therefore leave in submission order, one at a time.
"""
import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from agentrelay.errors import INTERNAL_ERROR, UnknownSession, rpc_error, rpc_fault
from agentrelay.transport.sessions import SessionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict], Awaitable[dict]]
ResponseCallback = Callable[[dict], Union[None, Awaitable[None]]]


@dataclass
class PendingRequest:
    message: dict[str, Any]
    callback: ResponseCallback


class RequestChannel:
    def __init__(self, sessions: SessionRegistry, handler: Handler) -> None:
        self.sessions = sessions
        self.handler = handler
        self._queues: dict[str, deque[PendingRequest]] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, PendingRequest] = {}

    def pending_count(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    def submit(self, session_id: str, message: dict, callback: ResponseCallback) -> None:
        """Queue ``message`` for ``session_id``; ``callback`` receives its response."""
        if session_id not in self.sessions:
            raise UnknownSession(f"Unknown session: {session_id}")
        self.sessions.touch(session_id)
        self._queues.setdefault(session_id, deque()).append(PendingRequest(message, callback))
        self._wakeup(session_id).set()
        drainer = self._drainers.get(session_id)
        if drainer is None or drainer.done():
            self._drainers[session_id] = asyncio.create_task(self._drain(session_id))

    async def request(self, session_id: str, message: dict) -> dict:
        """Submit ``message`` and wait for its response."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _resolve(response: dict) -> None:
            if not future.done():
                future.set_result(response)

        self.submit(session_id, message, _resolve)
        return await future

    async def complete(self, session_id: str, response: dict) -> bool:
        """
        Answer the oldest pending request of ``session_id``.

        Returns False when nothing is pending, which is a protocol anomaly:
        the response has no request to go to.
        """
        queue = self._queues.get(session_id)
        if not queue:
            logger.warning(f"Response for session {session_id} with no pending request, dropped")
            return False
        await self._deliver(session_id, queue.popleft(), response)
        return True

    async def _deliver(self, session_id: str, pending: PendingRequest, response: dict) -> None:
        try:
            result = pending.callback(response)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Response callback failed for session {session_id}")

    async def _dispatch(self, session_id: str, message: dict) -> dict:
        try:
            return await self.handler(session_id, message)
        except Exception as e:
            logger.exception(f"Unhandled error dispatching {message.get('method')!r} for session {session_id}")
            return rpc_error(message.get("id"), INTERNAL_ERROR, "Internal error", {"detail": str(e)})

    async def _drain(self, session_id: str) -> None:
        wakeup = self._wakeup(session_id)
        while True:
            await wakeup.wait()
            wakeup.clear()
            while True:
                queue = self._queues.get(session_id)
                if not queue:
                    break
                head = queue[0]
                self._inflight[session_id] = head
                try:
                    response = await self._dispatch(session_id, head.message)
                finally:
                    self._inflight.pop(session_id, None)
                if self._queues.get(session_id) is queue and queue and queue[0] is head:
                    await self.complete(session_id, response)
                elif session_id not in self._queues:
                    # Dropped mid-dispatch; the caller is still waiting on this one.
                    await self._deliver(session_id, head, response)
                    return
            if session_id not in self._queues:
                return

    def _wakeup(self, session_id: str) -> asyncio.Event:
        event = self._wakeups.get(session_id)
        if event is None:
            event = self._wakeups[session_id] = asyncio.Event()
        return event

    async def drop(self, session_id: str) -> None:
        """
        Session-close hook: fault every request that has not started.

        A request already being dispatched runs to completion and its caller
        gets the real response; the drain task exits afterwards. An idle drain
        task is cancelled.
        """
        queue = self._queues.pop(session_id, None)
        self._wakeups.pop(session_id, None)
        drainer: Optional[asyncio.Task] = self._drainers.pop(session_id, None)
        inflight = self._inflight.get(session_id)
        if drainer is not None and inflight is None and drainer is not asyncio.current_task():
            drainer.cancel()
        fault = UnknownSession(f"Session closed: {session_id}")
        for pending in queue or ():
            if pending is inflight:
                continue
            await self._deliver(session_id, pending, rpc_fault(pending.message.get("id"), fault))
