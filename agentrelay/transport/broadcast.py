"""
Event broadcast channel.

Fans ``StreamEvent``s out to every listener attached to a session. Each
listener owns an unbounded ``asyncio.Queue`` so delivery order per listener is
publish order. Events published while nobody listens are gone: there is no
replay buffer.
"""
import asyncio
import logging
import uuid
from typing import Optional, Union

from agentrelay.config import HEARTBEAT_INTERVAL
from agentrelay.db.models import StreamEvent

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


HEARTBEAT = _Sentinel("HEARTBEAT")
CLOSED = _Sentinel("CLOSED")

Item = Union[StreamEvent, _Sentinel]


class ListenerHandle:
    """
    One open event stream for a session.

    Iterating yields ``StreamEvent``s and ``HEARTBEAT`` markers until the
    handle is detached or force-closed; then iteration just stops.
    """

    def __init__(self, session_id: str) -> None:
        self.id = str(uuid.uuid4())
        self.session_id = session_id
        self.queue: asyncio.Queue[Item] = asyncio.Queue()
        self.closed = False

    def _put(self, item: Item) -> bool:
        if self.closed:
            return False
        self.queue.put_nowait(item)
        return True

    def _close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(CLOSED)

    async def next(self) -> Optional[Item]:
        """Next event or heartbeat; None once the handle is closed."""
        item = await self.queue.get()
        if item is CLOSED:
            # Keep the marker for any further reader.
            self.queue.put_nowait(CLOSED)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Item:
        item = await self.next()
        if item is None:
            raise StopAsyncIteration
        return item


class EventBroadcaster:
    def __init__(self, heartbeat_interval: float = HEARTBEAT_INTERVAL) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._listeners: dict[str, dict[str, ListenerHandle]] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    def attach(self, session_id: str) -> ListenerHandle:
        handle = ListenerHandle(session_id)
        self._listeners.setdefault(session_id, {})[handle.id] = handle
        handle._put(StreamEvent(type="status", data="Connected"))
        logger.info(f"Listener {handle.id} attached to session {session_id}")
        return handle

    def detach(self, handle: ListenerHandle) -> None:
        listeners = self._listeners.get(handle.session_id)
        if listeners is not None:
            listeners.pop(handle.id, None)
            if not listeners:
                del self._listeners[handle.session_id]
        if not handle.closed:
            handle._close()
            logger.info(f"Listener {handle.id} detached from session {handle.session_id}")

    def publish(self, session_id: str, event: StreamEvent) -> int:
        """Deliver ``event`` to every open listener of ``session_id``; returns how many got it."""
        delivered = 0
        for handle in list(self._listeners.get(session_id, {}).values()):
            if handle._put(event):
                delivered += 1
        return delivered

    def close_all(self, session_id: str) -> int:
        listeners = self._listeners.pop(session_id, {})
        for handle in listeners.values():
            handle._close()
        if listeners:
            logger.info(f"Closed {len(listeners)} listener(s) for session {session_id}")
        return len(listeners)

    def listener_count(self, session_id: str) -> int:
        return len(self._listeners.get(session_id, {}))

    def beat(self) -> int:
        sent = 0
        for listeners in list(self._listeners.values()):
            for handle in list(listeners.values()):
                if handle._put(HEARTBEAT):
                    sent += 1
        return sent

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.beat()

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
