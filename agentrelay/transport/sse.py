"""SSE wire framing, both directions."""
import json
from typing import AsyncIterator, Optional

from agentrelay.db.models import StreamEvent

HEARTBEAT_FRAME = ":heartbeat\n\n"


def format_sse_event(event: StreamEvent) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[dict]:
    """
    Parse SSE text lines into event dicts.

    Comment lines (heartbeats) are skipped. ``data`` lines of one frame are
    joined; a frame whose data is not JSON is yielded as ``{"type", "data"}``
    with the raw text.
    """
    event_type: Optional[str] = None
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield _decode_frame(event_type, "\n".join(data_lines))
            event_type, data_lines = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_type = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield _decode_frame(event_type, "\n".join(data_lines))


def _decode_frame(event_type: Optional[str], data: str) -> dict:
    try:
        payload = json.loads(data)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and "type" in payload:
        return payload
    return {"type": event_type or "message", "data": data}
