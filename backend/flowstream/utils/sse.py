from dataclasses import dataclass
from typing import Any, Dict, Optional

import orjson

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}
SSE_MEDIA_TYPE = "text/event-stream"

HEARTBEAT_FRAME = ": heartbeat\n\n"


def format_sse(event: str, data: Dict[str, Any]) -> str:
    """Format a named SSE event"""
    return f"event: {event}\ndata: {orjson.dumps(data).decode()}\n\n"


def format_sse_data(data: Dict[str, Any]) -> str:
    """Format an unnamed SSE event (delivered to the client's default 'message' handler)"""
    return f"data: {orjson.dumps(data).decode()}\n\n"


def format_sse_comment(comment: str) -> str:
    """Format an SSE comment, ignored by clients (keepalive)"""
    return f": {comment}\n\n"


def event_name_for(event_type: Optional[str]) -> str:
    """SSE event name for an event record type: 'agent:completed' -> 'agent-completed'."""
    if not event_type:
        return "update"
    return event_type.lower().replace(":", "-")


# ============================================================================
# Client-side decoding
# ============================================================================


@dataclass
class ServerSentEvent:
    """A decoded SSE frame. ``event`` defaults to 'message' as in browsers."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Any:
        return orjson.loads(self.data)


class SSEDecoder:
    """
    Incremental decoder fed one line at a time (without the trailing newline).

    Returns a ServerSentEvent when a blank line terminates a frame carrying
    data. Comment lines and frames without a data line produce nothing.
    """

    def __init__(self):
        self._event: Optional[str] = None
        self._data: list[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        elif field == "retry" and value.isdigit():
            self._retry = int(value)
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data:
            self._event = None
            return None

        sse = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        self._retry = None
        # The last event id persists across frames
        return sse
