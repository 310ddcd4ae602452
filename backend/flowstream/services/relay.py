"""
Subscriber side of the execution event relay.

One ExecutionStreamRelay drives one SSE connection:

    INITIALIZING -> STREAMING -> COMPLETED | FAILED | TIMED_OUT | ABORTED

The connection starts with an ``init`` snapshot of the persisted execution,
then polls the database once per interval, forwarding newly appended events,
a heartbeat comment when nothing changed, and a terminal frame once the
execution finishes. Polling the database (instead of relying on the
in-process registry) keeps delivery correct when the execution is updated by
another process.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from flowstream.models.events import ExecutionStatus
from flowstream.services.executions import ExecutionSnapshot, ExecutionStore
from flowstream.utils.sse import HEARTBEAT_FRAME, event_name_for, format_sse
from flowstream.utils.time import now_iso, to_iso

logger = logging.getLogger(__name__)

# Defaults: 1 poll/second, 5 minutes max
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_POLLS = 300


class StreamState(str, Enum):
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


def init_frame(snapshot: ExecutionSnapshot) -> str:
    return format_sse(
        "init",
        {
            "type": "execution:init",
            "executionId": snapshot.id,
            "workflowName": snapshot.workflow_name,
            "status": snapshot.status,
            "startTime": to_iso(snapshot.start_time),
            "endTime": to_iso(snapshot.end_time),
            "events": snapshot.events,
            "metrics": snapshot.metrics,
            "timestamp": now_iso(),
        },
    )


def event_frame(execution_id: str, event: Dict[str, Any]) -> str:
    event_type = event.get("type")
    payload = {
        **event,
        "executionId": execution_id,
        "timestamp": event.get("timestamp") or now_iso(),
    }
    return format_sse(event_name_for(event_type if isinstance(event_type, str) else None), payload)


def terminal_frame(snapshot: ExecutionSnapshot) -> str:
    completed = snapshot.status == ExecutionStatus.COMPLETED.value
    return format_sse(
        snapshot.status.lower(),
        {
            "type": "execution:completed" if completed else "execution:failed",
            "executionId": snapshot.id,
            "status": snapshot.status,
            "endTime": to_iso(snapshot.end_time),
            "duration": snapshot.duration,
            "totalCost": snapshot.total_cost,
            "metrics": snapshot.metrics,
            "error": snapshot.error,
            "timestamp": now_iso(),
        },
    )


def timeout_frame() -> str:
    return format_sse("timeout", {"message": "Stream timeout"})


class ExecutionStreamRelay:
    """Per-connection state machine producing SSE frames for one execution."""

    def __init__(
        self,
        store: ExecutionStore,
        snapshot: ExecutionSnapshot,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_polls: int = DEFAULT_MAX_POLLS,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.snapshot = snapshot
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._is_disconnected = is_disconnected
        self._sleep = sleep
        self.state = StreamState.INITIALIZING
        self.polls = 0

    @property
    def execution_id(self) -> str:
        return self.snapshot.id

    def _finish(self, snapshot: ExecutionSnapshot) -> str:
        if snapshot.status == ExecutionStatus.COMPLETED.value:
            self.state = StreamState.COMPLETED
        else:
            self.state = StreamState.FAILED
        return terminal_frame(snapshot)

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until a terminal state is reached."""
        try:
            yield init_frame(self.snapshot)
            self.state = StreamState.STREAMING

            if self.snapshot.is_terminal:
                yield self._finish(self.snapshot)
                return

            async for frame in self._poll():
                yield frame
        except (asyncio.CancelledError, GeneratorExit):
            self.state = StreamState.ABORTED
            logger.debug(f"Subscriber for execution {self.execution_id} disconnected")
            raise

    async def _poll(self) -> AsyncIterator[str]:
        last_event_count = len(self.snapshot.events)

        while True:
            await self._sleep(self.poll_interval)
            self.polls += 1

            if self._is_disconnected is not None and await self._is_disconnected():
                self.state = StreamState.ABORTED
                return

            if self.polls >= self.max_polls:
                self.state = StreamState.TIMED_OUT
                logger.info(f"Stream for execution {self.execution_id} timed out after {self.polls} polls")
                yield timeout_frame()
                return

            try:
                updated = await self.store.get(self.execution_id)
            except Exception as e:
                # Transient storage failure: try again next interval
                logger.warning(f"Poll error for execution {self.execution_id}: {e}", exc_info=True)
                continue

            if updated is None:
                logger.warning(f"Execution {self.execution_id} disappeared while streaming")
                self.state = StreamState.ABORTED
                return

            new_events = updated.events[last_event_count:]
            for event in new_events:
                yield event_frame(self.execution_id, event)
            last_event_count = max(last_event_count, len(updated.events))

            if updated.is_terminal:
                yield self._finish(updated)
                return

            if not new_events:
                yield HEARTBEAT_FRAME
