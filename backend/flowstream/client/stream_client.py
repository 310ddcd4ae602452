"""
Reconnecting consumer for execution event streams.

Opens the subscriber endpoint over httpx, rebuilds the event history from the
``init`` snapshot, appends every following event in arrival order and
reconnects with exponential backoff when the transport fails. Duplicates are
possible after a reconnect (the new snapshot replays earlier events) and are
kept as received.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, List, Optional

import httpx
import orjson
from pydantic import ValidationError

from flowstream.models.events import TERMINAL_TYPES, ExecutionEvent
from flowstream.services.metrics import ExecutionMetricsSummary, calculate_execution_metrics
from flowstream.utils.sse import ServerSentEvent, SSEDecoder

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 1.0
MAX_BACKOFF_DELAY = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 3

TERMINAL_FRAMES = ("completed", "failed")


class StreamConnectionError(Exception):
    """The only error surfaced to callers once a subscription cannot continue."""


class _Outcome(Enum):
    FINISHED = "finished"  # execution reached a terminal state
    REJECTED = "rejected"  # 401/403/404, retrying cannot help
    DROPPED = "dropped"  # transport error, premature end or server timeout


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = MAX_BACKOFF_DELAY,
) -> float:
    """Delay before reconnect number ``attempt + 1``: base doubled per attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


class ExecutionStreamClient:
    """
    Live view of one execution's events.

    Usage:
        async with ExecutionStreamClient("http://localhost:8000", token=token,
                                         execution_id=execution_id) as client:
            await client.connect()
            await client.wait_closed()
            print(client.metrics())
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        on_event: Optional[Callable[[ExecutionEvent], Any]] = None,
        on_error: Optional[Callable[[StreamConnectionError], Any]] = None,
        on_connect: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[[], Any]] = None,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = MAX_BACKOFF_DELAY,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.on_event = on_event
        self.on_error = on_error
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

        headers = {"Accept": "text/event-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._headers = headers

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(10.0, read=None),
        )

        self.events: List[ExecutionEvent] = []
        self.is_connected = False
        self.error: Optional[StreamConnectionError] = None
        self.reconnect_attempts = 0
        self.delays: List[float] = []  # backoff delays scheduled so far
        self._task: Optional[asyncio.Task] = None
        self._terminal_seen = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def stream_path(self) -> Optional[str]:
        if self.execution_id:
            return f"/api/execution/stream/{self.execution_id}"
        if self.workflow_id:
            return f"/api/execution/events?workflowId={self.workflow_id}"
        return None

    async def connect(self) -> None:
        """Open a subscription for the current target, replacing any open one."""
        if self.stream_path is None:
            self._fail(StreamConnectionError("executionId or workflowId is required"))
            return

        await self._cancel_task()
        self.error = None
        self._task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Cancel any pending reconnect and close the transport. No more events are delivered."""
        await self._cancel_task()
        self.is_connected = False
        if self.on_disconnect:
            self.on_disconnect()

    async def set_target(
        self, execution_id: Optional[str] = None, workflow_id: Optional[str] = None
    ) -> None:
        """Switch to another execution; the previous subscription is torn down first."""
        await self.disconnect()
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.reconnect_attempts = 0
        if self.stream_path is not None:
            await self.connect()

    def clear_events(self) -> None:
        self.events = []

    def metrics(self) -> ExecutionMetricsSummary:
        return calculate_execution_metrics(self.events)

    async def wait_closed(self) -> None:
        """Wait until the subscription ends (terminal state, failure or disconnect)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def aclose(self) -> None:
        await self._cancel_task()
        self.is_connected = False
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ExecutionStreamClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        current = asyncio.current_task()
        if task is current:
            # Called from a callback running inside the subscription itself
            return
        try:
            await task
        except asyncio.CancelledError:
            if current is not None and current.cancelling():
                raise

    def _fail(self, error: StreamConnectionError) -> None:
        self.is_connected = False
        self.error = error
        logger.error(f"Execution stream failed: {error}")
        if self.on_error:
            self.on_error(error)

    async def _run(self) -> None:
        while True:
            outcome = await self._consume_once()
            self.is_connected = False

            if outcome is _Outcome.FINISHED:
                return
            if outcome is _Outcome.REJECTED:
                self._fail(StreamConnectionError("Connection failed"))
                return

            if self.auto_reconnect and self.reconnect_attempts < self.max_reconnect_attempts:
                delay = backoff_delay(self.reconnect_attempts, self.base_delay, self.max_delay)
                self.delays.append(delay)
                logger.info(
                    f"Execution stream dropped, reconnecting in {delay:.1f}s "
                    f"(attempt {self.reconnect_attempts + 1}/{self.max_reconnect_attempts})"
                )
                await self._sleep(delay)
                self.reconnect_attempts += 1
                continue

            self._fail(StreamConnectionError("Connection failed"))
            return

    async def _consume_once(self) -> _Outcome:
        decoder = SSEDecoder()
        self._terminal_seen = False
        try:
            async with self._client.stream("GET", self.stream_path, headers=self._headers) as response:
                if response.status_code in (401, 403, 404):
                    logger.warning(f"Execution stream rejected with HTTP {response.status_code}")
                    return _Outcome.REJECTED
                if response.status_code != 200:
                    logger.warning(f"Execution stream returned HTTP {response.status_code}")
                    return _Outcome.DROPPED

                self._on_open()
                async for line in response.aiter_lines():
                    sse = decoder.decode(line.rstrip("\r"))
                    if sse is None:
                        continue
                    outcome = self._handle(sse)
                    if outcome is not None:
                        return outcome

                # A final frame not followed by a blank line
                sse = decoder.decode("")
                if sse is not None:
                    outcome = self._handle(sse)
                    if outcome is not None:
                        return outcome
        except httpx.HTTPError as e:
            logger.warning(f"Execution stream transport error: {e!r}")
            return _Outcome.DROPPED

        return _Outcome.FINISHED if self._terminal_seen else _Outcome.DROPPED

    def _on_open(self) -> None:
        self.is_connected = True
        self.error = None
        self.reconnect_attempts = 0
        if self.on_connect:
            self.on_connect()

    def _deliver(self, raw: Any, fallback_type: str) -> Optional[ExecutionEvent]:
        if not isinstance(raw, dict):
            logger.error(f"Ignoring non-object SSE payload for '{fallback_type}'")
            return None
        if not raw.get("type"):
            raw = {**raw, "type": fallback_type}
        try:
            event = ExecutionEvent.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Failed to parse SSE event: {e.error_count()} errors")
            return None

        self.events.append(event)
        if event.type in TERMINAL_TYPES:
            self._terminal_seen = True
        if self.on_event:
            self.on_event(event)
        return event

    def _handle(self, sse: ServerSentEvent) -> Optional[_Outcome]:
        try:
            payload = sse.json()
        except orjson.JSONDecodeError as e:
            logger.error(f"Failed to parse SSE event: {e}")
            return None

        if sse.event == "init":
            history = payload.get("events") if isinstance(payload, dict) else None
            for raw in history or []:
                self._deliver(raw, "update")
            return None

        if sse.event == "timeout":
            logger.info("Execution stream timed out on the server")
            return _Outcome.DROPPED

        event = self._deliver(payload, sse.event)
        if sse.event in TERMINAL_FRAMES:
            return _Outcome.FINISHED
        # Live registry streams carry unnamed frames and end on a terminal event type
        if sse.event == "message" and event is not None and event.type in TERMINAL_TYPES:
            return _Outcome.FINISHED
        return None
