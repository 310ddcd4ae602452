"""
In-process stream registry.

Maps a stream id (execution or workflow id) to the live SSE channels of
subscribers connected to this process. Producers publish through the
registry; delivery is best effort and same-process only, the database poll
in ``relay.py`` remains the path that works across processes.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from flowstream.models.events import EventType, ExecutionEvent, create_event
from flowstream.utils.exceptions import ChannelClosedError
from flowstream.utils.sse import format_sse_data

logger = logging.getLogger(__name__)


class StreamChannel:
    """Bounded queue of pre-formatted SSE frames read by one HTTP response."""

    def __init__(self, stream_id: str, max_size: int = 1000):
        self.stream_id = stream_id
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        """Queue a frame. Raises ChannelClosedError if the reader is gone or stalled."""
        if self._closed:
            raise ChannelClosedError(f"Channel for '{self.stream_id}' is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.close()
            raise ChannelClosedError(f"Channel for '{self.stream_id}' is full")

    def close(self) -> None:
        """Stop the reader after it drains queued frames."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader is not draining; drop the backlog so the sentinel gets through
            self._drain()
            self._queue.put_nowait(None)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    async def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next frame, None once closed. Raises asyncio.TimeoutError on timeout."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)


class StreamRegistry:
    """Registry of live stream channels, owned by the application lifespan."""

    def __init__(self, fan_out: bool = True, channel_buffer_size: int = 1000):
        self.fan_out = fan_out
        self.channel_buffer_size = channel_buffer_size
        self._channels: Dict[str, List[StreamChannel]] = {}

    def register(self, stream_id: str) -> StreamChannel:
        """
        Open a channel for a new subscriber.

        With fan-out every subscriber of a stream id receives every event.
        Otherwise the last subscriber wins and the previous channel is closed
        so its response ends instead of hanging.
        """
        channel = StreamChannel(stream_id, max_size=self.channel_buffer_size)
        if self.fan_out:
            self._channels.setdefault(stream_id, []).append(channel)
        else:
            for previous in self._channels.get(stream_id, []):
                logger.info(f"Replacing subscriber for stream '{stream_id}'")
                previous.close()
            self._channels[stream_id] = [channel]
        return channel

    def unregister(self, channel: StreamChannel) -> None:
        """Remove a channel; the entry disappears with its last channel."""
        channel.close()
        channels = self._channels.get(channel.stream_id)
        if not channels:
            return
        remaining = [c for c in channels if c is not channel]
        if remaining:
            self._channels[channel.stream_id] = remaining
        else:
            del self._channels[channel.stream_id]

    def has_subscribers(self, stream_id: str) -> bool:
        return bool(self._channels.get(stream_id))

    def publish(self, stream_id: str, event: ExecutionEvent) -> bool:
        """
        Deliver an event to every live channel of ``stream_id``.

        Returns False when nobody is listening. Channels that fail to accept
        the frame are pruned; failures never propagate to the caller.
        """
        channels = self._channels.get(stream_id)
        if not channels:
            return False

        frame = format_sse_data(event.with_timestamp().to_payload())
        delivered = False
        for channel in list(channels):
            try:
                channel.send(frame)
                delivered = True
            except ChannelClosedError as e:
                logger.debug(f"Pruning channel: {e}")
                self.unregister(channel)
        return delivered

    def close(self, stream_id: str) -> bool:
        """Send a final workflow_complete event to the stream and remove it."""
        channels = self._channels.pop(stream_id, None)
        if not channels:
            return False

        complete = create_event(
            EventType.WORKFLOW_COMPLETE, data={"message": "Execution stream closed"}
        )
        frame = format_sse_data(complete.to_payload())
        delivered = False
        for channel in channels:
            try:
                channel.send(frame)
                delivered = True
            except ChannelClosedError as e:
                logger.debug(f"Channel already gone while closing: {e}")
            channel.close()
        return delivered

    def stats(self) -> Dict[str, int]:
        return {
            "streams": len(self._channels),
            "subscribers": sum(len(c) for c in self._channels.values()),
        }

    async def shutdown(self):
        """Close every channel (process shutdown)."""
        for channels in self._channels.values():
            for channel in channels:
                channel.close()
        count = len(self._channels)
        self._channels.clear()
        if count:
            logger.info(f"Closed {count} live execution streams")
