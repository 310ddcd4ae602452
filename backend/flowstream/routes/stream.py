"""
Execution event streaming routes.

GET  /execution/stream/{execution_id} - snapshot + database polling (works across processes)
GET  /execution/events                 - live in-process stream for an execution or workflow
POST /execution/events                 - publish an event to live subscribers
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from flowstream.config import settings
from flowstream.database import User
from flowstream.dependencies import get_execution_store, get_stream_registry
from flowstream.models.events import EventType, PublishedEvent, create_event
from flowstream.services.executions import ExecutionStore
from flowstream.services.registry import StreamChannel, StreamRegistry
from flowstream.services.relay import ExecutionStreamRelay
from flowstream.utils.auth import require_user
from flowstream.utils.exceptions import raise_bad_request, raise_not_found
from flowstream.utils.sse import HEARTBEAT_FRAME, SSE_HEADERS, SSE_MEDIA_TYPE, format_sse_data

logger = logging.getLogger(__name__)

router = APIRouter()


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: Optional[str] = Field(default=None, alias="streamId")
    event: Optional[PublishedEvent] = None


def _event_stream(frames: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(frames, media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)


@router.get("/execution/stream/{execution_id}")
async def stream_execution(
    execution_id: str,
    request: Request,
    user: User = Depends(require_user),
    store: ExecutionStore = Depends(get_execution_store),
):
    """
    GET /api/execution/stream/{execution_id} - real-time execution updates

    Returns SSE stream with events:
    - init: snapshot {type, executionId, workflowName, status, startTime, endTime, events, metrics, timestamp}
    - <event type>: each newly persisted event, e.g. node_complete, agent-completed
    - completed/failed: terminal summary {status, endTime, duration, totalCost, metrics, error}
    - timeout: {message} after max_polls without a terminal status
    - ": heartbeat" comments while nothing changes
    """
    snapshot = await store.get_for_owner(execution_id, user.id)
    if snapshot is None:
        raise_not_found("Execution", execution_id)

    relay = ExecutionStreamRelay(
        store,
        snapshot,
        poll_interval=settings.poll_interval_seconds,
        max_polls=settings.max_polls,
        is_disconnected=request.is_disconnected,
    )
    return _event_stream(relay.stream())


async def _live_frames(
    registry: StreamRegistry,
    stream_id: str,
    execution_id: Optional[str],
    workflow_id: Optional[str],
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    channel: StreamChannel = registry.register(stream_id)
    try:
        connected = create_event(
            EventType.NODE_START,
            data={
                "message": "Connected to execution stream",
                "executionId": execution_id,
                "workflowId": workflow_id,
            },
        )
        yield format_sse_data(connected.to_payload())

        while True:
            try:
                frame = await channel.get(timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            if frame is None:
                return
            yield frame
    finally:
        registry.unregister(channel)


@router.get("/execution/events")
async def live_events(
    executionId: Optional[str] = Query(default=None),
    workflowId: Optional[str] = Query(default=None),
    user: User = Depends(require_user),
    registry: StreamRegistry = Depends(get_stream_registry),
    store: ExecutionStore = Depends(get_execution_store),
):
    """
    GET /api/execution/events?executionId=...|workflowId=... - live events from this process

    Events published with POST /api/execution/events are forwarded as unnamed
    SSE messages. A heartbeat comment is sent when the stream is idle.
    """
    if not executionId and not workflowId:
        raise_bad_request("executionId or workflowId is required")

    stream_id = executionId or workflowId
    if not await store.owns_stream(stream_id, user.id):
        raise_not_found("Stream", stream_id)

    return _event_stream(
        _live_frames(registry, stream_id, executionId, workflowId, settings.live_heartbeat_seconds)
    )


@router.post("/execution/events")
async def publish_event(
    body: PublishRequest,
    user: User = Depends(require_user),
    registry: StreamRegistry = Depends(get_stream_registry),
    store: ExecutionStore = Depends(get_execution_store),
):
    """POST /api/execution/events - send {streamId, event} to live subscribers."""
    if not body.stream_id or body.event is None:
        raise_bad_request("streamId and event are required")

    if not await store.owns_stream(body.stream_id, user.id):
        raise_not_found("Stream", body.stream_id)

    if not registry.publish(body.stream_id, body.event):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active stream for this execution",
        )

    return {"success": True}
