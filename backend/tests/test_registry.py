"""Tests for the in-process stream registry."""

import asyncio

import orjson
import pytest

from flowstream.models.events import EventType, create_event
from flowstream.services.registry import StreamChannel, StreamRegistry
from flowstream.utils.exceptions import ChannelClosedError


def payload_of(frame):
    assert frame.startswith("data: ")
    return orjson.loads(frame[len("data: "):].strip())


async def drain(channel):
    frames = []
    while True:
        frame = await channel.get(timeout=1)
        if frame is None:
            return frames
        frames.append(frame)


def test_publish_without_subscribers_returns_false():
    registry = StreamRegistry()
    event = create_event(EventType.NODE_START, execution_id="exec-1")

    assert registry.publish("exec-1", event) is False
    assert registry.stats() == {"streams": 0, "subscribers": 0}


@pytest.mark.asyncio
async def test_publish_preserves_order():
    registry = StreamRegistry()
    channel = registry.register("exec-1")

    for i in range(5):
        assert registry.publish("exec-1", create_event(EventType.NODE_PROGRESS, data={"step": i}))
    registry.close("exec-1")

    frames = await drain(channel)
    steps = [payload_of(f)["data"].get("step") for f in frames[:-1]]
    assert steps == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_publish_assigns_missing_timestamp():
    registry = StreamRegistry()
    channel = registry.register("exec-1")
    event = create_event(EventType.NODE_START).model_copy(update={"timestamp": None})

    registry.publish("exec-1", event)
    frame = await channel.get(timeout=1)

    assert payload_of(frame)["timestamp"]


@pytest.mark.asyncio
async def test_fan_out_delivers_to_every_subscriber():
    registry = StreamRegistry(fan_out=True)
    first = registry.register("wf-1")
    second = registry.register("wf-1")

    registry.publish("wf-1", create_event(EventType.TOKEN_UPDATE, data={"tokens": 3}))

    assert payload_of(await first.get(timeout=1))["type"] == "token_update"
    assert payload_of(await second.get(timeout=1))["type"] == "token_update"
    assert registry.stats() == {"streams": 1, "subscribers": 2}


@pytest.mark.asyncio
async def test_last_subscriber_wins_closes_previous_channel():
    registry = StreamRegistry(fan_out=False)
    first = registry.register("exec-1")
    second = registry.register("exec-1")

    assert first.closed
    assert await first.get(timeout=1) is None

    registry.publish("exec-1", create_event(EventType.NODE_START))
    assert payload_of(await second.get(timeout=1))["type"] == "node_start"


@pytest.mark.asyncio
async def test_close_sends_workflow_complete_and_removes_entry():
    registry = StreamRegistry()
    channel = registry.register("exec-1")

    assert registry.close("exec-1") is True
    frames = await drain(channel)

    final = payload_of(frames[-1])
    assert final["type"] == "workflow_complete"
    assert final["data"]["message"] == "Execution stream closed"
    assert not registry.has_subscribers("exec-1")
    assert registry.publish("exec-1", create_event(EventType.NODE_START)) is False


def test_close_unknown_stream_is_noop():
    registry = StreamRegistry()
    assert registry.close("missing") is False


@pytest.mark.asyncio
async def test_full_channel_is_pruned():
    registry = StreamRegistry(channel_buffer_size=2)
    stalled = registry.register("exec-1")

    for _ in range(3):
        registry.publish("exec-1", create_event(EventType.NODE_PROGRESS))

    assert stalled.closed
    assert not registry.has_subscribers("exec-1")
    assert await drain(stalled) == []


def test_send_on_closed_channel_raises():
    channel = StreamChannel("exec-1")
    channel.close()
    with pytest.raises(ChannelClosedError):
        channel.send("data: {}\n\n")


@pytest.mark.asyncio
async def test_unregister_removes_only_that_channel():
    registry = StreamRegistry()
    first = registry.register("exec-1")
    second = registry.register("exec-1")

    registry.unregister(first)

    assert registry.has_subscribers("exec-1")
    registry.unregister(second)
    assert registry.stats()["streams"] == 0


@pytest.mark.asyncio
async def test_channel_get_times_out():
    channel = StreamChannel("exec-1")
    with pytest.raises(asyncio.TimeoutError):
        await channel.get(timeout=0.01)


@pytest.mark.asyncio
async def test_shutdown_closes_all_channels():
    registry = StreamRegistry()
    channels = [registry.register("a"), registry.register("b")]

    await registry.shutdown()

    assert all(c.closed for c in channels)
    assert registry.stats() == {"streams": 0, "subscribers": 0}
