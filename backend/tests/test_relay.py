"""Tests for the subscriber-side relay state machine."""

import orjson
import pytest

from flowstream.models.events import EventType, ExecutionStatus, create_event
from flowstream.services.relay import ExecutionStreamRelay, StreamState
from flowstream.utils.sse import HEARTBEAT_FRAME


def parse(frame):
    if frame == HEARTBEAT_FRAME:
        return "heartbeat", None
    lines = frame.strip().split("\n")
    name = lines[0][len("event: "):]
    return name, orjson.loads(lines[1][len("data: "):])


def scripted_sleep(*actions):
    """Fake sleep running one scripted action per poll instead of waiting."""
    pending = list(actions)
    calls = []

    async def sleep(seconds):
        calls.append(seconds)
        if pending:
            action = pending.pop(0)
            if action is not None:
                await action()

    sleep.calls = calls
    return sleep


async def collect(relay):
    return [parse(frame) async for frame in relay.stream()]


@pytest.mark.asyncio
async def test_snapshot_then_terminal_frame(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id, execution_id="exec-42")
    await store.append_event("exec-42", create_event(EventType.NODE_START, node_id="n1"))
    await store.append_event(
        "exec-42", create_event(EventType.NODE_COMPLETE, node_id="n1", data={"tokens": 100, "cost": 0.01})
    )
    await store.append_event(
        "exec-42", create_event(EventType.NODE_COMPLETE, node_id="n2", data={"tokens": 50, "cost": 0.005})
    )
    snapshot = await store.get_for_owner(execution.id, user.id)

    async def complete():
        await store.append_event("exec-42", create_event(EventType.WORKFLOW_COMPLETE))

    relay = ExecutionStreamRelay(store, snapshot, sleep=scripted_sleep(complete))
    frames = await collect(relay)

    name, init = frames[0]
    assert name == "init"
    assert init["type"] == "execution:init"
    assert init["executionId"] == "exec-42"
    assert init["workflowName"] == workflow.name
    assert [e["type"] for e in init["events"]] == ["node_start", "node_complete", "node_complete"]
    assert init["metrics"]["totalTokens"] == 150

    assert frames[1][0] == "workflow_complete"
    assert frames[1][1]["executionId"] == "exec-42"

    name, final = frames[-1]
    assert name == "completed"
    assert final["status"] == "COMPLETED"
    assert final["totalCost"] == pytest.approx(0.015)
    assert len(frames) == 3
    assert relay.state is StreamState.COMPLETED


@pytest.mark.asyncio
async def test_terminal_execution_closes_without_polling(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)
    await store.finish_execution(execution.id, ExecutionStatus.FAILED, error="boom")
    snapshot = await store.get_for_owner(execution.id, user.id)
    sleep = scripted_sleep()

    relay = ExecutionStreamRelay(store, snapshot, sleep=sleep)
    frames = await collect(relay)

    assert [name for name, _ in frames] == ["init", "failed"]
    assert frames[1][1]["type"] == "execution:failed"
    assert frames[1][1]["error"] == "boom"
    assert sleep.calls == []
    assert relay.state is StreamState.FAILED


@pytest.mark.asyncio
async def test_heartbeats_then_timeout(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)
    sleep = scripted_sleep()

    relay = ExecutionStreamRelay(store, execution, poll_interval=0.5, max_polls=3, sleep=sleep)
    frames = await collect(relay)

    assert [name for name, _ in frames] == ["init", "heartbeat", "heartbeat", "timeout"]
    assert frames[-1][1] == {"message": "Stream timeout"}
    assert sleep.calls == [0.5, 0.5, 0.5]
    assert relay.state is StreamState.TIMED_OUT


@pytest.mark.asyncio
async def test_events_forwarded_in_append_order(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)

    async def burst():
        for i in range(4):
            await store.append_event(execution.id, create_event(EventType.NODE_PROGRESS, data={"step": i}))
        await store.append_event(execution.id, create_event(EventType.AGENT_COMPLETED))

    async def finish():
        await store.append_event(execution.id, create_event(EventType.WORKFLOW_ERROR, data={"error": "bad"}))

    relay = ExecutionStreamRelay(store, execution, sleep=scripted_sleep(burst, finish))
    frames = await collect(relay)

    names = [name for name, _ in frames]
    assert names == [
        "init",
        "node_progress", "node_progress", "node_progress", "node_progress",
        "agent-completed",
        "workflow_error",
        "failed",
    ]
    assert [payload["data"]["step"] for _, payload in frames[1:5]] == [0, 1, 2, 3]
    assert "heartbeat" not in names


@pytest.mark.asyncio
async def test_poll_error_is_logged_and_polling_continues(store, owner, caplog):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)

    class FlakyStore:
        def __init__(self):
            self.calls = 0

        async def get(self, execution_id):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("database is locked")
            return await store.get(execution_id)

    async def finish():
        await store.finish_execution(execution.id, ExecutionStatus.COMPLETED)

    relay = ExecutionStreamRelay(FlakyStore(), execution, sleep=scripted_sleep(None, finish))
    frames = await collect(relay)

    assert [name for name, _ in frames] == ["init", "completed"]
    assert "Poll error" in caplog.text


@pytest.mark.asyncio
async def test_deleted_execution_ends_stream(owner, store):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)

    class EmptyStore:
        async def get(self, execution_id):
            return None

    relay = ExecutionStreamRelay(EmptyStore(), execution, sleep=scripted_sleep())
    frames = await collect(relay)

    assert [name for name, _ in frames] == ["init"]
    assert relay.state is StreamState.ABORTED


@pytest.mark.asyncio
async def test_client_disconnect_aborts(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)

    async def is_disconnected():
        return True

    relay = ExecutionStreamRelay(store, execution, is_disconnected=is_disconnected, sleep=scripted_sleep())
    frames = await collect(relay)

    assert [name for name, _ in frames] == ["init"]
    assert relay.state is StreamState.ABORTED


@pytest.mark.asyncio
async def test_closing_generator_marks_aborted(store, owner):
    user, workflow, _ = owner
    execution = await store.start_execution(user.id, workflow.id)

    relay = ExecutionStreamRelay(store, execution, sleep=scripted_sleep())
    stream = relay.stream()
    await stream.__anext__()
    await stream.__anext__()
    await stream.aclose()

    assert relay.state is StreamState.ABORTED
