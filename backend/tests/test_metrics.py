"""Tests for derived execution metrics and event filtering."""

import pytest
from pydantic import ValidationError

from flowstream.models.events import EventType, ExecutionEvent, ExecutionMetrics, PublishedEvent
from flowstream.services.executions import apply_event_to_metrics
from flowstream.services.metrics import (
    calculate_execution_metrics,
    filter_events,
    latest_node_events,
)


def ev(type, timestamp=None, node_id=None, **data):
    return ExecutionEvent(type=type, timestamp=timestamp, nodeId=node_id, data=data)


def test_empty_events():
    summary = calculate_execution_metrics([])
    assert summary.total_tokens == 0
    assert summary.total_cost == 0
    assert summary.duration is None
    assert summary.average_tokens_per_node == 0


def test_tokens_and_cost_from_token_updates():
    events = [
        ev("node_start", "2026-01-01T00:00:00.000Z"),
        ev("token_update", tokens=100, cost=0.01),
        ev("token_update", tokens=50, cost=0.005),
        ev("node_complete"),
        ev("node_complete"),
        ev("node_error"),
        ev("workflow_complete", "2026-01-01T00:00:02.500Z"),
    ]
    summary = calculate_execution_metrics(events)

    assert summary.total_tokens == 150
    assert summary.total_cost == pytest.approx(0.015)
    assert summary.completed_nodes == 2
    assert summary.error_nodes == 1
    assert summary.duration == 2500
    assert summary.average_tokens_per_node == 75
    assert summary.average_cost_per_node == pytest.approx(0.0075)


def test_non_numeric_usage_is_ignored():
    summary = calculate_execution_metrics([ev("token_update", tokens="lots", cost=None)])
    assert summary.total_tokens == 0
    assert summary.total_cost == 0


def test_duration_requires_start_and_end():
    events = [ev("node_start", "2026-01-01T00:00:00.000Z"), ev("node_complete")]
    assert calculate_execution_metrics(events).duration is None


def test_duration_uses_execution_level_events():
    events = [
        ev("execution:started", "2026-01-01T00:00:00.000Z"),
        ev("execution:failed", "2026-01-01T00:00:01.000Z"),
    ]
    assert calculate_execution_metrics(events).duration == 1000


def test_unparseable_timestamp_gives_no_duration():
    events = [ev("node_start", "not a date"), ev("workflow_error", "2026-01-01T00:00:01Z")]
    assert calculate_execution_metrics(events).duration is None


def test_filter_events_by_type():
    events = [ev("node_start"), ev("token_update"), ev("node_complete")]

    result = filter_events(events, [EventType.NODE_START, "node_complete"])

    assert [e.type for e in result] == ["node_start", "node_complete"]


def test_latest_node_events_picks_newest_per_node():
    events = [
        ev("node_start", "2026-01-01T00:00:00Z", node_id="a"),
        ev("node_complete", "2026-01-01T00:00:05Z", node_id="a"),
        ev("node_start", "2026-01-01T00:00:01Z", node_id="b"),
        ev("workflow_complete", "2026-01-01T00:00:06Z"),
    ]
    latest = latest_node_events(events)

    assert set(latest) == {"a", "b"}
    assert latest["a"].type == "node_complete"
    assert latest["b"].type == "node_start"


def test_apply_event_to_metrics_accumulates_usage():
    metrics = ExecutionMetrics()

    apply_event_to_metrics(metrics, ev("node_complete", tokens=100, cost=0.01, provider="openai", model="gpt-4o"))
    apply_event_to_metrics(metrics, ev("agent:completed", inputTokens=30, outputTokens=20, cost=0.005, provider="anthropic"))
    apply_event_to_metrics(metrics, ev("node_start", tokens=999, cost=9.0))

    assert metrics.total_tokens == 150
    assert metrics.total_cost == pytest.approx(0.015)
    assert metrics.agents_completed == 2
    assert metrics.cost_by_provider == {"openai": pytest.approx(0.01), "anthropic": pytest.approx(0.005)}
    assert metrics.model_usage["gpt-4o"]["tokens"] == 100


def test_total_tokens_is_an_integer():
    events = [ev("token_update", tokens=100.0), ev("token_update", tokens=25)]

    summary = calculate_execution_metrics(events)

    assert summary.total_tokens == 125
    assert isinstance(summary.total_tokens, int)


def test_stored_event_shapes_are_tolerated():
    assert ExecutionEvent.model_validate({"type": "node_progress", "data": None}).data == {}
    assert ExecutionEvent.model_validate({"type": "node_start", "nodeId": 7}).node_id == "7"
    assert ExecutionEvent.model_validate({"data": {"step": 1}}).type == "update"
    assert ExecutionEvent.model_validate({"type": "node_progress", "data": 3}).data == {"value": 3}


def test_published_event_still_requires_a_known_type():
    with pytest.raises(ValidationError):
        PublishedEvent.model_validate({"data": {}})
    with pytest.raises(ValidationError):
        PublishedEvent.model_validate({"type": "not_a_type"})
