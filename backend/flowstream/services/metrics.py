"""
Metrics derived from a list of received execution events.

Pure functions; nothing is stored. Used by the stream client and by anyone
folding events into a live view.
"""

from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from flowstream.models.events import (
    START_TYPES,
    TERMINAL_TYPES,
    EventType,
    ExecutionEvent,
)
from flowstream.utils.time import parse_iso


@dataclass
class ExecutionMetricsSummary:
    total_tokens: int = 0
    total_cost: float = 0.0
    completed_nodes: int = 0
    error_nodes: int = 0
    duration: Optional[float] = None  # milliseconds
    average_tokens_per_node: float = 0.0
    average_cost_per_node: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _numeric(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def calculate_execution_metrics(events: Sequence[ExecutionEvent]) -> ExecutionMetricsSummary:
    """
    Aggregate token usage, cost and node outcomes over received events.

    Tokens and cost come from token_update events only. Duration spans the
    first start event to the first terminal event, None if either is missing
    or a timestamp cannot be parsed.
    """
    summary = ExecutionMetricsSummary()

    for event in events:
        if event.type == EventType.TOKEN_UPDATE.value:
            summary.total_tokens += int(_numeric(event.data.get("tokens")))
            summary.total_cost += _numeric(event.data.get("cost"))
        elif event.type == EventType.NODE_COMPLETE.value:
            summary.completed_nodes += 1
        elif event.type == EventType.NODE_ERROR.value:
            summary.error_nodes += 1

    start_event = next((e for e in events if e.type in START_TYPES), None)
    end_event = next((e for e in events if e.type in TERMINAL_TYPES), None)
    if start_event and end_event:
        started = parse_iso(start_event.timestamp)
        ended = parse_iso(end_event.timestamp)
        if started and ended:
            summary.duration = (ended - started).total_seconds() * 1000

    if summary.completed_nodes > 0:
        summary.average_tokens_per_node = summary.total_tokens / summary.completed_nodes
        summary.average_cost_per_node = summary.total_cost / summary.completed_nodes

    return summary


def filter_events(events: Iterable[ExecutionEvent], types: Iterable[str]) -> List[ExecutionEvent]:
    """Events whose type is one of ``types`` (EventType members or raw strings)."""
    wanted = {t.value if isinstance(t, EventType) else t for t in types}
    return [e for e in events if e.type in wanted]


def latest_node_events(events: Iterable[ExecutionEvent]) -> Dict[str, ExecutionEvent]:
    """Most recent event per node id (by timestamp, ties keep the earlier event)."""
    latest: Dict[str, ExecutionEvent] = {}
    for event in events:
        if not event.node_id:
            continue
        existing = latest.get(event.node_id)
        if existing is None:
            latest[event.node_id] = event
            continue
        current_ts = parse_iso(event.timestamp)
        existing_ts = parse_iso(existing.timestamp)
        if current_ts and (existing_ts is None or current_ts > existing_ts):
            latest[event.node_id] = event
    return latest
