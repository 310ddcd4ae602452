"""
Execution event models.

An event record describes one occurrence during a workflow execution. Two
families of types exist: the relay types emitted per workflow node
(``node_start``, ``token_update``, ``workflow_complete``...) and the
execution-level types (``execution:started``, ``agent:completed``...).
"""

import itertools
import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowstream.utils.time import now_iso


class EventType(str, Enum):
    # Relay (node level)
    NODE_START = "node_start"
    NODE_PROGRESS = "node_progress"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    REASONING_START = "reasoning_start"
    REASONING_UPDATE = "reasoning_update"
    REASONING_COMPLETE = "reasoning_complete"
    TOKEN_UPDATE = "token_update"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_ERROR = "workflow_error"

    # Execution level
    EXECUTION_STARTED = "execution:started"
    EXECUTION_COMPLETED = "execution:completed"
    EXECUTION_FAILED = "execution:failed"
    EXECUTION_PAUSED = "execution:paused"
    AGENT_STARTED = "agent:started"
    AGENT_PROGRESS = "agent:progress"
    AGENT_REASONING = "agent:reasoning"
    AGENT_COMPLETED = "agent:completed"
    AGENT_FAILED = "agent:failed"
    COST_UPDATED = "cost:updated"
    COST_LIMIT_WARNING = "cost:limit_warning"
    COST_LIMIT_REACHED = "cost:limit_reached"


START_TYPES = frozenset({EventType.NODE_START.value, EventType.EXECUTION_STARTED.value})
COMPLETION_TYPES = frozenset(
    {EventType.WORKFLOW_COMPLETE.value, EventType.EXECUTION_COMPLETED.value}
)
FAILURE_TYPES = frozenset({EventType.WORKFLOW_ERROR.value, EventType.EXECUTION_FAILED.value})
TERMINAL_TYPES = COMPLETION_TYPES | FAILURE_TYPES

# Events whose data carries token/cost usage for persisted metrics
USAGE_TYPES = frozenset(
    {
        EventType.TOKEN_UPDATE.value,
        EventType.NODE_COMPLETE.value,
        EventType.AGENT_COMPLETED.value,
    }
)


_KNOWN_TYPES = frozenset(t.value for t in EventType)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ExecutionEvent(BaseModel):
    """A single event record. Unknown fields are preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "update"
    timestamp: Optional[str] = None
    id: Optional[str] = None
    stream_id: Optional[str] = Field(default=None, alias="streamId")
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    node_name: Optional[str] = Field(default=None, alias="nodeName")
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _missing_type(cls, value: Any) -> Any:
        return "update" if value is None or value == "" else value

    @field_validator("timestamp", "id", "stream_id", "execution_id", "node_id", "node_name", mode="before")
    @classmethod
    def _scalar_as_str(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _open_data(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return {"value": value}
        return value

    def with_timestamp(self) -> "ExecutionEvent":
        """Return this event, or a copy stamped with the current time if it has none."""
        if self.timestamp:
            return self
        return self.model_copy(update={"timestamp": now_iso()})

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation (camelCase keys, no null fields)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class PublishedEvent(ExecutionEvent):
    """Event accepted from producers: the type must be a known EventType."""

    type: str

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in _KNOWN_TYPES:
            raise ValueError(f"Unknown event type '{value}'")
        return value


class ExecutionMetrics(BaseModel):
    """Aggregate counters stored alongside an execution."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    total_tokens: int = Field(default=0, alias="totalTokens")
    total_cost: float = Field(default=0.0, alias="totalCost")
    agents_completed: int = Field(default=0, alias="agentsCompleted")
    cost_by_provider: Dict[str, float] = Field(default_factory=dict, alias="costByProvider")
    model_usage: Dict[str, Dict[str, Any]] = Field(default_factory=dict, alias="modelUsage")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ============================================================================
# Event Creation Helpers
# ============================================================================

_event_counter = itertools.count(1)


def generate_event_id() -> str:
    return f"evt_{int(time.time() * 1000)}_{next(_event_counter)}"


def create_event(
    event_type: EventType | str,
    execution_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    node_id: Optional[str] = None,
    node_name: Optional[str] = None,
) -> ExecutionEvent:
    """Build a timestamped event record with a generated id."""
    return ExecutionEvent(
        type=event_type.value if isinstance(event_type, EventType) else event_type,
        id=generate_event_id(),
        timestamp=now_iso(),
        execution_id=execution_id,
        node_id=node_id,
        node_name=node_name,
        data=data or {},
    )
