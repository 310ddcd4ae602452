"""
Persisted execution state.

ExecutionStore is the read side used by the subscriber endpoint (owner-scoped
snapshots, re-reads while polling) and the write side used by execution logic
(start, append event, finish). Each operation opens its own short-lived
session so long-running streams never hold a session open between polls.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from flowstream.database import ExecutionLog, Workflow
from flowstream.models.events import (
    COMPLETION_TYPES,
    FAILURE_TYPES,
    USAGE_TYPES,
    EventType,
    ExecutionEvent,
    ExecutionMetrics,
    ExecutionStatus,
)
from flowstream.services.registry import StreamRegistry
from flowstream.utils.db_helpers import (
    dumps_json,
    load_json_list,
    safe_parse_events,
    safe_parse_metrics,
)
from flowstream.utils.exceptions import ExecutionStateError
from flowstream.utils.time import to_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExecutionSnapshot:
    """Point-in-time copy of an execution row with parsed JSON columns."""

    id: str
    user_id: int
    workflow_id: str
    workflow_name: str
    status: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration: Optional[int]
    total_cost: Optional[float]
    error: Optional[str]
    events: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value)

    @classmethod
    def from_db(cls, log: ExecutionLog) -> "ExecutionSnapshot":
        return cls(
            id=log.id,
            user_id=log.user_id,
            workflow_id=log.workflow_id,
            workflow_name=log.workflow.name if log.workflow else "",
            status=log.status,
            start_time=log.start_time,
            end_time=log.end_time,
            duration=log.duration,
            total_cost=log.total_cost,
            error=log.error,
            events=safe_parse_events(log.events),
            metrics=safe_parse_metrics(log.metrics),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "workflowName": self.workflow_name,
            "status": self.status,
            "startTime": to_iso(self.start_time),
            "endTime": to_iso(self.end_time),
            "duration": self.duration,
            "totalCost": self.total_cost,
            "error": self.error,
            "events": self.events,
            "metrics": self.metrics,
        }


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def apply_event_to_metrics(metrics: ExecutionMetrics, event: ExecutionEvent) -> None:
    """Fold one event's usage into aggregate metrics (in place)."""
    if event.type not in USAGE_TYPES:
        return

    data = event.data
    tokens = _number(data.get("tokens"))
    if not tokens:
        tokens = _number(data.get("inputTokens")) + _number(data.get("outputTokens"))
    cost = _number(data.get("cost"))

    metrics.total_tokens += int(tokens)
    metrics.total_cost = round(metrics.total_cost + cost, 10)

    provider = data.get("provider")
    if isinstance(provider, str) and provider:
        metrics.cost_by_provider[provider] = round(
            metrics.cost_by_provider.get(provider, 0.0) + cost, 10
        )

    model = data.get("model")
    if isinstance(model, str) and model:
        usage = metrics.model_usage.setdefault(model, {"tokens": 0, "cost": 0.0})
        if provider:
            usage["provider"] = provider
        usage["tokens"] = usage.get("tokens", 0) + int(tokens)
        usage["cost"] = round(usage.get("cost", 0.0) + cost, 10)

    if event.type in (EventType.NODE_COMPLETE.value, EventType.AGENT_COMPLETED.value):
        metrics.agents_completed += 1


class ExecutionStore:
    """Read and write persisted execution state."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        registry: Optional[StreamRegistry] = None,
    ):
        self._session_factory = session_factory
        self.registry = registry
        self._write_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(
        self,
        session: AsyncSession,
        execution_id: str,
        user_id: Optional[int] = None,
        for_update: bool = False,
    ):
        stmt = (
            select(ExecutionLog)
            .where(ExecutionLog.id == execution_id)
            .options(selectinload(ExecutionLog.workflow))
        )
        if user_id is not None:
            stmt = stmt.where(ExecutionLog.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_owner(self, execution_id: str, user_id: int) -> Optional[ExecutionSnapshot]:
        """Snapshot of an execution owned by ``user_id``; None if missing or foreign."""
        async with self._session_factory() as session:
            log = await self._load(session, execution_id, user_id)
            return ExecutionSnapshot.from_db(log) if log else None

    async def get(self, execution_id: str) -> Optional[ExecutionSnapshot]:
        """Unscoped re-read, used after ownership was checked once."""
        async with self._session_factory() as session:
            log = await self._load(session, execution_id)
            return ExecutionSnapshot.from_db(log) if log else None

    async def owns_stream(self, stream_id: str, user_id: int) -> bool:
        """True if ``stream_id`` is an execution or workflow owned by ``user_id``."""
        async with self._session_factory() as session:
            for model in (ExecutionLog, Workflow):
                result = await session.execute(
                    select(model.id).where(model.id == stream_id, model.user_id == user_id)
                )
                if result.scalar_one_or_none() is not None:
                    return True
        return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        user_id: int,
        workflow_id: str,
        execution_id: Optional[str] = None,
        status: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> ExecutionSnapshot:
        """Create the persisted state of a new execution."""
        async with self._session_factory() as session:
            log = ExecutionLog(
                user_id=user_id,
                workflow_id=workflow_id,
                status=status.value,
                start_time=utcnow(),
                events="[]",
                metrics=dumps_json(ExecutionMetrics().to_payload()),
            )
            if execution_id:
                log.id = execution_id
            session.add(log)
            await session.commit()
            new_id = log.id

        logger.info(f"Execution {new_id} created for workflow {workflow_id} ({status.value})")
        return await self.get(new_id)

    def _write_lock(self, execution_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(execution_id, asyncio.Lock())

    async def append_event(self, execution_id: str, event: ExecutionEvent) -> ExecutionSnapshot:
        """
        Append an event to a running execution and update its metrics.

        Appends to one execution are serialized, so concurrent producers never
        overwrite each other's events. Terminal event types
        (workflow_complete, execution:failed...) also finish the execution.
        The event is then published to same-process subscribers when a
        registry is attached, and the live stream is closed after a terminal
        event.

        Raises:
            LookupError: execution does not exist
            ExecutionStateError: execution already finished
        """
        event = event.with_timestamp()
        async with self._write_lock(execution_id):
            async with self._session_factory() as session:
                log = await self._load(session, execution_id, for_update=True)
                if log is None:
                    raise LookupError(f"Execution {execution_id} not found")
                if log.status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value):
                    raise ExecutionStateError(execution_id, log.status, "append event")
                if log.status == ExecutionStatus.PENDING.value:
                    log.status = ExecutionStatus.RUNNING.value

                events = load_json_list(log.events)
                events.append(event.to_payload())
                log.events = dumps_json(events)

                metrics = ExecutionMetrics.model_validate(safe_parse_metrics(log.metrics))
                apply_event_to_metrics(metrics, event)
                log.metrics = dumps_json(metrics.to_payload())
                log.total_cost = metrics.total_cost

                if event.type in COMPLETION_TYPES:
                    self._finish(log, ExecutionStatus.COMPLETED)
                elif event.type in FAILURE_TYPES:
                    error = event.data.get("error")
                    self._finish(log, ExecutionStatus.FAILED, str(error) if error else None)

                await session.commit()
                snapshot = ExecutionSnapshot.from_db(log)

            if self.registry is not None:
                self.registry.publish(execution_id, event)

        if snapshot.is_terminal:
            self._close_stream(execution_id)
        return snapshot

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> ExecutionSnapshot:
        """
        Move a running execution to a terminal status (exactly once).

        Raises:
            LookupError: execution does not exist
            ValueError: status is not terminal
            ExecutionStateError: execution already finished
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._write_lock(execution_id):
            async with self._session_factory() as session:
                log = await self._load(session, execution_id, for_update=True)
                if log is None:
                    raise LookupError(f"Execution {execution_id} not found")
                self._finish(log, status, error)
                await session.commit()
                snapshot = ExecutionSnapshot.from_db(log)

        self._close_stream(execution_id)
        return snapshot

    def _close_stream(self, execution_id: str) -> None:
        self._write_locks.pop(execution_id, None)
        if self.registry is not None:
            self.registry.close(execution_id)

    def _finish(self, log: ExecutionLog, status: ExecutionStatus, error: Optional[str] = None) -> None:
        if log.status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value):
            raise ExecutionStateError(log.id, log.status, status.value)

        end_time = utcnow()
        start_time = log.start_time
        if start_time is not None and start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=end_time.tzinfo)

        log.status = status.value
        log.end_time = end_time
        log.duration = int((end_time - start_time).total_seconds() * 1000) if start_time else None
        log.total_cost = safe_parse_metrics(log.metrics).get("totalCost", log.total_cost or 0.0)
        log.error = error
        logger.info(f"Execution {log.id} finished with status {status.value}")
