"""
Workflow and execution routes.

These are the write path of persisted execution state: execution logic
starts an execution, appends events as nodes run, and the subscriber
endpoint picks them up by polling.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowstream.database import User, Workflow, get_session
from flowstream.dependencies import get_execution_store
from flowstream.models.events import PublishedEvent
from flowstream.services.executions import ExecutionStore
from flowstream.utils.auth import require_user
from flowstream.utils.db_helpers import get_owned_or_404
from flowstream.utils.exceptions import ExecutionStateError, raise_conflict, raise_not_found
from flowstream.utils.time import to_iso

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================


class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class WorkflowResponse(BaseModel):
    id: str
    name: str
    created_at: str

    @classmethod
    def from_db(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(id=workflow.id, name=workflow.name, created_at=to_iso(workflow.created_at))


class ExecutionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(..., alias="workflowId")


# ============================================================================
# Workflows
# ============================================================================


@router.post("/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    data: WorkflowCreate,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    workflow = Workflow(user_id=user.id, name=data.name)
    session.add(workflow)
    await session.commit()
    await session.refresh(workflow)
    return WorkflowResponse.from_db(workflow)


@router.get("/workflows", response_model=List[WorkflowResponse])
async def list_workflows(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Workflow).where(Workflow.user_id == user.id).order_by(Workflow.created_at)
    result = await session.execute(stmt)
    return [WorkflowResponse.from_db(w) for w in result.scalars().all()]


# ============================================================================
# Executions
# ============================================================================


@router.post("/executions", status_code=status.HTTP_201_CREATED)
async def start_execution(
    data: ExecutionCreate,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    store: ExecutionStore = Depends(get_execution_store),
):
    """Create a RUNNING execution of one of the caller's workflows."""
    await get_owned_or_404(session, Workflow, data.workflow_id, user.id)
    snapshot = await store.start_execution(user.id, data.workflow_id)
    return snapshot.to_dict()


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    user: User = Depends(require_user),
    store: ExecutionStore = Depends(get_execution_store),
):
    snapshot = await store.get_for_owner(execution_id, user.id)
    if snapshot is None:
        raise_not_found("Execution", execution_id)
    return snapshot.to_dict()


@router.post("/executions/{execution_id}/events")
async def append_execution_event(
    execution_id: str,
    event: PublishedEvent,
    user: User = Depends(require_user),
    store: ExecutionStore = Depends(get_execution_store),
):
    """
    Append an event to a running execution.

    Terminal events (workflow_complete, workflow_error, execution:completed,
    execution:failed) finish the execution. Returns the updated snapshot
    without the event list.
    """
    if await store.get_for_owner(execution_id, user.id) is None:
        raise_not_found("Execution", execution_id)

    try:
        snapshot = await store.append_event(execution_id, event)
    except ExecutionStateError as e:
        raise_conflict(str(e))

    result = snapshot.to_dict()
    result["eventCount"] = len(result.pop("events"))
    return result
