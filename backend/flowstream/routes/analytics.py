"""
Cost analytics routes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from flowstream.config import settings
from flowstream.database import ExecutionLog, User, Workflow, get_session
from flowstream.models.events import ExecutionStatus
from flowstream.services.analytics import (
    month_start,
    monthly_budget,
    optimization_suggestions,
    parse_date_range,
    period_range,
    summarize_costs,
)
from flowstream.utils.auth import require_user
from flowstream.utils.exceptions import raise_bad_request
from flowstream.utils.time import now_iso, parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/analytics/cost")
async def cost_analytics(
    period: str = Query(default="month"),
    startDate: Optional[str] = Query(default=None),
    endDate: Optional[str] = Query(default=None),
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """
    GET /api/analytics/cost - cost analytics for the current user

    Query params:
    - period: "week" | "month" | "year" (default month)
    - startDate / endDate: ISO dates, used instead of period when both are given
    """
    start = parse_iso(startDate)
    end = parse_iso(endDate)
    if (startDate and start is None) or (endDate and end is None):
        raise_bad_request("startDate and endDate must be ISO-8601 dates")

    start, end = parse_date_range(start, end, period, utcnow())

    stmt = (
        select(ExecutionLog)
        .where(
            ExecutionLog.user_id == user.id,
            ExecutionLog.start_time >= start,
            ExecutionLog.start_time <= end,
        )
        .options(selectinload(ExecutionLog.workflow))
        .order_by(ExecutionLog.start_time.desc())
    )
    result = await session.execute(stmt)
    logs = result.scalars().all()

    summary = summarize_costs(logs, settings.monthly_budget_limit)
    return {
        **summary,
        "period": period,
        "dateRange": {"start": to_iso(start), "end": to_iso(end)},
        "timestamp": now_iso(),
    }


async def _executions_since(session: AsyncSession, user_id: int, start) -> list:
    stmt = (
        select(ExecutionLog)
        .where(ExecutionLog.user_id == user_id, ExecutionLog.start_time >= start)
        .options(selectinload(ExecutionLog.workflow))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


@router.get("/analytics/optimization")
async def cost_optimization(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """GET /api/analytics/optimization - model substitution and local-run suggestions"""
    now = utcnow()
    start, _ = period_range("month", now)
    logs = await _executions_since(session, user.id, start)
    return {**optimization_suggestions(logs, now), "timestamp": now_iso()}


@router.get("/analytics/stats")
async def dashboard_stats(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """GET /api/analytics/stats - workflow and execution counts for the current month"""
    first_of_month = month_start(utcnow())

    total_workflows = await session.scalar(
        select(func.count()).select_from(Workflow).where(Workflow.user_id == user.id)
    )
    this_month = (ExecutionLog.user_id == user.id, ExecutionLog.start_time >= first_of_month)
    executions = await session.scalar(
        select(func.count()).select_from(ExecutionLog).where(*this_month)
    )
    successful = await session.scalar(
        select(func.count())
        .select_from(ExecutionLog)
        .where(*this_month, ExecutionLog.status == ExecutionStatus.COMPLETED.value)
    )
    cost = await session.scalar(
        select(func.coalesce(func.sum(ExecutionLog.total_cost), 0.0)).where(*this_month)
    )

    return {
        "stats": {
            "totalWorkflows": total_workflows,
            "executionsThisMonth": executions,
            "successfulExecutions": successful,
            "successRate": round(successful / executions * 100) if executions else 100,
            "totalCostThisMonth": round(cost, 4),
        }
    }


@router.get("/analytics/budget")
async def budget(
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """GET /api/analytics/budget - this month's spend against MONTHLY_BUDGET_LIMIT"""
    now = utcnow()
    used = await session.scalar(
        select(func.coalesce(func.sum(ExecutionLog.total_cost), 0.0)).where(
            ExecutionLog.user_id == user.id, ExecutionLog.start_time >= month_start(now)
        )
    )
    return {"usage": monthly_budget(used, settings.monthly_budget_limit, now)}
