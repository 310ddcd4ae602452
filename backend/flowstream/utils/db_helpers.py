"""
Database helper functions shared by routes and services.
"""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import orjson
from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from flowstream.models.events import ExecutionEvent, ExecutionMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DeclarativeBase)


# ============================================================================
# JSON Column Helpers
# ============================================================================


def dumps_json(value: Any) -> str:
    """Serialize a value for storage in a JSON text column."""
    return orjson.dumps(value).decode()


def _loads_json(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in stored column: {e}")
        return None


def load_json_list(raw: Optional[str]) -> List[Any]:
    """Raw contents of a JSON array column, unvalidated. Anything else yields []."""
    parsed = _loads_json(raw)
    return parsed if isinstance(parsed, list) else []


def safe_parse_events(raw: Optional[str]) -> List[Dict[str, Any]]:
    """
    Parse a stored events column.

    Entries are validated one by one; an entry that does not look like an
    event record is skipped without affecting its neighbours. The original
    dicts are returned untouched so unknown fields survive forwarding.
    """
    events = []
    skipped = 0
    for entry in load_json_list(raw):
        try:
            ExecutionEvent.model_validate(entry)
        except ValidationError:
            skipped += 1
            continue
        events.append(entry)
    if skipped:
        logger.warning(f"Skipped {skipped} invalid stored events")
    return events


def safe_parse_metrics(raw: Optional[str]) -> Dict[str, Any]:
    """Parse a stored metrics column. Invalid content yields an empty dict."""
    parsed = _loads_json(raw)
    if parsed is None:
        return {}
    try:
        ExecutionMetrics.model_validate(parsed)
    except ValidationError as e:
        logger.warning(f"Stored metrics failed validation: {e.error_count()} errors")
        return {}
    return parsed


# ============================================================================
# Lookup Helpers
# ============================================================================


async def get_owned_or_404(
    session: AsyncSession,
    model: Type[T],
    id: Any,
    user_id: int,
    detail: Optional[str] = None,
) -> T:
    """
    Fetch a record by ID that belongs to ``user_id`` or raise 404.

    A record owned by someone else is reported exactly like a missing one.

    Raises:
        HTTPException: 404 if record not found or not owned by the user
    """
    stmt = select(model).where(model.id == id, model.user_id == user_id)
    result = await session.execute(stmt)
    obj = result.scalar_one_or_none()

    if not obj:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{model.__name__} not found",
        )

    return obj
