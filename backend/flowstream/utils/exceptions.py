"""
Error types and HTTP exception helpers.

Usage:
    from flowstream.utils.exceptions import raise_unauthorized, raise_not_found

    raise_unauthorized("Invalid token")
    raise_not_found("Execution", execution_id)
"""

from typing import NoReturn

from fastapi import HTTPException, status


class ExecutionStateError(Exception):
    """Raised when an execution is asked to make an invalid status transition."""

    def __init__(self, execution_id: str, current: str, requested: str):
        self.execution_id = execution_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Execution {execution_id} cannot move from {current} to {requested}"
        )


class ChannelClosedError(Exception):
    """Raised when writing to a stream channel whose reader has gone away."""


def raise_unauthorized(detail: str = "Unauthorized") -> NoReturn:
    """Raise HTTP 401 Unauthorized with WWW-Authenticate header."""
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def raise_bad_request(detail: str) -> NoReturn:
    """Raise HTTP 400 Bad Request."""
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    )


def raise_not_found(resource: str, id: int | str | None = None) -> NoReturn:
    """Raise HTTP 404 Not Found."""
    if id is not None:
        detail = f"{resource} with id {id} not found"
    else:
        detail = f"{resource} not found"
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=detail,
    )


def raise_conflict(detail: str) -> NoReturn:
    """Raise HTTP 409 Conflict."""
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    )


def raise_forbidden(detail: str = "Access denied") -> NoReturn:
    """Raise HTTP 403 Forbidden."""
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )
