"""FastAPI dependencies for relay state owned by the application lifespan."""

from fastapi import Request

from flowstream.services.executions import ExecutionStore
from flowstream.services.registry import StreamRegistry


def get_stream_registry(request: Request) -> StreamRegistry:
    return request.app.state.stream_registry


def get_execution_store(request: Request) -> ExecutionStore:
    return request.app.state.execution_store
