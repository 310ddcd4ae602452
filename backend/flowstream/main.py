import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from flowstream.config import settings
from flowstream.routes import analytics, auth, executions, health, stream
from flowstream.database import init_db, async_session, cleanup_expired_sessions
from flowstream.services.executions import ExecutionStore
from flowstream.services.registry import StreamRegistry
from flowstream.utils.seed import seed_from_env

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle events"""
    # Initialize database
    await init_db()

    # Seed development user from .env if configured
    async with async_session() as session:
        result = await seed_from_env(session)
        if result["status"] == "success":
            logger.info(f"Database seeded: user '{result['username']}'")

    # Cleanup expired sessions
    await cleanup_expired_sessions()

    # Live stream registry and persisted execution state
    registry = StreamRegistry(
        fan_out=settings.stream_fan_out,
        channel_buffer_size=settings.channel_buffer_size,
    )
    app.state.stream_registry = registry
    app.state.execution_store = ExecutionStore(async_session, registry)

    yield

    # Shutdown: close open live streams
    await registry.shutdown()


app = FastAPI(
    title="Flowstream API",
    description="Workflow execution event relay with SSE streaming",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware (nginx handles external access, but useful for dev)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(stream.router, prefix="/api", tags=["stream"])
app.include_router(executions.router, prefix="/api", tags=["executions"])
app.include_router(analytics.router, prefix="/api", tags=["analytics"])
