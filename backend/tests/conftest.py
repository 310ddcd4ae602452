"""Shared test fixtures.

The database URL is pointed at a throwaway SQLite file before anything from
flowstream is imported, since the engine is created at import time.
"""

import os
import tempfile
import uuid

_db_dir = tempfile.mkdtemp(prefix="flowstream-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ.pop("SEED_USERNAME", None)
os.environ.pop("SEED_PASSWORD", None)

import asyncio

import pytest
import pytest_asyncio

from flowstream.database import User, Workflow, async_session, init_db
from flowstream.services.executions import ExecutionStore
from flowstream.services.registry import StreamRegistry
from flowstream.utils.auth import create_user_session, hash_password

TEST_PASSWORD = "password123"


async def create_owner(name: str = "Nightly sync"):
    """Create a user with one workflow. Returns (user, workflow, token)."""
    await init_db()
    async with async_session() as session:
        user = User(
            username=f"user_{uuid.uuid4().hex[:12]}",
            password_hash=hash_password(TEST_PASSWORD),
            display_name="Test User",
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)

        workflow = Workflow(user_id=user.id, name=name)
        session.add(workflow)
        await session.commit()
        await session.refresh(workflow)

        token = await create_user_session(user, session)
    return user, workflow, token


@pytest_asyncio.fixture
async def registry():
    registry = StreamRegistry()
    yield registry
    await registry.shutdown()


@pytest_asyncio.fixture
async def store(registry):
    await init_db()
    return ExecutionStore(async_session, registry)


@pytest_asyncio.fixture
async def owner():
    return await create_owner()


@pytest.fixture
def sync_owner():
    """Owner for synchronous route tests (created on a private event loop)."""
    return asyncio.run(create_owner())


@pytest.fixture
def other_owner():
    return asyncio.run(create_owner("Someone else's workflow"))


@pytest.fixture
def test_password():
    return TEST_PASSWORD
