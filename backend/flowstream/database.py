import uuid
from typing import AsyncGenerator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    delete,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.pool import NullPool

from flowstream.config import ensure_data_dir, settings
from flowstream.utils.time import utcnow

ensure_data_dir()

# Pollers open a short session per read; NullPool keeps SQLite connections
# from being shared between event loops.
engine = create_async_engine(settings.database_url, echo=False, poolclass=NullPool)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """User accounts. Owners of workflows and executions."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    password_hash = Column(String(100), nullable=False)  # bcrypt hash
    display_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    sessions = relationship(
        "UserSession", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User(username='{self.username}', active={self.is_active})>"


class UserSession(Base):
    """Bearer tokens issued at login."""

    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="sessions")

    def __repr__(self):
        return f"<UserSession(user_id={self.user_id}, expires={self.expires_at})>"


class Workflow(Base):
    """A user's automation workflow. Only the name is needed by the relay."""

    __tablename__ = "workflows"

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    executions = relationship(
        "ExecutionLog", back_populates="workflow", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Workflow(id='{self.id}', name='{self.name}')>"


class ExecutionLog(Base):
    """Persisted state of one workflow execution."""

    __tablename__ = "execution_logs"

    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    workflow_id = Column(
        String(64), ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False, default="RUNNING")  # PENDING/RUNNING/COMPLETED/FAILED
    start_time = Column(DateTime, default=utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds
    total_cost = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    events = Column(Text, nullable=False, default="[]")  # JSON array of event records
    metrics = Column(Text, nullable=False, default="{}")  # JSON object

    workflow = relationship("Workflow", back_populates="executions")

    __table_args__ = (
        Index("ix_execution_logs_user_start", "user_id", "start_time"),
    )

    def __repr__(self):
        return f"<ExecutionLog(id='{self.id}', status='{self.status}')>"


async def init_db():
    """Initialize the database, creating all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def cleanup_expired_sessions():
    """Remove expired user sessions."""
    async with async_session() as session:
        stmt = delete(UserSession).where(UserSession.expires_at < utcnow())
        await session.execute(stmt)
        await session.commit()
