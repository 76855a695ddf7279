"""Pytest fixtures for integration tests.

Provides an in-memory SQLite database and the orchestrator services wired
to it. The production system runs on PostgreSQL; the models only use
portable column types, so the service logic is exercised unchanged here.

Tests that require PostgreSQL-specific behaviour should be marked with
@pytest.mark.postgres.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Awaitable, Callable

import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from switchyard.database.connection import get_session_factory
from switchyard.database.models import Agent, Base, Task
from switchyard.database.queries.task import create_task
from switchyard.orchestrator.agent_registry import AgentRegistry
from switchyard.orchestrator.assignment import TaskAssignmentService
from switchyard.orchestrator.dependencies import DependencyStore
from switchyard.orchestrator.dispatch import DispatchService
from switchyard.orchestrator.locks import AgentLocks
from switchyard.orchestrator.priority import PriorityService
from switchyard.orchestrator.readiness import ReadinessService

CREATOR = "el-admin1"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine for testing.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.

    Yields:
        Configured AsyncEngine instance using in-memory SQLite.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a new async database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def dependency_store(session_factory: async_sessionmaker[AsyncSession]) -> DependencyStore:
    return DependencyStore(session_factory)


@pytest_asyncio.fixture
async def priority_service(session_factory: async_sessionmaker[AsyncSession]) -> PriorityService:
    return PriorityService(session_factory, max_depth=10)


@pytest_asyncio.fixture
async def readiness(
    session_factory: async_sessionmaker[AsyncSession],
    priority_service: PriorityService,
) -> ReadinessService:
    return ReadinessService(session_factory, priority_service)


@pytest_asyncio.fixture
async def registry(session_factory: async_sessionmaker[AsyncSession]) -> AgentRegistry:
    return AgentRegistry(session_factory)


@pytest_asyncio.fixture
async def assignment(
    session_factory: async_sessionmaker[AsyncSession],
) -> TaskAssignmentService:
    return TaskAssignmentService(session_factory)


@pytest_asyncio.fixture
async def dispatch_service(
    session_factory: async_sessionmaker[AsyncSession],
    registry: AgentRegistry,
    assignment: TaskAssignmentService,
) -> DispatchService:
    return DispatchService(session_factory, registry, assignment, AgentLocks())


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def make_task(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Task]]:
    """Return a coroutine function creating a task with sensible defaults."""

    async def _make(title: str = "Task", **kwargs: Any) -> Task:
        kwargs.setdefault("created_by", CREATOR)
        async with session_factory() as session:
            return await create_task(session, title=title, **kwargs)

    return _make


@pytest_asyncio.fixture
async def make_worker(registry: AgentRegistry) -> Callable[..., Awaitable[Agent]]:
    """Return a coroutine function registering a worker."""

    async def _make(
        name: str,
        skills: list[str] | None = None,
        languages: list[str] | None = None,
        max_concurrent_tasks: int = 1,
        **kwargs: Any,
    ) -> Agent:
        return await registry.register_worker(
            name=name,
            created_by=CREATOR,
            capabilities={
                "skills": skills or [],
                "languages": languages or [],
                "maxConcurrentTasks": max_concurrent_tasks,
            },
            **kwargs,
        )

    return _make
