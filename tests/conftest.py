"""
Pytest fixtures for CTMS tests.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Ensure test config is set before importing ctms modules.
os.environ.setdefault("CTMS_ENV", "development")
os.environ.setdefault("CTMS_ALLOW_INSECURE_DEV", "false")
os.environ.setdefault("CTMS_JWT_SECRET", "ctms-test-secret")
os.environ.setdefault("CTMS_DATABASE_URL", "sqlite+aiosqlite:///./ctms_test.db")
os.environ.setdefault("CTMS_AUDIT_RETRY_BACKOFF_SECONDS", "0.01")

from ctms.auth.token import create_access_token
from ctms.db import base as db_base
from ctms.db.base import Base
from ctms.db.repositories import TaskRepository, TeamRepository, UserRepository
import ctms.db.tables  # noqa: F401
from ctms.engine.core import CTMSEngine
from ctms.models import Actor, RealtimeEvent, Role, TaskCreate, User
from ctms.observability.metrics import metrics
from ctms.tasks.side_effects import SideEffectQueue
from ctms.utils.time import utc_now

pytest_plugins = ("pytest_asyncio",)


def _ensure_test_database_url(database_url: str) -> None:
    if "test" not in database_url:
        raise RuntimeError(
            "Refusing to run CTMS tests against a non-test database. "
            "Set CTMS_TEST_DATABASE_URL to a dedicated test database."
        )


class RecordingPublisher:
    """EventPublisher that remembers every event instead of sending it."""

    def __init__(self):
        self.events: list[tuple[RealtimeEvent, Any, Optional[list[UUID]]]] = []
        self.fail = False

    async def publish(self, event, payload, targets=None) -> None:
        if self.fail:
            raise RuntimeError("broadcast unavailable")
        self.events.append((event, payload, list(targets) if targets is not None else None))

    def named(self, event: RealtimeEvent) -> list[tuple[Any, Optional[list[UUID]]]]:
        return [(payload, targets) for e, payload, targets in self.events if e is event]


@dataclass
class Seed:
    """Users and teams every test starts with."""

    team_a: UUID
    team_b: UUID
    admin: User
    hr: User
    lead: User
    alice: User
    bob: User
    carol: User
    outsider: User

    def actor(self, name: str) -> Actor:
        return getattr(self, name).to_actor()


@pytest.fixture
async def engine(tmp_path):
    """Create a fresh test database and wire it into ctms.db.base."""
    database_url = os.getenv(
        "CTMS_TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path}/ctms_test.db",
    )
    _ensure_test_database_url(database_url)
    # Fresh connection per checkout; the WebSocket tests reach the database from another event loop
    engine = create_async_engine(database_url, poolclass=NullPool)

    # Override global engine/session factory for dependency injection.
    original = (db_base.engine, db_base.async_session_factory)
    db_base.engine = engine
    db_base.async_session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    db_base.engine, db_base.async_session_factory = original
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    """Provide a database session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def seed(session_factory) -> Seed:
    async with session_factory() as session:
        teams = TeamRepository(session)
        users = UserRepository(session)
        team_a = await teams.create("Platform")
        team_b = await teams.create("Design")
        seed = Seed(
            team_a=team_a.id,
            team_b=team_b.id,
            admin=await users.create("Ada Admin", "admin@example.com", Role.ADMIN),
            hr=await users.create("Hugo HR", "hr@example.com", Role.HR),
            lead=await users.create("Lena Lead", "lead@example.com", Role.TEAM_LEAD, team_a.id),
            alice=await users.create("Alice", "alice@example.com", Role.MEMBER, team_a.id),
            bob=await users.create("Bob", "bob@example.com", Role.MEMBER, team_a.id),
            carol=await users.create("Carol", "carol@example.com", Role.MEMBER, team_a.id),
            outsider=await users.create("Oscar", "oscar@example.com", Role.MEMBER, team_b.id),
        )
        await session.commit()
    return seed


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
async def side_effects():
    """A started side-effect queue, stopped after the test."""
    queue = SideEffectQueue(workers=2, maxsize=100)
    queue.start()
    yield queue
    await queue.stop(timeout=5.0)


@pytest.fixture
def make_engine(session_factory, publisher, side_effects):
    """Build a CTMSEngine on a session of its own."""

    def factory(session: AsyncSession, **kwargs) -> CTMSEngine:
        return CTMSEngine(session, publisher, side_effects, **kwargs)

    return factory


@pytest.fixture
def create_task(session_factory, publisher, side_effects):
    """Create a task directly through the engine and return its view."""

    async def factory(actor: Actor, **fields):
        fields.setdefault("title", "Write release notes")
        fields.setdefault("due_date", utc_now() + timedelta(days=3))
        async with session_factory() as session:
            engine = CTMSEngine(session, publisher, side_effects)
            view = await engine.create_task(actor, TaskCreate(**fields))
        await side_effects.drain(timeout=5.0)
        return view

    return factory


@pytest.fixture
def load_task(session_factory):
    async def loader(task_id: UUID):
        async with session_factory() as session:
            return await TaskRepository(session).get(task_id)

    return loader


@pytest.fixture
def auth_headers():
    """Bearer headers for a seeded user."""

    def headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return headers


@pytest.fixture
async def client(engine, publisher, side_effects):
    """Async test client with overridden dependencies."""
    from ctms.api.deps import get_publisher, get_side_effects
    from ctms.main import app

    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_side_effects] = lambda: side_effects

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
