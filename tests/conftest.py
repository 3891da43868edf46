"""
Shared fixtures.

Each test gets its own in-memory SQLite database (aiosqlite, single shared
connection) and a fresh process-local cache standing in for Redis. Environment
variables are set before any taskboard import so ``get_settings()`` builds a
test configuration: debug signing key, cheap bcrypt, no Redis.
"""

import os

os.environ["DEBUG"] = "true"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_DSN"] = ""
os.environ["CREATE_TABLES_ON_STARTUP"] = "true"

import pytest
import pytest_asyncio

from taskboard.auth.policy import Actor
from taskboard.cache.coordinator import CacheCoordinator
from taskboard.cache.layer import LocalCache
from taskboard.core.config import get_settings
from taskboard.core.security import hash_password
from taskboard.database import build_engine, build_session_factory, create_db_and_tables
from taskboard.models import Role, Task, User
from taskboard.services.task_service import TaskService
from taskboard.services.user_service import UserService


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with build_session_factory(engine)() as session:
        yield session


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def cache():
    return LocalCache(maxsize=1024)


@pytest.fixture
def coordinator(cache, settings):
    return CacheCoordinator(cache, settings)


@pytest.fixture
def user_service(db, coordinator, settings):
    return UserService(db, coordinator, settings)


@pytest.fixture
def task_service(db, coordinator, settings):
    return TaskService(db, coordinator, settings)


async def _add_user(db, name: str, role: Role) -> User:
    user = User(
        name=name,
        email=f"{name.lower()}@example.com",
        hashed_password=hash_password("secret123"),
        role=role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin(db) -> User:
    return await _add_user(db, "Admin", Role.ADMIN)


@pytest_asyncio.fixture
async def alice(db) -> User:
    return await _add_user(db, "Alice", Role.USER)


@pytest_asyncio.fixture
async def bob(db) -> User:
    return await _add_user(db, "Bob", Role.USER)


@pytest.fixture
def actor():
    """Build the Actor a verified token for ``user`` would yield."""

    def _actor(user: User) -> Actor:
        return Actor(id=user.id, role=user.role)

    return _actor


@pytest.fixture
def add_task(db):
    """Insert a task row directly, bypassing the service."""

    async def _add_task(title: str, creator: User, assignee: User | None = None) -> Task:
        task = Task(
            title=title,
            created_by_id=creator.id,
            assigned_to_id=assignee.id if assignee else None,
        )
        db.add(task)
        await db.commit()
        await db.refresh(task)
        return task

    return _add_task
