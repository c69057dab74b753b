"""
GoalSync - Database Engine

One engine per process, shared by the credential store and the session
registry. Services receive a ``SessionFactory`` rather than the engine:
calling it opens a SQLModel session, and ``run`` executes a blocking unit
of work on a worker thread so the event loop never waits on the database.

PostgreSQL in production; SQLite (file or in-memory) for development and tests.
"""

import asyncio
import contextvars
import functools
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from goalsync.config import settings


T = TypeVar("T")

DEFAULT_DATABASE_URL = "sqlite:///./goalsync.db"


def get_database_url() -> str:
    return settings.DATABASE_URL or DEFAULT_DATABASE_URL


def _is_in_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def get_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build the engine for ``database_url`` (defaults to settings).

    In-memory SQLite is pinned to a single connection, otherwise every new
    connection would see an empty database.
    """
    url = database_url or get_database_url()

    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_size=5, max_overflow=10, pool_pre_ping=True)

    connect_args = {"check_same_thread": False}
    if _is_in_memory(url):
        return create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create the users, user_accounts and user_sessions tables if missing."""
    from goalsync.auth.models import Credential, User, UserSession  # noqa: F401

    SQLModel.metadata.create_all(engine)


class SessionFactory:
    """
    Opens database sessions and runs blocking work off the event loop.

    SQLite allows a single writer, so its work goes through one dedicated
    thread; other backends use the loop's default executor.

    Usage:
        def work():
            with session_factory() as db:
                return db.get(User, user_id)

        user = await session_factory.run(work)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._executor: Optional[ThreadPoolExecutor] = None
        if engine.dialect.name == "sqlite":
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="goalsync-db")

    def __call__(self) -> Session:
        # Rows are handed back to callers after commit, so keep their attributes loaded
        return Session(self.engine, expire_on_commit=False)

    async def run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        return await loop.run_in_executor(self._executor, functools.partial(context.run, fn))

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)


def get_session_factory(engine: Engine) -> SessionFactory:
    return SessionFactory(engine)
