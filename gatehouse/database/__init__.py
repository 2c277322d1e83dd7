"""
Relational store handle.

A single ``Database`` is created per application and handed to each component,
so tests can run every service against an isolated in-memory store.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enable_sqlite_savepoints(engine):
    """
    The sqlite driver manages BEGIN on its own and breaks SAVEPOINT; take over
    transaction control so nested transactions behave.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Async engine plus session factory."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs = {"echo": echo}
        # In-memory stores live on one shared connection; sessions on it take turns.
        self._lock = None
        if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
            self._lock = asyncio.Lock()
        self.engine = create_async_engine(url, **kwargs)
        if url.startswith("sqlite"):
            _enable_sqlite_savepoints(self.engine)
        self.sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session. Sessions must not be nested: on an in-memory store the
        inner one would wait for the outer one forever.
        """
        async with self._lock or nullcontext():
            async with self.sessionmaker() as session:
                try:
                    yield session
                except Exception:
                    await session.rollback()
                    raise

    async def create_all(self):
        database = self.engine.url.database
        if self.engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

        # Make sure every model is registered on the metadata.
        import gatehouse.database.orms  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


def get_db(request: Request) -> Database:
    """FastAPI dependency returning the application's store handle."""
    return request.app.state.db
