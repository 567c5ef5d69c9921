"""SQLite storage engine for sessions, plans and audit events.

File databases run in WAL mode so the event persister can write while a
turn is reading history. An in-memory database lives on one shared
connection and disappears at disconnect().
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tern.config import Settings
from tern.errors import PersistenceUnavailable
from tern.storage.models import Base


def _sqlite_pragmas(wal: bool):
    def on_connect(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return on_connect


class Database:
    def __init__(self, settings: Settings) -> None:
        self.url = settings.db_url
        self.in_memory = self.url.endswith(":memory:")
        self.path = None if self.in_memory else Path(self.url.split("///", 1)[1])
        engine_args = (
            {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            if self.in_memory
            else {}
        )
        self.engine = create_async_engine(self.url, echo=settings.log_level == "debug", **engine_args)
        event.listen(self.engine.sync_engine, "connect", _sqlite_pragmas(wal=not self.in_memory))
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.connected = False

    async def connect(self) -> None:
        """Create the database file and any missing tables."""
        try:
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceUnavailable(f"Cannot open database {self.url}: {e}") from e
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
