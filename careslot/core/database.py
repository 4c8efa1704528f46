"""Database engine, session factory and transaction scope."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from careslot.config import Settings, get_settings
from careslot.core.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Async engine plus the transaction scope every unit of work runs in.

    SQLite admits a single writer, so on SQLite each transaction also takes a
    process-wide lock. On PostgreSQL transactions run concurrently and rely
    on row versioning alone.
    """

    def __init__(self, url: str, echo: bool = False, serialize: Optional[bool] = None):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        engine_kwargs: dict = {"echo": echo}
        if self.is_sqlite:
            _ensure_sqlite_directory(url)
        else:
            engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        if serialize is None:
            serialize = self.is_sqlite
        self._lock: Optional[asyncio.Lock] = asyncio.Lock() if serialize else None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.database_url, echo=settings.database_echo)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside BEGIN; commit on success, roll back on any error."""
        async with self._serialized():
            async with self.session_factory() as session:
                async with session.begin():
                    yield session

    @asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        if self._lock is None:
            yield
            return
        async with self._lock:
            yield

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def _ensure_sqlite_directory(url: str) -> None:
    database = make_url(url).database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


async def init_db(database: Database) -> None:
    """Create all tables (development; production uses migrations)."""
    await database.create_all()
    logger.info("Initialized schema at %s", make_url(database.url).render_as_string(hide_password=True))
