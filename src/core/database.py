"""
Database Handle

Async SQLAlchemy engine + session factory for SQLModel tables.

A ``Database`` is created by a composition root (the API lifespan or the
worker process runtime) and passed to the components that need it. It is
never a module-level singleton, so every process controls when its
connections are opened and disposed.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.farms.models import Farm  # noqa: F401
from src.modules.coordinates.models import Coordinate  # noqa: F401
from src.modules.imagery.models import Image  # noqa: F401


class Database:
    """Owns one async engine and hands out sessions."""

    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        self.url = url

        # In-memory sqlite only exists for a single connection
        if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})

        self.engine = create_async_engine(url, echo=echo, future=True, **engine_kwargs)
        self.session_maker = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_all(self):
        """Create all tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_maker() as session:
            yield session

    async def ping(self) -> bool:
        """Readiness probe: run a trivial query."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self):
        await self.engine.dispose()
