"""Catalog database: engine, session factory and schema probe."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, FrozenSet

from fastapi import Request
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()

log = logging.getLogger(__name__)


def _probe_columns(conn) -> Dict[str, FrozenSet[str]]:
    """Return table name -> live column names (schema may be older than the models)."""
    inspector = inspect(conn)
    return {
        table: frozenset(col["name"] for col in inspector.get_columns(table))
        for table in inspector.get_table_names()
    }


class Database:
    """Engine plus session factory, owned by the application lifespan."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        connect_args = {}
        if url.startswith("sqlite"):
            # Concurrent item pipelines write from separate connections
            connect_args["timeout"] = 30
        self.engine = create_async_engine(url, echo=echo, connect_args=connect_args)
        self._sessionmaker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self.table_columns: Dict[str, FrozenSet[str]] = {}

    async def init(self) -> None:
        """Create tables if they do not exist, then record the live column set per table."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            self.table_columns = await conn.run_sync(_probe_columns)
        log.info("Database ready url=%s tables=%s", self.engine.url.render_as_string(), sorted(self.table_columns))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an async session (context manager); commit on success, rollback on error."""
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async session from the app's database."""
    async with request.app.state.services.db.session() as session:
        yield session
