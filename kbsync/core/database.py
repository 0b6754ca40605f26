"""
Async SQLAlchemy engine and session management. One pool shared by
request handlers, webhook calls and the reconciliation sweeper.

PostgreSQL (asyncpg) in deployments, SQLite (aiosqlite) for local runs.
"""

import logging
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for every kbsync table."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options(url: str) -> dict:
    settings = get_settings()
    options: dict = {"echo": settings.debug}
    if url.startswith("sqlite"):
        # No pool sizing for SQLite; wait on the file lock instead of failing
        options["connect_args"] = {"timeout": settings.sqlite_busy_timeout}
    else:
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
        options["pool_pre_ping"] = True
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = get_settings().database_url
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        _engine = create_async_engine(url, **_engine_options(url))
        logger.info("Database engine created (%s)", make_url(url).get_backend_name())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Sessions keep loaded rows usable after commit: the orchestrator and the
    transitioner read document fields after committing a transition.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency. One session per request, rolled back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the knowledge_documents table and its indexes. Called on startup."""
    from ..models import document  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", ", ".join(sorted(Base.metadata.tables)))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed")
