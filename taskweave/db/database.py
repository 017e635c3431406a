"""Async SQLAlchemy engine, session factory, and store selection."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from taskweave.db.memory import InMemoryDocumentStore
from taskweave.db.sql import SqlDocumentStore

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


def make_session_factory(database_url: str, echo: bool = False):
    engine = create_async_engine(database_url, echo=echo)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine) -> None:
    """Create all tables. Called at startup."""
    from taskweave.db.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def create_store(database_url: str, echo: bool = False):
    """Return a ready DocumentStore for *database_url* (``memory://`` → in-process)."""
    if database_url.startswith(MEMORY_URL):
        logger.info("[DB] Using in-memory document store")
        return InMemoryDocumentStore()
    engine, session_factory = make_session_factory(database_url, echo=echo)
    await init_db(engine)
    logger.info("[DB] Using SQL document store at %s", engine.url.render_as_string(hide_password=True))
    return SqlDocumentStore(engine, session_factory)
