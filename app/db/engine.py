"""Async SQLAlchemy engine and session factory for the ledger.

PgLedger opens one short session per ledger operation (get, find,
increment, commit); nothing holds a session across an HTTP request.
Statements carry a server-side timeout so a stuck lock surfaces as
LedgerUnavailable instead of a request that never returns.  Billing
fails closed on that error, which is the behaviour we want from a
ledger that cannot answer.

No DATABASE_URL → engine and factory are None and app/db/ledger.py
falls back to InMemoryLedger.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import SETTINGS

logger = logging.getLogger(__name__)

APPLICATION_NAME = "vfied-verification"
STATEMENT_TIMEOUT_MS = 5000


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
        connect_args={
            "server_settings": {
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(STATEMENT_TIMEOUT_MS),
            }
        },
    )


if SETTINGS.database_url:
    engine: AsyncEngine | None = build_engine(SETTINGS.database_url, echo=SETTINGS.is_dev)
    async_session_factory: async_sessionmaker[AsyncSession] | None = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
else:
    engine = None
    async_session_factory = None


@asynccontextmanager
async def lifespan_db():
    """Dispose of the ledger's connection pool on shutdown."""
    if engine is None:
        logger.info("No DATABASE_URL configured, ledger is in-memory and lost on restart")
        yield
        return

    logger.info("Ledger database: %s", engine.url.render_as_string(hide_password=True))
    yield
    await engine.dispose()
    logger.info("Ledger connection pool disposed")
