"""
Async database access for the processing_jobs table.

Two entry points share one engine:
  get_db()        FastAPI dependency; one transaction per request
  get_admin_db()  async context manager for Celery tasks and beat sweeps

Both commit when the block exits cleanly and roll back otherwise. Status
changes are conditional UPDATEs (app.services.async_jobs.transition_job),
never read-modify-write through the identity map.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)


def _build_engine() -> AsyncEngine:
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=settings.db_echo_sql,
    )


engine: AsyncEngine = _build_engine()

# Job rows are returned to callers after commit; keep their attributes loaded
SessionFactory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionFactory() as session, session.begin():
        yield session


@asynccontextmanager
async def get_admin_db() -> AsyncGenerator[AsyncSession, None]:
    """Worker-side session: `async with get_admin_db() as db: ...`"""
    async with SessionFactory() as session, session.begin():
        yield session


async def check_db_health() -> dict:
    """SELECT 1 round trip for the readiness probe and startup log."""
    started = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database ping failed | error=%s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}
