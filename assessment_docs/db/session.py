"""
Database session management.

Flow:
  1. A FastAPI route depends on get_db(); it opens a session inside a
     transaction and yields it to the service layer.
  2. After the route completes the transaction commits; if it raises, the
     transaction rolls back and the connection returns to the pool.

Background jobs (Celery tasks, the Lambda-style event entry point) span
tenants and open one short session per store call through
SqlDocumentRecordStore.per_call(), bound to AsyncSessionLocal. Tenant
scoping on the request path is enforced by the services, which compare
every record's company_id with the caller's.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,          # detect stale connections before use
    pool_recycle=3600,           # recycle connections every hour
    echo=settings.db_echo_sql,
)

# expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields a transactional session.

    Usage in a route:
        @router.get("/documents")
        async def list_docs(db: AsyncSession = Depends(get_db)): ...
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session
            # Transaction commits automatically on context exit (begin() block)


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /health endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
