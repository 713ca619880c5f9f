"""
Async Database Helper for Celery Tasks

Celery workers are synchronous; each task drives the async services through
``asyncio.run``. Every call gets a fresh event loop, so pooled connections
cannot be shared between tasks and the worker engine uses ``NullPool``.
"""

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.platform.config import settings

async_engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    poolclass=NullPool,
)
AsyncSessionLocal = async_sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


@asynccontextmanager
async def get_async_db():
    """
    Get async database session for use in sync Celery tasks.

    Usage in Celery task:
        async def _run():
            async with get_async_db() as db:
                manager = PdfJobManager(db)
                await manager.sweep_stale()

        asyncio.run(_run())
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
