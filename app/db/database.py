"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def task_session_factory():
    """
    Session factory bound to a fresh engine for the current event loop.

    Celery tasks run every coroutine on a new loop; reusing the module-level
    engine there fails with "attached to a different loop". The reminder
    batch needs one session per concurrent send, so this yields the
    sessionmaker rather than a single session.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=settings.MAX_CONCURRENT_REMINDER_SENDS,
        max_overflow=5
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()


@asynccontextmanager
async def get_task_session():
    """Single fresh session for a Celery task"""
    async with task_session_factory() as session_maker:
        async with session_maker() as session:
            yield session
