from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

# Base class for models
Base = declarative_base()


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Build the async engine. Owned by the caller, who must dispose it."""
    url = database_url or settings.DATABASE_URL
    options = {
        "echo": settings.DATABASE_ECHO if echo is None else echo,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        options.update(pool_recycle=3600, pool_size=20, max_overflow=30)
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Dependency to get database session
async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
