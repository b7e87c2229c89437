"""
LotWatch Database Session Management

The API process shares one pooled engine. Celery tasks run each tenant
pass under its own asyncio.run(), so they get a throwaway engine without
a pool (connections never outlive the loop that opened them).
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from core.config import get_settings

settings = get_settings()


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


def create_task_engine(database_url: str | None = None) -> AsyncEngine:
    """Engine for a single task run; dispose it when the run ends."""
    return create_async_engine(database_url or get_settings().database_url, poolclass=NullPool)


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
)

AsyncSessionLocal = session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
