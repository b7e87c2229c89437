"""
LotWatch API Dependencies

Dependency injection for DB sessions, tenant/actor context and the
shared Redis-backed collaborators created in the app lifespan.
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.dispatcher import NotificationDispatcher
from core.config import Settings, get_settings
from core.errors import parse_uuid
from db.session import AsyncSessionLocal
from events.bus import EventBus
from inventory.velocity import VelocityCache, VelocityEstimator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_tenant_id(x_tenant_id: str = Header(...)) -> uuid.UUID:
    """Tenant scope for the request, from the X-Tenant-ID header."""
    return parse_uuid(x_tenant_id, "X-Tenant-ID")


async def get_actor_id(x_actor_id: str | None = Header(None)) -> str | None:
    return x_actor_id


def get_event_bus(request: Request) -> EventBus | None:
    return getattr(request.app.state, "event_bus", None)


def get_dispatcher(request: Request) -> NotificationDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


def get_velocity_cache(request: Request) -> VelocityCache | None:
    return getattr(request.app.state, "velocity_cache", None)


def get_velocity_estimator(
    db: AsyncSession = Depends(get_db),
    cache: VelocityCache | None = Depends(get_velocity_cache),
    settings: Settings = Depends(get_settings),
) -> VelocityEstimator:
    return VelocityEstimator(db, cache=cache, settings=settings)
