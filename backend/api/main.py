"""
LotWatch API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from alerts.dispatcher import ChannelDispatcher
from core.config import get_settings
from core.errors import InputValidationError, NotFoundError, StateConflictError, TransientStoreError
from db.session import AsyncSessionLocal
from events.bus import RedisEventBus
from inventory.velocity import VelocityCache
from workers.periodic import build_embedded_jobs

settings = get_settings()
logger = structlog.get_logger()

ERROR_STATUS = (
    (InputValidationError, 422, "invalid_input"),
    (NotFoundError, 404, "not_found"),
    (StateConflictError, 409, "state_conflict"),
    (TransientStoreError, 503, "store_unavailable"),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("LotWatch API starting up", version=settings.app_version)
    redis = aioredis.from_url(settings.redis_url)
    app.state.event_bus = RedisEventBus(redis)
    app.state.dispatcher = ChannelDispatcher(redis, settings)
    app.state.velocity_cache = VelocityCache(redis, settings.velocity_cache_ttl_seconds)

    jobs = []
    if settings.embedded_scheduler:
        jobs = build_embedded_jobs(
            AsyncSessionLocal,
            settings,
            bus=app.state.event_bus,
            dispatcher=app.state.dispatcher,
            cache=app.state.velocity_cache,
        )
        for job in jobs:
            job.start()
    try:
        yield
    finally:
        for job in jobs:
            await job.stop()
        await redis.aclose()
        logger.info("LotWatch API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Batch lifecycle, FEFO allocation and stock threshold monitoring",
    lifespan=lifespan,
)


def _register_error_handler(exc_class, status_code: int, code: str) -> None:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("api.store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content={"detail": {"code": code, "detail": str(exc)}})

    app.add_exception_handler(exc_class, handler)


for _exc_class, _status_code, _code in ERROR_STATUS:
    _register_error_handler(_exc_class, _status_code, _code)


# Import and register routers
from api.v1.routers import batches, thresholds  # noqa: E402

app.include_router(batches.router)
app.include_router(thresholds.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
