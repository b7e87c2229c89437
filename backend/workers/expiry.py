"""
Expiry Worker — scheduled batch expiry check for one tenant.

Schedule: every 6 hours (settings.expiry_check_cron), fanned out per tenant.
"""

import asyncio

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.expiry.check_batch_expiry",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def check_batch_expiry(self, tenant_id: str):
    """Sweep expired batches, classify expiring ones and notify."""
    run_id = self.request.id or "manual"
    logger.info("expiry.started", tenant_id=tenant_id, run_id=run_id)

    async def _check():
        import redis.asyncio as aioredis

        from alerts.dispatcher import ChannelDispatcher
        from core.config import get_settings
        from db.session import create_task_engine, session_factory
        from events.bus import RedisEventBus
        from inventory.expiry import ExpiryMonitor

        settings = get_settings()
        engine = create_task_engine(settings.database_url)
        redis = aioredis.from_url(settings.redis_url)
        try:
            async_session = session_factory(engine)
            async with async_session() as db:
                monitor = ExpiryMonitor(
                    db,
                    bus=RedisEventBus(redis),
                    dispatcher=ChannelDispatcher(redis, settings),
                    settings=settings,
                )
                summary = await monitor.check_tenant(tenant_id)
            return {"status": "success", "run_id": run_id, **summary.model_dump(mode="json")}
        finally:
            await redis.aclose()
            await engine.dispose()

    try:
        result = asyncio.run(_check())
        logger.info("expiry.completed", **result)
        return result
    except Exception as exc:
        logger.error("expiry.failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
