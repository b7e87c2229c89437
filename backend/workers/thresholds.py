"""
Threshold Worker — scheduled stock-health evaluation for one tenant.

Schedule: every 2 hours (settings.threshold_check_cron), fanned out per tenant.
"""

import asyncio

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.thresholds.check_thresholds",
    bind=True,
    max_retries=3,
    default_retry_delay=120,
    acks_late=True,
)
def check_thresholds(self, tenant_id: str):
    """Evaluate every monitored SKU/warehouse pair and raise deduplicated alerts."""
    run_id = self.request.id or "manual"
    logger.info("thresholds.started", tenant_id=tenant_id, run_id=run_id)

    async def _check():
        import redis.asyncio as aioredis

        from alerts.dispatcher import ChannelDispatcher
        from alerts.thresholds import ThresholdDetector
        from core.config import get_settings
        from db.session import create_task_engine, session_factory
        from events.bus import RedisEventBus
        from inventory.velocity import VelocityCache, VelocityEstimator

        settings = get_settings()
        engine = create_task_engine(settings.database_url)
        redis = aioredis.from_url(settings.redis_url)
        try:
            async_session = session_factory(engine)
            async with async_session() as db:
                detector = ThresholdDetector(
                    db,
                    estimator=VelocityEstimator(
                        db,
                        cache=VelocityCache(redis, settings.velocity_cache_ttl_seconds),
                        settings=settings,
                    ),
                    bus=RedisEventBus(redis),
                    dispatcher=ChannelDispatcher(redis, settings),
                    settings=settings,
                )
                violations = await detector.evaluate_tenant(tenant_id)
            return {
                "status": "success",
                "run_id": run_id,
                "tenant_id": tenant_id,
                "violations": len(violations),
                "alerts_created": sum(1 for v in violations if v.alert_id is not None),
            }
        finally:
            await redis.aclose()
            await engine.dispose()

    try:
        result = asyncio.run(_check())
        logger.info("thresholds.completed", **result)
        return result
    except Exception as exc:
        logger.error("thresholds.failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
