"""
Embedded periodic runner — the in-process alternative to Celery beat.

Enabled with EMBEDDED_SCHEDULER=true. The API lifespan builds the jobs,
starts them on startup and stops them on shutdown; nothing here is
module-level state. Each tick walks the active tenants sequentially and
isolates per-tenant failures (see run_expiry_pass / run_threshold_pass).
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import async_sessionmaker

from alerts.dispatcher import NotificationDispatcher
from alerts.thresholds import run_threshold_pass
from core.config import Settings
from events.bus import EventBus
from inventory.expiry import run_expiry_pass
from inventory.velocity import VelocityCache
from workers.celery_app import cron_to_crontab
from workers.scheduler import active_tenant_ids

logger = structlog.get_logger()


class PeriodicJob:
    """Runs an async callable on a cron schedule inside the current event loop."""

    def __init__(self, name: str, schedule: crontab, run: Callable[[], Awaitable[Any]]):
        self.name = name
        self.schedule = schedule
        self.run = run
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("periodic.started", job=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic.stopped", job=self.name)

    async def run_once(self) -> Any:
        try:
            return await self.run()
        except Exception as exc:
            logger.error("periodic.tick_failed", job=self.name, error=str(exc), exc_info=True)
            return None

    async def _loop(self) -> None:
        while True:
            delay = self.schedule.remaining_estimate(self.schedule.now()).total_seconds()
            await asyncio.sleep(max(delay, 1.0))
            await self.run_once()


def build_embedded_jobs(
    session_factory: async_sessionmaker,
    settings: Settings,
    bus: EventBus | None = None,
    dispatcher: NotificationDispatcher | None = None,
    cache: VelocityCache | None = None,
) -> list[PeriodicJob]:
    async def tenants() -> list[str]:
        async with session_factory() as db:
            return await active_tenant_ids(db, settings.active_tenant_statuses)

    async def expiry_tick():
        outcomes = await run_expiry_pass(
            await tenants(), session_factory, bus=bus, dispatcher=dispatcher, settings=settings
        )
        logger.info(
            "periodic.expiry_pass",
            tenants=len(outcomes),
            failed=sum(1 for o in outcomes if not o.ok),
        )
        return outcomes

    async def threshold_tick():
        outcomes = await run_threshold_pass(
            await tenants(), session_factory, bus=bus, dispatcher=dispatcher, cache=cache, settings=settings
        )
        logger.info(
            "periodic.threshold_pass",
            tenants=len(outcomes),
            failed=sum(1 for o in outcomes if not o.ok),
        )
        return outcomes

    return [
        PeriodicJob("expiry-check", cron_to_crontab(settings.expiry_check_cron), expiry_tick),
        PeriodicJob("threshold-check", cron_to_crontab(settings.threshold_check_cron), threshold_tick),
    ]
