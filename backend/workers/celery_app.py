"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()


def cron_to_crontab(expression: str) -> crontab:
    """Build a crontab from a five-field cron expression."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app = Celery(
    "lotwatch",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler", "workers.expiry", "workers.thresholds"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.expiry.*": {"queue": "monitoring"},
        "workers.thresholds.*": {"queue": "monitoring"},
        "workers.scheduler.*": {"queue": "monitoring"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Both jobs fan out across active tenants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        "expiry-check": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": cron_to_crontab(settings.expiry_check_cron),
            "kwargs": {"task_name": "workers.expiry.check_batch_expiry"},
            "options": {"queue": "monitoring"},
        },
        "threshold-check": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": cron_to_crontab(settings.threshold_check_cron),
            "kwargs": {"task_name": "workers.thresholds.check_thresholds"},
            "options": {"queue": "monitoring"},
        },
    },
)
