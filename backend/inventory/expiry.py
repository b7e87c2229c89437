"""
Expiry Lifecycle Monitor — classifies batches approaching expiry and
drives the automatic status transitions.

Runs every 6 hours per tenant (workers.expiry) or on demand.

Per tenant:
  1. Sweep: batches past their expiry date → expired (one event each).
  2. Classify active/near_expiry batches expiring within the lookahead:
       days ≤ critical_days (7)   → emergency
       days ≤ warning_days (30)   → critical
       otherwise                  → warning
  3. One batch.expiry.<level> event and one notification per non-empty level.
  4. Emergency + critical batches still active → near_expiry.

Only the sweep and step 4 change batch status, both through guarded
UPDATEs, so re-running a pass without data changes transitions nothing.
"""

import uuid
from datetime import date, timedelta

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.dispatcher import NotificationDispatcher, NotificationPayload, channels_for_severity
from core.clock import utc_today, utcnow
from core.config import Settings, get_settings
from core.errors import parse_uuid, translate_store_errors
from core.outcomes import TenantOutcome
from db.enums import AlertSeverity, BatchStatus, ExpiryLevel
from db.models import Batch, Sku
from events.bus import EventBus, publish_quietly
from events.models import BatchExpiredEvent, BatchExpiryLevelEvent, ExpiringBatch

logger = structlog.get_logger()

MONITORED_STATUSES = (BatchStatus.ACTIVE.value, BatchStatus.NEAR_EXPIRY.value)
TERMINAL_STATUSES = (BatchStatus.EXPIRED.value, BatchStatus.DISPOSED.value)
LEVEL_ORDER = (ExpiryLevel.EMERGENCY, ExpiryLevel.CRITICAL, ExpiryLevel.WARNING)


def classify_expiry(days_until_expiry: int, warning_days: int = 30, critical_days: int = 7) -> ExpiryLevel:
    if days_until_expiry <= critical_days:
        return ExpiryLevel.EMERGENCY
    if days_until_expiry <= warning_days:
        return ExpiryLevel.CRITICAL
    return ExpiryLevel.WARNING


class ExpiryCheckSummary(BaseModel):
    tenant_id: uuid.UUID
    emergency: int = 0
    critical: int = 0
    warning: int = 0
    transitioned_to_near_expiry: int = 0
    expired: int = 0


class ExpirySummary(BaseModel):
    tenant_id: uuid.UUID
    total_expiring: int
    emergency_count: int
    critical_count: int
    warning_count: int
    total_value_at_risk: float


def _notification_for_level(tenant_id: uuid.UUID, level: ExpiryLevel, batches: list[ExpiringBatch]) -> NotificationPayload:
    severity = AlertSeverity(level.value)
    noun = "batch" if len(batches) == 1 else "batches"
    lines = [
        f"Batch {b.batch_number} (SKU {b.sku_code}) expires in {b.days_until_expiry} days "
        f"on {b.expiry_date.isoformat()}: {b.quantity_available} units available"
        for b in batches
    ]
    return NotificationPayload(
        tenant_id=tenant_id,
        title=f"{len(batches)} {noun} at {level.value} expiry level",
        message="\n".join(lines),
        severity=severity,
        channels=channels_for_severity(severity),
        metadata={
            "level": level.value,
            "batch_count": len(batches),
            "batch_ids": [str(b.batch_id) for b in batches],
        },
    )


class ExpiryMonitor:
    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus | None = None,
        dispatcher: NotificationDispatcher | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.bus = bus
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    async def find_expiring_batches(self, tenant_id, today: date | None = None) -> list[ExpiringBatch]:
        """Stocked active/near_expiry batches expiring between today and the lookahead horizon."""
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        today = today or utc_today()
        horizon = today + timedelta(days=self.settings.expiry_lookahead_days)

        with translate_store_errors("find expiring batches"):
            result = await self.db.execute(
                select(Batch, Sku.sku_code)
                .join(Sku, and_(Sku.sku_id == Batch.sku_id, Sku.tenant_id == Batch.tenant_id))
                .where(
                    Batch.tenant_id == tenant_id,
                    Batch.expiry_date.is_not(None),
                    Batch.expiry_date >= today,
                    Batch.expiry_date <= horizon,
                    Batch.quantity_available > 0,
                    Batch.status.in_(MONITORED_STATUSES),
                )
                .order_by(Batch.expiry_date.asc(), Batch.batch_number)
            )
            rows = result.all()

        expiring = []
        for batch, sku_code in rows:
            days = (batch.expiry_date - today).days
            expiring.append(
                ExpiringBatch(
                    batch_id=batch.batch_id,
                    batch_number=batch.batch_number,
                    sku_id=batch.sku_id,
                    sku_code=sku_code,
                    warehouse_id=batch.warehouse_id,
                    expiry_date=batch.expiry_date,
                    days_until_expiry=days,
                    quantity_available=batch.quantity_available,
                    status=batch.status,
                    level=classify_expiry(
                        days,
                        warning_days=self.settings.expiry_warning_days,
                        critical_days=self.settings.expiry_critical_days,
                    ),
                )
            )
        return expiring

    async def sweep_expired(self, tenant_id, today: date | None = None) -> int:
        """Move every batch past its expiry date to expired. Returns the number transitioned."""
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        today = today or utc_today()

        with translate_store_errors("expiry sweep"):
            result = await self.db.execute(
                select(Batch).where(
                    Batch.tenant_id == tenant_id,
                    Batch.expiry_date.is_not(None),
                    Batch.expiry_date < today,
                    Batch.status.notin_(TERMINAL_STATUSES),
                )
            )
            candidates = list(result.scalars().all())

            expired: list[Batch] = []
            for batch in candidates:
                updated = await self.db.execute(
                    update(Batch)
                    .where(
                        Batch.tenant_id == tenant_id,
                        Batch.batch_id == batch.batch_id,
                        Batch.status == batch.status,
                    )
                    .values(status=BatchStatus.EXPIRED.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount == 1:
                    expired.append(batch)
            await self.db.commit()

        if expired:
            logger.info("expiry.batches_expired", tenant_id=str(tenant_id), count=len(expired))
        if self.bus is not None:
            for batch in expired:
                await publish_quietly(
                    self.bus,
                    BatchExpiredEvent(
                        tenant_id=tenant_id,
                        batch_id=batch.batch_id,
                        batch_number=batch.batch_number,
                        sku_id=batch.sku_id,
                        warehouse_id=batch.warehouse_id,
                        expiry_date=batch.expiry_date,
                    ),
                )
        return len(expired)

    async def check_tenant(self, tenant_id, today: date | None = None) -> ExpiryCheckSummary:
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        today = today or utc_today()

        expired_count = await self.sweep_expired(tenant_id, today)
        expiring = await self.find_expiring_batches(tenant_id, today)

        by_level: dict[ExpiryLevel, list[ExpiringBatch]] = {level: [] for level in LEVEL_ORDER}
        for batch in expiring:
            by_level[batch.level].append(batch)

        for level in LEVEL_ORDER:
            batches = by_level[level]
            if not batches:
                continue
            if self.bus is not None:
                await publish_quietly(
                    self.bus,
                    BatchExpiryLevelEvent(tenant_id=tenant_id, level=level, batch_count=len(batches), batches=batches),
                )
            if self.dispatcher is not None:
                try:
                    await self.dispatcher.dispatch(_notification_for_level(tenant_id, level, batches))
                except Exception as exc:
                    logger.error(
                        "expiry.dispatch_failed",
                        tenant_id=str(tenant_id),
                        level=level.value,
                        batch_count=len(batches),
                        error=str(exc),
                        exc_info=True,
                    )

        escalate = [b.batch_id for b in by_level[ExpiryLevel.EMERGENCY] + by_level[ExpiryLevel.CRITICAL]]
        transitioned = await self._mark_near_expiry(tenant_id, escalate)

        summary = ExpiryCheckSummary(
            tenant_id=tenant_id,
            emergency=len(by_level[ExpiryLevel.EMERGENCY]),
            critical=len(by_level[ExpiryLevel.CRITICAL]),
            warning=len(by_level[ExpiryLevel.WARNING]),
            transitioned_to_near_expiry=transitioned,
            expired=expired_count,
        )
        logger.info("expiry.tenant_checked", **summary.model_dump(mode="json"))
        return summary

    async def _mark_near_expiry(self, tenant_id: uuid.UUID, batch_ids: list[uuid.UUID]) -> int:
        if not batch_ids:
            return 0
        with translate_store_errors("near-expiry transition"):
            result = await self.db.execute(
                update(Batch)
                .where(
                    Batch.tenant_id == tenant_id,
                    Batch.batch_id.in_(batch_ids),
                    Batch.status == BatchStatus.ACTIVE.value,
                )
                .values(status=BatchStatus.NEAR_EXPIRY.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        return result.rowcount

    async def expiry_summary(self, tenant_id, today: date | None = None) -> ExpirySummary:
        """Counts per level and stock value at risk across expiring batches."""
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        expiring = await self.find_expiring_batches(tenant_id, today)

        value_at_risk = 0.0
        if expiring:
            sku_ids = {b.sku_id for b in expiring}
            with translate_store_errors("expiry summary"):
                result = await self.db.execute(
                    select(Sku.sku_id, func.coalesce(Sku.unit_cost, 0.0)).where(
                        Sku.tenant_id == tenant_id, Sku.sku_id.in_(sku_ids)
                    )
                )
                unit_costs = {sku_id: float(cost) for sku_id, cost in result.all()}
            value_at_risk = sum(b.quantity_available * unit_costs.get(b.sku_id, 0.0) for b in expiring)

        return ExpirySummary(
            tenant_id=tenant_id,
            total_expiring=len(expiring),
            emergency_count=sum(1 for b in expiring if b.level == ExpiryLevel.EMERGENCY),
            critical_count=sum(1 for b in expiring if b.level == ExpiryLevel.CRITICAL),
            warning_count=sum(1 for b in expiring if b.level == ExpiryLevel.WARNING),
            total_value_at_risk=round(value_at_risk, 2),
        )


async def run_expiry_pass(
    tenant_ids: list,
    session_factory: async_sessionmaker,
    bus: EventBus | None = None,
    dispatcher: NotificationDispatcher | None = None,
    settings: Settings | None = None,
    today: date | None = None,
) -> list[TenantOutcome]:
    """
    Check tenants one after another, each in its own session.

    A failing tenant is logged and reported; the remaining tenants still run.
    """
    outcomes = []
    for tenant_id in tenant_ids:
        try:
            async with session_factory() as db:
                monitor = ExpiryMonitor(db, bus=bus, dispatcher=dispatcher, settings=settings)
                summary = await monitor.check_tenant(tenant_id, today)
            outcomes.append(TenantOutcome(str(tenant_id), "ok", summary=summary.model_dump(mode="json")))
        except Exception as exc:
            logger.error("expiry.tenant_failed", tenant_id=str(tenant_id), error=str(exc), exc_info=True)
            outcomes.append(TenantOutcome(str(tenant_id), "failed", error=str(exc)))
    return outcomes
