"""
Threshold Violation Detector — stock-health alerts per SKU/warehouse.

Runs every 2 hours per tenant (workers.thresholds) or on demand.

For every inventory row with a threshold row or SKU-level min/max:
  1. Velocity estimate when the threshold row is velocity based.
  2. Effective bounds and decision table (alerts.rules).
  3. Dedup against an active alert of the same type created within
     alert_dedup_window_hours, then insert, in one transaction.
  4. After commit: publish threshold.<severity>.<alert_type> and hand the
     notification to the dispatcher. Neither can roll the alert back.

Operator actions (acknowledge / resolve) are guarded UPDATEs on status.
"""

import hashlib
import uuid
from datetime import timedelta

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.dispatcher import NotificationDispatcher, NotificationPayload, channels_for_severity
from alerts.rules import RuleDecision, ThresholdBounds, evaluate_stock, resolve_bounds
from core.clock import utcnow
from core.config import Settings, get_settings
from core.errors import NotFoundError, StateConflictError, TransientStoreError, parse_uuid, translate_store_errors
from core.outcomes import TenantOutcome
from db.enums import SEVERITY_RANK, AlertSeverity, AlertStatus, AlertType
from db.models import Inventory, InventoryThreshold, Sku, ThresholdAlert, Warehouse
from events.bus import EventBus, publish_quietly
from events.models import ThresholdAlertEvent
from inventory.velocity import VelocityCache, VelocityEstimator, VelocityMetrics

logger = structlog.get_logger()


class ThresholdViolation(BaseModel):
    sku_id: uuid.UUID
    sku_code: str
    sku_name: str
    warehouse_id: uuid.UUID
    warehouse_name: str
    current_quantity: int
    min_quantity: int
    max_quantity: int | None
    safety_stock: int
    reorder_point: float
    alert_type: AlertType
    severity: AlertSeverity
    velocity_metrics: VelocityMetrics | None = None
    recommended_action: str
    alert_id: uuid.UUID | None = None


def build_violation(row, bounds: ThresholdBounds, decision: RuleDecision, velocity: VelocityMetrics | None):
    inventory, sku, warehouse = row.Inventory, row.Sku, row.Warehouse
    return ThresholdViolation(
        sku_id=sku.sku_id,
        sku_code=sku.sku_code,
        sku_name=sku.name,
        warehouse_id=warehouse.warehouse_id,
        warehouse_name=warehouse.name,
        current_quantity=inventory.quantity_available,
        min_quantity=bounds.min_quantity,
        max_quantity=bounds.max_quantity,
        safety_stock=bounds.safety_stock,
        reorder_point=bounds.effective_reorder_point,
        alert_type=decision.alert_type,
        severity=decision.severity,
        velocity_metrics=velocity,
        recommended_action=decision.recommended_action,
    )


def format_notification(violation: ThresholdViolation) -> str:
    lines = [
        f"{violation.alert_type.value.replace('_', ' ').upper()}: {violation.sku_name} ({violation.sku_code})",
        "",
        f"Warehouse: {violation.warehouse_name}",
        f"Current Stock: {violation.current_quantity} units",
        f"Threshold: {violation.reorder_point:g} units",
        "",
        violation.recommended_action,
    ]
    velocity = violation.velocity_metrics
    if velocity is not None:
        lines += [
            "",
            "Velocity Analysis:",
            f"- Daily consumption: {velocity.daily_average:.2f} units/day",
            f"- Days of stock: {velocity.days_of_stock:.1f} days",
            f"- Stockout risk: {velocity.stockout_risk_score}%",
            f"- Trend: {velocity.velocity_trend.value}",
        ]
    return "\n".join(lines)


def dedup_lock_key(tenant_id: uuid.UUID, sku_id: uuid.UUID, warehouse_id: uuid.UUID, alert_type: AlertType) -> int:
    digest = hashlib.blake2b(f"{tenant_id}:{sku_id}:{warehouse_id}:{alert_type.value}".encode(), digest_size=8)
    return int.from_bytes(digest.digest(), "big", signed=True)


class ThresholdDetector:
    def __init__(
        self,
        db: AsyncSession,
        estimator: VelocityEstimator | None = None,
        bus: EventBus | None = None,
        dispatcher: NotificationDispatcher | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.estimator = estimator or VelocityEstimator(db, settings=self.settings)
        self.bus = bus
        self.dispatcher = dispatcher

    # ── Evaluation ────────────────────────────────────────────────────

    async def evaluate_tenant(self, tenant_id) -> list[ThresholdViolation]:
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        with translate_store_errors("threshold pairs"):
            rows = await self._monitored_pairs(tenant_id)

        violations = []
        for row in rows:
            threshold = row.InventoryThreshold
            velocity = None
            if threshold is not None and threshold.velocity_based:
                velocity = await self._velocity_for(tenant_id, row.Sku.sku_id, row.Warehouse.warehouse_id)

            bounds = resolve_bounds(
                min_quantity=threshold.min_quantity if threshold else None,
                max_quantity=threshold.max_quantity if threshold else None,
                safety_stock=threshold.safety_stock if threshold else None,
                reorder_point=threshold.reorder_point if threshold else None,
                sku_min_quantity=row.Sku.min_quantity,
                sku_max_quantity=row.Sku.max_quantity,
                velocity=velocity,
                velocity_multiplier=threshold.velocity_multiplier if threshold else None,
                default_multiplier=self.settings.velocity_default_multiplier,
            )
            decision = evaluate_stock(
                row.Inventory.quantity_available,
                bounds,
                velocity,
                escalation_score=self.settings.stockout_risk_escalation_score,
            )
            if decision is None:
                continue

            violation = build_violation(row, bounds, decision, velocity)
            alert = await self._record_alert(tenant_id, violation)
            if alert is not None:
                violation.alert_id = alert.alert_id
                await self._announce(tenant_id, alert, violation)
            violations.append(violation)

        if violations:
            logger.info(
                "thresholds.violations_found",
                tenant_id=str(tenant_id),
                violations=len(violations),
                created=sum(1 for v in violations if v.alert_id is not None),
            )
        return violations

    async def _monitored_pairs(self, tenant_id: uuid.UUID):
        result = await self.db.execute(
            select(Inventory, Sku, Warehouse, InventoryThreshold)
            .join(Sku, and_(Sku.sku_id == Inventory.sku_id, Sku.tenant_id == Inventory.tenant_id))
            .join(
                Warehouse,
                and_(Warehouse.warehouse_id == Inventory.warehouse_id, Warehouse.tenant_id == Inventory.tenant_id),
            )
            .outerjoin(
                InventoryThreshold,
                and_(
                    InventoryThreshold.tenant_id == Inventory.tenant_id,
                    InventoryThreshold.sku_id == Inventory.sku_id,
                    InventoryThreshold.warehouse_id == Inventory.warehouse_id,
                ),
            )
            .where(
                Inventory.tenant_id == tenant_id,
                or_(
                    InventoryThreshold.threshold_id.is_not(None),
                    Sku.min_quantity.is_not(None),
                    Sku.max_quantity.is_not(None),
                ),
            )
            .order_by(Inventory.quantity_available.asc(), Sku.sku_code)
        )
        return result.all()

    async def _velocity_for(self, tenant_id, sku_id, warehouse_id) -> VelocityMetrics | None:
        try:
            result = await self.estimator.estimate(tenant_id, sku_id, warehouse_id)
        except TransientStoreError as exc:
            logger.warning(
                "thresholds.velocity_unavailable",
                tenant_id=str(tenant_id),
                sku_id=str(sku_id),
                warehouse_id=str(warehouse_id),
                error=str(exc),
            )
            return None
        return result if isinstance(result, VelocityMetrics) else None

    # ── Persistence ───────────────────────────────────────────────────

    async def _record_alert(self, tenant_id: uuid.UUID, violation: ThresholdViolation) -> ThresholdAlert | None:
        """Insert the alert unless an active one of the same type is inside the dedup window."""
        window_start = utcnow() - timedelta(hours=self.settings.alert_dedup_window_hours)
        with translate_store_errors("record threshold alert"):
            if self.db.bind.dialect.name == "postgresql":
                key = dedup_lock_key(tenant_id, violation.sku_id, violation.warehouse_id, violation.alert_type)
                await self.db.execute(select(func.pg_advisory_xact_lock(key)))

            existing = await self.db.execute(
                select(ThresholdAlert.alert_id)
                .where(
                    ThresholdAlert.tenant_id == tenant_id,
                    ThresholdAlert.sku_id == violation.sku_id,
                    ThresholdAlert.warehouse_id == violation.warehouse_id,
                    ThresholdAlert.alert_type == violation.alert_type.value,
                    ThresholdAlert.status == AlertStatus.ACTIVE.value,
                    ThresholdAlert.created_at > window_start,
                )
                .limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                await self.db.commit()
                logger.debug(
                    "thresholds.alert_deduplicated",
                    tenant_id=str(tenant_id),
                    sku_id=str(violation.sku_id),
                    alert_type=violation.alert_type.value,
                )
                return None

            velocity = violation.velocity_metrics
            alert = ThresholdAlert(
                tenant_id=tenant_id,
                sku_id=violation.sku_id,
                warehouse_id=violation.warehouse_id,
                alert_type=violation.alert_type.value,
                severity=violation.severity.value,
                current_quantity=violation.current_quantity,
                threshold_quantity=violation.reorder_point,
                velocity_data=velocity.model_dump(mode="json") if velocity else None,
                message=f"{violation.alert_type.value.upper()}: {violation.sku_code} at {violation.warehouse_name}",
                recommended_action=violation.recommended_action,
                channels=[c.value for c in channels_for_severity(violation.severity)],
                alert_metadata={
                    "min_quantity": violation.min_quantity,
                    "max_quantity": violation.max_quantity,
                    "safety_stock": violation.safety_stock,
                },
                status=AlertStatus.ACTIVE.value,
                created_at=utcnow(),
            )
            self.db.add(alert)
            await self.db.commit()

        logger.info(
            "thresholds.alert_created",
            tenant_id=str(tenant_id),
            alert_id=str(alert.alert_id),
            alert_type=violation.alert_type.value,
            severity=violation.severity.value,
            sku_code=violation.sku_code,
        )
        return alert

    async def _announce(self, tenant_id: uuid.UUID, alert: ThresholdAlert, violation: ThresholdViolation) -> None:
        if self.bus is not None:
            await publish_quietly(
                self.bus,
                ThresholdAlertEvent(
                    tenant_id=tenant_id,
                    alert_id=alert.alert_id,
                    alert_type=violation.alert_type,
                    severity=violation.severity,
                    sku_id=violation.sku_id,
                    sku_code=violation.sku_code,
                    sku_name=violation.sku_name,
                    warehouse_id=violation.warehouse_id,
                    warehouse_name=violation.warehouse_name,
                    current_quantity=violation.current_quantity,
                    threshold_quantity=violation.reorder_point,
                    velocity_metrics=violation.velocity_metrics,
                    recommended_action=violation.recommended_action,
                ),
            )
        if self.dispatcher is None:
            return
        payload = NotificationPayload(
            tenant_id=tenant_id,
            title=f"{violation.severity.value.upper()} Alert: {violation.sku_code}",
            message=format_notification(violation),
            severity=violation.severity,
            channels=channels_for_severity(violation.severity),
            metadata={
                "alert_id": str(alert.alert_id),
                "sku_id": str(violation.sku_id),
                "warehouse_id": str(violation.warehouse_id),
                "alert_type": violation.alert_type.value,
            },
        )
        try:
            await self.dispatcher.dispatch(payload)
        except Exception as exc:
            logger.error(
                "thresholds.dispatch_failed",
                tenant_id=str(tenant_id),
                alert_id=str(alert.alert_id),
                error=str(exc),
                exc_info=True,
            )

    # ── Operator actions ──────────────────────────────────────────────

    async def acknowledge_alert(self, tenant_id, alert_id, actor: str) -> ThresholdAlert:
        now = utcnow()
        return await self._transition_alert(
            tenant_id,
            alert_id,
            from_statuses=(AlertStatus.ACTIVE,),
            values={
                "status": AlertStatus.ACKNOWLEDGED.value,
                "acknowledged_by": actor,
                "acknowledged_at": now,
            },
        )

    async def resolve_alert(self, tenant_id, alert_id, actor: str | None = None) -> ThresholdAlert:
        return await self._transition_alert(
            tenant_id,
            alert_id,
            from_statuses=(AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED),
            values={
                "status": AlertStatus.RESOLVED.value,
                "resolved_by": actor,
                "resolved_at": utcnow(),
            },
        )

    async def _transition_alert(self, tenant_id, alert_id, from_statuses, values: dict) -> ThresholdAlert:
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        alert_id = parse_uuid(alert_id, "alert_id")
        with translate_store_errors("alert transition"):
            result = await self.db.execute(
                update(ThresholdAlert)
                .where(
                    ThresholdAlert.tenant_id == tenant_id,
                    ThresholdAlert.alert_id == alert_id,
                    ThresholdAlert.status.in_([s.value for s in from_statuses]),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount == 1
            await self.db.commit()

            current = await self.db.execute(
                select(ThresholdAlert)
                .where(ThresholdAlert.tenant_id == tenant_id, ThresholdAlert.alert_id == alert_id)
                .execution_options(populate_existing=True)
            )
            alert = current.scalar_one_or_none()

        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        if not updated:
            raise StateConflictError(f"Alert {alert_id} is {alert.status} and cannot become {values['status']}")

        logger.info(
            "thresholds.alert_transitioned",
            tenant_id=str(tenant_id),
            alert_id=str(alert_id),
            status=alert.status,
        )
        return alert

    async def list_active_alerts(
        self,
        tenant_id,
        sku_id=None,
        warehouse_id=None,
        severity: AlertSeverity | str | None = None,
        alert_type: AlertType | str | None = None,
    ) -> list[ThresholdAlert]:
        """Active alerts, most severe first, newest first within a severity."""
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        query = select(ThresholdAlert).where(
            ThresholdAlert.tenant_id == tenant_id,
            ThresholdAlert.status == AlertStatus.ACTIVE.value,
        )
        if sku_id is not None:
            query = query.where(ThresholdAlert.sku_id == parse_uuid(sku_id, "sku_id"))
        if warehouse_id is not None:
            query = query.where(ThresholdAlert.warehouse_id == parse_uuid(warehouse_id, "warehouse_id"))
        if severity is not None:
            query = query.where(ThresholdAlert.severity == AlertSeverity(severity).value)
        if alert_type is not None:
            query = query.where(ThresholdAlert.alert_type == AlertType(alert_type).value)

        severity_rank = case(
            {s.value: rank for s, rank in SEVERITY_RANK.items()},
            value=ThresholdAlert.severity,
            else_=0,
        )
        with translate_store_errors("list alerts"):
            result = await self.db.execute(query.order_by(severity_rank.desc(), ThresholdAlert.created_at.desc()))
        return list(result.scalars().all())


async def run_threshold_pass(
    tenant_ids: list,
    session_factory: async_sessionmaker,
    bus: EventBus | None = None,
    dispatcher: NotificationDispatcher | None = None,
    cache: VelocityCache | None = None,
    settings: Settings | None = None,
) -> list[TenantOutcome]:
    """Evaluate tenants one after another; one tenant failing does not stop the rest."""
    settings = settings or get_settings()
    outcomes = []
    for tenant_id in tenant_ids:
        try:
            async with session_factory() as db:
                detector = ThresholdDetector(
                    db,
                    estimator=VelocityEstimator(db, cache=cache, settings=settings),
                    bus=bus,
                    dispatcher=dispatcher,
                    settings=settings,
                )
                violations = await detector.evaluate_tenant(tenant_id)
            outcomes.append(
                TenantOutcome(
                    str(tenant_id),
                    "ok",
                    summary={
                        "violations": len(violations),
                        "alerts_created": sum(1 for v in violations if v.alert_id is not None),
                    },
                )
            )
        except Exception as exc:
            logger.error("thresholds.tenant_failed", tenant_id=str(tenant_id), error=str(exc), exc_info=True)
            outcomes.append(TenantOutcome(str(tenant_id), "failed", error=str(exc)))
    return outcomes
