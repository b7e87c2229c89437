"""
Thresholds Router — stock-health alerts and velocity endpoints.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.dispatcher import NotificationDispatcher
from alerts.thresholds import ThresholdDetector, ThresholdViolation
from api.deps import (
    get_actor_id,
    get_db,
    get_dispatcher,
    get_event_bus,
    get_tenant_id,
    get_velocity_estimator,
)
from core.config import Settings, get_settings
from core.errors import InputValidationError
from db.enums import AlertSeverity, AlertType
from events.bus import EventBus
from inventory.velocity import MAX_LOOKBACK_DAYS, NoVelocityData, VelocityEstimator

router = APIRouter(prefix="/api/v1/thresholds", tags=["thresholds"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AlertResponse(BaseModel):
    alert_id: UUID
    tenant_id: UUID
    sku_id: UUID
    warehouse_id: UUID
    alert_type: str
    severity: str
    current_quantity: int
    threshold_quantity: float | None
    velocity_data: dict[str, Any] | None
    message: str
    recommended_action: str | None
    channels: list[str] | None
    alert_metadata: dict[str, Any] | None
    status: str
    created_at: datetime
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    resolved_by: str | None
    resolved_at: datetime | None

    model_config = {"from_attributes": True}


class VelocityResponse(BaseModel):
    sku_id: UUID
    warehouse_id: UUID
    available: bool
    metrics: dict[str, Any] | None = None
    data_points: int | None = None
    min_samples: int | None = None


class ThresholdCheckResponse(BaseModel):
    violations: list[ThresholdViolation]
    alerts_created: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    sku_id: UUID | None = None,
    warehouse_id: UUID | None = None,
    severity: AlertSeverity | None = None,
    alert_type: AlertType | None = None,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Active alerts, most severe first."""
    detector = ThresholdDetector(db, settings=settings)
    return await detector.list_active_alerts(
        tenant_id, sku_id=sku_id, warehouse_id=warehouse_id, severity=severity, alert_type=alert_type
    )


@router.get("/velocity", response_model=VelocityResponse)
async def get_velocity(
    sku_id: UUID,
    warehouse_id: UUID,
    lookback_days: int = Query(7, ge=1, le=MAX_LOOKBACK_DAYS),
    tenant_id: UUID = Depends(get_tenant_id),
    estimator: VelocityEstimator = Depends(get_velocity_estimator),
):
    result = await estimator.estimate(tenant_id, sku_id, warehouse_id, lookback_days=lookback_days)
    if isinstance(result, NoVelocityData):
        return VelocityResponse(
            sku_id=sku_id,
            warehouse_id=warehouse_id,
            available=False,
            data_points=result.data_points,
            min_samples=result.min_samples,
        )
    return VelocityResponse(
        sku_id=sku_id,
        warehouse_id=warehouse_id,
        available=True,
        metrics=result.model_dump(mode="json"),
        data_points=result.data_points,
    )


@router.post("/check", response_model=ThresholdCheckResponse)
async def run_threshold_check(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    estimator: VelocityEstimator = Depends(get_velocity_estimator),
    bus: EventBus | None = Depends(get_event_bus),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    """Evaluate this tenant's thresholds now."""
    detector = ThresholdDetector(db, estimator=estimator, bus=bus, dispatcher=dispatcher, settings=settings)
    violations = await detector.evaluate_tenant(tenant_id)
    return ThresholdCheckResponse(
        violations=violations,
        alerts_created=sum(1 for v in violations if v.alert_id is not None),
    )


@router.patch("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: str | None = Depends(get_actor_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    if not actor:
        raise InputValidationError("X-Actor-ID header is required to acknowledge an alert")
    return await ThresholdDetector(db, settings=settings).acknowledge_alert(tenant_id, alert_id, actor)


@router.patch("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    actor: str | None = Depends(get_actor_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await ThresholdDetector(db, settings=settings).resolve_alert(tenant_id, alert_id, actor)
