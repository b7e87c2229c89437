"""
Velocity Estimator — outbound consumption rate per SKU/warehouse.

Feeds the threshold detector's dynamic reorder point and the
velocity_anomaly rule. Runs on demand and on every threshold pass.

Algorithm:
  1. Sum |quantity_change| of outbound movements per calendar day over the
     lookback window. Days with no outbound volume are not samples.
  2. Fewer than min_samples days → NoVelocityData (not an error).
  3. daily = mean of the day totals; weekly = 7×, monthly = 30×.
  4. days_of_stock = available / daily (999999 when daily is 0).
  5. Trend = least-squares slope of day totals against day offset,
     divided by the daily mean; inside ±dead_zone → stable.
  6. Stockout risk = band(days_of_stock) + trend adjustment, clamped 0–100.

Results are cached in Redis for velocity_cache_ttl_seconds; a cache outage
only costs a recompute.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

import numpy as np
import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utc_today, utcnow
from core.config import Settings, get_settings
from core.errors import InputValidationError, translate_store_errors
from db.enums import OUTBOUND_MOVEMENT_TYPES, VelocityTrend
from db.models import Inventory, InventoryMovement

logger = structlog.get_logger()

MAX_LOOKBACK_DAYS = 90
DAYS_OF_STOCK_SENTINEL = 999999.0

# days_of_stock strictly below ceiling → base stockout risk
STOCKOUT_RISK_BANDS = (
    (3, 90),
    (7, 60),
    (14, 30),
    (30, 10),
)

TREND_RISK_ADJUSTMENT = {
    VelocityTrend.INCREASING: 15,
    VelocityTrend.STABLE: 0,
    VelocityTrend.DECREASING: -10,
}


class VelocityMetrics(BaseModel):
    """Consumption rate snapshot for one SKU/warehouse pair."""

    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    daily_average: float
    weekly_average: float
    monthly_average: float
    velocity_trend: VelocityTrend
    days_of_stock: float
    stockout_risk_score: int
    data_points: int
    lookback_days: int
    last_calculated: datetime


@dataclass(frozen=True)
class NoVelocityData:
    """Too few outbound days in the window to estimate a rate."""

    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    data_points: int
    min_samples: int
    reason: str = "insufficient_samples"


# ──────────────────────────────────────────────────────────────────────────
# Pure calculations
# ──────────────────────────────────────────────────────────────────────────


def classify_trend(daily_totals: list[tuple[date, float]], dead_zone: float = 0.1) -> VelocityTrend:
    """Classify the direction of consumption from per-day totals."""
    if len(daily_totals) < 2:
        return VelocityTrend.STABLE

    first_day = daily_totals[0][0]
    x = np.array([(day - first_day).days for day, _ in daily_totals], dtype=float)
    y = np.array([total for _, total in daily_totals], dtype=float)
    mean = float(y.mean())
    if mean <= 0 or np.ptp(x) == 0:
        return VelocityTrend.STABLE

    slope = float(np.polyfit(x, y, 1)[0])
    relative = slope / mean
    if relative > dead_zone:
        return VelocityTrend.INCREASING
    if relative < -dead_zone:
        return VelocityTrend.DECREASING
    return VelocityTrend.STABLE


def days_of_stock(available: int, daily_average: float) -> float:
    if daily_average <= 0:
        return DAYS_OF_STOCK_SENTINEL
    return available / daily_average


def stockout_risk_score(days: float, trend: VelocityTrend) -> int:
    """Map days of stock and trend to a 0–100 risk score."""
    base = 0
    for ceiling, score in STOCKOUT_RISK_BANDS:
        if days < ceiling:
            base = score
            break
    return max(0, min(100, base + TREND_RISK_ADJUSTMENT[trend]))


def build_velocity_metrics(
    sku_id: uuid.UUID,
    warehouse_id: uuid.UUID,
    daily_totals: list[tuple[date, float]],
    available: int,
    lookback_days: int,
    min_samples: int,
    dead_zone: float,
) -> VelocityMetrics | NoVelocityData:
    samples = sorted((day, total) for day, total in daily_totals if total > 0)
    if len(samples) < min_samples:
        return NoVelocityData(
            sku_id=sku_id,
            warehouse_id=warehouse_id,
            data_points=len(samples),
            min_samples=min_samples,
        )

    daily = sum(total for _, total in samples) / len(samples)
    trend = classify_trend(samples, dead_zone)
    stock_days = days_of_stock(available, daily)

    return VelocityMetrics(
        sku_id=sku_id,
        warehouse_id=warehouse_id,
        daily_average=round(daily, 4),
        weekly_average=round(daily * 7, 4),
        monthly_average=round(daily * 30, 4),
        velocity_trend=trend,
        days_of_stock=round(stock_days, 2),
        stockout_risk_score=stockout_risk_score(stock_days, trend),
        data_points=len(samples),
        lookback_days=lookback_days,
        last_calculated=utcnow(),
    )


# ──────────────────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────────────────


class VelocityCache:
    """Redis TTL cache for VelocityMetrics. Failures degrade to a miss."""

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(tenant_id: uuid.UUID, sku_id: uuid.UUID, warehouse_id: uuid.UUID, lookback_days: int) -> str:
        return f"velocity:{tenant_id}:{sku_id}:{warehouse_id}:{lookback_days}"

    async def get(
        self, tenant_id: uuid.UUID, sku_id: uuid.UUID, warehouse_id: uuid.UUID, lookback_days: int
    ) -> VelocityMetrics | None:
        key = self.key(tenant_id, sku_id, warehouse_id, lookback_days)
        try:
            raw = await self.redis.get(key)
        except RedisError as exc:
            logger.warning("velocity.cache_read_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return VelocityMetrics.model_validate_json(raw)
        except ValidationError:
            logger.warning("velocity.cache_entry_invalid", key=key)
            return None

    async def set(self, tenant_id: uuid.UUID, metrics: VelocityMetrics) -> None:
        key = self.key(tenant_id, metrics.sku_id, metrics.warehouse_id, metrics.lookback_days)
        try:
            await self.redis.setex(key, self.ttl_seconds, metrics.model_dump_json())
        except RedisError as exc:
            logger.warning("velocity.cache_write_failed", key=key, error=str(exc))


# ──────────────────────────────────────────────────────────────────────────
# Estimator
# ──────────────────────────────────────────────────────────────────────────


def _as_date(value) -> date:
    # func.date() yields a date on PostgreSQL and an ISO string on SQLite
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


class VelocityEstimator:
    def __init__(
        self,
        db: AsyncSession,
        cache: VelocityCache | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.cache = cache
        self.settings = settings or get_settings()

    async def estimate(
        self,
        tenant_id: uuid.UUID,
        sku_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        lookback_days: int | None = None,
        today: date | None = None,
    ) -> VelocityMetrics | NoVelocityData:
        lookback = self.settings.velocity_lookback_days if lookback_days is None else lookback_days
        if not 1 <= lookback <= MAX_LOOKBACK_DAYS:
            raise InputValidationError(f"lookback_days must be between 1 and {MAX_LOOKBACK_DAYS}, got {lookback}")

        if self.cache is not None:
            cached = await self.cache.get(tenant_id, sku_id, warehouse_id, lookback)
            if cached is not None:
                return cached

        with translate_store_errors("velocity estimate"):
            daily_totals = await self._daily_outbound(tenant_id, sku_id, warehouse_id, lookback, today)
            available = await self._available_quantity(tenant_id, sku_id, warehouse_id)

        result = build_velocity_metrics(
            sku_id=sku_id,
            warehouse_id=warehouse_id,
            daily_totals=daily_totals,
            available=available,
            lookback_days=lookback,
            min_samples=self.settings.velocity_min_samples,
            dead_zone=self.settings.velocity_trend_dead_zone,
        )

        if isinstance(result, VelocityMetrics):
            if self.cache is not None:
                await self.cache.set(tenant_id, result)
            logger.debug(
                "velocity.estimated",
                tenant_id=str(tenant_id),
                sku_id=str(sku_id),
                warehouse_id=str(warehouse_id),
                daily_average=result.daily_average,
                trend=result.velocity_trend.value,
                risk=result.stockout_risk_score,
            )
        return result

    async def _daily_outbound(
        self,
        tenant_id: uuid.UUID,
        sku_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        lookback_days: int,
        today: date | None,
    ) -> list[tuple[date, float]]:
        window_start = datetime.combine((today or utc_today()) - timedelta(days=lookback_days), time.min)
        day = func.date(InventoryMovement.created_at).label("day")
        volume = func.sum(func.abs(InventoryMovement.quantity_change)).label("volume")

        result = await self.db.execute(
            select(day, volume)
            .where(
                InventoryMovement.tenant_id == tenant_id,
                InventoryMovement.sku_id == sku_id,
                InventoryMovement.warehouse_id == warehouse_id,
                InventoryMovement.movement_type.in_([t.value for t in OUTBOUND_MOVEMENT_TYPES]),
                InventoryMovement.created_at >= window_start,
            )
            .group_by(day)
            .having(volume > 0)
            .order_by(day)
        )
        return [(_as_date(row.day), float(row.volume)) for row in result.all()]

    async def _available_quantity(self, tenant_id: uuid.UUID, sku_id: uuid.UUID, warehouse_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(Inventory.quantity_available).where(
                Inventory.tenant_id == tenant_id,
                Inventory.sku_id == sku_id,
                Inventory.warehouse_id == warehouse_id,
            )
        )
        return result.scalar_one_or_none() or 0
