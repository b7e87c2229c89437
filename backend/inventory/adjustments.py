"""
Stock adjustment assessment.

An adjustment needs approval when its value impact reaches
adjustment_approval_value or its variance reaches adjustment_approval_pct
of the quantity before. Variance is undefined when nothing was on hand, and
then only the value rule applies.
"""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from core.errors import InputValidationError, NotFoundError, parse_uuid, translate_store_errors
from db.models import Sku


@dataclass(frozen=True)
class AdjustmentAssessment:
    quantity_before: int
    quantity_after: int
    quantity_change: int
    value_impact: float
    variance_percentage: float | None
    requires_approval: bool
    reasons: tuple[str, ...] = ()


def assess_adjustment(
    quantity_before: int,
    quantity_after: int,
    unit_cost: float | None,
    settings: Settings | None = None,
) -> AdjustmentAssessment:
    settings = settings or get_settings()
    if quantity_before < 0:
        raise InputValidationError(f"quantity_before must be non-negative, got {quantity_before}")
    if quantity_after < 0:
        raise InputValidationError(f"quantity_after must be non-negative, got {quantity_after}")

    change = quantity_after - quantity_before
    value_impact = round(abs(change) * (unit_cost or 0.0), 2)
    variance = None if quantity_before == 0 else round(abs(change) / quantity_before * 100, 2)

    reasons = []
    if value_impact >= settings.adjustment_approval_value:
        reasons.append(f"value impact {value_impact:.2f} >= {settings.adjustment_approval_value:.2f}")
    if variance is not None and variance >= settings.adjustment_approval_pct:
        reasons.append(f"variance {variance:.2f}% >= {settings.adjustment_approval_pct:.2f}%")

    return AdjustmentAssessment(
        quantity_before=quantity_before,
        quantity_after=quantity_after,
        quantity_change=change,
        value_impact=value_impact,
        variance_percentage=variance,
        requires_approval=bool(reasons),
        reasons=tuple(reasons),
    )


async def assess_sku_adjustment(
    db: AsyncSession,
    tenant_id,
    sku_id,
    quantity_before: int,
    quantity_after: int,
    settings: Settings | None = None,
) -> AdjustmentAssessment:
    """Assess an adjustment valued at the SKU's unit cost."""
    tenant_id = parse_uuid(tenant_id, "tenant_id")
    sku_id = parse_uuid(sku_id, "sku_id")
    with translate_store_errors("sku lookup"):
        result = await db.execute(select(Sku.unit_cost).where(Sku.tenant_id == tenant_id, Sku.sku_id == sku_id))
        row = result.first()
    if row is None:
        raise NotFoundError(f"SKU {sku_id} not found")
    return assess_adjustment(quantity_before, quantity_after, row.unit_cost, settings=settings)
