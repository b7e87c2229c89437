"""
Threshold decision rules.

Effective bounds per SKU/warehouse:
  min            threshold row → SKU → 0
  max            threshold row → SKU → unbounded
  safety_stock   threshold row → min
  reorder_point  threshold row → safety_stock
  effective_rop  max(reorder_point, daily_average × multiplier) when the row
                 is velocity based and velocity data exists; velocity never
                 lowers the bar.

Decision table, first match wins:
  qty == 0               out_of_stock    emergency
  qty < safety_stock     critical_stock  critical
  qty < effective_rop    low_stock       warning
  qty > max (bounded)    overstock       warning

Velocity override: stockout risk above the escalation score turns no
violation or a warning into velocity_anomaly/critical. It never downgrades.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass

from db.enums import SEVERITY_RANK, AlertSeverity, AlertType
from inventory.velocity import VelocityMetrics


@dataclass(frozen=True)
class ThresholdBounds:
    min_quantity: int
    max_quantity: int | None
    safety_stock: int
    reorder_point: int
    effective_reorder_point: float
    velocity_adjusted: bool = False


@dataclass(frozen=True)
class RuleDecision:
    alert_type: AlertType
    severity: AlertSeverity
    recommended_action: str


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_bounds(
    min_quantity: int | None = None,
    max_quantity: int | None = None,
    safety_stock: int | None = None,
    reorder_point: int | None = None,
    sku_min_quantity: int | None = None,
    sku_max_quantity: int | None = None,
    velocity: VelocityMetrics | None = None,
    velocity_multiplier: float | None = None,
    default_multiplier: float = 1.5,
) -> ThresholdBounds:
    """Apply fallbacks and the velocity adjustment. Only None falls back; 0 is a real value."""
    min_qty = _first(min_quantity, sku_min_quantity, 0)
    max_qty = _first(max_quantity, sku_max_quantity)
    safety = _first(safety_stock, min_qty)
    rop = _first(reorder_point, safety)

    effective = float(rop)
    adjusted = False
    if velocity is not None:
        multiplier = _first(velocity_multiplier, default_multiplier)
        velocity_rop = velocity.daily_average * multiplier
        if velocity_rop > effective:
            effective = velocity_rop
            adjusted = True

    return ThresholdBounds(
        min_quantity=min_qty,
        max_quantity=max_qty,
        safety_stock=safety,
        reorder_point=rop,
        effective_reorder_point=effective,
        velocity_adjusted=adjusted,
    )


def _shortfall(qty: int, bounds: ThresholdBounds) -> int:
    return max(0, math.ceil(bounds.effective_reorder_point - qty))


@dataclass(frozen=True)
class Rule:
    alert_type: AlertType
    severity: AlertSeverity
    matches: Callable[[int, ThresholdBounds], bool]
    action: Callable[[int, ThresholdBounds], str]


STOCK_RULES: tuple[Rule, ...] = (
    Rule(
        AlertType.OUT_OF_STOCK,
        AlertSeverity.EMERGENCY,
        lambda qty, b: qty == 0,
        lambda qty, b: "URGENT: Initiate emergency procurement or transfer from another warehouse",
    ),
    Rule(
        AlertType.CRITICAL_STOCK,
        AlertSeverity.CRITICAL,
        lambda qty, b: qty < b.safety_stock,
        lambda qty, b: (
            "Current stock is below safety level. "
            f"Immediate reorder recommended ({_shortfall(qty, b)} units)"
        ),
    ),
    Rule(
        AlertType.LOW_STOCK,
        AlertSeverity.WARNING,
        lambda qty, b: qty < b.effective_reorder_point,
        lambda qty, b: f"Stock approaching reorder point. Plan procurement ({_shortfall(qty, b)} units)",
    ),
    Rule(
        AlertType.OVERSTOCK,
        AlertSeverity.WARNING,
        lambda qty, b: b.max_quantity is not None and qty > b.max_quantity,
        lambda qty, b: (
            "Overstock detected. Consider redistribution or promotions "
            f"({qty - b.max_quantity} excess units)"
        ),
    ),
)


def velocity_anomaly_action(velocity: VelocityMetrics) -> str:
    return (
        f"High stockout risk based on velocity ({velocity.days_of_stock:.1f} days of stock "
        "remaining at current consumption rate)"
    )


def evaluate_stock(
    quantity: int,
    bounds: ThresholdBounds,
    velocity: VelocityMetrics | None = None,
    escalation_score: int = 70,
) -> RuleDecision | None:
    decision = None
    for rule in STOCK_RULES:
        if rule.matches(quantity, bounds):
            decision = RuleDecision(rule.alert_type, rule.severity, rule.action(quantity, bounds))
            break

    if velocity is not None and velocity.stockout_risk_score > escalation_score:
        if decision is None or SEVERITY_RANK[decision.severity] < SEVERITY_RANK[AlertSeverity.CRITICAL]:
            decision = RuleDecision(
                AlertType.VELOCITY_ANOMALY,
                AlertSeverity.CRITICAL,
                velocity_anomaly_action(velocity),
            )
    return decision
