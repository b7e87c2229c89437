"""Status and classification vocabularies shared by models, engines and events."""

from enum import Enum


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class BatchStatus(str, Enum):
    """Lifecycle status of a batch."""

    QUARANTINE = "quarantine"
    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"
    ON_HOLD = "on_hold"
    DISPOSED = "disposed"


class QAStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    CONDITIONAL = "conditional"


class MovementType(str, Enum):
    RECEIVING = "receiving"
    SALE = "sale"
    SHIPMENT = "shipment"
    TRANSFER = "transfer"
    ADJUSTMENT_INCREASE = "adjustment_increase"
    ADJUSTMENT_DECREASE = "adjustment_decrease"
    DAMAGE = "damage"
    RETURN = "return"
    DISPOSAL = "disposal"


# Movement types that count as consumption for velocity estimation
OUTBOUND_MOVEMENT_TYPES = (
    MovementType.SALE,
    MovementType.SHIPMENT,
    MovementType.ADJUSTMENT_DECREASE,
    MovementType.DAMAGE,
)


class ExpiryLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    CRITICAL_STOCK = "critical_stock"
    OUT_OF_STOCK = "out_of_stock"
    OVERSTOCK = "overstock"
    VELOCITY_ANOMALY = "velocity_anomaly"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


SEVERITY_RANK = {
    AlertSeverity.WARNING: 1,
    AlertSeverity.CRITICAL: 2,
    AlertSeverity.EMERGENCY: 3,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


class VelocityTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


def sql_in(enum_cls) -> str:
    """Render enum values for a CHECK ... IN (...) constraint."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
