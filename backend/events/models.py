"""
Domain event models published on the topic bus.

Every event is a pydantic model tagged by ``kind``; ``DomainEvent`` is the
discriminated union consumers parse into. The bus topic is derived from the
event's content:

  FefoAllocationEvent     batch.fefo.update
  BatchStatusEvent        batch.status.<new_status>
  BatchExpiryLevelEvent   batch.expiry.<warning|critical|emergency>
  BatchExpiredEvent       batch.expiry.expired
  ThresholdAlertEvent     threshold.<severity>.<alert_type>

Delivery is at-least-once; consumers dedupe on ``event_id``.
"""

import uuid
from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, computed_field

from core.clock import utcnow
from db.enums import AlertSeverity, AlertType, ExpiryLevel
from inventory.velocity import VelocityMetrics


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class EventBase(BaseModel):
    event_id: str = Field(default_factory=new_event_id)
    tenant_id: uuid.UUID
    timestamp: datetime = Field(default_factory=utcnow)


# ─── Payload fragments ──────────────────────────────────────────────────────


class AllocationLine(BaseModel):
    """One batch consumed by a FEFO plan."""

    batch_id: uuid.UUID
    batch_number: str
    warehouse_id: uuid.UUID
    expiry_date: date | None
    received_date: date
    quantity_available: int
    allocated_quantity: int
    fefo_priority: int


class ExpiringBatch(BaseModel):
    """A batch classified by days until expiry."""

    batch_id: uuid.UUID
    batch_number: str
    sku_id: uuid.UUID
    sku_code: str
    warehouse_id: uuid.UUID
    expiry_date: date
    days_until_expiry: int
    quantity_available: int
    status: str
    level: ExpiryLevel


# ─── Events ─────────────────────────────────────────────────────────────────


class FefoAllocationEvent(EventBase):
    kind: Literal["fefo_allocation"] = "fefo_allocation"
    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    requested_quantity: int
    total_allocated: int
    fully_allocated: bool
    allocations: list[AllocationLine]

    @computed_field
    @property
    def topic(self) -> str:
        return "batch.fefo.update"


class BatchStatusEvent(EventBase):
    kind: Literal["batch_status"] = "batch_status"
    batch_id: uuid.UUID
    batch_number: str
    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    old_status: str | None = None
    new_status: str
    qa_status: str | None = None

    @computed_field
    @property
    def topic(self) -> str:
        return f"batch.status.{self.new_status}"


class BatchExpiryLevelEvent(EventBase):
    kind: Literal["batch_expiry_level"] = "batch_expiry_level"
    level: ExpiryLevel
    batch_count: int
    batches: list[ExpiringBatch]

    @computed_field
    @property
    def topic(self) -> str:
        return f"batch.expiry.{self.level.value}"


class BatchExpiredEvent(EventBase):
    kind: Literal["batch_expired"] = "batch_expired"
    batch_id: uuid.UUID
    batch_number: str
    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    expiry_date: date | None = None

    @computed_field
    @property
    def topic(self) -> str:
        return "batch.expiry.expired"


class ThresholdAlertEvent(EventBase):
    kind: Literal["threshold_alert"] = "threshold_alert"
    alert_id: uuid.UUID
    alert_type: AlertType
    severity: AlertSeverity
    sku_id: uuid.UUID
    sku_code: str
    sku_name: str
    warehouse_id: uuid.UUID
    warehouse_name: str
    current_quantity: int
    threshold_quantity: float
    velocity_metrics: VelocityMetrics | None = None
    recommended_action: str

    @computed_field
    @property
    def topic(self) -> str:
        return f"threshold.{self.severity.value}.{self.alert_type.value}"


DomainEvent = Annotated[
    Union[
        FefoAllocationEvent,
        BatchStatusEvent,
        BatchExpiryLevelEvent,
        BatchExpiredEvent,
        ThresholdAlertEvent,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(DomainEvent)


def parse_event(raw: str | bytes | dict) -> DomainEvent:
    """Validate a bus payload into its concrete event model."""
    if isinstance(raw, dict):
        return _event_adapter.validate_python(raw)
    return _event_adapter.validate_json(raw)
