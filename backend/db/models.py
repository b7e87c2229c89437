"""
LotWatch Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  Reference (read-only to the monitoring engines):
  1. tenants               - Tenant organizations
  2. warehouses            - Stocking locations
  3. skus                  - Stock keeping units (+ SKU-level min/max)
  4. inventory             - Current quantity per SKU/warehouse
  5. inventory_movements   - Stock movement history (velocity source)
  6. inventory_thresholds  - Per SKU/warehouse reorder configuration

  Batch lifecycle:
  7. batches               - Lots with expiry, QA status and quantities

  Alerting:
  8. threshold_alerts      - Deduplicated stock-health alerts
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.clock import utcnow
from db.enums import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    BatchStatus,
    MovementType,
    QAStatus,
    TenantStatus,
    sql_in,
)
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=TenantStatus.ACTIVE.value)
    settings = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (CheckConstraint(f"status IN ({sql_in(TenantStatus)})", name="ck_tenant_status"),)


# ─── 2. Warehouses ──────────────────────────────────────────────────────────


class Warehouse(Base):
    __tablename__ = "warehouses"

    warehouse_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_warehouse_tenant_code"),)


# ─── 3. SKUs ────────────────────────────────────────────────────────────────


class Sku(Base):
    __tablename__ = "skus"

    sku_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_code = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    unit_cost = Column(Float)
    is_batch_tracked = Column(Boolean, nullable=False, default=True)
    is_perishable = Column(Boolean, nullable=False, default=False)
    min_quantity = Column(Integer)
    max_quantity = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "sku_code", name="uq_sku_tenant_code"),)


# ─── 4. Inventory ───────────────────────────────────────────────────────────


class Inventory(Base):
    __tablename__ = "inventory"

    inventory_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_id = Column(GUID(), ForeignKey("skus.sku_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    quantity_available = Column(Integer, nullable=False, default=0)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    quantity_damaged = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("sku_id", "warehouse_id", name="uq_inventory_sku_warehouse"),
        Index("ix_inventory_tenant", "tenant_id"),
        CheckConstraint(
            "quantity_available >= 0 AND quantity_reserved >= 0 AND quantity_damaged >= 0",
            name="ck_inventory_non_negative",
        ),
    )


# ─── 5. Inventory Movements ─────────────────────────────────────────────────


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    movement_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_id = Column(GUID(), ForeignKey("skus.sku_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    batch_id = Column(GUID(), ForeignKey("batches.batch_id"))
    movement_type = Column(String(50), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    reference = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_movements_pair_time", "tenant_id", "sku_id", "warehouse_id", "created_at"),
        CheckConstraint(f"movement_type IN ({sql_in(MovementType)})", name="ck_movement_type"),
    )


# ─── 6. Inventory Thresholds ────────────────────────────────────────────────


class InventoryThreshold(Base):
    __tablename__ = "inventory_thresholds"

    threshold_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_id = Column(GUID(), ForeignKey("skus.sku_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    min_quantity = Column(Integer)
    max_quantity = Column(Integer)
    safety_stock = Column(Integer)
    reorder_point = Column(Integer)
    reorder_quantity = Column(Integer)
    velocity_based = Column(Boolean, nullable=False, default=False)
    velocity_multiplier = Column(Float)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("tenant_id", "sku_id", "warehouse_id", name="uq_threshold_pair"),)


# ─── 7. Batches ─────────────────────────────────────────────────────────────


class Batch(Base):
    __tablename__ = "batches"

    batch_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_id = Column(GUID(), ForeignKey("skus.sku_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    batch_number = Column(String(100), nullable=False)
    quantity_received = Column(Integer, nullable=False)
    quantity_available = Column(Integer, nullable=False)
    quantity_reserved = Column(Integer, nullable=False, default=0)
    quantity_damaged = Column(Integer, nullable=False, default=0)
    manufacturing_date = Column(Date)
    expiry_date = Column(Date)
    received_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=BatchStatus.QUARANTINE.value)
    qa_status = Column(String(20), nullable=False, default=QAStatus.PENDING.value)
    qa_notes = Column(Text)
    parent_batch_id = Column(GUID(), ForeignKey("batches.batch_id"))
    supplier_batch_reference = Column(String(100))
    po_number = Column(String(100))
    grn_number = Column(String(100))
    attributes = Column(JSON, default=dict)
    temperature_controlled = Column(Boolean, nullable=False, default=False)
    min_temperature = Column(Float)
    max_temperature = Column(Float)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_batches_pair_status", "tenant_id", "sku_id", "warehouse_id", "status"),
        Index("ix_batches_tenant_expiry", "tenant_id", "expiry_date"),
        CheckConstraint(f"status IN ({sql_in(BatchStatus)})", name="ck_batch_status"),
        CheckConstraint(f"qa_status IN ({sql_in(QAStatus)})", name="ck_batch_qa_status"),
        CheckConstraint(
            "quantity_available >= 0 AND quantity_reserved >= 0 AND quantity_damaged >= 0",
            name="ck_batch_non_negative",
        ),
        CheckConstraint(
            "quantity_available + quantity_reserved + quantity_damaged <= quantity_received",
            name="ck_batch_quantity_conservation",
        ),
    )


# ─── 8. Threshold Alerts ────────────────────────────────────────────────────


class ThresholdAlert(Base):
    __tablename__ = "threshold_alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    sku_id = Column(GUID(), ForeignKey("skus.sku_id"), nullable=False)
    warehouse_id = Column(GUID(), ForeignKey("warehouses.warehouse_id"), nullable=False)
    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    current_quantity = Column(Integer, nullable=False)
    threshold_quantity = Column(Float)
    velocity_data = Column(JSON)
    message = Column(Text, nullable=False)
    recommended_action = Column(Text)
    channels = Column(JSON, default=list)
    alert_metadata = Column("metadata", JSON, default=dict)
    status = Column(String(20), nullable=False, default=AlertStatus.ACTIVE.value)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    acknowledged_by = Column(String(255))
    acknowledged_at = Column(DateTime)
    resolved_by = Column(String(255))
    resolved_at = Column(DateTime)

    __table_args__ = (
        Index("ix_threshold_alerts_dedup", "tenant_id", "sku_id", "warehouse_id", "alert_type", "status", "created_at"),
        Index("ix_threshold_alerts_tenant_status", "tenant_id", "status"),
        CheckConstraint(f"alert_type IN ({sql_in(AlertType)})", name="ck_threshold_alert_type"),
        CheckConstraint(f"severity IN ({sql_in(AlertSeverity)})", name="ck_threshold_alert_severity"),
        CheckConstraint(f"status IN ({sql_in(AlertStatus)})", name="ck_threshold_alert_status"),
    )
