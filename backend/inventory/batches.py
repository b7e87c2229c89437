"""
Batch store accessor — receipt, lookup, listing, status lifecycle and
reservation of FEFO plans.

Status FSM:
  quarantine → active → near_expiry → expired → disposed
  on_hold / disposed from any non-terminal status
  on_hold → active (release)

Every status change is a guarded UPDATE on the status the caller saw, so a
concurrent change surfaces as StateConflictError instead of being
overwritten.
"""

import uuid
from datetime import date, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utc_today, utcnow
from core.errors import InputValidationError, NotFoundError, StateConflictError, parse_uuid, translate_store_errors
from db.enums import BatchStatus, QAStatus
from db.models import Batch
from events.bus import EventBus, publish_quietly
from events.models import BatchStatusEvent

logger = structlog.get_logger()

MAX_PAGE_SIZE = 100

ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.QUARANTINE: frozenset(
        {BatchStatus.ACTIVE, BatchStatus.ON_HOLD, BatchStatus.EXPIRED, BatchStatus.DISPOSED}
    ),
    BatchStatus.ACTIVE: frozenset(
        {BatchStatus.NEAR_EXPIRY, BatchStatus.EXPIRED, BatchStatus.ON_HOLD, BatchStatus.DISPOSED}
    ),
    BatchStatus.NEAR_EXPIRY: frozenset({BatchStatus.EXPIRED, BatchStatus.ON_HOLD, BatchStatus.DISPOSED}),
    BatchStatus.ON_HOLD: frozenset({BatchStatus.ACTIVE, BatchStatus.EXPIRED, BatchStatus.DISPOSED}),
    BatchStatus.EXPIRED: frozenset({BatchStatus.DISPOSED}),
    BatchStatus.DISPOSED: frozenset(),
}


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ─── Inputs ─────────────────────────────────────────────────────────────────


class BatchCreate(BaseModel):
    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    batch_number: str = Field(min_length=1, max_length=100)
    quantity_received: int = Field(ge=0)
    quantity_available: int | None = Field(default=None, ge=0)
    quantity_reserved: int = Field(default=0, ge=0)
    quantity_damaged: int = Field(default=0, ge=0)
    manufacturing_date: date | None = None
    expiry_date: date | None = None
    received_date: date | None = None
    status: BatchStatus = BatchStatus.QUARANTINE
    qa_status: QAStatus = QAStatus.PENDING
    qa_notes: str | None = None
    parent_batch_id: uuid.UUID | None = None
    supplier_batch_reference: str | None = None
    po_number: str | None = None
    grn_number: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    temperature_controlled: bool = False
    min_temperature: float | None = None
    max_temperature: float | None = None

    @model_validator(mode="after")
    def check_quantities(self):
        available = self.quantity_received if self.quantity_available is None else self.quantity_available
        if available + self.quantity_reserved + self.quantity_damaged > self.quantity_received:
            raise ValueError("available + reserved + damaged must not exceed quantity_received")
        if self.min_temperature is not None and self.max_temperature is not None:
            if self.min_temperature > self.max_temperature:
                raise ValueError("min_temperature must not exceed max_temperature")
        return self


class BatchPage(BaseModel):
    items: list[Any]
    total: int
    page: int
    limit: int


class ReservationLine(BaseModel):
    batch_id: uuid.UUID
    quantity: int = Field(gt=0)


# ─── Operations ─────────────────────────────────────────────────────────────


async def create_batch(
    db: AsyncSession,
    tenant_id,
    data: BatchCreate | dict,
    bus: EventBus | None = None,
) -> Batch:
    """Record a batch receipt. Available defaults to the received quantity."""
    tenant_id = parse_uuid(tenant_id, "tenant_id")
    if isinstance(data, dict):
        try:
            data = BatchCreate.model_validate(data)
        except ValueError as exc:
            raise InputValidationError(str(exc)) from exc

    fields = data.model_dump()
    if fields["quantity_available"] is None:
        fields["quantity_available"] = data.quantity_received
    fields["received_date"] = fields["received_date"] or utc_today()
    fields["status"] = data.status.value
    fields["qa_status"] = data.qa_status.value

    batch = Batch(tenant_id=tenant_id, **fields)
    with translate_store_errors("create batch"):
        db.add(batch)
        await db.commit()
        await db.refresh(batch)

    logger.info(
        "batches.created",
        tenant_id=str(tenant_id),
        batch_id=str(batch.batch_id),
        batch_number=batch.batch_number,
        quantity=batch.quantity_received,
    )
    if bus is not None:
        await publish_quietly(
            bus,
            BatchStatusEvent(
                tenant_id=tenant_id,
                batch_id=batch.batch_id,
                batch_number=batch.batch_number,
                sku_id=batch.sku_id,
                warehouse_id=batch.warehouse_id,
                new_status="created",
                qa_status=batch.qa_status,
            ),
        )
    return batch


async def get_batch(db: AsyncSession, tenant_id, batch_id) -> Batch:
    tenant_id = parse_uuid(tenant_id, "tenant_id")
    batch_id = parse_uuid(batch_id, "batch_id")
    with translate_store_errors("get batch"):
        result = await db.execute(select(Batch).where(Batch.tenant_id == tenant_id, Batch.batch_id == batch_id))
        batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    return batch


async def list_batches(
    db: AsyncSession,
    tenant_id,
    sku_id=None,
    warehouse_id=None,
    status: BatchStatus | str | None = None,
    qa_status: QAStatus | str | None = None,
    expiring_in_days: int | None = None,
    page: int = 1,
    limit: int = 50,
    today: date | None = None,
) -> BatchPage:
    """List batches, soonest expiry first (no expiry last), newest receipt first within a date."""
    tenant_id = parse_uuid(tenant_id, "tenant_id")
    if page < 1:
        raise InputValidationError("page must be >= 1")
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    query = select(Batch).where(Batch.tenant_id == tenant_id)
    if sku_id is not None:
        query = query.where(Batch.sku_id == parse_uuid(sku_id, "sku_id"))
    if warehouse_id is not None:
        query = query.where(Batch.warehouse_id == parse_uuid(warehouse_id, "warehouse_id"))
    if status is not None:
        query = query.where(Batch.status == BatchStatus(status).value)
    if qa_status is not None:
        query = query.where(Batch.qa_status == QAStatus(qa_status).value)
    if expiring_in_days is not None:
        cutoff = (today or utc_today()) + timedelta(days=expiring_in_days)
        query = query.where(Batch.expiry_date.is_not(None), Batch.expiry_date <= cutoff)

    with translate_store_errors("list batches"):
        total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
        result = await db.execute(
            query.order_by(
                Batch.expiry_date.is_(None),
                Batch.expiry_date.asc(),
                Batch.received_date.desc(),
                Batch.batch_number,
            )
            .offset((page - 1) * limit)
            .limit(limit)
        )
    return BatchPage(items=list(result.scalars().all()), total=total, page=page, limit=limit)


async def update_batch_status(
    db: AsyncSession,
    tenant_id,
    batch_id,
    status: BatchStatus | str,
    qa_status: QAStatus | str | None = None,
    qa_notes: str | None = None,
    bus: EventBus | None = None,
) -> Batch:
    """
    Move a batch along the status FSM.

    Re-submitting the current status is allowed for non-terminal batches and
    only updates the QA fields.
    """
    try:
        target = BatchStatus(status)
        qa_target = QAStatus(qa_status) if qa_status is not None else None
    except ValueError as exc:
        raise InputValidationError(str(exc)) from exc

    batch = await get_batch(db, tenant_id, batch_id)
    current = BatchStatus(batch.status)

    if target == current:
        if not ALLOWED_TRANSITIONS[current]:
            raise StateConflictError(f"Batch {batch.batch_number} is {current.value} and cannot be updated")
    elif not can_transition(current, target):
        raise StateConflictError(f"Batch {batch.batch_number} cannot move from {current.value} to {target.value}")

    values: dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
    if qa_target is not None:
        values["qa_status"] = qa_target.value
    if qa_notes is not None:
        values["qa_notes"] = qa_notes

    with translate_store_errors("update batch status"):
        result = await db.execute(
            update(Batch)
            .where(
                Batch.tenant_id == batch.tenant_id,
                Batch.batch_id == batch.batch_id,
                Batch.status == current.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise StateConflictError(f"Batch {batch.batch_number} changed status concurrently")
        await db.commit()
        await db.refresh(batch)

    logger.info(
        "batches.status_changed",
        tenant_id=str(batch.tenant_id),
        batch_id=str(batch.batch_id),
        old_status=current.value,
        new_status=target.value,
    )
    if bus is not None and target != current:
        await publish_quietly(
            bus,
            BatchStatusEvent(
                tenant_id=batch.tenant_id,
                batch_id=batch.batch_id,
                batch_number=batch.batch_number,
                sku_id=batch.sku_id,
                warehouse_id=batch.warehouse_id,
                old_status=current.value,
                new_status=target.value,
                qa_status=batch.qa_status,
            ),
        )
    return batch


async def reserve_allocation(db: AsyncSession, tenant_id, lines: list[ReservationLine | dict]) -> int:
    """
    Reserve every line of an allocation plan or none of them.

    Each line moves quantity from available to reserved, provided the batch is
    still active and has enough available. Returns the total reserved.
    """
    tenant_id = parse_uuid(tenant_id, "tenant_id")
    try:
        parsed = [ReservationLine.model_validate(line) if isinstance(line, dict) else line for line in lines]
    except ValueError as exc:
        raise InputValidationError(str(exc)) from exc
    if not parsed:
        raise InputValidationError("allocation has no lines")

    total = 0
    with translate_store_errors("reserve allocation"):
        for line in parsed:
            result = await db.execute(
                update(Batch)
                .where(
                    Batch.tenant_id == tenant_id,
                    Batch.batch_id == line.batch_id,
                    Batch.status == BatchStatus.ACTIVE.value,
                    Batch.quantity_available >= line.quantity,
                )
                .values(
                    quantity_available=Batch.quantity_available - line.quantity,
                    quantity_reserved=Batch.quantity_reserved + line.quantity,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                logger.warning(
                    "batches.reservation_rejected",
                    tenant_id=str(tenant_id),
                    batch_id=str(line.batch_id),
                    quantity=line.quantity,
                )
                raise StateConflictError(f"Batch {line.batch_id} cannot cover {line.quantity} units")
            total += line.quantity
        await db.commit()

    logger.info("batches.reserved", tenant_id=str(tenant_id), lines=len(parsed), quantity=total)
    return total
