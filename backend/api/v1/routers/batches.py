"""
Batches Router — batch receipt, lifecycle, FEFO allocation and expiry endpoints.
"""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.dispatcher import NotificationDispatcher
from api.deps import get_db, get_dispatcher, get_event_bus, get_tenant_id
from core.config import Settings, get_settings
from db.enums import BatchStatus, QAStatus
from events.bus import EventBus
from events.models import ExpiringBatch
from inventory import batches as batch_store
from inventory.adjustments import assess_sku_adjustment
from inventory.batches import BatchCreate, ReservationLine
from inventory.expiry import ExpiryCheckSummary, ExpiryMonitor, ExpirySummary
from inventory.fefo import AllocationResult, FefoAllocator

router = APIRouter(prefix="/api/v1/batches", tags=["batches"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class BatchResponse(BaseModel):
    batch_id: UUID
    tenant_id: UUID
    sku_id: UUID
    warehouse_id: UUID
    batch_number: str
    quantity_received: int
    quantity_available: int
    quantity_reserved: int
    quantity_damaged: int
    manufacturing_date: date | None
    expiry_date: date | None
    received_date: date
    status: str
    qa_status: str
    qa_notes: str | None
    parent_batch_id: UUID | None
    supplier_batch_reference: str | None
    po_number: str | None
    grn_number: str | None
    attributes: dict[str, Any] | None
    temperature_controlled: bool
    min_temperature: float | None
    max_temperature: float | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BatchListResponse(BaseModel):
    items: list[BatchResponse]
    total: int
    page: int
    limit: int


class StatusUpdate(BaseModel):
    status: BatchStatus
    qa_status: QAStatus | None = None
    qa_notes: str | None = None


class AllocateRequest(BaseModel):
    sku_id: UUID
    warehouse_id: UUID
    requested_quantity: int = Field(gt=0)
    exclude_batch_ids: list[UUID] = Field(default_factory=list)
    enforce_fefo: bool = True


class ReserveRequest(BaseModel):
    lines: list[ReservationLine] = Field(min_length=1)


class ReserveResponse(BaseModel):
    reserved_quantity: int
    lines: int


class AdjustmentRequest(BaseModel):
    sku_id: UUID
    quantity_before: int
    quantity_after: int


class AdjustmentAssessmentResponse(BaseModel):
    quantity_before: int
    quantity_after: int
    quantity_change: int
    value_impact: float
    variance_percentage: float | None
    requires_approval: bool
    reasons: list[str]

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("", response_model=BatchResponse, status_code=201)
async def create_batch(
    body: BatchCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus | None = Depends(get_event_bus),
):
    """Record a batch receipt."""
    return await batch_store.create_batch(db, tenant_id, body, bus=bus)


@router.get("", response_model=BatchListResponse)
async def list_batches(
    sku_id: UUID | None = None,
    warehouse_id: UUID | None = None,
    status: BatchStatus | None = None,
    qa_status: QAStatus | None = None,
    expiring_in_days: int | None = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    page_ = await batch_store.list_batches(
        db,
        tenant_id,
        sku_id=sku_id,
        warehouse_id=warehouse_id,
        status=status,
        qa_status=qa_status,
        expiring_in_days=expiring_in_days,
        page=page,
        limit=limit,
    )
    return BatchListResponse(
        items=[BatchResponse.model_validate(b) for b in page_.items],
        total=page_.total,
        page=page_.page,
        limit=page_.limit,
    )


@router.post("/allocate", response_model=AllocationResult)
async def allocate(
    body: AllocateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus | None = Depends(get_event_bus),
    settings: Settings = Depends(get_settings),
):
    """Plan a FEFO allocation. Batches are not reserved."""
    allocator = FefoAllocator(db, bus=bus, settings=settings)
    return await allocator.allocate(
        tenant_id,
        body.sku_id,
        body.warehouse_id,
        body.requested_quantity,
        exclude_batch_ids=body.exclude_batch_ids,
        enforce_fefo=body.enforce_fefo,
    )


@router.post("/reserve", response_model=ReserveResponse)
async def reserve(
    body: ReserveRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Reserve an allocation plan, all lines or none."""
    reserved = await batch_store.reserve_allocation(db, tenant_id, body.lines)
    return ReserveResponse(reserved_quantity=reserved, lines=len(body.lines))


@router.post("/adjustments/assess", response_model=AdjustmentAssessmentResponse)
async def assess_adjustment(
    body: AdjustmentRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Check whether a stock adjustment needs approval before it is applied."""
    return await assess_sku_adjustment(
        db,
        tenant_id,
        body.sku_id,
        body.quantity_before,
        body.quantity_after,
        settings=settings,
    )


@router.get("/expiring", response_model=list[ExpiringBatch])
async def expiring_batches(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await ExpiryMonitor(db, settings=settings).find_expiring_batches(tenant_id)


@router.get("/expiry-summary", response_model=ExpirySummary)
async def expiry_summary(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await ExpiryMonitor(db, settings=settings).expiry_summary(tenant_id)


@router.post("/expiry-check", response_model=ExpiryCheckSummary)
async def run_expiry_check(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus | None = Depends(get_event_bus),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    """Run the expiry check for this tenant now."""
    monitor = ExpiryMonitor(db, bus=bus, dispatcher=dispatcher, settings=settings)
    return await monitor.check_tenant(tenant_id)


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(
    batch_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await batch_store.get_batch(db, tenant_id, batch_id)


@router.patch("/{batch_id}/status", response_model=BatchResponse)
async def update_status(
    batch_id: UUID,
    body: StatusUpdate,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus | None = Depends(get_event_bus),
):
    return await batch_store.update_batch_status(
        db,
        tenant_id,
        batch_id,
        body.status,
        qa_status=body.qa_status,
        qa_notes=body.qa_notes,
        bus=bus,
    )
