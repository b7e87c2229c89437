"""
FEFO Allocation Engine — First-Expired-First-Out batch selection.

Given a SKU, warehouse and requested quantity, plans which batches to
consume and how much from each. The plan is advisory: batches are not
mutated here; callers reserve through inventory.batches.reserve_allocation.

Ordering (total and deterministic):
  FEFO:      expiry_date ASC (no expiry last), received_date ASC, batch_number, batch_id
  non-FEFO:  received_date ASC, batch_number, batch_id

Only batches that are active, QA-passed and have stock are eligible.
"""

import uuid
from collections.abc import Iterable
from datetime import date

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import utc_today
from core.config import Settings, get_settings
from core.errors import InputValidationError, parse_uuid, translate_store_errors
from db.enums import BatchStatus, QAStatus
from db.models import Batch
from events.bus import EventBus, publish_quietly
from events.models import AllocationLine, FefoAllocationEvent

logger = structlog.get_logger()

NO_BATCHES_WARNING = "No available batches found for allocation"


class AllocationResult(BaseModel):
    tenant_id: uuid.UUID
    sku_id: uuid.UUID
    warehouse_id: uuid.UUID
    requested_quantity: int
    total_allocated: int
    remaining: int
    fully_allocated: bool
    enforce_fefo: bool = True
    allocations: list[AllocationLine] = []
    warnings: list[str] = []


def fefo_sort_key(batch) -> tuple:
    expiry = batch.expiry_date
    return (expiry is None, expiry or date.max, batch.received_date, batch.batch_number, str(batch.batch_id))


def receipt_sort_key(batch) -> tuple:
    return (batch.received_date, batch.batch_number, str(batch.batch_id))


def order_batches(batches: Iterable, enforce_fefo: bool = True) -> list:
    """Return batches in consumption order."""
    return sorted(batches, key=fefo_sort_key if enforce_fefo else receipt_sort_key)


def plan_allocation(
    batches: Iterable,
    requested_quantity: int,
    enforce_fefo: bool = True,
    today: date | None = None,
    near_expiry_days: int = 30,
) -> tuple[list[AllocationLine], list[str], int]:
    """
    Walk batches in consumption order until the request is covered.

    Returns (lines, warnings, remaining).
    """
    today = today or utc_today()
    remaining = requested_quantity
    lines: list[AllocationLine] = []
    warnings: list[str] = []

    for batch in order_batches(batches, enforce_fefo):
        if remaining <= 0:
            break
        take = min(batch.quantity_available, remaining)
        if take <= 0:
            continue
        remaining -= take
        lines.append(
            AllocationLine(
                batch_id=batch.batch_id,
                batch_number=batch.batch_number,
                warehouse_id=batch.warehouse_id,
                expiry_date=batch.expiry_date,
                received_date=batch.received_date,
                quantity_available=batch.quantity_available,
                allocated_quantity=take,
                fefo_priority=len(lines) + 1,
            )
        )
        if batch.expiry_date is not None:
            days = (batch.expiry_date - today).days
            if days < 0:
                warnings.append(f"Batch {batch.batch_number} expired {-days} days ago")
            elif days <= near_expiry_days:
                warnings.append(f"Batch {batch.batch_number} expires in {days} days")

    if remaining > 0 and lines:
        warnings.append(f"Only {requested_quantity - remaining} of {requested_quantity} units could be allocated")

    return lines, warnings, remaining


class FefoAllocator:
    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.bus = bus
        self.settings = settings or get_settings()

    async def allocate(
        self,
        tenant_id,
        sku_id,
        warehouse_id,
        requested_quantity: int,
        exclude_batch_ids: Iterable | None = None,
        enforce_fefo: bool = True,
        today: date | None = None,
    ) -> AllocationResult:
        tenant_id = parse_uuid(tenant_id, "tenant_id")
        sku_id = parse_uuid(sku_id, "sku_id")
        warehouse_id = parse_uuid(warehouse_id, "warehouse_id")
        if isinstance(requested_quantity, bool) or not isinstance(requested_quantity, int):
            raise InputValidationError(f"requested_quantity must be an integer, got {requested_quantity!r}")
        if requested_quantity <= 0:
            raise InputValidationError(f"requested_quantity must be positive, got {requested_quantity}")
        excluded = {parse_uuid(b, "exclude_batch_ids") for b in exclude_batch_ids or ()}

        with translate_store_errors("fefo allocation"):
            batches = await self._eligible_batches(tenant_id, sku_id, warehouse_id, excluded)

        if not batches:
            logger.info(
                "fefo.no_batches",
                tenant_id=str(tenant_id),
                sku_id=str(sku_id),
                warehouse_id=str(warehouse_id),
                requested=requested_quantity,
            )
            return AllocationResult(
                tenant_id=tenant_id,
                sku_id=sku_id,
                warehouse_id=warehouse_id,
                requested_quantity=requested_quantity,
                total_allocated=0,
                remaining=requested_quantity,
                fully_allocated=False,
                enforce_fefo=enforce_fefo,
                warnings=[NO_BATCHES_WARNING],
            )

        lines, warnings, remaining = plan_allocation(
            batches,
            requested_quantity,
            enforce_fefo=enforce_fefo,
            today=today,
            near_expiry_days=self.settings.fefo_near_expiry_days,
        )
        total = requested_quantity - remaining
        result = AllocationResult(
            tenant_id=tenant_id,
            sku_id=sku_id,
            warehouse_id=warehouse_id,
            requested_quantity=requested_quantity,
            total_allocated=total,
            remaining=remaining,
            fully_allocated=remaining == 0,
            enforce_fefo=enforce_fefo,
            allocations=lines,
            warnings=warnings,
        )

        logger.info(
            "fefo.allocated",
            tenant_id=str(tenant_id),
            sku_id=str(sku_id),
            warehouse_id=str(warehouse_id),
            requested=requested_quantity,
            allocated=total,
            batches=len(lines),
        )

        if lines and self.bus is not None:
            await publish_quietly(
                self.bus,
                FefoAllocationEvent(
                    tenant_id=tenant_id,
                    sku_id=sku_id,
                    warehouse_id=warehouse_id,
                    requested_quantity=requested_quantity,
                    total_allocated=total,
                    fully_allocated=result.fully_allocated,
                    allocations=lines,
                ),
            )
        return result

    async def _eligible_batches(
        self,
        tenant_id: uuid.UUID,
        sku_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        excluded: set[uuid.UUID],
    ) -> list[Batch]:
        query = select(Batch).where(
            Batch.tenant_id == tenant_id,
            Batch.sku_id == sku_id,
            Batch.warehouse_id == warehouse_id,
            Batch.quantity_available > 0,
            Batch.status == BatchStatus.ACTIVE.value,
            Batch.qa_status == QAStatus.PASSED.value,
        )
        if excluded:
            query = query.where(Batch.batch_id.notin_(excluded))
        result = await self.db.execute(query)
        return list(result.scalars().all())
