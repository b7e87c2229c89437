"""
Test Configuration — Fixtures for async DB, test client, doubles and seed data.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state; commits inside application code only release the
session's savepoint.
"""

import uuid
from datetime import date, datetime, time, timedelta
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import RedisError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from alerts.dispatcher import ChannelResult, DispatchResult, NotificationDispatcher, SENT
from api.deps import get_db, get_dispatcher, get_event_bus, get_velocity_cache
from api.main import app
from core.config import Settings
from core.errors import TransientStoreError
from db.models import Batch, Inventory, InventoryMovement, Sku, Tenant, Warehouse
from db.session import Base
from events.bus import EventBus
from inventory.velocity import VelocityCache

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
TODAY = date(2026, 1, 1)


# ─── Doubles ────────────────────────────────────────────────────────────────


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache and in-app channel."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    async def get(self, key):
        if self.fail:
            raise RedisError("connection refused")
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise RedisError("connection refused")
        self.store[key] = value
        self.ttls[key] = ttl

    async def publish(self, channel, message):
        if self.fail:
            raise RedisError("connection refused")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        return None


class MemoryBus(EventBus):
    def __init__(self):
        self.events = []
        self.fail = False

    async def publish(self, event) -> int:
        if self.fail:
            raise TransientStoreError(f"bus down publishing {event.topic}")
        self.events.append(event)
        return 1

    def topics(self) -> list[str]:
        return [e.topic for e in self.events]


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    async def dispatch(self, payload) -> DispatchResult:
        self.sent.append(payload)
        return DispatchResult([ChannelResult(channel, SENT) for channel in payload.channels])


# ─── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine():
    """In-memory database with all tables, one per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # pysqlite defers BEGIN; emit it ourselves so SAVEPOINTs behave
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False, join_transaction_mode="create_savepoint")

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def bus():
    return MemoryBus()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def velocity_cache(fake_redis, settings):
    return VelocityCache(fake_redis, settings.velocity_cache_ttl_seconds)


# ─── Seed data ──────────────────────────────────────────────────────────────


@pytest.fixture
async def seeded(test_db):
    """One tenant with a warehouse and a perishable SKU, plus a second tenant."""
    tenant = Tenant(tenant_id=TENANT_ID, name="Fresh Foods", code="FRESH", status="active")
    other = Tenant(tenant_id=OTHER_TENANT_ID, name="Other Co", code="OTHER", status="active")
    test_db.add_all([tenant, other])
    await test_db.flush()

    warehouse = Warehouse(tenant_id=TENANT_ID, code="WH1", name="Main Warehouse")
    other_warehouse = Warehouse(tenant_id=OTHER_TENANT_ID, code="WH1", name="Other Warehouse")
    test_db.add_all([warehouse, other_warehouse])
    await test_db.flush()

    sku = Sku(tenant_id=TENANT_ID, sku_code="MILK-1L", name="Whole Milk 1L", unit_cost=2.5, is_perishable=True)
    other_sku = Sku(tenant_id=OTHER_TENANT_ID, sku_code="MILK-1L", name="Milk", unit_cost=2.0)
    test_db.add_all([sku, other_sku])
    await test_db.commit()

    return SimpleNamespace(
        tenant_id=TENANT_ID,
        warehouse=warehouse,
        sku=sku,
        other_tenant_id=OTHER_TENANT_ID,
        other_warehouse=other_warehouse,
        other_sku=other_sku,
    )


@pytest.fixture
def make_batch(test_db, seeded):
    async def _make(
        batch_number: str,
        quantity: int = 10,
        expiry_date: date | None = None,
        received_date: date | None = None,
        status: str = "active",
        qa_status: str = "passed",
        tenant_id: uuid.UUID | None = None,
        sku_id: uuid.UUID | None = None,
        warehouse_id: uuid.UUID | None = None,
    ) -> Batch:
        batch = Batch(
            tenant_id=tenant_id or seeded.tenant_id,
            sku_id=sku_id or seeded.sku.sku_id,
            warehouse_id=warehouse_id or seeded.warehouse.warehouse_id,
            batch_number=batch_number,
            quantity_received=quantity,
            quantity_available=quantity,
            expiry_date=expiry_date,
            received_date=received_date or TODAY - timedelta(days=30),
            status=status,
            qa_status=qa_status,
        )
        test_db.add(batch)
        await test_db.commit()
        return batch

    return _make


@pytest.fixture
def set_inventory(test_db, seeded):
    async def _set(quantity: int, sku_id=None, warehouse_id=None) -> Inventory:
        row = Inventory(
            tenant_id=seeded.tenant_id,
            sku_id=sku_id or seeded.sku.sku_id,
            warehouse_id=warehouse_id or seeded.warehouse.warehouse_id,
            quantity_available=quantity,
        )
        test_db.add(row)
        await test_db.commit()
        return row

    return _set


@pytest.fixture
def add_outbound(test_db, seeded):
    """Record outbound movements: one per (days_ago, quantity) pair."""

    async def _add(daily: list[tuple[int, int]], today: date = TODAY, movement_type: str = "sale"):
        for days_ago, quantity in daily:
            created = today - timedelta(days=days_ago)
            test_db.add(
                InventoryMovement(
                    tenant_id=seeded.tenant_id,
                    sku_id=seeded.sku.sku_id,
                    warehouse_id=seeded.warehouse.warehouse_id,
                    movement_type=movement_type,
                    quantity_change=-quantity,
                    created_at=datetime.combine(created, time(12, 0)),
                )
            )
        await test_db.commit()

    return _add


# ─── HTTP client ────────────────────────────────────────────────────────────


@pytest.fixture
def tenant_headers():
    return {"X-Tenant-ID": str(TENANT_ID), "X-Actor-ID": "ops@freshfoods.test"}


@pytest.fixture
async def client(test_db, bus, dispatcher, velocity_cache):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_velocity_cache] = lambda: velocity_cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
