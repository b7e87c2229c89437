"""
Expiry lifecycle tests — classification, sweep, escalation and the tenant pass.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from alerts.dispatcher import NotificationDispatcher
from db.enums import ExpiryLevel
from inventory.expiry import ExpiryMonitor, classify_expiry, run_expiry_pass

TODAY = date(2026, 1, 1)


@pytest.fixture
def session_factory(test_db):
    """Sessions that share the test connection, so they see seeded rows."""
    return async_sessionmaker(bind=test_db.bind, expire_on_commit=False, join_transaction_mode="create_savepoint")


class TestClassifyExpiry:
    @pytest.mark.parametrize(
        "days,level",
        [
            (0, ExpiryLevel.EMERGENCY),
            (7, ExpiryLevel.EMERGENCY),
            (8, ExpiryLevel.CRITICAL),
            (30, ExpiryLevel.CRITICAL),
            (31, ExpiryLevel.WARNING),
            (60, ExpiryLevel.WARNING),
        ],
    )
    def test_boundaries(self, days, level):
        assert classify_expiry(days) == level

    def test_custom_windows(self):
        assert classify_expiry(10, warning_days=14, critical_days=10) == ExpiryLevel.EMERGENCY
        assert classify_expiry(11, warning_days=14, critical_days=10) == ExpiryLevel.CRITICAL


@pytest.mark.asyncio
class TestFindExpiring:
    async def test_window_and_eligibility(self, test_db, seeded, make_batch, settings):
        await make_batch("SOON", expiry_date=TODAY + timedelta(days=3))
        await make_batch("MONTH", expiry_date=TODAY + timedelta(days=20), status="near_expiry")
        await make_batch("LATER", expiry_date=TODAY + timedelta(days=45))
        await make_batch("FAR", expiry_date=TODAY + timedelta(days=90))
        await make_batch("NO-DATE", expiry_date=None)
        await make_batch("HELD", expiry_date=TODAY + timedelta(days=3), status="on_hold")
        empty = await make_batch("EMPTY", expiry_date=TODAY + timedelta(days=3))
        empty.quantity_available = 0
        await test_db.commit()

        monitor = ExpiryMonitor(test_db, settings=settings)
        expiring = await monitor.find_expiring_batches(seeded.tenant_id, today=TODAY)

        assert [(b.batch_number, b.days_until_expiry, b.level) for b in expiring] == [
            ("SOON", 3, ExpiryLevel.EMERGENCY),
            ("MONTH", 20, ExpiryLevel.CRITICAL),
            ("LATER", 45, ExpiryLevel.WARNING),
        ]
        assert expiring[0].sku_code == "MILK-1L"


@pytest.mark.asyncio
class TestSweepExpired:
    async def test_past_expiry_batches_expire(self, test_db, seeded, make_batch, bus, settings):
        gone = await make_batch("GONE", expiry_date=TODAY - timedelta(days=1))
        quarantined = await make_batch("QUAR", expiry_date=TODAY - timedelta(days=5), status="quarantine")
        today_batch = await make_batch("TODAY", expiry_date=TODAY)
        disposed = await make_batch("DISPOSED", expiry_date=TODAY - timedelta(days=9), status="disposed")

        monitor = ExpiryMonitor(test_db, bus=bus, settings=settings)
        assert await monitor.sweep_expired(seeded.tenant_id, today=TODAY) == 2

        for batch in (gone, quarantined, today_batch, disposed):
            await test_db.refresh(batch)
        assert gone.status == "expired"
        assert quarantined.status == "expired"
        assert today_batch.status == "active"
        assert disposed.status == "disposed"
        assert bus.topics() == ["batch.expiry.expired", "batch.expiry.expired"]

    async def test_sweep_is_idempotent(self, test_db, seeded, make_batch, bus, settings):
        await make_batch("GONE", expiry_date=TODAY - timedelta(days=1))
        monitor = ExpiryMonitor(test_db, bus=bus, settings=settings)

        assert await monitor.sweep_expired(seeded.tenant_id, today=TODAY) == 1
        assert await monitor.sweep_expired(seeded.tenant_id, today=TODAY) == 0
        assert len(bus.events) == 1

    async def test_sweep_is_tenant_scoped(self, test_db, seeded, make_batch, settings):
        foreign = await make_batch(
            "FOREIGN",
            expiry_date=TODAY - timedelta(days=1),
            tenant_id=seeded.other_tenant_id,
            sku_id=seeded.other_sku.sku_id,
            warehouse_id=seeded.other_warehouse.warehouse_id,
        )
        monitor = ExpiryMonitor(test_db, settings=settings)
        assert await monitor.sweep_expired(seeded.tenant_id, today=TODAY) == 0
        await test_db.refresh(foreign)
        assert foreign.status == "active"


@pytest.mark.asyncio
class TestCheckTenant:
    async def test_full_pass(self, test_db, seeded, make_batch, bus, dispatcher, settings):
        await make_batch("GONE", expiry_date=TODAY - timedelta(days=2))
        soon = await make_batch("SOON", expiry_date=TODAY + timedelta(days=3))
        month = await make_batch("MONTH", expiry_date=TODAY + timedelta(days=20))
        later = await make_batch("LATER", expiry_date=TODAY + timedelta(days=45))

        monitor = ExpiryMonitor(test_db, bus=bus, dispatcher=dispatcher, settings=settings)
        summary = await monitor.check_tenant(seeded.tenant_id, today=TODAY)

        assert summary.expired == 1
        assert (summary.emergency, summary.critical, summary.warning) == (1, 1, 1)
        assert summary.transitioned_to_near_expiry == 2

        assert bus.topics() == [
            "batch.expiry.expired",
            "batch.expiry.emergency",
            "batch.expiry.critical",
            "batch.expiry.warning",
        ]
        assert [p.title for p in dispatcher.sent] == [
            "1 batch at emergency expiry level",
            "1 batch at critical expiry level",
            "1 batch at warning expiry level",
        ]
        assert [c.value for c in dispatcher.sent[0].channels] == ["in_app", "email", "sms"]
        assert "Batch SOON (SKU MILK-1L) expires in 3 days" in dispatcher.sent[0].message

        for batch in (soon, month, later):
            await test_db.refresh(batch)
        assert soon.status == "near_expiry"
        assert month.status == "near_expiry"
        assert later.status == "active"

    async def test_dispatcher_outage_still_escalates(self, test_db, seeded, make_batch, bus, settings):
        class DownDispatcher(NotificationDispatcher):
            async def dispatch(self, payload):
                raise RuntimeError("dispatcher down")

        soon = await make_batch("SOON", expiry_date=TODAY + timedelta(days=3))
        monitor = ExpiryMonitor(test_db, bus=bus, dispatcher=DownDispatcher(), settings=settings)

        summary = await monitor.check_tenant(seeded.tenant_id, today=TODAY)

        assert summary.emergency == 1
        assert summary.transitioned_to_near_expiry == 1
        assert bus.topics() == ["batch.expiry.emergency"]
        await test_db.refresh(soon)
        assert soon.status == "near_expiry"

    async def test_rerun_transitions_nothing(self, test_db, seeded, make_batch, settings):
        await make_batch("SOON", expiry_date=TODAY + timedelta(days=3))
        monitor = ExpiryMonitor(test_db, settings=settings)

        first = await monitor.check_tenant(seeded.tenant_id, today=TODAY)
        second = await monitor.check_tenant(seeded.tenant_id, today=TODAY)

        assert first.transitioned_to_near_expiry == 1
        assert second.transitioned_to_near_expiry == 0
        assert second.emergency == 1

    async def test_quiet_tenant_sends_nothing(self, test_db, seeded, bus, dispatcher, settings):
        monitor = ExpiryMonitor(test_db, bus=bus, dispatcher=dispatcher, settings=settings)
        summary = await monitor.check_tenant(seeded.tenant_id, today=TODAY)
        assert summary.emergency == summary.critical == summary.warning == 0
        assert bus.events == []
        assert dispatcher.sent == []


@pytest.mark.asyncio
class TestExpirySummary:
    async def test_value_at_risk(self, test_db, seeded, make_batch, settings):
        await make_batch("SOON", quantity=10, expiry_date=TODAY + timedelta(days=3))
        await make_batch("LATER", quantity=4, expiry_date=TODAY + timedelta(days=40))

        summary = await ExpiryMonitor(test_db, settings=settings).expiry_summary(seeded.tenant_id, today=TODAY)

        assert summary.total_expiring == 2
        assert summary.emergency_count == 1
        assert summary.warning_count == 1
        assert summary.total_value_at_risk == 35.0


@pytest.mark.asyncio
class TestRunExpiryPass:
    async def test_failing_tenant_does_not_stop_others(self, seeded, make_batch, session_factory, settings):
        await make_batch("GONE", expiry_date=TODAY - timedelta(days=1))

        outcomes = await run_expiry_pass(
            ["not-a-uuid", seeded.tenant_id], session_factory, settings=settings, today=TODAY
        )

        assert [o.status for o in outcomes] == ["failed", "ok"]
        assert outcomes[0].error
        assert outcomes[1].ok
        assert outcomes[1].summary["expired"] == 1
