import asyncio
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.session import Base
from workers.celery_app import celery_app, cron_to_crontab
from workers.scheduler import dispatch_active_tenants

ACTIVE_ID = "00000000-0000-0000-0000-000000000101"
SUSPENDED_ID = "00000000-0000-0000-0000-000000000102"
INACTIVE_ID = "00000000-0000-0000-0000-000000000103"


def _seed_tenants(db_url: str) -> None:
    from db.models import Tenant

    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_factory() as db:
            db.add_all(
                [
                    Tenant(tenant_id=uuid.UUID(ACTIVE_ID), name="Active Tenant", code="ACT", status="active"),
                    Tenant(tenant_id=uuid.UUID(SUSPENDED_ID), name="Suspended Tenant", code="SUS", status="suspended"),
                    Tenant(tenant_id=uuid.UUID(INACTIVE_ID), name="Inactive Tenant", code="INA", status="inactive"),
                ]
            )
            await db.commit()
        await engine.dispose()

    asyncio.run(_seed())


def _capture(monkeypatch, db_url: str, statuses=("active",)) -> list[tuple[str, dict]]:
    monkeypatch.setattr(
        "core.config.get_settings",
        lambda: SimpleNamespace(database_url=db_url, active_tenant_statuses=list(statuses)),
    )
    dispatched_calls: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched_calls.append((task_name, kwargs))
        return None

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)
    return dispatched_calls


def test_dispatch_active_tenants_fans_out_only_active(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    _seed_tenants(db_url)
    dispatched_calls = _capture(monkeypatch, db_url)

    result = dispatch_active_tenants.run(task_name="workers.expiry.check_batch_expiry")
    assert result["status"] == "success"
    assert result["tenant_count"] == 1
    assert result["dispatched_count"] == 1
    assert dispatched_calls == [("workers.expiry.check_batch_expiry", {"tenant_id": ACTIVE_ID})]


def test_dispatch_honours_explicit_statuses_and_kwargs(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    _seed_tenants(db_url)
    dispatched_calls = _capture(monkeypatch, db_url)

    result = dispatch_active_tenants.run(
        task_name="workers.thresholds.check_thresholds",
        task_kwargs={"source": "manual"},
        statuses=["active", "suspended"],
    )
    assert result["tenant_count"] == 2
    assert {kwargs["tenant_id"] for _, kwargs in dispatched_calls} == {ACTIVE_ID, SUSPENDED_ID}
    assert all(kwargs["source"] == "manual" for _, kwargs in dispatched_calls)


def test_dispatch_rejects_foreign_task_names(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}"
    dispatched_calls = _capture(monkeypatch, db_url)

    result = dispatch_active_tenants.run(task_name="os.system")
    assert result == {"status": "failed", "reason": "invalid_task_name", "task_name": "os.system"}
    assert dispatched_calls == []


def test_beat_schedule_routes_through_dispatcher():
    schedule = celery_app.conf.beat_schedule
    assert schedule["expiry-check"]["task"] == "workers.scheduler.dispatch_active_tenants"
    assert schedule["expiry-check"]["kwargs"]["task_name"] == "workers.expiry.check_batch_expiry"
    assert schedule["threshold-check"]["kwargs"]["task_name"] == "workers.thresholds.check_thresholds"


def test_cron_to_crontab_requires_five_fields():
    tab = cron_to_crontab("0 */6 * * *")
    assert tab.hour == set(range(0, 24, 6))
    assert tab.minute == {0}

    with pytest.raises(ValueError):
        cron_to_crontab("*/5 * * *")
