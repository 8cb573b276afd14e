"""Tests for the ARQ worker tasks."""

import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from app.models.base import utcnow
from app.models.provisioning import IdempotencyKey, Outcome, ProvisioningRun, Stage
from app.services.errors import TransientInfraError, UnrecoverableInfraError
from app.services.idempotency import IdempotencyGuard
from app.services.namespace import NamespaceReservationService
from app.services.orchestrator import ProvisioningOrchestrator, RetryPolicy
from app.services.tenant_repository import SqlTenantRepository
from app.workers.main import WorkerSettings
from app.workers.provisioning import (
    expire_reservations,
    provision_marketplace,
    purge_idempotency_keys,
    recover_stalled_runs,
)


@pytest.fixture
def worker_db(session_factory):
    """Point the worker tasks at the test database."""
    with patch("app.workers.provisioning.async_session_factory", session_factory):
        yield session_factory


def test_worker_settings_registers_jobs():
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {"provision_marketplace"}
    cron_names = {job.name for job in WorkerSettings.cron_jobs}
    assert cron_names == {
        "cron:recover_stalled_runs",
        "cron:expire_reservations",
        "cron:purge_idempotency_keys",
    }


@pytest.mark.asyncio
async def test_provision_marketplace_drives_run(worker_db, make_request):
    admission = await IdempotencyGuard(worker_db).admit(make_request())

    result = await provision_marketplace({}, str(admission.run_id))
    assert result == {"stage": Stage.COMPLETED, "outcome": Outcome.SUCCEEDED}


@pytest.mark.asyncio
async def test_provision_marketplace_unknown_run(worker_db):
    result = await provision_marketplace({}, "00000000-0000-0000-0000-000000000000")
    assert result == {"error": "run_not_found"}


@pytest.mark.asyncio
async def test_recover_stalled_runs(worker_db, make_request, make_orchestrator):
    guard = IdempotencyGuard(worker_db)
    stalled = await guard.admit(make_request())
    busy = await guard.admit(make_request(idempotency_key="k2", subdomain="busy"))
    await make_orchestrator().store.acquire_lease(busy.run_id, "live-worker", timedelta(minutes=5))

    result = await recover_stalled_runs({})
    assert result == {"resumed": 1, "stuck_compensations": 0}

    orchestrator = make_orchestrator()
    assert (await orchestrator.status(stalled.run_id)).stage == Stage.COMPLETED
    assert (await orchestrator.status(busy.run_id)).stage == Stage.PENDING


class AdminUndoBroken(SqlTenantRepository):
    """Settings are rejected and the admin account can never be deleted."""

    async def create_settings(self, tenant_id, **values):
        raise UnrecoverableInfraError("settings quota exceeded")

    async def delete_admin(self, admin_id):
        raise TransientInfraError("database unreachable")


@pytest.fixture
def broken_rollback():
    """Every orchestrator the worker builds uses AdminUndoBroken."""
    build = ProvisioningOrchestrator.from_session_factory

    def _build(session_factory, settings=None, **kwargs):
        kwargs["repository"] = AdminUndoBroken(session_factory)
        kwargs["policy"] = RetryPolicy(max_attempts=2, multiplier=0, max_wait=0)
        return build(session_factory, settings, **kwargs)

    with patch.object(ProvisioningOrchestrator, "from_session_factory", side_effect=_build):
        yield


@pytest.mark.asyncio
async def test_recover_keeps_alerting_on_failing_compensation(
    worker_db, broken_rollback, make_request, caplog
):
    admission = await IdempotencyGuard(worker_db).admit(make_request())
    result = await provision_marketplace({}, str(admission.run_id))
    assert result["stage"] == Stage.COMPENSATING

    # Pretend the rollback has been failing for an hour
    since = utcnow() - timedelta(hours=1)
    async with worker_db() as session:
        await session.execute(
            update(ProvisioningRun)
            .where(ProvisioningRun.id == admission.run_id)
            .values(compensating_since=since)
        )
        await session.commit()

    # Every pass retries the rollback, fails again and still raises the alert
    for _ in range(3):
        caplog.clear()
        with caplog.at_level(logging.ERROR, logger="app.workers.provisioning"):
            result = await recover_stalled_runs({})
        assert result == {"resumed": 1, "stuck_compensations": 1}
        assert "stuck in COMPENSATING" in caplog.text

    async with worker_db() as session:
        run = await session.get(ProvisioningRun, admission.run_id)
    assert run.stage == Stage.COMPENSATING
    assert run.compensating_since == since
    assert run.updated_at > since


@pytest.mark.asyncio
async def test_recent_compensation_is_not_reported(worker_db, broken_rollback, make_request):
    admission = await IdempotencyGuard(worker_db).admit(make_request())
    await provision_marketplace({}, str(admission.run_id))

    result = await recover_stalled_runs({})
    assert result == {"resumed": 1, "stuck_compensations": 0}


@pytest.mark.asyncio
async def test_expire_reservations(worker_db):
    import uuid

    reservations = NamespaceReservationService(worker_db)
    await reservations.reserve("stale", uuid.uuid4(), timedelta(seconds=-1))

    assert await expire_reservations({}) == {"expired": 1}
    assert await reservations.is_available("stale")


@pytest.mark.asyncio
async def test_purge_idempotency_keys(worker_db, make_request):
    await IdempotencyGuard(worker_db).admit(make_request())
    async with worker_db() as session:
        await session.execute(
            update(IdempotencyKey).values(expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

    assert await purge_idempotency_keys({}) == {"purged": 1}
