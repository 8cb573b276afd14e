"""Tests for the provisioning state store: checkpoints, transitions, leases."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models.base import utcnow
from app.models.provisioning import (
    CompensationStatus,
    Outcome,
    ProvisioningRun,
    Stage,
    StepStatus,
)
from app.services.errors import (
    InvalidTransitionError,
    RunNotFoundError,
    UnrecoverableInfraError,
)
from app.services.idempotency import IdempotencyGuard
from app.services.state_store import ProvisioningStateStore


@pytest.fixture
def store(session_factory):
    return ProvisioningStateStore(session_factory)


@pytest.fixture
async def run_id(session_factory, make_request):
    admission = await IdempotencyGuard(session_factory).admit(make_request())
    return admission.run_id


@pytest.mark.asyncio
async def test_load_unknown_run(store):
    with pytest.raises(RunNotFoundError):
        await store.load(uuid.uuid4())


@pytest.mark.asyncio
async def test_load_restores_request(store, run_id, make_request):
    state = await store.load(run_id)
    assert state.request == make_request()
    assert state.steps == {}


@pytest.mark.asyncio
async def test_success_checkpoints_and_advances(store, run_id):
    await store.begin(run_id)
    following = await store.record_step_success(
        run_id, Stage.VALIDATING, 1, utcnow(), {"subdomain": "acme"}
    )
    assert following == Stage.RESERVING_NAMESPACE

    state = await store.load(run_id)
    assert state.run.stage == Stage.RESERVING_NAMESPACE
    assert state.outputs() == {Stage.VALIDATING: {"subdomain": "acme"}}
    record = state.steps[Stage.VALIDATING]
    assert record.status == StepStatus.OK
    assert record.position == 0


@pytest.mark.asyncio
async def test_success_for_wrong_stage_rejected(store, run_id):
    await store.begin(run_id)
    with pytest.raises(InvalidTransitionError):
        await store.record_step_success(run_id, Stage.CREATING_TENANT, 1, utcnow(), {})
    assert (await store.load(run_id)).steps == {}


@pytest.mark.asyncio
async def test_finalize_success_completes_run(store, run_id, session_factory):
    await store.begin(run_id)
    stage = Stage.VALIDATING
    while stage != Stage.COMPLETED:
        stage = await store.record_step_success(run_id, stage, 1, utcnow(), {})

    snapshot = await store.snapshot(run_id)
    assert snapshot.stage == Stage.COMPLETED
    assert snapshot.outcome == Outcome.SUCCEEDED
    assert snapshot.completed_at is not None
    assert [s.stage for s in snapshot.steps] == [
        Stage.VALIDATING,
        Stage.RESERVING_NAMESPACE,
        Stage.CREATING_TENANT,
        Stage.PROVISIONING_SCHEMA,
        Stage.CREATING_ADMIN,
        Stage.APPLYING_SETTINGS,
        Stage.FINALIZING,
    ]


@pytest.mark.asyncio
async def test_failure_moves_to_compensating(store, run_id):
    await store.begin(run_id)
    await store.record_step_failure(
        run_id, Stage.VALIDATING, 3, utcnow(), UnrecoverableInfraError("boom")
    )
    snapshot = await store.snapshot(run_id)
    assert snapshot.stage == Stage.COMPENSATING
    assert snapshot.failed_stage == Stage.VALIDATING
    assert snapshot.error == "boom"
    assert snapshot.steps[0].status == StepStatus.FAILED
    assert snapshot.steps[0].error_code == "unrecoverable_infra"
    assert snapshot.steps[0].attempts == 3

    since = snapshot.compensating_since
    assert since is not None
    await store.record_compensation(
        run_id, Stage.VALIDATING, CompensationStatus.FAILED, 2, "still down"
    )
    assert (await store.snapshot(run_id)).compensating_since == since

    await store.record_compensation(run_id, Stage.VALIDATING, CompensationStatus.DONE, 1)
    await store.finish_compensation(run_id, Outcome.COMPENSATED)
    snapshot = await store.snapshot(run_id)
    assert snapshot.stage == Stage.FAILED
    assert snapshot.outcome == Outcome.COMPENSATED
    assert snapshot.steps[0].compensation_status == CompensationStatus.DONE


@pytest.mark.asyncio
async def test_rollback_request_on_terminal_run(store, run_id):
    await store.begin(run_id)
    await store.begin_compensation(run_id, "Rollback requested", Stage.VALIDATING)
    await store.finish_compensation(run_id, Outcome.FAILED)
    with pytest.raises(InvalidTransitionError):
        await store.request_rollback(run_id)


@pytest.mark.asyncio
async def test_rollback_request_sets_flag(store, run_id):
    assert await store.is_rollback_requested(run_id) is False
    await store.request_rollback(run_id)
    assert await store.is_rollback_requested(run_id) is True


@pytest.mark.asyncio
async def test_lease_is_exclusive(store, run_id):
    ttl = timedelta(minutes=5)
    assert await store.acquire_lease(run_id, "worker-a", ttl) is True
    assert await store.acquire_lease(run_id, "worker-a", ttl) is True
    assert await store.acquire_lease(run_id, "worker-b", ttl) is False
    assert await store.list_resumable() == []

    await store.release_lease(run_id, "worker-a")
    assert await store.acquire_lease(run_id, "worker-b", ttl) is True


@pytest.mark.asyncio
async def test_expired_lease_is_resumable(store, run_id):
    await store.acquire_lease(run_id, "dead-worker", timedelta(seconds=-1))
    assert await store.list_resumable() == [run_id]
    assert await store.acquire_lease(run_id, "worker-b", timedelta(minutes=5)) is True


@pytest.mark.asyncio
async def test_stuck_compensations(store, run_id):
    await store.begin(run_id)
    await store.begin_compensation(run_id, "Rollback requested", Stage.VALIDATING)
    assert await store.list_stuck_compensations(timedelta(minutes=15)) == []
    stuck = await store.list_stuck_compensations(timedelta(seconds=-1))
    assert [run.id for run in stuck] == [run_id]


@pytest.mark.asyncio
async def test_stuck_compensations_ignore_later_activity(store, run_id, session_factory):
    await store.begin(run_id)
    await store.record_step_failure(
        run_id, Stage.VALIDATING, 1, utcnow(), UnrecoverableInfraError("boom")
    )
    async with session_factory() as session:
        await session.execute(
            update(ProvisioningRun)
            .where(ProvisioningRun.id == run_id)
            .values(compensating_since=utcnow() - timedelta(hours=1))
        )
        await session.commit()

    # A fresh retry touches updated_at but not the alert clock
    await store.record_compensation(run_id, Stage.VALIDATING, CompensationStatus.FAILED, 1, "down")
    stuck = await store.list_stuck_compensations(timedelta(minutes=15))
    assert [run.id for run in stuck] == [run_id]
