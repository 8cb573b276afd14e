"""Provisioning worker tasks — drive runs and keep the tables tidy."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.services.errors import ProvisioningError
from app.services.idempotency import IdempotencyGuard
from app.services.namespace import NamespaceReservationService
from app.services.orchestrator import ProvisioningOrchestrator

logger = logging.getLogger(__name__)


async def provision_marketplace(ctx: dict, run_id: str) -> dict:
    """ARQ task: drive one provisioning run until it ends or parks.

    Args:
        ctx: ARQ worker context.
        run_id: UUID of the ProvisioningRun.

    Returns:
        dict with the run's stage and outcome.
    """
    orchestrator = ProvisioningOrchestrator.from_session_factory(async_session_factory)
    try:
        snapshot = await orchestrator.resume(uuid.UUID(run_id))
    except ProvisioningError as exc:
        logger.error("Run %s could not be driven: %s", run_id, exc.message)
        return {"error": exc.code}
    return {"stage": snapshot.stage, "outcome": snapshot.outcome}


async def recover_stalled_runs(ctx: dict) -> dict:
    """Periodic job: pick up runs whose worker died and flag stuck rollbacks.

    A run is stalled when it is not terminal and nobody holds its lease.
    Runs stuck in COMPENSATING past the alert threshold are logged at ERROR
    on every pass until an operator resolves them.
    """
    settings = get_settings()
    orchestrator = ProvisioningOrchestrator.from_session_factory(async_session_factory, settings)

    stuck = await orchestrator.store.list_stuck_compensations(
        timedelta(seconds=settings.compensation_alert_after_seconds)
    )
    for run in stuck:
        logger.error(
            "Run %s (%s) stuck in COMPENSATING since %s: %s",
            run.id, run.subdomain, run.compensating_since, run.failure_reason,
        )

    resumed = 0
    for run_id in await orchestrator.store.list_resumable(settings.recovery_batch_size):
        try:
            await orchestrator.resume(run_id)
            resumed += 1
        except ProvisioningError as exc:
            logger.error("Recovery of run %s failed: %s", run_id, exc.message)

    if resumed:
        logger.info("Recovery: resumed %d stalled runs", resumed)
    return {"resumed": resumed, "stuck_compensations": len(stuck)}


async def expire_reservations(ctx: dict) -> dict:
    """Periodic job: release namespace holds whose TTL has lapsed."""
    expired = await NamespaceReservationService(async_session_factory).expire_stale()
    return {"expired": expired}


async def purge_idempotency_keys(ctx: dict) -> dict:
    """Periodic job: forget idempotency keys older than the window."""
    purged = await IdempotencyGuard(async_session_factory).purge_expired()
    return {"purged": purged}
