"""Provisioning endpoints — submit, poll, resume and cancel runs."""

import logging
import uuid

from fastapi import APIRouter, HTTPException, status

from app.api.deps import Orchestrator
from app.models.provisioning import ProvisioningAccepted, ProvisioningRunRead
from app.models.request import ProvisioningRequest
from app.services.errors import (
    ConflictError,
    InvalidTransitionError,
    ProvisioningError,
    RunNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provisioning", tags=["provisioning"])


def _http_error(exc: ProvisioningError) -> HTTPException:
    if isinstance(exc, RunNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, (ConflictError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if exc.retryable:
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message)
    logger.error("Provisioning request failed: %s", exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)


@router.post(
    "/runs", response_model=ProvisioningAccepted, status_code=status.HTTP_202_ACCEPTED
)
async def submit_run(body: ProvisioningRequest, orchestrator: Orchestrator) -> ProvisioningAccepted:
    """Accept a marketplace provisioning request.

    Submitting the same idempotency key again returns the original run.
    """
    try:
        admission = await orchestrator.start(body)
    except ProvisioningError as exc:
        raise _http_error(exc) from exc
    return ProvisioningAccepted(run_id=admission.run_id, is_new=admission.is_new)


@router.get("/runs/{run_id}", response_model=ProvisioningRunRead)
async def get_run(run_id: uuid.UUID, orchestrator: Orchestrator) -> ProvisioningRunRead:
    try:
        return await orchestrator.status(run_id)
    except ProvisioningError as exc:
        raise _http_error(exc) from exc


@router.post(
    "/runs/{run_id}/resume", response_model=ProvisioningRunRead, status_code=status.HTTP_202_ACCEPTED
)
async def resume_run(run_id: uuid.UUID, orchestrator: Orchestrator) -> ProvisioningRunRead:
    """Re-queue a run, e.g. one parked in COMPENSATING after an operator fix."""
    try:
        snapshot = await orchestrator.status(run_id)
        if orchestrator.launcher is not None:
            await orchestrator.launcher(run_id)
        else:
            snapshot = await orchestrator.resume(run_id)
    except ProvisioningError as exc:
        raise _http_error(exc) from exc
    return snapshot


@router.post(
    "/runs/{run_id}/cancel", response_model=ProvisioningRunRead, status_code=status.HTTP_202_ACCEPTED
)
async def cancel_run(run_id: uuid.UUID, orchestrator: Orchestrator) -> ProvisioningRunRead:
    """Request a rollback. The driving worker compensates before its next stage."""
    try:
        return await orchestrator.cancel(run_id)
    except ProvisioningError as exc:
        raise _http_error(exc) from exc
