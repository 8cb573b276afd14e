"""FastAPI dependencies for the provisioning services."""

import logging
import uuid
from typing import Annotated

from arq.connections import ArqRedis, create_pool
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.database import get_session, get_session_factory
from app.services.namespace import NamespaceReservationService
from app.services.orchestrator import ProvisioningOrchestrator
from app.workers.main import _redis_settings

logger = logging.getLogger(__name__)


async def enqueue_provisioning(run_id: uuid.UUID) -> None:
    """Launcher that hands a new run to the ARQ worker.

    A queue outage is not fatal: the run is already persisted as PENDING and
    the worker's recovery job picks it up on its next pass.
    """
    try:
        redis: ArqRedis = await create_pool(_redis_settings())
        try:
            await redis.enqueue_job("provision_marketplace", run_id=str(run_id))
        finally:
            await redis.aclose()
    except Exception:
        logger.warning("Could not enqueue run %s; recovery job will pick it up", run_id)


def get_orchestrator(
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator.from_session_factory(
        session_factory, get_settings(), launcher=enqueue_provisioning
    )


def get_reservations(
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
) -> NamespaceReservationService:
    return NamespaceReservationService(session_factory)


# Typed shorthand for use in route signatures
Session = Annotated[AsyncSession, Depends(get_session)]
Orchestrator = Annotated[ProvisioningOrchestrator, Depends(get_orchestrator)]
Reservations = Annotated[NamespaceReservationService, Depends(get_reservations)]
