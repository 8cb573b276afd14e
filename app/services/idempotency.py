"""Idempotency guard — one provisioning run per caller-supplied key."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.models.base import expiry, utcnow
from app.models.provisioning import IdempotencyKey, ProvisioningRun, Stage
from app.models.request import ProvisioningRequest
from app.services.errors import (
    IdempotencyKeyReuseError,
    TransientInfraError,
    translate_db_errors,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class Admission:
    run_id: uuid.UUID
    is_new: bool


class IdempotencyGuard:
    def __init__(self, session_factory: sessionmaker, window: timedelta = DEFAULT_WINDOW) -> None:
        self._session_factory = session_factory
        self._window = window

    async def admit(self, request: ProvisioningRequest) -> Admission:
        """Return the run for ``request.idempotency_key``, creating it if needed.

        The run row and the key row are written in one transaction, so a key
        never points at a run that does not exist. Concurrent submissions race
        on the key's primary key; the loser reads the winner's run.
        """
        key = request.idempotency_key
        fingerprint = request.fingerprint()

        with translate_db_errors("admit provisioning request"):
            now = utcnow()
            run = _new_run(request)
            async with self._session_factory() as session:
                session.add(run)
                session.add(IdempotencyKey(
                    key=key,
                    run_id=run.id,
                    request_fingerprint=fingerprint,
                    created_at=now,
                    expires_at=expiry(self._window, now),
                ))
                try:
                    await session.commit()
                    logger.info("Admitted run %s for idempotency key %s", run.id, key)
                    return Admission(run_id=run.id, is_new=True)
                except IntegrityError:
                    await session.rollback()

            # The key exists. Take it over if its retention window has lapsed.
            run = _new_run(request)
            async with self._session_factory() as session:
                session.add(run)
                await session.flush()
                result = await session.execute(
                    update(IdempotencyKey)
                    .where(IdempotencyKey.key == key, IdempotencyKey.expires_at < now)
                    .values(
                        run_id=run.id,
                        request_fingerprint=fingerprint,
                        created_at=now,
                        expires_at=expiry(self._window, now),
                    )
                )
                if result.rowcount == 1:
                    await session.commit()
                    logger.info("Reused expired idempotency key %s for run %s", key, run.id)
                    return Admission(run_id=run.id, is_new=True)
                await session.rollback()

            async with self._session_factory() as session:
                existing = await session.get(IdempotencyKey, key)

        if existing is None:
            # Purged between the insert and the read; the caller may retry.
            raise TransientInfraError(f"Idempotency key {key} changed during admission")
        if existing.request_fingerprint != fingerprint:
            raise IdempotencyKeyReuseError(
                f"Idempotency key '{key}' was already used for a different request"
            )
        logger.info("Duplicate submission for key %s -> run %s", key, existing.run_id)
        return Admission(run_id=existing.run_id, is_new=False)

    async def purge_expired(self) -> int:
        """Forget keys past their window. Runs themselves are kept for audit."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyKey).where(IdempotencyKey.expires_at < utcnow())
            )
            await session.commit()
        if result.rowcount:
            logger.info("Purged %d expired idempotency keys", result.rowcount)
        return result.rowcount


def _new_run(request: ProvisioningRequest) -> ProvisioningRun:
    return ProvisioningRun(
        idempotency_key=request.idempotency_key,
        request_payload=request.model_dump_json(),
        subdomain=request.subdomain.strip().lower()[:63],
        stage=Stage.PENDING,
    )
