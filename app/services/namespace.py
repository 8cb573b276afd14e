"""Namespace reservation — exclusive, expiring claims on subdomains and domains.

A run holds its namespace from the Reserve stage until Finalize confirms it
or compensation releases it. Holds expire after a TTL so a crashed run that
never resumes cannot block a name forever.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from enum import StrEnum

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.models.base import expiry, has_lapsed, utcnow
from app.models.namespace import NamespaceKind, NamespaceReservation, ReservationState
from app.services.errors import ConflictError, translate_db_errors

logger = logging.getLogger(__name__)


class ReservationResult(StrEnum):
    OK = "ok"
    CONFLICT = "conflict"


class NamespaceReservationService:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def reserve(
        self,
        name: str,
        run_id: uuid.UUID,
        ttl: timedelta,
        kind: NamespaceKind = NamespaceKind.SUBDOMAIN,
    ) -> ReservationResult:
        """Claim ``name`` for ``run_id`` until ``ttl`` elapses.

        Compare-and-set: a fresh name is inserted; an existing row is only
        taken over when it is released, expired, or already held by this run.
        """
        now = utcnow()
        expires_at = expiry(ttl, now)

        with translate_db_errors(f"reserve namespace {name}"):
            async with self._session_factory() as session:
                session.add(NamespaceReservation(
                    namespace=name,
                    kind=kind,
                    run_id=run_id,
                    state=ReservationState.HELD,
                    expires_at=expires_at,
                ))
                try:
                    await session.commit()
                    logger.info("Namespace %s held by run %s", name, run_id)
                    return ReservationResult.OK
                except IntegrityError:
                    await session.rollback()

            async with self._session_factory() as session:
                stmt = (
                    update(NamespaceReservation)
                    .where(
                        NamespaceReservation.namespace == name,
                        or_(
                            NamespaceReservation.state == ReservationState.RELEASED,
                            and_(
                                NamespaceReservation.state == ReservationState.HELD,
                                NamespaceReservation.expires_at < now,
                            ),
                            and_(
                                NamespaceReservation.state == ReservationState.HELD,
                                NamespaceReservation.run_id == run_id,
                            ),
                        ),
                    )
                    .values(
                        kind=kind,
                        run_id=run_id,
                        state=ReservationState.HELD,
                        expires_at=expires_at,
                        confirmed_at=None,
                        released_at=None,
                        updated_at=now,
                    )
                )
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount == 1:
                    logger.info("Namespace %s held by run %s", name, run_id)
                    return ReservationResult.OK

            current = await self.get(name)

        if (
            current is not None
            and current.run_id == run_id
            and current.state == ReservationState.CONFIRMED
        ):
            return ReservationResult.OK
        logger.info("Namespace %s unavailable for run %s", name, run_id)
        return ReservationResult.CONFLICT

    async def confirm(self, name: str, run_id: uuid.UUID) -> None:
        """Make the binding permanent. Only the Finalize stage calls this."""
        now = utcnow()
        with translate_db_errors(f"confirm namespace {name}"):
            async with self._session_factory() as session:
                stmt = (
                    update(NamespaceReservation)
                    .where(
                        NamespaceReservation.namespace == name,
                        NamespaceReservation.run_id == run_id,
                        NamespaceReservation.state.in_(  # type: ignore[attr-defined]
                            [ReservationState.HELD, ReservationState.CONFIRMED]
                        ),
                    )
                    .values(
                        state=ReservationState.CONFIRMED,
                        expires_at=None,
                        confirmed_at=now,
                        updated_at=now,
                    )
                )
                result = await session.execute(stmt)
                await session.commit()

        if result.rowcount != 1:
            raise ConflictError(f"Namespace '{name}' is no longer held by run {run_id}")
        logger.info("Namespace %s confirmed for run %s", name, run_id)

    async def release(self, name: str, run_id: uuid.UUID) -> bool:
        """Give the name back. No-op when another run owns it."""
        now = utcnow()
        with translate_db_errors(f"release namespace {name}"):
            async with self._session_factory() as session:
                stmt = (
                    update(NamespaceReservation)
                    .where(
                        NamespaceReservation.namespace == name,
                        NamespaceReservation.run_id == run_id,
                        NamespaceReservation.state != ReservationState.RELEASED,
                    )
                    .values(
                        state=ReservationState.RELEASED,
                        expires_at=None,
                        released_at=now,
                        updated_at=now,
                    )
                )
                result = await session.execute(stmt)
                await session.commit()

        released = result.rowcount == 1
        if released:
            logger.info("Namespace %s released by run %s", name, run_id)
        return released

    async def get(self, name: str) -> NamespaceReservation | None:
        async with self._session_factory() as session:
            return await session.get(NamespaceReservation, name)

    async def is_available(self, name: str) -> bool:
        reservation = await self.get(name)
        if reservation is None or reservation.state == ReservationState.RELEASED:
            return True
        if reservation.state == ReservationState.HELD:
            return has_lapsed(reservation.expires_at)
        return False

    async def expire_stale(self) -> int:
        """Mark lapsed holds as released. Returns the number of rows touched."""
        now = utcnow()
        async with self._session_factory() as session:
            stmt = (
                update(NamespaceReservation)
                .where(
                    NamespaceReservation.state == ReservationState.HELD,
                    NamespaceReservation.expires_at < now,
                )
                .values(
                    state=ReservationState.RELEASED,
                    released_at=now,
                    updated_at=now,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount:
            logger.info("Expired %d stale namespace holds", result.rowcount)
        return result.rowcount
