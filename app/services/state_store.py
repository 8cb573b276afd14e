"""Provisioning state store — durable run progress and checkpoints.

Every transition the orchestrator makes goes through here and is committed
before the next step starts, so a restarted worker can pick a run up exactly
where it stopped.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from app.models.base import expiry, utcnow
from app.models.provisioning import (
    FORWARD_STAGES,
    TERMINAL_STAGES,
    CompensationStatus,
    Outcome,
    ProvisioningRun,
    ProvisioningRunRead,
    Stage,
    StepRecord,
    StepRecordRead,
    StepStatus,
    next_stage,
)
from app.models.request import ProvisioningRequest
from app.services.errors import (
    InvalidTransitionError,
    ProvisioningError,
    RunNotFoundError,
    translate_db_errors,
)

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """A run plus its step records, as loaded at one point in time."""
    run: ProvisioningRun
    request: ProvisioningRequest
    steps: dict[Stage, StepRecord] = field(default_factory=dict)

    def outputs(self) -> dict[Stage, dict]:
        """Outputs of the stages that completed successfully."""
        return {
            stage: json.loads(record.output)
            for stage, record in self.steps.items()
            if record.status == StepStatus.OK
        }

    def ordered_steps(self) -> list[StepRecord]:
        return sorted(self.steps.values(), key=lambda record: record.position)


class ProvisioningStateStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # ── Reads ────────────────────────────────────────────────

    async def load(self, run_id: uuid.UUID) -> RunState:
        async with self._session_factory() as session:
            run = await session.get(ProvisioningRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Provisioning run {run_id} not found")
            result = await session.execute(
                select(StepRecord).where(StepRecord.run_id == run_id)
            )
            records = result.scalars().all()

        return RunState(
            run=run,
            request=ProvisioningRequest.model_validate_json(run.request_payload),
            steps={record.stage: record for record in records},
        )

    async def snapshot(self, run_id: uuid.UUID) -> ProvisioningRunRead:
        state = await self.load(run_id)
        run = state.run
        finalize_output = state.outputs().get(Stage.FINALIZING, {})
        return ProvisioningRunRead(
            run_id=run.id,
            idempotency_key=run.idempotency_key,
            subdomain=run.subdomain,
            stage=run.stage,
            outcome=run.outcome,
            failed_stage=run.failed_stage,
            error=run.failure_reason,
            rollback_requested=run.rollback_requested,
            compensating_since=run.compensating_since,
            marketplace_url=finalize_output.get("marketplace_url"),
            admin_login_url=finalize_output.get("admin_login_url"),
            created_at=run.created_at,
            updated_at=run.updated_at,
            completed_at=run.completed_at,
            steps=[
                StepRecordRead(
                    stage=record.stage,
                    status=record.status,
                    attempts=record.attempts,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    output=json.loads(record.output),
                    error_code=record.error_code,
                    error_message=record.error_message,
                    compensation_status=record.compensation_status,
                    compensation_attempts=record.compensation_attempts,
                    compensation_error=record.compensation_error,
                    compensated_at=record.compensated_at,
                )
                for record in state.ordered_steps()
            ],
        )

    async def is_rollback_requested(self, run_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            run = await session.get(ProvisioningRun, run_id)
            return bool(run and run.rollback_requested)

    async def list_resumable(self, limit: int = 50) -> list[uuid.UUID]:
        """Non-terminal runs nobody is currently driving, oldest first."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProvisioningRun.id)
                .where(
                    ProvisioningRun.stage.notin_(list(TERMINAL_STAGES)),  # type: ignore[attr-defined]
                    or_(
                        ProvisioningRun.lease_owner.is_(None),  # type: ignore[union-attr]
                        ProvisioningRun.lease_expires_at < now,
                    ),
                )
                .order_by(ProvisioningRun.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_stuck_compensations(self, older_than: timedelta) -> list[ProvisioningRun]:
        cutoff = utcnow() - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProvisioningRun).where(
                    ProvisioningRun.stage == Stage.COMPENSATING,
                    ProvisioningRun.compensating_since < cutoff,
                )
            )
            return list(result.scalars().all())

    # ── Leases ───────────────────────────────────────────────

    async def acquire_lease(self, run_id: uuid.UUID, owner: str, ttl: timedelta) -> bool:
        """Compare-and-set the run's lease; True when ``owner`` now holds it."""
        now = utcnow()
        with translate_db_errors(f"lease run {run_id}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(ProvisioningRun)
                    .where(
                        ProvisioningRun.id == run_id,
                        or_(
                            ProvisioningRun.lease_owner.is_(None),  # type: ignore[union-attr]
                            ProvisioningRun.lease_owner == owner,
                            ProvisioningRun.lease_expires_at < now,
                        ),
                    )
                    .values(lease_owner=owner, lease_expires_at=expiry(ttl, now))
                )
                await session.commit()
        return result.rowcount == 1

    async def release_lease(self, run_id: uuid.UUID, owner: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ProvisioningRun)
                .where(ProvisioningRun.id == run_id, ProvisioningRun.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
            )
            await session.commit()

    # ── Forward progress ─────────────────────────────────────

    async def begin(self, run_id: uuid.UUID) -> None:
        """PENDING -> VALIDATING. No-op for runs already past PENDING."""
        await self._transition(run_id, Stage.PENDING, Stage.VALIDATING, strict=False)

    async def record_step_success(
        self,
        run_id: uuid.UUID,
        stage: Stage,
        attempts: int,
        started_at,
        output: dict,
    ) -> Stage:
        """Checkpoint a completed stage and advance the run in one transaction."""
        now = utcnow()
        following = next_stage(stage)
        values: dict = {"stage": following, "updated_at": now}
        if following == Stage.COMPLETED:
            values.update(outcome=Outcome.SUCCEEDED, completed_at=now)

        with translate_db_errors(f"checkpoint {stage} for run {run_id}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(ProvisioningRun)
                    .where(ProvisioningRun.id == run_id, ProvisioningRun.stage == stage)
                    .values(**values)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise InvalidTransitionError(
                        f"Run {run_id} is no longer at stage {stage}"
                    )
                record = await self._get_or_new_record(session, run_id, stage, started_at)
                record.status = StepStatus.OK
                record.attempts = attempts
                record.started_at = started_at
                record.completed_at = now
                record.output = json.dumps(output, default=str)
                record.error_code = None
                record.error_message = None
                session.add(record)
                await session.commit()

        logger.info("Run %s: %s ok after %d attempt(s) -> %s", run_id, stage, attempts, following)
        return following

    async def record_step_failure(
        self,
        run_id: uuid.UUID,
        stage: Stage,
        attempts: int,
        started_at,
        error: ProvisioningError,
    ) -> None:
        """Record the failed stage and move the run into COMPENSATING."""
        now = utcnow()
        with translate_db_errors(f"record failure of {stage} for run {run_id}"):
            async with self._session_factory() as session:
                run = await session.get(ProvisioningRun, run_id)
                if run is None:
                    raise RunNotFoundError(f"Provisioning run {run_id} not found")
                record = await self._get_or_new_record(session, run_id, stage, started_at)
                record.status = StepStatus.FAILED
                record.attempts = attempts
                record.started_at = started_at
                record.completed_at = now
                record.error_code = error.code
                record.error_message = error.message[:2000]
                session.add(record)

                run.stage = Stage.COMPENSATING
                run.failed_stage = stage
                run.failure_reason = error.message[:2000]
                run.compensating_since = now
                run.updated_at = now
                session.add(run)
                await session.commit()

        logger.warning("Run %s: %s failed (%s): %s", run_id, stage, error.code, error.message)

    async def begin_compensation(self, run_id: uuid.UUID, reason: str, at_stage: Stage) -> None:
        """Move a run into COMPENSATING without a failed step (rollback request)."""
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(ProvisioningRun)
                .where(
                    ProvisioningRun.id == run_id,
                    ProvisioningRun.stage.notin_(  # type: ignore[attr-defined]
                        [Stage.COMPLETED, Stage.FAILED, Stage.COMPENSATING]
                    ),
                )
                .values(
                    stage=Stage.COMPENSATING,
                    failed_stage=at_stage,
                    failure_reason=reason,
                    compensating_since=now,
                    updated_at=now,
                )
            )
            await session.commit()
        if result.rowcount == 1:
            logger.warning("Run %s: compensating from %s (%s)", run_id, at_stage, reason)

    async def request_rollback(self, run_id: uuid.UUID) -> ProvisioningRun:
        async with self._session_factory() as session:
            run = await session.get(ProvisioningRun, run_id)
            if run is None:
                raise RunNotFoundError(f"Provisioning run {run_id} not found")
            if run.stage in TERMINAL_STAGES:
                raise InvalidTransitionError(
                    f"Run {run_id} is already {run.stage} and cannot be rolled back"
                )
            run.rollback_requested = True
            run.updated_at = utcnow()
            session.add(run)
            await session.commit()
            return run

    # ── Compensation ─────────────────────────────────────────

    async def record_compensation(
        self,
        run_id: uuid.UUID,
        stage: Stage,
        status: CompensationStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        now = utcnow()
        with translate_db_errors(f"record compensation of {stage} for run {run_id}"):
            async with self._session_factory() as session:
                record = await self._get_record(session, run_id, stage)
                if record is None:
                    return
                record.compensation_status = status
                record.compensation_attempts += attempts
                record.compensation_error = error[:2000] if error else None
                if status == CompensationStatus.DONE:
                    record.compensated_at = now
                session.add(record)
                await session.execute(
                    update(ProvisioningRun)
                    .where(ProvisioningRun.id == run_id)
                    .values(updated_at=now)
                )
                await session.commit()

    async def finish_compensation(self, run_id: uuid.UUID, outcome: Outcome) -> None:
        """COMPENSATING -> FAILED with the final outcome."""
        now = utcnow()
        with translate_db_errors(f"finish compensation for run {run_id}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(ProvisioningRun)
                    .where(
                        ProvisioningRun.id == run_id,
                        ProvisioningRun.stage == Stage.COMPENSATING,
                    )
                    .values(
                        stage=Stage.FAILED,
                        outcome=outcome,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
        if result.rowcount == 1:
            logger.info("Run %s: FAILED (%s)", run_id, outcome)

    # ── Internals ────────────────────────────────────────────

    async def _transition(
        self, run_id: uuid.UUID, current: Stage, target: Stage, *, strict: bool = True
    ) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ProvisioningRun)
                .where(ProvisioningRun.id == run_id, ProvisioningRun.stage == current)
                .values(stage=target, updated_at=utcnow())
            )
            await session.commit()
        if result.rowcount != 1 and strict:
            raise InvalidTransitionError(f"Run {run_id} is not at stage {current}")

    @staticmethod
    async def _get_record(session, run_id: uuid.UUID, stage: Stage) -> StepRecord | None:
        result = await session.execute(
            select(StepRecord).where(StepRecord.run_id == run_id, StepRecord.stage == stage)
        )
        return result.scalar_one_or_none()

    async def _get_or_new_record(
        self, session, run_id: uuid.UUID, stage: Stage, started_at
    ) -> StepRecord:
        record = await self._get_record(session, run_id, stage)
        if record is None:
            record = StepRecord(
                run_id=run_id,
                stage=stage,
                position=FORWARD_STAGES.index(stage),
                status=StepStatus.FAILED,
                started_at=started_at,
            )
        return record
