"""Provisioning orchestrator — drives a run through its stages as a saga.

Forward: each stage's executor runs under a timeout and a bounded retry
policy; its output and the next stage are checkpointed before the following
stage starts. Backward: on an unrecoverable failure (or a rollback request)
the completed stages are undone in reverse order. A run whose undo keeps
failing stays in COMPENSATING until an operator looks at it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from functools import partial

from sqlalchemy.orm import sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, get_settings
from app.models.base import utcnow
from app.models.provisioning import (
    FORWARD_STAGES,
    TERMINAL_STAGES,
    CompensationStatus,
    Outcome,
    ProvisioningRunRead,
    Stage,
    StepRecord,
    StepStatus,
)
from app.models.request import ProvisioningRequest
from app.services.errors import (
    INFRA_ERROR_CODES,
    CompensationError,
    ProvisioningError,
    TransientInfraError,
    UnrecoverableInfraError,
)
from app.services.idempotency import Admission, IdempotencyGuard
from app.services.namespace import NamespaceReservationService
from app.services.notifications import NotificationDispatcher
from app.services.state_store import ProvisioningStateStore
from app.services.steps import StepContext, StepExecutor, build_executors
from app.services.tenant_repository import SqlTenantRepository, TenantRepository

logger = logging.getLogger(__name__)

Launcher = Callable[[uuid.UUID], Awaitable[None]]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProvisioningError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Attempt %d failed (%s); retrying in %.2fs",
        retry_state.attempt_number,
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    multiplier: float = 0.5
    max_wait: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.provisioning_max_attempts,
            multiplier=settings.provisioning_backoff_multiplier,
            max_wait=settings.provisioning_backoff_max_seconds,
        )

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.multiplier, max=self.max_wait),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        )


class ProvisioningOrchestrator:
    def __init__(
        self,
        store: ProvisioningStateStore,
        guard: IdempotencyGuard,
        executors: dict[Stage, StepExecutor],
        *,
        notifier: NotificationDispatcher | None = None,
        policy: RetryPolicy | None = None,
        step_timeout: float = 30.0,
        lease_ttl: timedelta = timedelta(minutes=15),
        launcher: Launcher | None = None,
    ) -> None:
        missing = [stage for stage in FORWARD_STAGES if stage not in executors]
        if missing:
            raise ValueError(f"No executor registered for {', '.join(missing)}")
        self.store = store
        self.guard = guard
        self.executors = executors
        self.notifier = notifier
        self.policy = policy or RetryPolicy()
        self.step_timeout = step_timeout
        self.lease_ttl = lease_ttl
        self.launcher = launcher

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker,
        settings: Settings | None = None,
        *,
        repository: TenantRepository | None = None,
        notifier: NotificationDispatcher | None = None,
        policy: RetryPolicy | None = None,
        launcher: Launcher | None = None,
    ) -> ProvisioningOrchestrator:
        """Wire the orchestrator and its collaborators onto one database."""
        settings = settings or get_settings()
        reservations = NamespaceReservationService(session_factory)
        repository = repository or SqlTenantRepository(session_factory)
        return cls(
            ProvisioningStateStore(session_factory),
            IdempotencyGuard(
                session_factory, window=timedelta(hours=settings.idempotency_window_hours)
            ),
            build_executors(reservations, repository, settings),
            notifier=notifier or NotificationDispatcher(settings),
            policy=policy or RetryPolicy.from_settings(settings),
            step_timeout=settings.provisioning_step_timeout_seconds,
            lease_ttl=timedelta(seconds=settings.run_lease_seconds),
            launcher=launcher,
        )

    # ── Public operations ────────────────────────────────────

    async def start(self, request: ProvisioningRequest) -> Admission:
        """Admit ``request`` and, for a new run, get it going.

        With a launcher configured the run is handed off (queued); otherwise
        it is driven inline to a terminal state before returning.
        """
        admission = await self.guard.admit(request)
        if admission.is_new:
            if self.launcher is not None:
                await self.launcher(admission.run_id)
            else:
                await self.resume(admission.run_id)
        return admission

    async def resume(self, run_id: uuid.UUID) -> ProvisioningRunRead:
        owner = _lease_owner()
        if not await self.store.acquire_lease(run_id, owner, self.lease_ttl):
            logger.info("Run %s is leased by another worker; not resuming", run_id)
            return await self.store.snapshot(run_id)
        try:
            await self._drive(run_id, owner)
        finally:
            await self.store.release_lease(run_id, owner)
        return await self.store.snapshot(run_id)

    async def status(self, run_id: uuid.UUID) -> ProvisioningRunRead:
        return await self.store.snapshot(run_id)

    async def cancel(self, run_id: uuid.UUID) -> ProvisioningRunRead:
        """Ask the driving task to roll the run back before its next stage."""
        await self.store.request_rollback(run_id)
        logger.info("Run %s: rollback requested", run_id)
        return await self.store.snapshot(run_id)

    # ── Forward execution ────────────────────────────────────

    async def _drive(self, run_id: uuid.UUID, owner: str) -> None:
        state = await self.store.load(run_id)
        stage = state.run.stage
        if stage in TERMINAL_STAGES:
            return
        if stage == Stage.COMPENSATING:
            await self._compensate(run_id, owner)
            return
        if stage == Stage.PENDING:
            await self.store.begin(run_id)
            stage = Stage.VALIDATING

        ctx = StepContext(run_id=run_id, request=state.request, outputs=state.outputs())
        while stage in FORWARD_STAGES:
            if await self.store.is_rollback_requested(run_id):
                await self.store.begin_compensation(run_id, "Rollback requested", stage)
                await self._compensate(run_id, owner)
                return
            if not await self.store.acquire_lease(run_id, owner, self.lease_ttl):
                logger.warning("Run %s: lease lost before %s; stopping", run_id, stage)
                return

            executor = self.executors[stage]
            started_at = utcnow()
            logger.info("Run %s: starting %s", run_id, stage)
            output, error, attempts = await self._attempt(
                f"{stage} for run {run_id}", partial(executor.do, ctx)
            )
            if error is not None:
                await self.store.record_step_failure(run_id, stage, attempts, started_at, error)
                await self._compensate(run_id, owner)
                return

            output = output or {}
            stage = await self.store.record_step_success(
                run_id, executor.stage, attempts, started_at, output
            )
            ctx.outputs[executor.stage] = output

        if stage == Stage.COMPLETED:
            await self._notify(run_id, ctx)

    async def _attempt(
        self, label: str, call: Callable[[], Awaitable]
    ) -> tuple[dict | None, ProvisioningError | None, int]:
        """Run ``call`` under the retry policy.

        Returns ``(result, error, attempts)``; exactly one of result/error is
        meaningful.
        """
        attempts = 0
        try:
            async for attempt in self.policy.retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._guarded(label, call)
        except ProvisioningError as exc:
            return None, exc, attempts
        return result, None, attempts

    async def _guarded(self, label: str, call: Callable[[], Awaitable]):
        try:
            return await asyncio.wait_for(call(), timeout=self.step_timeout)
        except ProvisioningError:
            raise
        except TimeoutError as exc:
            raise TransientInfraError(
                f"{label} timed out after {self.step_timeout:.1f}s"
            ) from exc
        except Exception as exc:
            logger.exception("Unexpected error in %s", label)
            raise UnrecoverableInfraError(f"{label}: {exc}") from exc

    # ── Compensation ─────────────────────────────────────────

    def _needs_undo(self, record: StepRecord) -> bool:
        if not self.executors[record.stage].compensable:
            return False
        if record.status == StepStatus.OK:
            return True
        return record.error_code in INFRA_ERROR_CODES

    async def _compensate(self, run_id: uuid.UUID, owner: str) -> None:
        state = await self.store.load(run_id)
        ctx = StepContext(run_id=run_id, request=state.request, outputs=state.outputs())
        undone = False

        for record in reversed(state.ordered_steps()):
            if not self._needs_undo(record):
                continue
            if record.compensation_status == CompensationStatus.DONE:
                undone = True
                continue

            if not await self.store.acquire_lease(run_id, owner, self.lease_ttl):
                logger.warning("Run %s: lease lost before undoing %s; stopping", run_id, record.stage)
                return

            executor = self.executors[record.stage]
            output = json.loads(record.output) if record.status == StepStatus.OK else {}
            _, error, attempts = await self._attempt(
                f"undo {record.stage} for run {run_id}", partial(executor.undo, ctx, output)
            )
            if error is not None:
                failure = CompensationError(f"undo of {record.stage} failed: {error.message}")
                await self.store.record_compensation(
                    run_id, record.stage, CompensationStatus.FAILED, attempts, failure.message
                )
                logger.error(
                    "Run %s: %s after %d attempt(s), "
                    "run left in COMPENSATING for operator intervention",
                    run_id, failure.message, attempts,
                )
                return

            await self.store.record_compensation(
                run_id, record.stage, CompensationStatus.DONE, attempts
            )
            logger.info("Run %s: undid %s", run_id, record.stage)
            undone = True

        await self.store.finish_compensation(
            run_id, Outcome.COMPENSATED if undone else Outcome.FAILED
        )
        await self._notify(run_id)

    # ── Notifications ────────────────────────────────────────

    async def _notify(self, run_id: uuid.UUID, ctx: StepContext | None = None) -> None:
        if self.notifier is None:
            return
        try:
            snapshot = await self.store.snapshot(run_id)
            if snapshot.stage == Stage.COMPLETED and ctx is not None:
                await self.notifier.provisioned(
                    snapshot,
                    admin_id=ctx.outputs.get(Stage.CREATING_ADMIN, {}).get("admin_id"),
                    tenant_id=ctx.outputs.get(Stage.CREATING_TENANT, {}).get("tenant_id"),
                )
            else:
                await self.notifier.failed(snapshot)
        except Exception:
            logger.exception("Notification for run %s failed", run_id)


def _lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
