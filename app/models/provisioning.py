"""Provisioning run, step records and idempotency keys."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class Stage(StrEnum):
    PENDING = "pending"
    VALIDATING = "validating"
    RESERVING_NAMESPACE = "reserving_namespace"
    CREATING_TENANT = "creating_tenant"
    PROVISIONING_SCHEMA = "provisioning_schema"
    CREATING_ADMIN = "creating_admin"
    APPLYING_SETTINGS = "applying_settings"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    FAILED = "failed"


# Stages that run a step executor, in execution order.
FORWARD_STAGES: tuple[Stage, ...] = (
    Stage.VALIDATING,
    Stage.RESERVING_NAMESPACE,
    Stage.CREATING_TENANT,
    Stage.PROVISIONING_SCHEMA,
    Stage.CREATING_ADMIN,
    Stage.APPLYING_SETTINGS,
    Stage.FINALIZING,
)

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED})


def next_stage(stage: Stage) -> Stage:
    """The stage that follows a successfully completed forward stage."""
    index = FORWARD_STAGES.index(stage)
    if index + 1 < len(FORWARD_STAGES):
        return FORWARD_STAGES[index + 1]
    return Stage.COMPLETED


class Outcome(StrEnum):
    NONE = "none"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATED = "compensated"


class StepStatus(StrEnum):
    OK = "ok"
    FAILED = "failed"


class CompensationStatus(StrEnum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class ProvisioningRun(TimestampMixin, SQLModel, table=True):
    """Durable record of one provisioning attempt. Never deleted."""

    __tablename__ = "provisioning_runs"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    idempotency_key: str = Field(max_length=255, index=True)
    request_payload: str = Field(sa_column=Column(Text, nullable=False))  # JSON
    subdomain: str = Field(max_length=63, index=True)

    stage: Stage = Field(default=Stage.PENDING, index=True)
    outcome: Outcome = Field(default=Outcome.NONE)
    failed_stage: Stage | None = Field(default=None)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rollback_requested: bool = Field(default=False)
    # Set once on entering COMPENSATING; retries leave it alone
    compensating_since: datetime | None = Field(default=None, sa_type=DateTime)

    # Only the lease holder drives the run
    lease_owner: str | None = Field(default=None, max_length=255)
    lease_expires_at: datetime | None = Field(default=None, sa_type=DateTime)

    completed_at: datetime | None = Field(default=None, sa_type=DateTime)


class StepRecord(SQLModel, table=True):
    """Outcome of one stage of a run, plus what is needed to undo it."""

    __tablename__ = "provisioning_steps"
    __table_args__ = (UniqueConstraint("run_id", "stage"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    run_id: uuid.UUID = Field(foreign_key="provisioning_runs.id", nullable=False, index=True)
    stage: Stage
    position: int  # index in FORWARD_STAGES
    status: StepStatus
    attempts: int = Field(default=0)
    started_at: datetime = Field(sa_type=DateTime)
    completed_at: datetime | None = Field(default=None, sa_type=DateTime)
    output: str = Field(default="{}", sa_column=Column(Text, nullable=False))  # JSON
    error_code: str | None = Field(default=None, max_length=50)
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    compensation_status: CompensationStatus | None = Field(default=None)
    compensation_attempts: int = Field(default=0)
    compensation_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    compensated_at: datetime | None = Field(default=None, sa_type=DateTime)


class IdempotencyKey(SQLModel, table=True):
    __tablename__ = "idempotency_keys"

    key: str = Field(primary_key=True, max_length=255)
    run_id: uuid.UUID = Field(nullable=False, index=True)
    request_fingerprint: str = Field(max_length=64)
    created_at: datetime = Field(sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class StepRecordRead(SQLModel):
    stage: Stage
    status: StepStatus
    attempts: int
    started_at: datetime
    completed_at: datetime | None
    output: dict
    error_code: str | None
    error_message: str | None
    compensation_status: CompensationStatus | None
    compensation_attempts: int
    compensation_error: str | None = None
    compensated_at: datetime | None


class ProvisioningRunRead(SQLModel):
    """Status snapshot returned to callers polling a run."""
    run_id: uuid.UUID
    idempotency_key: str
    subdomain: str
    stage: Stage
    outcome: Outcome
    failed_stage: Stage | None = None
    error: str | None = None
    rollback_requested: bool = False
    compensating_since: datetime | None = None
    marketplace_url: str | None = None
    admin_login_url: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    steps: list[StepRecordRead] = []


class ProvisioningAccepted(SQLModel):
    run_id: uuid.UUID
    is_new: bool
