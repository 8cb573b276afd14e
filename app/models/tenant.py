"""Tenant model — one isolated marketplace."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class TenantStatus(StrEnum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    subdomain: str = Field(max_length=63, unique=True, nullable=False, index=True)
    custom_domain: str | None = Field(default=None, max_length=253, unique=True)
    status: TenantStatus = Field(default=TenantStatus.PROVISIONING)

    # Billing / plan metadata — payment is captured upstream
    plan_id: str = Field(max_length=64)
    billing_cycle: str = Field(default="monthly", max_length=16)
    subscription_status: str = Field(default="trial", max_length=32)

    # The run that created this tenant; executors look tenants up by it
    provisioning_run_id: uuid.UUID = Field(unique=True, nullable=False, index=True)
    activated_at: datetime | None = Field(default=None, sa_type=DateTime)
