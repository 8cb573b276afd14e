"""Administrator account — the first user of a new tenant."""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class AdminAccount(TimestampMixin, SQLModel, table=True):
    __tablename__ = "admin_accounts"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    email: str = Field(max_length=320, nullable=False, index=True)
    first_name: str = Field(max_length=50)
    last_name: str = Field(max_length=50)
    role: str = Field(default="admin", max_length=20)
    is_active: bool = Field(default=True)

    # Password is set by the administrator through the setup link
    password_hash: str | None = Field(default=None)

    provisioning_run_id: uuid.UUID = Field(unique=True, nullable=False, index=True)
