"""Tenant settings — branding and catalog visibility."""

import uuid

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class TenantSettings(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenant_settings"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(
        foreign_key="tenants.id", unique=True, nullable=False, index=True
    )
    company_name: str = Field(max_length=100)
    logo_url: str | None = Field(default=None, max_length=2048)
    primary_color: str = Field(default="#10b981", max_length=7)
    show_prices: bool = Field(default=True)
    show_stock: bool = Field(default=True)
    show_categories: bool = Field(default=True)
    public_access: bool = Field(default=True)
    contact_email: str | None = Field(default=None, max_length=320)
    contact_phone: str | None = Field(default=None, max_length=50)
