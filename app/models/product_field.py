"""Product field display rows — per-tenant catalog / product page layout."""

import uuid

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class ProductFieldDisplay(TimestampMixin, SQLModel, table=True):
    __tablename__ = "product_field_display"
    __table_args__ = (UniqueConstraint("tenant_id", "field_name"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    field_name: str = Field(max_length=100)
    field_type: str = Field(default="system", max_length=20)  # "system" or "custom"
    display_name: str = Field(max_length=255)
    show_in_catalog: bool = Field(default=True)
    show_in_product: bool = Field(default=True)
    catalog_order: int = Field(default=0)
    product_order: int = Field(default=0)
    active: bool = Field(default=True)


# Seeded for every new marketplace. Hidden fields sort last.
DEFAULT_SYSTEM_FIELDS: tuple[dict, ...] = (
    {"field_name": "name", "display_name": "Name", "visible": True, "order": 1},
    {"field_name": "reference", "display_name": "Reference", "visible": True, "order": 2},
    {"field_name": "price", "display_name": "Price", "visible": True, "order": 3},
    {"field_name": "stock", "display_name": "Stock", "visible": True, "order": 4},
    {"field_name": "photo_url", "display_name": "Photo", "visible": False, "order": 997},
    {"field_name": "sellable", "display_name": "Sellable", "visible": False, "order": 998},
    {"field_name": "visible", "display_name": "Visible", "visible": False, "order": 999},
)
