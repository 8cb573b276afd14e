"""Namespace reservation — who currently holds a subdomain or custom domain."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin


class NamespaceKind(StrEnum):
    SUBDOMAIN = "subdomain"
    CUSTOM_DOMAIN = "custom_domain"


class ReservationState(StrEnum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class NamespaceReservation(TimestampMixin, SQLModel, table=True):
    """One row per namespace value.

    The primary key is the namespace itself, so two live reservations for the
    same value cannot coexist. A released or expired row is reused by the next
    ``reserve`` through a conditional update.
    """

    __tablename__ = "namespace_reservations"

    namespace: str = Field(primary_key=True, max_length=253)
    kind: NamespaceKind = Field(default=NamespaceKind.SUBDOMAIN)
    run_id: uuid.UUID = Field(nullable=False, index=True)
    state: ReservationState = Field(default=ReservationState.HELD, index=True)
    expires_at: datetime | None = Field(default=None, sa_type=DateTime)  # None once confirmed
    confirmed_at: datetime | None = Field(default=None, sa_type=DateTime)
    released_at: datetime | None = Field(default=None, sa_type=DateTime)
