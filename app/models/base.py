"""Shared base fields and clock helpers for provisioning tables.

Timestamps are stored naive in UTC so SQLite and Postgres compare them the
same way. Table columns declare ``DateTime`` explicitly; without it newer
SQLModel releases pick a timezone-aware column type that rejects naive values.
"""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def expiry(ttl: timedelta, now: datetime | None = None) -> datetime:
    """Deadline ``ttl`` from ``now`` (default: the current UTC time)."""
    return (now or utcnow()) + ttl


def has_lapsed(deadline: datetime | None, now: datetime | None = None) -> bool:
    """True once ``deadline`` is in the past. A missing deadline never lapses."""
    return deadline is not None and deadline < (now or utcnow())


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class TimestampMixin(SQLModel):
    """Created / updated timestamps on every provisioning table."""

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
