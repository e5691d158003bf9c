"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- OrganizationScopedMixin: organization_id for per-organization rows
- generate_uuid: UUID generation for primary keys
- ensure_utc: normalize stored timestamps to aware UTC datetimes
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, func
from sqlalchemy.orm import declared_attr


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return value as a timezone-aware UTC datetime.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so naive values
    read back from storage are assumed to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class OrganizationScopedMixin:
    """
    Mixin that adds organization_id column.

    Every billing projection is keyed by the organization it belongs to.
    """

    @declared_attr
    def organization_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Organization that owns this billing record"
        )
