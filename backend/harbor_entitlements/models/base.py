"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- VersionedMixin: integer row version for conditional writes
- generate_uuid: UUID generation for primary keys
- as_utc: normalise datetimes read back from the database
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, func


def generate_uuid() -> str:
    """UUID4 string default for account and sub-account ids."""
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on DateTime(timezone=True) columns; every value we
    write is UTC, so a naive value read back is UTC as well.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """created_at / updated_at, set by the database server."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Row insert time (UTC)",
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last conditional write (UTC)",
    )


class VersionedMixin:
    """
    Mixin that adds a monotonically increasing row version.

    Writers must condition every UPDATE on the version they read and bump it
    by one; a zero row count means another writer got there first.
    """

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency version, bumped on every write"
    )
