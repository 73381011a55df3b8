"""Declarative base and the column mixins shared by the seller tables."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Row creation and last-modification times, set in Python as UTC."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


class UserScopedMixin:
    """Owning bookkeeping user. Every query on a seller table filters on it."""

    user_id: Mapped[str] = mapped_column(
        String(450),
        nullable=False,
        index=True,
        comment="Bookkeeping application user ID",
    )


class SoftDeleteMixin:
    """Mixin for logical deletion.

    Soft-deleted rows are kept for a retention window so that a later
    sync can tell the record was removed on purpose.
    """

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def soft_delete(self, now: datetime | None = None) -> None:
        """Mark the row as deleted."""
        self.is_deleted = True
        self.deleted_at = now or datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
