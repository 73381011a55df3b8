"""Sync log model: audit trail of every per-user background operation.

Every order sync, token refresh and forced re-authorization writes one row,
whether it was triggered by the scheduler, the API or the CLI. The
credential's ``last_sync_error`` stays the user-facing surface; this table
is for operators.
"""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from seller_metrics_server.models.base import Base, ensure_utc


class SyncOperation(str, Enum):
    """Kind of per-user operation."""

    ORDER_SYNC = "order_sync"
    TOKEN_REFRESH = "token_refresh"
    FORCED_REAUTH = "forced_reauth"


class SyncStatus(str, Enum):
    """Lifecycle of a log row. PARTIAL means the order sync committed but
    some orders were skipped; SKIPPED rows record users a pass passed over."""

    STARTED = "started"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncErrorType(str, Enum):
    """Failure categories shared by sync logs and credential status.

    Retry policy per category lives in services.sync_error_handler.
    """

    # Seller must reconnect or has never connected
    NOT_CONNECTED = "not_connected"
    REAUTH_REQUIRED = "reauth_required"
    TOKEN_INVALID = "token_invalid"

    # eBay side
    RATE_LIMITED = "rate_limited"
    API_UNAVAILABLE = "api_unavailable"
    API_TIMEOUT = "api_timeout"
    API_ERROR = "api_error"

    # Payloads we could not use
    INVALID_RESPONSE = "invalid_response"
    TRANSFORM_ERROR = "transform_error"
    # More orders in the window than one run may fetch
    FETCH_TRUNCATED = "fetch_truncated"

    # Ours
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


class SyncTrigger(str, Enum):
    """What initiated the operation."""

    SCHEDULER = "scheduler"
    MANUAL = "manual"
    STARTUP = "startup"
    CLI = "cli"


class SyncLog(Base):
    """Audit row for one seller and one operation.

    A pass shares a job_id across all rows it writes, so the rows for one
    scheduler tick can be pulled together. Counts are only filled for
    order syncs.
    """

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[str] = mapped_column(String(450), index=True)
    job_id: Mapped[str] = mapped_column(String(36), index=True)

    operation: Mapped[str] = mapped_column(String(20), default=SyncOperation.ORDER_SYNC.value)
    trigger: Mapped[str] = mapped_column(String(20), default=SyncTrigger.MANUAL.value)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=SyncStatus.STARTED.value, index=True)

    # Failure, if any
    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    # Reconciliation counts
    orders_fetched: Mapped[int] = mapped_column(Integer, default=0)
    orders_created: Mapped[int] = mapped_column(Integer, default=0)
    orders_updated: Mapped[int] = mapped_column(Integer, default=0)
    orders_linked: Mapped[int] = mapped_column(Integer, default=0)
    orders_skipped: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_sync_logs_user_started", "user_id", "started_at"),
        Index("ix_sync_logs_status_started", "status", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncLog(id={self.id}, user_id='{self.user_id}', operation='{self.operation}', "
            f"status='{self.status}', trigger='{self.trigger}')>"
        )

    @property
    def is_complete(self) -> bool:
        return self.status != SyncStatus.STARTED.value

    @property
    def is_successful(self) -> bool:
        return self.status == SyncStatus.SUCCESS.value

    def _finish(self, status: SyncStatus) -> None:
        now = datetime.now(UTC)
        self.completed_at = now
        started = ensure_utc(self.started_at) if self.started_at else now
        self.duration_ms = int((now - started).total_seconds() * 1000)
        self.status = status.value

    def record_counts(
        self, *, fetched: int, created: int, updated: int, linked: int, skipped: int
    ) -> None:
        """Copy the SyncResult tallies onto the row."""
        self.orders_fetched = fetched
        self.orders_created = created
        self.orders_updated = updated
        self.orders_linked = linked
        self.orders_skipped = skipped

    def complete_success(self) -> None:
        """Everything fetched was reconciled."""
        self._finish(SyncStatus.SUCCESS)

    def complete_partial(self, error_type: SyncErrorType, message: str) -> None:
        """Committed, but at least one order was skipped; message summarizes which."""
        self._finish(SyncStatus.PARTIAL)
        self.error_type = error_type.value
        self.error_message = message

    def complete_failed(
        self,
        error_type: SyncErrorType,
        message: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Nothing was committed for this seller.

        Args:
            error_type: Category from SyncErrorHandler
            message: Same text stored on the credential
            details: Endpoint, trimmed response body and similar context
        """
        self._finish(SyncStatus.FAILED)
        self.error_type = error_type.value
        self.error_message = message
        self.error_details = details

    def complete_skipped(self, reason: str) -> None:
        """The pass did not attempt this seller, e.g. the account is disconnected."""
        self._finish(SyncStatus.SKIPPED)
        self.duration_ms = 0
        self.error_message = reason
