"""eBay OAuth credential model."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from seller_metrics_server.models.base import Base, TimestampMixin

REAUTH_REQUIRED_MESSAGE = "Refresh token expired. Please reconnect your eBay account."


class EbayCredential(Base, TimestampMixin):
    """eBay OAuth connection for one bookkeeping user.

    Tokens are stored encrypted. Connection state is derived from
    ``is_connected`` plus the two expiry timestamps, see
    ``services.credentials.classify``.

    Writes are guarded by ``version_id``: a concurrent update of the same
    row (e.g. a manual reconnect racing the background refresh) raises
    ``StaleDataError`` instead of silently overwriting.
    """

    __tablename__ = "ebay_credentials"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[str] = mapped_column(String(450), unique=True, nullable=False, index=True)

    # eBay identity (filled on first successful token exchange)
    ebay_user_id: Mapped[str | None] = mapped_column(String(100))
    ebay_username: Mapped[str | None] = mapped_column(String(100))

    # OAuth tokens (encrypted at rest, never logged)
    access_token_encrypted: Mapped[str] = mapped_column(Text, default="", nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, default="", nullable=False)
    access_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    refresh_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    scopes: Mapped[str | None] = mapped_column(Text)

    # Connection status
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_error: Mapped[str | None] = mapped_column(Text)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        """String representation (no token material)."""
        return (
            f"<EbayCredential(user_id={self.user_id}, "
            f"ebay_username={self.ebay_username}, is_connected={self.is_connected})>"
        )

    def connect(
        self,
        *,
        access_token_encrypted: str,
        access_token_expires_at: datetime,
        refresh_token_encrypted: str,
        refresh_token_expires_at: datetime,
        ebay_user_id: str | None,
        ebay_username: str | None,
        scopes: str | None,
    ) -> None:
        """Store a freshly authorized token pair and mark the account connected."""
        if not access_token_encrypted or not refresh_token_encrypted:
            raise ValueError("Both tokens are required to connect an eBay account")

        self.access_token_encrypted = access_token_encrypted
        self.access_token_expires_at = access_token_expires_at
        self.refresh_token_encrypted = refresh_token_encrypted
        self.refresh_token_expires_at = refresh_token_expires_at
        self.ebay_user_id = ebay_user_id
        self.ebay_username = ebay_username
        self.scopes = scopes
        self.is_connected = True
        self.last_sync_error = None

    def apply_refresh(
        self,
        *,
        access_token_encrypted: str,
        access_token_expires_at: datetime,
        refresh_token_encrypted: str | None = None,
        refresh_token_expires_at: datetime | None = None,
    ) -> None:
        """Replace the access token after a refresh.

        The refresh token and its expiry are only replaced when eBay issued
        new ones.
        """
        self.access_token_encrypted = access_token_encrypted
        self.access_token_expires_at = access_token_expires_at

        if refresh_token_encrypted:
            self.refresh_token_encrypted = refresh_token_encrypted
        if refresh_token_expires_at is not None:
            self.refresh_token_expires_at = refresh_token_expires_at

        self.last_sync_error = None

    def record_successful_sync(self, now: datetime | None = None) -> None:
        """Stamp a completed sync and clear the last error."""
        self.last_synced_at = now or datetime.now(UTC)
        self.last_sync_error = None

    def record_sync_error(self, message: str) -> None:
        """Record a failure without touching the connection flag."""
        self.last_sync_error = message

    def require_reauthorization(self, message: str = REAUTH_REQUIRED_MESSAGE) -> None:
        """Force the user to re-authorize (refresh token no longer usable)."""
        self.is_connected = False
        self.last_sync_error = message

    def disconnect(self) -> None:
        """Disconnect the eBay account and drop stored tokens."""
        self.is_connected = False
        self.access_token_encrypted = ""
        self.refresh_token_encrypted = ""
        self.last_sync_error = None
