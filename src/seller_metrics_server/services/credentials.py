"""eBay credential lifecycle.

Connection state is never stored as a column: it is derived from
``is_connected`` plus the two token expiry timestamps by ``classify``, so
expiry checks always reflect the current clock.

    DISCONNECTED --connect--> CONNECTED --time--> ACCESS_EXPIRED
                                  ^                    |
                                  +------refresh-------+
    ACCESS_EXPIRED --time--> NEEDS_REAUTH --force_reauthorization--> DISCONNECTED
    any --disconnect--> DISCONNECTED
"""

import asyncio
import weakref
from datetime import UTC, datetime
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from seller_metrics_server.core.security import TokenEncryption, get_token_encryption
from seller_metrics_server.models.base import ensure_utc
from seller_metrics_server.models.credential import REAUTH_REQUIRED_MESSAGE, EbayCredential
from seller_metrics_server.schemas.ebay import ConnectionStatus
from seller_metrics_server.services.ebay_client import EbayApiClient

logger = structlog.get_logger()

# Serializes refresh-then-use per user within this process. Cross-process
# races are caught by the credential's version counter. An entry lives only
# while some caller holds a reference to its lock.
_user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def user_lock(user_id: str) -> asyncio.Lock:
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


class CredentialState(str, Enum):
    """Derived connection state of a credential."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ACCESS_EXPIRED = "access_expired"
    NEEDS_REAUTH = "needs_reauth"


class NotConnectedError(Exception):
    """User has no connected eBay account."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("eBay account is not connected.")


class ReauthorizationRequiredError(Exception):
    """Refresh token expired; the user has to go through consent again."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(REAUTH_REQUIRED_MESSAGE)


def classify(now: datetime, credential: EbayCredential | None) -> CredentialState:
    """Derive the state of a credential at ``now``.

    Args:
        now: Current time (timezone aware)
        credential: Credential row, or None if the user never connected

    Returns:
        The credential's state
    """
    if credential is None or not credential.is_connected:
        return CredentialState.DISCONNECTED
    if now >= ensure_utc(credential.refresh_token_expires_at):
        return CredentialState.NEEDS_REAUTH
    if now >= ensure_utc(credential.access_token_expires_at):
        return CredentialState.ACCESS_EXPIRED
    return CredentialState.CONNECTED


class CredentialStore:
    """Queries over ``ebay_credentials``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_user_id(self, user_id: str) -> EbayCredential | None:
        stmt = select(EbayCredential).where(EbayCredential.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def is_connected(self, user_id: str) -> bool:
        credential = await self.get_by_user_id(user_id)
        return credential is not None and credential.is_connected

    async def list_connected(self) -> list[EbayCredential]:
        stmt = (
            select(EbayCredential)
            .where(EbayCredential.is_connected.is_(True))
            .order_by(EbayCredential.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_connected_user_ids(self) -> list[str]:
        stmt = (
            select(EbayCredential.user_id)
            .where(EbayCredential.is_connected.is_(True))
            .order_by(EbayCredential.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_needing_refresh(self, now: datetime) -> list[EbayCredential]:
        """Connected credentials whose access token expired but refresh token is valid."""
        stmt = (
            select(EbayCredential)
            .where(
                EbayCredential.is_connected.is_(True),
                EbayCredential.access_token_expires_at <= now,
                EbayCredential.refresh_token_expires_at > now,
            )
            .order_by(EbayCredential.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_refresh_expired(self, now: datetime) -> list[EbayCredential]:
        """Connected credentials whose refresh token itself has expired."""
        stmt = (
            select(EbayCredential)
            .where(
                EbayCredential.is_connected.is_(True),
                EbayCredential.refresh_token_expires_at <= now,
            )
            .order_by(EbayCredential.user_id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def add(self, credential: EbayCredential) -> None:
        self.session.add(credential)


class CredentialService:
    """Connect, refresh, and disconnect eBay accounts.

    Changes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: EbayApiClient,
        encryption: TokenEncryption | None = None,
    ) -> None:
        """Initialize credential service.

        Args:
            session: Database session
            client: eBay API client
            encryption: Token codec, defaults to the process-wide instance
        """
        self.session = session
        self.client = client
        self.encryption = encryption or get_token_encryption()
        self.store = CredentialStore(session)
        self.logger = logger.bind(service="credentials")

    async def connect(self, user_id: str, code: str, now: datetime | None = None) -> EbayCredential:
        """Complete the OAuth flow for a user.

        Exchanges the authorization code, looks up the eBay identity, then
        creates or overwrites the user's credential.

        Args:
            user_id: Bookkeeping user ID
            code: Authorization code from the OAuth callback
            now: Current time (defaults to now)

        Returns:
            The connected credential

        Raises:
            EbayApiError: If eBay rejects the code or the identity lookup
            ValueError: If eBay did not issue both tokens
        """
        tokens = await self.client.exchange_code(code)
        identity = await self.client.get_user_identity(tokens.access_token)
        now = now or datetime.now(UTC)

        credential = await self.store.get_by_user_id(user_id)
        if credential is None:
            credential = EbayCredential(user_id=user_id)
            self.store.add(credential)

        credential.connect(
            access_token_encrypted=self.encryption.encrypt(tokens.access_token),
            access_token_expires_at=tokens.access_token_expires_at(now),
            refresh_token_encrypted=self.encryption.encrypt(tokens.refresh_token),
            refresh_token_expires_at=tokens.refresh_token_expires_at(now) or now,
            ebay_user_id=identity.user_id or None,
            ebay_username=identity.username or None,
            scopes=tokens.scope or " ".join(self.client.scopes),
        )
        await self.session.flush()

        self.logger.info("eBay account connected", user_id=user_id, ebay_username=identity.username)
        return credential

    async def disconnect(self, user_id: str) -> bool:
        """Disconnect a user's eBay account.

        Returns:
            False if the user never connected
        """
        credential = await self.store.get_by_user_id(user_id)
        if credential is None:
            return False

        credential.disconnect()
        await self.session.flush()
        self.logger.info("eBay account disconnected", user_id=user_id)
        return True

    async def get_status(self, user_id: str, now: datetime | None = None) -> ConnectionStatus:
        """Outward connection status. Never includes token material."""
        credential = await self.store.get_by_user_id(user_id)
        if credential is None:
            return ConnectionStatus(is_connected=False)

        state = classify(now or datetime.now(UTC), credential)
        if not credential.is_connected:
            # A forced reauth is the only way to be disconnected with an error
            return ConnectionStatus(
                is_connected=False,
                last_sync_error=credential.last_sync_error,
                requires_reauthorization=credential.last_sync_error is not None,
            )

        return ConnectionStatus(
            is_connected=True,
            ebay_username=credential.ebay_username,
            connected_at=credential.created_at,
            last_synced_at=credential.last_synced_at,
            last_sync_error=credential.last_sync_error,
            access_token_expires_at=credential.access_token_expires_at,
            refresh_token_expires_at=credential.refresh_token_expires_at,
            requires_reauthorization=state is CredentialState.NEEDS_REAUTH,
            scopes=credential.scopes,
        )

    async def refresh(self, credential: EbayCredential, now: datetime | None = None) -> str:
        """Refresh a credential's access token.

        Args:
            credential: Connected credential with a valid refresh token
            now: Current time (defaults to now)

        Returns:
            The new plaintext access token

        Raises:
            EbayApiError: If eBay rejects the refresh
            TokenDecryptionError: If the stored refresh token cannot be decrypted
        """
        refresh_token = self.encryption.decrypt(credential.refresh_token_encrypted)
        tokens = await self.client.refresh_token(refresh_token)
        now = now or datetime.now(UTC)

        credential.apply_refresh(
            access_token_encrypted=self.encryption.encrypt(tokens.access_token),
            access_token_expires_at=tokens.access_token_expires_at(now),
            refresh_token_encrypted=(
                self.encryption.encrypt(tokens.refresh_token) if tokens.refresh_token else None
            ),
            refresh_token_expires_at=tokens.refresh_token_expires_at(now),
        )
        await self.session.flush()

        self.logger.info(
            "Access token refreshed",
            user_id=credential.user_id,
            refresh_token_rotated=bool(tokens.refresh_token),
        )
        return tokens.access_token

    async def force_reauthorization(
        self, credential: EbayCredential, message: str = REAUTH_REQUIRED_MESSAGE
    ) -> None:
        """Disconnect a credential whose refresh token can no longer be used."""
        credential.require_reauthorization(message)
        await self.session.flush()
        self.logger.warning("eBay reauthorization required", user_id=credential.user_id)

    async def get_valid_access_token(
        self, credential: EbayCredential, now: datetime | None = None
    ) -> str:
        """Return a usable access token, refreshing first if it has expired.

        Args:
            credential: The user's credential
            now: Current time (defaults to now)

        Returns:
            Plaintext access token

        Raises:
            NotConnectedError: If the credential is disconnected
            ReauthorizationRequiredError: If the refresh token has expired
                (the credential is disconnected first)
        """
        lock = user_lock(credential.user_id)
        async with lock:
            now = now or datetime.now(UTC)
            state = classify(now, credential)

            if state is CredentialState.DISCONNECTED:
                raise NotConnectedError(credential.user_id)
            if state is CredentialState.NEEDS_REAUTH:
                await self.force_reauthorization(credential)
                raise ReauthorizationRequiredError(credential.user_id)
            if state is CredentialState.ACCESS_EXPIRED:
                return await self.refresh(credential, now=now)
            return self.encryption.decrypt(credential.access_token_encrypted)
