"""Security utilities for token encryption."""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from seller_metrics_server.core.config import settings


class TokenDecryptionError(ValueError):
    """Stored ciphertext could not be authenticated with the current key."""


class TokenEncryption:
    """Encrypt and decrypt OAuth tokens for secure storage.

    The rest of the system only relies on two properties: values round-trip
    exactly, and ciphertext is opaque and safe to persist.
    """

    def __init__(self, key: bytes | None = None) -> None:
        """Initialize encryption.

        Args:
            key: Fernet key, defaults to the configured application key
        """
        self.cipher = Fernet(key or settings.get_encryption_key())

    def encrypt(self, token: str) -> str:
        """Encrypt a token for database storage.

        Args:
            token: Plain text token

        Returns:
            Encrypted token (base64 encoded)

        Raises:
            ValueError: If token is empty
        """
        if not token:
            raise ValueError("Cannot encrypt an empty token")
        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """Decrypt a token from database.

        Args:
            encrypted_token: Encrypted token (base64 encoded)

        Returns:
            Plain text token

        Raises:
            ValueError: If encrypted_token is empty
            TokenDecryptionError: If the ciphertext was not produced with this key
        """
        if not encrypted_token:
            raise ValueError("Cannot decrypt an empty token")
        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e


@lru_cache(maxsize=1)
def get_token_encryption() -> TokenEncryption:
    """Get the process-wide token encryption instance."""
    return TokenEncryption()
