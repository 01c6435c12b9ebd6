"""Fernet symmetric encryption for connection passwords.

Uses AES-128-CBC + HMAC-SHA256 via the cryptography library's Fernet.
The key is read once at startup (SQLDESK_ENCRYPTION_KEY) into a
FernetKeyProvider, which is handed to the services that need it.
"""

from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from sqldesk.config import Settings
from sqldesk.errors import EncryptionUnavailableError
from sqldesk.logging_config import get_logger

logger = get_logger(__name__)


class KeyProvider(Protocol):
    """Encrypts and decrypts secrets at rest."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetKeyProvider:
    """Fernet-backed key provider.

    Accepts one or more keys. The first key encrypts; all keys are tried on
    decrypt, which allows key rotation without re-encrypting every row first.
    """

    def __init__(self, *keys: str | bytes) -> None:
        if not keys:
            raise EncryptionUnavailableError("At least one encryption key is required")
        try:
            fernets = [Fernet(k.encode() if isinstance(k, str) else k) for k in keys]
        except ValueError as e:
            raise EncryptionUnavailableError(f"Invalid encryption key: {e}") from None
        self._fernet = MultiFernet(fernets)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string. Returns base64-encoded Fernet ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a Fernet ciphertext string. Returns plaintext."""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            raise ValueError("Failed to decrypt value: key mismatch or corrupted data") from None


def build_key_provider(config: Settings) -> FernetKeyProvider:
    """Build the process-wide key provider from settings.

    SQLDESK_ENCRYPTION_KEY may hold several comma-separated keys, newest first.
    """
    keys = [k.strip() for k in config.encryption_key.split(",") if k.strip()]
    if not keys:
        raise EncryptionUnavailableError(
            "Encryption not configured. Set SQLDESK_ENCRYPTION_KEY to store connection profiles."
        )
    provider = FernetKeyProvider(*keys)
    logger.info("Encryption initialized", key_count=len(keys))
    return provider


def generate_key() -> str:
    """Generate a fresh Fernet key."""
    return Fernet.generate_key().decode()
