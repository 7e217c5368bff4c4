"""
Application-layer encryption for provider credentials at rest.

Fernet (AES-CBC + HMAC) with the key taken from settings. The access token a
provider issues is as sensitive as the records it unlocks, so it is never
stored in plaintext.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from healthvault.config import settings

logger = logging.getLogger(__name__)


class CredentialDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key."""


class EncryptionService:
    """Wraps Fernet symmetric encryption for secrets stored in the database."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: tokens written with this key do not survive a restart.
            logger.warning("PHI_ENCRYPTION_KEY not set; using an ephemeral key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise CredentialDecryptionError("stored credential does not match the configured key") from exc
