"""Encryption of CRM credentials at rest.

Passwords for external CRM systems are stored as Fernet tokens and are only
decrypted for the duration of a login handshake.
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from src.core.settings import settings

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when a stored credential cannot be encrypted or decrypted."""


class CredentialCipher:
    """Symmetric cipher for integration passwords."""

    def __init__(self, key: Optional[str] = None, secret: Optional[str] = None):
        """
        Args:
            key: Fernet key (urlsafe base64 of 32 bytes)
            secret: Fallback secret to derive a key from when no key is given
        """
        if key:
            fernet_key = key.encode()
        elif secret:
            # Development fallback: derive a stable key from the JWT secret
            digest = hashlib.sha256(secret.encode()).digest()
            fernet_key = base64.urlsafe_b64encode(digest)
        else:
            raise CredentialError(
                "CREDENTIAL_ENCRYPTION_KEY or JWT_SECRET must be configured"
            )

        try:
            self._fernet = Fernet(fernet_key)
        except ValueError as e:
            raise CredentialError(f"Invalid credential encryption key: {e}")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a password and return the token as text."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored password token."""
        if not token:
            raise CredentialError("No stored credential")
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError):
            raise CredentialError("Stored credential could not be decrypted")


_cipher: Optional[CredentialCipher] = None


def get_credential_cipher() -> CredentialCipher:
    """Return the process-wide credential cipher built from settings."""
    global _cipher
    if _cipher is None:
        if not settings.CREDENTIAL_ENCRYPTION_KEY:
            logger.warning(
                "CREDENTIAL_ENCRYPTION_KEY not set, deriving key from JWT_SECRET"
            )
        _cipher = CredentialCipher(
            key=settings.CREDENTIAL_ENCRYPTION_KEY, secret=settings.JWT_SECRET
        )
    return _cipher
