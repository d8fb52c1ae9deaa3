"""
At-rest encryption for TOTP shared secrets.

Uses Fernet (AES-128-CBC + HMAC-SHA256). The key comes from the
TOTP_ENCRYPTION_KEY environment variable / Docker secret. When no key is
configured secrets are stored as plaintext, and plaintext rows written before
a key was configured stay readable after one is added.

Generate a key with:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""
import logging
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class SecretDecryptionError(ValueError):
    """Stored secret could not be decrypted with the configured key."""


class TotpSecretCipher:
    """Encrypts and decrypts TOTP secrets for storage."""

    PREFIX = "enc:"

    def __init__(self, key: Union[str, bytes]):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, secret: str) -> str:
        token = self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")
        return f"{self.PREFIX}{token}"

    def decrypt(self, stored: str) -> str:
        if not stored.startswith(self.PREFIX):
            return stored
        try:
            return self._fernet.decrypt(stored[len(self.PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise SecretDecryptionError("TOTP secret could not be decrypted") from e


def build_cipher(key: Optional[str]) -> Optional[TotpSecretCipher]:
    """Return a cipher for the configured key, or None for plaintext storage."""
    if not key:
        return None
    return TotpSecretCipher(key)


def read_stored_secret(stored: str, cipher: Optional[TotpSecretCipher]) -> str:
    """Decode a stored secret, failing on encrypted values when no key is configured."""
    if cipher is not None:
        return cipher.decrypt(stored)
    if stored.startswith(TotpSecretCipher.PREFIX):
        logger.error("Encrypted TOTP secret found but TOTP_ENCRYPTION_KEY is not configured")
        raise SecretDecryptionError("TOTP secret is encrypted and no key is configured")
    return stored
