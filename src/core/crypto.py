# src/core/crypto.py

import os
import logging
from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from src.core.config import IS_PRODUCTION

logger = logging.getLogger(__name__)


class CredentialCipher:
    """
    Encrypts connected-account tokens at rest.

    ENCRYPTION_KEY may list several comma-separated keys: the first one
    encrypts, every key is tried when decrypting, so an old key can stay
    listed while stored tokens are re-linked.
    """

    def __init__(self, keys: list[str]):
        if not keys:
            raise ValueError("At least one encryption key is required")
        self._fernet = MultiFernet([Fernet(k.encode()) for k in keys])

    def encrypt(self, value: str | None) -> str | None:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str | None) -> str | None:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error(
                "Stored payment credential could not be decrypted with any configured "
                "ENCRYPTION_KEY. The account has to be connected again."
            )
            return None

    def rotate(self, token: str) -> str:
        """Re-encrypt a stored token under the primary key."""
        return self._fernet.rotate(token.encode()).decode()


def _load_keys() -> list[str]:
    raw = os.environ.get("ENCRYPTION_KEY", "")
    keys = [k.strip() for k in raw.split(",") if k.strip()]
    if keys:
        return keys
    if IS_PRODUCTION:
        raise RuntimeError(
            "ENCRYPTION_KEY environment variable is required in production. "
            "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    logger.warning(
        "ENCRYPTION_KEY not set. Using a temporary key; "
        "connected payment accounts will need to be re-linked after a restart."
    )
    return [Fernet.generate_key().decode()]


_cipher = CredentialCipher(_load_keys())


def encrypt(value: str | None) -> str | None:
    return _cipher.encrypt(value)


def decrypt(token: str | None) -> str | None:
    """Returns None for tokens no configured key can open."""
    return _cipher.decrypt(token)
