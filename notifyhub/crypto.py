"""Credential encryption seam and OAuth state helpers.

Tokens are encrypted before they reach the token store. When no
``TOKEN_ENCRYPTION_KEY`` is configured the passthrough cipher is used and
protection relies on the database's own encryption at rest.
"""
from __future__ import annotations

import hmac
import logging
import secrets
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from notifyhub.config import Settings

logger = logging.getLogger(__name__)


class TokenCipher:
    """Interface every credential cipher satisfies."""

    def encrypt(self, token: str) -> str:
        raise NotImplementedError

    def decrypt(self, blob: str) -> str:
        raise NotImplementedError

    def encrypt_optional(self, token: Optional[str]) -> Optional[str]:
        return self.encrypt(token) if token else None

    def decrypt_optional(self, blob: Optional[str]) -> Optional[str]:
        return self.decrypt(blob) if blob else None


class PassthroughTokenCipher(TokenCipher):
    def encrypt(self, token: str) -> str:
        return token

    def decrypt(self, blob: str) -> str:
        return blob


class FernetTokenCipher(TokenCipher):
    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, blob: str) -> str:
        try:
            return self._fernet.decrypt(blob.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Stored credential could not be decrypted") from exc


def build_cipher(settings: Settings) -> TokenCipher:
    if settings.token_encryption_key:
        return FernetTokenCipher(settings.token_encryption_key)
    logger.warning("TOKEN_ENCRYPTION_KEY not set; relying on storage encryption at rest")
    return PassthroughTokenCipher()


def mask_token(token: Optional[str]) -> str:
    """Show only the first and last 4 characters of a secret for logging."""
    if not token or len(token) < 12:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


def generate_state() -> str:
    """Random CSRF state for an OAuth redirect."""
    return secrets.token_hex(32)


def verify_state(received: Optional[str], expected: Optional[str]) -> bool:
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
