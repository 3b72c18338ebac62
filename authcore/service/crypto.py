from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """Digest used to look up opaque tokens; raw tokens are never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


class SecretCipher:
    """Fernet encryption for secrets at rest plus keyed digests for short codes."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("secret key material is required")
        self._digest_key = hashlib.sha256(b"authcore-digest:" + key_material.encode()).digest()
        try:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            logger.error("secret_decrypt_failed")
            raise RuntimeError("stored secret could not be decrypted") from exc

    def digest(self, value: str) -> str:
        """Keyed digest for low-entropy codes (backup codes, emailed OTPs)."""
        normalized = value.strip().replace("-", "").replace(" ", "").lower()
        return hmac.new(self._digest_key, normalized.encode(), hashlib.sha256).hexdigest()

    def digest_matches(self, value: str, expected: str) -> bool:
        return hmac.compare_digest(self.digest(value), expected)
