"""Common storage utilities shared between memory and postgres implementations.

Both backends encrypt MFA secrets at rest with the same Fernet derivation so a
deployment can move between them without re-enrolling users.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from authgate.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and look them up lower-cased."""
    return (email or "").strip().lower()


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper used for MFA secrets.

    Args:
        key_material: Arbitrary secret string; a Fernet key is derived from it.
        allow_ephemeral: When no key material is configured, generate a
            process-local key instead of failing. Secrets written under an
            ephemeral key cannot be read after a restart.
    """

    def __init__(self, key_material: Optional[str], *, allow_ephemeral: bool = False):
        if not key_material:
            if not allow_ephemeral:
                raise RuntimeError(
                    "MFA_SECRET_KEY is required to encrypt MFA secrets at rest"
                )
            logger.warning(
                "mfa_cipher_ephemeral_key",
                message="No MFA_SECRET_KEY configured; MFA secrets will not survive a restart.",
            )
            self._fernet = Fernet(Fernet.generate_key())
        else:
            self._fernet = Fernet(_derive_cipher_key(key_material))

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.error("mfa_secret_decrypt_failed")
            raise
