"""RSA signing key management for access tokens.

The manager owns the key pair used to sign access tokens and publishes the
public half (PEM and JWK) so other services can verify tokens offline.
"""

from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from authgate.config import Settings
from authgate.logging import get_logger

logger = get_logger(__name__)

RSA_KEY_SIZE = 2048


class KeyConfigurationError(RuntimeError):
    """Signing key material is missing, malformed, non-RSA or mismatched."""


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _read_pem(text: Optional[str], path: Optional[str], label: str) -> Optional[bytes]:
    if text:
        # Env vars often carry escaped newlines
        return text.replace("\\n", "\n").encode("utf-8")
    if path:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise KeyConfigurationError(f"cannot read {label} from {path}: {exc}") from exc
    return None


class SigningKeyManager:
    """Holds the RSA key pair and performs RS256 primitive operations.

    With only a public key configured the manager runs in verification-only
    mode and ``sign`` raises ``KeyConfigurationError``.
    """

    def __init__(
        self,
        private_key: Optional[rsa.RSAPrivateKey],
        public_key: rsa.RSAPublicKey,
        *,
        ephemeral: bool = False,
    ) -> None:
        self._private_key = private_key
        self._public_key = public_key
        self.ephemeral = ephemeral
        self.key_id = self._thumbprint()[:16]

    @classmethod
    def generate(cls) -> "SigningKeyManager":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        return cls(private_key, private_key.public_key(), ephemeral=True)

    @classmethod
    def from_pem(
        cls, private_pem: Optional[bytes], public_pem: Optional[bytes] = None
    ) -> "SigningKeyManager":
        private_key = None
        public_key = None
        if private_pem:
            try:
                private_key = serialization.load_pem_private_key(private_pem, password=None)
            except (ValueError, TypeError) as exc:
                raise KeyConfigurationError(f"malformed private key: {exc}") from exc
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise KeyConfigurationError("private key is not an RSA key")
        if public_pem:
            try:
                public_key = serialization.load_pem_public_key(public_pem)
            except (ValueError, TypeError) as exc:
                raise KeyConfigurationError(f"malformed public key: {exc}") from exc
            if not isinstance(public_key, rsa.RSAPublicKey):
                raise KeyConfigurationError("public key is not an RSA key")
        if private_key is None and public_key is None:
            raise KeyConfigurationError("no key material supplied")
        if private_key is not None:
            derived = private_key.public_key()
            if public_key is not None and public_key.public_numbers() != derived.public_numbers():
                raise KeyConfigurationError("public key does not match private key")
            public_key = derived
        return cls(private_key, public_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyManager":
        private_pem = _read_pem(
            settings.jwt_private_key, settings.jwt_private_key_path, "private key"
        )
        public_pem = _read_pem(
            settings.jwt_public_key, settings.jwt_public_key_path, "public key"
        )
        if not private_pem and not public_pem:
            logger.warning(
                "signing_key_ephemeral",
                message=(
                    "No JWT signing key configured; generated a process-local key. "
                    "Tokens will not validate on other instances or after a restart."
                ),
            )
            return cls.generate()
        manager = cls.from_pem(private_pem, public_pem)
        logger.info(
            "signing_key_loaded",
            kid=manager.key_id,
            verify_only=not manager.can_sign,
        )
        return manager

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        if self._private_key is None:
            raise KeyConfigurationError("signing key unavailable in verification-only mode")
        return self._private_key

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key

    def sign(self, payload: bytes) -> bytes:
        return self.private_key.sign(payload, padding.PKCS1v15(), hashes.SHA256())

    def verify(self, payload: bytes, signature: bytes) -> bool:
        try:
            self._public_key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    def public_key_pem(self) -> str:
        return self._public_key.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def _thumbprint(self) -> str:
        numbers = self._public_key.public_numbers()
        canonical = json.dumps(
            {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
            separators=(",", ":"),
            sort_keys=True,
        )
        digest = hashlib.sha256(canonical.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def jwk(self) -> dict:
        numbers = self._public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": "RS256",
            "kid": self.key_id,
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }
