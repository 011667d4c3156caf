from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authgate.logging import get_logger
from authgate.service.errors import ServerError

logger = get_logger(__name__)


class Argon2Hasher:
    """argon2id hashing for passwords and MFA backup codes."""

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)
        # Compared against when the account does not exist so unknown emails
        # cost the same as wrong passwords.
        self._dummy_hash = self._hasher.hash("authgate-dummy-password")

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerificationError:
            return False
        except InvalidHash as exc:
            # A corrupt stored hash is a data fault, not a wrong secret
            logger.error("stored_hash_unreadable", error=str(exc))
            raise ServerError("stored credential hash is unreadable") from exc

    def verify_dummy(self, secret: str) -> None:
        self.verify(self._dummy_hash, secret)
