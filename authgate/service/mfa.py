"""TOTP and backup-code second factor, plus the login challenge correlator.

Login with MFA is two calls: the password step stores a short-lived
correlator (``mfa:<token>`` -> email) and the second call redeems it exactly
once together with a valid TOTP or backup code. A wrong code leaves the
correlator in place until it expires.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

import pyotp

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import (
    InvalidTokenError,
    MfaAlreadyEnabledError,
    ValidationError,
)
from authgate.service.passwords import Argon2Hasher
from authgate.storage.models import Account

logger = get_logger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
TOTP_VALID_WINDOW = 1

METHOD_TOTP = "totp"
METHOD_BACKUP_CODE = "backup_code"


class MfaStore(Protocol):
    def set_mfa_secret(self, account_id: str, secret: str) -> None: ...

    def enable_mfa(self, account_id: str, backup_code_hashes: List[str]) -> bool: ...

    def disable_mfa(self, account_id: str) -> None: ...

    def set_backup_codes(self, account_id: str, backup_code_hashes: List[str]) -> None: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...


class ChallengeCache(Protocol):
    async def set_mfa_challenge(self, token: str, email: str, ttl_seconds: int) -> None: ...

    async def get_mfa_challenge(self, token: str) -> Optional[str]: ...

    async def delete_mfa_challenge(self, token: str) -> bool: ...


@dataclass
class MfaSetup:
    secret: str
    provisioning_uri: str


class MfaEngine:
    def __init__(
        self,
        store: MfaStore,
        cache: ChallengeCache,
        hasher: Argon2Hasher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hasher = hasher
        self.issuer = settings.mfa_issuer
        self.challenge_ttl_seconds = settings.mfa_challenge_ttl_seconds

    # totp
    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, email: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.issuer)

    @staticmethod
    def verify_totp(secret: Optional[str], code: str, at: Optional[datetime] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=at, valid_window=TOTP_VALID_WINDOW)

    # backup codes
    @staticmethod
    def generate_backup_codes() -> List[str]:
        return [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(BACKUP_CODE_COUNT)
        ]

    def _hash_backup_codes(self, codes: List[str]) -> List[str]:
        return [self.hasher.hash(code) for code in codes]

    def verify_backup_code(self, account: Account, code: str) -> bool:
        """Match ``code`` against the stored hashes and consume the match."""
        if not code or not account.mfa_backup_codes:
            return False
        normalized = code.strip().upper()
        for stored_hash in account.mfa_backup_codes:
            if self.hasher.verify(stored_hash, normalized):
                # False here means a concurrent request consumed it first
                return self.store.consume_backup_code(account.id, stored_hash)
        return False

    @staticmethod
    def remaining_backup_codes(account: Account) -> int:
        return len(account.mfa_backup_codes)

    def verify(self, account: Account, code: str) -> Optional[str]:
        """Check a second factor, TOTP first. Returns the method that matched."""
        if self.verify_totp(account.mfa_secret, code):
            return METHOD_TOTP
        if self.verify_backup_code(account, code):
            logger.info(
                "mfa_backup_code_used",
                account_id=account.id,
                remaining=max(0, self.remaining_backup_codes(account) - 1),
            )
            return METHOD_BACKUP_CODE
        return None

    # challenges
    async def create_challenge(self, email: str) -> str:
        token = secrets.token_urlsafe(32)
        await self.cache.set_mfa_challenge(token, email, self.challenge_ttl_seconds)
        return token

    async def resolve_challenge(self, token: str) -> str:
        """Return the email a pending challenge belongs to, leaving it in place."""
        email = await self.cache.get_mfa_challenge(token) if token else None
        if not email:
            raise InvalidTokenError("MFA token expired or invalid", reason="mfa_challenge_missing")
        return email

    async def claim_challenge(self, token: str) -> None:
        """Delete a challenge once its second factor checked out.

        Concurrent redemptions race on the delete; only the winner proceeds.
        """
        if not await self.cache.delete_mfa_challenge(token):
            raise InvalidTokenError("MFA token expired or invalid", reason="mfa_challenge_claimed")

    # enrollment
    def setup(self, account: Account) -> MfaSetup:
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()
        secret = self.generate_secret()
        self.store.set_mfa_secret(account.id, secret)
        return MfaSetup(secret=secret, provisioning_uri=self.provisioning_uri(secret, account.email))

    def enable(self, account: Account, code: str) -> List[str]:
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()
        if not account.mfa_secret:
            raise ValidationError("MFA setup has not been started")
        if not self.verify_totp(account.mfa_secret, code):
            raise ValidationError("Invalid TOTP code")
        codes = self.generate_backup_codes()
        if not self.store.enable_mfa(account.id, self._hash_backup_codes(codes)):
            raise MfaAlreadyEnabledError()
        logger.info("mfa_enabled", account_id=account.id)
        return codes

    def disable(self, account: Account, code: str) -> None:
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if not self.verify_totp(account.mfa_secret, code):
            raise ValidationError("Invalid TOTP code")
        self.store.disable_mfa(account.id)
        logger.info("mfa_disabled", account_id=account.id)

    def regenerate_backup_codes(self, account: Account, code: str) -> List[str]:
        if not account.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        if not self.verify_totp(account.mfa_secret, code):
            raise ValidationError("Invalid TOTP code")
        codes = self.generate_backup_codes()
        self.store.set_backup_codes(account.id, self._hash_backup_codes(codes))
        logger.info("mfa_backup_codes_regenerated", account_id=account.id)
        return codes
