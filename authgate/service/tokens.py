from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

import jwt

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import InvalidTokenError
from authgate.service.keys import SigningKeyManager
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Account, RefreshToken

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"
REFRESH_TOKEN_BYTES = 48
_REQUIRED_CLAIMS = ["exp", "iat", "sub", "iss"]


class TokenStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def find_valid_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_value: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]: ...

    def revoke_account_refresh_tokens(self, account_id: str) -> int: ...


@dataclass
class AccessClaims:
    account_id: str
    email: str
    roles: List[str]
    issuer: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class TokenPair:
    account_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = TOKEN_TYPE


class TokenIssuer:
    """Mints RS256 access tokens and manages opaque refresh tokens."""

    def __init__(
        self, keys: SigningKeyManager, store: TokenStore, settings: Settings
    ) -> None:
        self.keys = keys
        self.store = store
        self.issuer = settings.jwt_issuer
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    def issue_access_token(
        self,
        account_id: str,
        email: str,
        roles: List[str],
        *,
        now: Optional[datetime] = None,
    ) -> str:
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": account_id,
            "email": email,
            "roles": list(roles),
            "iss": self.issuer,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.access_ttl).timestamp()),
        }
        return jwt.encode(
            payload,
            self.keys.private_key,
            algorithm="RS256",
            headers={"kid": self.keys.key_id},
        )

    def validate(self, token: str) -> AccessClaims:
        try:
            claims = jwt.decode(
                token,
                self.keys.public_key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            reason = "expired"
        except jwt.InvalidSignatureError:
            reason = "bad_signature"
        except jwt.InvalidTokenError:
            reason = "malformed"
        else:
            roles = claims.get("roles") or []
            if not isinstance(roles, list):
                roles = [str(roles)]
            return AccessClaims(
                account_id=str(claims["sub"]),
                email=str(claims.get("email") or ""),
                roles=[str(role) for role in roles],
                issuer=str(claims["iss"]),
                issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        logger.info("access_token_invalid", reason=reason)
        raise InvalidTokenError(reason=reason)

    def _new_refresh_token(self, account_id: str) -> RefreshToken:
        return RefreshToken.new(
            account_id, secrets.token_urlsafe(REFRESH_TOKEN_BYTES), self.refresh_ttl
        )

    def issue_refresh_token(self, account_id: str) -> RefreshToken:
        return self.store.insert_refresh_token(self._new_refresh_token(account_id))

    def issue_pair(self, account: Account) -> TokenPair:
        refresh = self.issue_refresh_token(account.id)
        return TokenPair(
            account_id=account.id,
            access_token=self.issue_access_token(account.id, account.email, account.roles),
            refresh_token=refresh.token,
            expires_in=self.access_ttl_seconds,
        )

    def rotate(self, old_value: str) -> TokenPair:
        """Exchange a valid refresh token for a new pair, revoking the old one.

        The lookup only learns the owner; the conditional revoke inside
        ``rotate_refresh_token`` decides whether this call wins.
        """
        now = datetime.now(timezone.utc)
        current = self.store.find_valid_refresh_token(old_value, now)
        if not current:
            logger.info("refresh_token_rejected", reason="unknown_or_revoked")
            raise InvalidTokenError(reason="refresh_invalid")
        account = self.store.get_account(current.account_id)
        if not account:
            logger.warning("refresh_token_orphaned", account_id=current.account_id)
            raise InvalidTokenError(reason="refresh_invalid")
        successor = self._new_refresh_token(account.id)
        try:
            previous = self.store.rotate_refresh_token(old_value, successor, now)
        except ConstraintViolation:
            logger.error("refresh_token_collision", account_id=account.id)
            raise
        if not previous:
            logger.info("refresh_token_rejected", reason="concurrent_rotation", account_id=account.id)
            raise InvalidTokenError(reason="refresh_invalid")
        return TokenPair(
            account_id=account.id,
            access_token=self.issue_access_token(account.id, account.email, account.roles, now=now),
            refresh_token=successor.token,
            expires_in=self.access_ttl_seconds,
        )

    def revoke(self, value: str) -> Optional[RefreshToken]:
        return self.store.revoke_refresh_token(value)

    def revoke_all(self, account_id: str) -> int:
        return self.store.revoke_account_refresh_tokens(account_id)
