from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    roles: List[str] = field(default_factory=lambda: ["USER"])
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_backup_codes: List[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    account_locked: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, email: str, password_hash: str, roles: Optional[List[str]] = None
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            roles=list(roles) if roles else ["USER"],
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshToken:
    """Opaque refresh credential; rows are revoked, never deleted."""

    id: str
    account_id: str
    token: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, account_id: str, token: str, ttl: timedelta) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token=token,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return not self.revoked and self.expires_at > now


@dataclass
class SessionRecord:
    id: str
    account_id: str
    refresh_token: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_mapping(self) -> Dict[str, str]:
        """Flatten to string fields for a Redis hash."""
        return {
            "account_id": self.account_id,
            "refresh_token": self.refresh_token,
            "ip_address": self.ip_address or "",
            "user_agent": self.user_agent or "",
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_mapping(cls, session_id: str, data: Dict[str, str]) -> "SessionRecord":
        created_raw = data.get("created_at")
        try:
            created_at = datetime.fromisoformat(created_raw) if created_raw else utcnow()
        except (TypeError, ValueError):
            created_at = utcnow()
        return cls(
            id=session_id,
            account_id=data.get("account_id", ""),
            refresh_token=data.get("refresh_token", ""),
            ip_address=data.get("ip_address") or None,
            user_agent=data.get("user_agent") or None,
            created_at=created_at,
        )
