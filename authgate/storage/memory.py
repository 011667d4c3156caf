from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from authgate.logging import get_logger
from authgate.storage.common import SecretCipher, normalize_email
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Account, RefreshToken, SessionRecord, utcnow


class MemoryStore:
    """In-process account and refresh-token store for tests and local runs."""

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key, allow_ephemeral=True)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def _snapshot(self, account: Account) -> Account:
        """Return a detached copy with the MFA secret decrypted."""
        return replace(
            account,
            roles=list(account.roles),
            mfa_backup_codes=list(account.mfa_backup_codes),
            mfa_secret=self._cipher.decrypt(account.mfa_secret),
        )

    # accounts
    def create_account(
        self, email: str, password_hash: str, roles: Optional[List[str]] = None
    ) -> Account:
        account = Account.new(email, password_hash, roles)
        with self._data_lock:
            if any(existing.email == account.email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = account
            return self._snapshot(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._snapshot(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return self._snapshot(account) if account else None

    def set_account_roles(self, account_id: str, roles: List[str]) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.roles = list(roles)
            account.updated_at = utcnow()
            return self._snapshot(account)

    def record_failed_login(
        self, account_id: str, max_attempts: int
    ) -> Optional[Account]:
        """Increment the failure counter and set the lock flag in one step."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= max_attempts:
                account.account_locked = True
            account.updated_at = utcnow()
            return self._snapshot(account)

    def record_successful_login(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            account.failed_login_attempts = 0
            account.account_locked = False
            account.last_login_at = now
            account.updated_at = now
            return self._snapshot(account)

    def unlock_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts = 0
            account.account_locked = False
            account.updated_at = utcnow()
            return self._snapshot(account)

    # mfa
    def set_mfa_secret(self, account_id: str, secret: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
            account.mfa_secret = self._cipher.encrypt(secret)
            account.updated_at = utcnow()

    def enable_mfa(self, account_id: str, backup_code_hashes: List[str]) -> bool:
        """Flip the enabled flag unless it is already set."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.mfa_enabled or not account.mfa_secret:
                return False
            account.mfa_enabled = True
            account.mfa_backup_codes = list(backup_code_hashes)
            account.updated_at = utcnow()
            return True

    def disable_mfa(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.mfa_enabled = False
            account.mfa_secret = None
            account.mfa_backup_codes = []
            account.updated_at = utcnow()

    def set_backup_codes(self, account_id: str, backup_code_hashes: List[str]) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.mfa_backup_codes = list(backup_code_hashes)
            account.updated_at = utcnow()

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        """Remove one stored hash; False if another request already removed it."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or code_hash not in account.mfa_backup_codes:
                return False
            account.mfa_backup_codes.remove(code_hash)
            account.updated_at = utcnow()
            return True

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            return replace(token)

    def find_valid_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(value)
            if record and record.is_valid(now):
                return replace(record)
            return None

    def rotate_refresh_token(
        self, old_value: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Revoke ``old_value`` if still valid and insert ``successor`` atomically.

        Returns the revoked predecessor, or None when it was unknown, expired or
        already revoked (nothing is written in that case).
        """
        with self._data_lock:
            record = self.refresh_tokens.get(old_value)
            if not record or not record.is_valid(now):
                return None
            if successor.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            record.revoked = True
            self.refresh_tokens[successor.token] = replace(successor)
            return replace(record)

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(value)
            if not record or record.revoked:
                return None
            record.revoked = True
            return replace(record)

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.account_id == account_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            return revoked


class MemoryCache:
    """In-process stand-in for RedisCache.

    Only valid for a single process (TEST_MODE / ALLOW_REDIS_FALLBACK_DEV);
    exposes the same awaitable surface so services do not branch on backend.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[object, Optional[float]]] = {}

    def _get(self, key: str) -> Optional[object]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: object, ttl_seconds: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._values[key] = (value, expires_at)

    def _expire(self, key: str, ttl_seconds: int) -> bool:
        value = self._get(key)
        if value is None:
            return False
        self._set(key, value, ttl_seconds)
        return True

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # sessions
    async def create_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"session:{record.id}", record.to_mapping(), ttl_seconds)
            index_key = f"user_sessions:{record.account_id}"
            members = set(self._get(index_key) or set())
            members.add(record.id)
            self._set(index_key, members, ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            data = self._get(f"session:{session_id}")
        if not data:
            return None
        return SessionRecord.from_mapping(session_id, dict(data))

    async def delete_session(self, session_id: str) -> Optional[str]:
        with self._lock:
            data = self._get(f"session:{session_id}")
            if not data:
                return None
            self._values.pop(f"session:{session_id}", None)
            account_id = data.get("account_id")
            members = self._get(f"user_sessions:{account_id}")
            if members:
                members.discard(session_id)
            return account_id

    async def list_account_session_ids(self, account_id: str) -> List[str]:
        with self._lock:
            return sorted(self._get(f"user_sessions:{account_id}") or set())

    async def prune_account_session_ids(self, account_id: str, session_ids: List[str]) -> None:
        with self._lock:
            members = self._get(f"user_sessions:{account_id}")
            if members:
                members.difference_update(session_ids)

    async def delete_account_sessions(self, account_id: str) -> int:
        with self._lock:
            index_key = f"user_sessions:{account_id}"
            members = self._get(index_key) or set()
            removed = 0
            for session_id in members:
                if self._values.pop(f"session:{session_id}", None) is not None:
                    removed += 1
            self._values.pop(index_key, None)
            return removed

    async def touch_session(self, session_id: str, ttl_seconds: int) -> bool:
        with self._lock:
            data = self._get(f"session:{session_id}")
            if not data:
                return False
            self._expire(f"session:{session_id}", ttl_seconds)
            self._expire(f"user_sessions:{data.get('account_id')}", ttl_seconds)
            return True

    async def set_session_refresh_token(self, session_id: str, refresh_token: str) -> bool:
        with self._lock:
            data = self._get(f"session:{session_id}")
            if not data:
                return False
            data["refresh_token"] = refresh_token
            return True

    # mfa challenges
    async def set_mfa_challenge(self, token: str, email: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"mfa:{token}", email, ttl_seconds)

    async def get_mfa_challenge(self, token: str) -> Optional[str]:
        with self._lock:
            return self._get(f"mfa:{token}")

    async def delete_mfa_challenge(self, token: str) -> bool:
        with self._lock:
            if self._get(f"mfa:{token}") is None:
                return False
            self._values.pop(f"mfa:{token}", None)
            return True

    # rate counters
    async def incr_window_counter(self, key: str, window_seconds: int) -> int:
        with self._lock:
            count = int(self._get(key) or 0) + 1
            if count == 1:
                self._set(key, count, window_seconds)
            else:
                _, expires_at = self._values[key]
                self._values[key] = (count, expires_at)
            return count

    async def get_window_counter(self, key: str) -> int:
        with self._lock:
            return int(self._get(key) or 0)
