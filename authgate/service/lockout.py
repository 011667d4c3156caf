from __future__ import annotations

from typing import Optional, Protocol

from authgate.logging import get_logger
from authgate.storage.models import Account

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_failed_login(self, account_id: str, max_attempts: int) -> Optional[Account]: ...

    def record_successful_login(self, account_id: str) -> Optional[Account]: ...

    def unlock_account(self, account_id: str) -> Optional[Account]: ...


class LockoutPolicy:
    """Sticky per-account lockout after consecutive failed password checks.

    A locked account stays locked until a successful-login reset or an
    administrative unlock; there is no time-based release.
    """

    def __init__(self, store: LockoutStore, max_attempts: int = 5) -> None:
        self.store = store
        self.max_attempts = max_attempts

    @staticmethod
    def is_locked(account: Account) -> bool:
        return account.account_locked

    def record_failure(self, account: Account) -> bool:
        """Count one failed password check. Returns True if this call locked the account."""
        updated = self.store.record_failed_login(account.id, self.max_attempts)
        if not updated:
            return False
        # Increments are atomic, so exactly one caller observes the threshold
        newly_locked = (
            updated.account_locked
            and updated.failed_login_attempts == self.max_attempts
        )
        if newly_locked:
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_attempts=updated.failed_login_attempts,
            )
        return newly_locked

    def record_success(self, account: Account) -> Optional[Account]:
        return self.store.record_successful_login(account.id)

    def unlock(self, account_id: str) -> Optional[Account]:
        updated = self.store.unlock_account(account_id)
        if updated:
            logger.info("account_unlocked", account_id=account_id)
        return updated
