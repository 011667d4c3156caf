from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from authgate.logging import get_logger
from authgate.service.audit import AuditEmitter, AuditEventType
from authgate.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from authgate.service.lockout import LockoutPolicy
from authgate.service.mfa import MfaEngine, MfaSetup
from authgate.service.passwords import Argon2Hasher
from authgate.service.sessions import SessionRegistry
from authgate.service.tokens import TokenIssuer, TokenPair
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Account, SessionRecord

logger = get_logger(__name__)

ADMIN_ROLE = "ADMIN"


class AccountStore(Protocol):
    def create_account(
        self, email: str, password_hash: str, roles: Optional[List[str]] = None
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...


@dataclass
class Principal:
    """Caller identity derived from a validated access token."""

    account_id: str
    email: str
    roles: List[str] = field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class LoginResult:
    tokens: Optional[TokenPair] = None
    session_id: Optional[str] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuthService:
    """Login, MFA, refresh and logout flows over the individual components.

    Steps that commit (counter updates, token inserts, session writes) are
    not rolled back when a later step in the same call fails.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: Argon2Hasher,
        tokens: TokenIssuer,
        lockout: LockoutPolicy,
        mfa: MfaEngine,
        sessions: SessionRegistry,
        audit: AuditEmitter,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self.mfa = mfa
        self.sessions = sessions
        self.audit = audit
        self.logger = logger

    def _emit(
        self,
        event_type: AuditEventType,
        client: Optional[ClientInfo],
        *,
        success: bool = True,
        account_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        client = client or ClientInfo()
        self.audit.emit(
            event_type,
            success=success,
            account_id=account_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            detail=detail,
        )

    # registration
    async def register(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> Account:
        try:
            account = self.store.create_account(email, self.hasher.hash(password))
        except ConstraintViolation:
            raise AlreadyExistsError("email already registered", detail={"field": "email"})
        self.logger.info("account_registered", account_id=account.id)
        self._emit(
            AuditEventType.USER_REGISTERED,
            client,
            account_id=account.id,
            detail={"email": account.email},
        )
        return account

    # login
    async def login(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if not account:
            self.hasher.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_email")
            self._emit(
                AuditEventType.USER_LOGIN_FAILED,
                client,
                success=False,
                detail={"email": email, "reason": "unknown_email"},
            )
            raise InvalidCredentialsError()

        if self.lockout.is_locked(account):
            self.logger.info("login_failed", reason="account_locked", account_id=account.id)
            self._emit(
                AuditEventType.USER_LOGIN_FAILED,
                client,
                success=False,
                account_id=account.id,
                detail={"email": account.email, "reason": "account_locked"},
            )
            raise AccountLockedError()

        if not self.hasher.verify(account.password_hash, password):
            newly_locked = self.lockout.record_failure(account)
            self.logger.info("login_failed", reason="bad_password", account_id=account.id)
            self._emit(
                AuditEventType.USER_LOGIN_FAILED,
                client,
                success=False,
                account_id=account.id,
                detail={"email": account.email, "reason": "bad_password"},
            )
            if newly_locked:
                self._emit(
                    AuditEventType.ACCOUNT_LOCKED,
                    client,
                    account_id=account.id,
                    detail={"max_attempts": self.lockout.max_attempts},
                )
            raise InvalidCredentialsError()

        if account.mfa_enabled:
            mfa_token = await self.mfa.create_challenge(account.email)
            self.logger.info("login_mfa_required", account_id=account.id)
            return LoginResult(mfa_required=True, mfa_token=mfa_token)

        return await self._complete_login(account, client)

    async def verify_mfa(
        self, mfa_token: str, code: str, client: Optional[ClientInfo] = None
    ) -> LoginResult:
        email = await self.mfa.resolve_challenge(mfa_token)
        account = self.store.get_account_by_email(email)
        if not account:
            raise InvalidTokenError("MFA token expired or invalid", reason="mfa_account_missing")
        if self.lockout.is_locked(account):
            raise AccountLockedError()

        method = self.mfa.verify(account, code)
        if not method:
            self.logger.info("mfa_verification_failed", account_id=account.id)
            self._emit(AuditEventType.MFA_FAILED, client, success=False, account_id=account.id)
            raise InvalidCredentialsError("Invalid MFA code or backup code")

        await self.mfa.claim_challenge(mfa_token)
        self._emit(
            AuditEventType.MFA_VERIFIED,
            client,
            account_id=account.id,
            detail={"method": method},
        )
        return await self._complete_login(account, client)

    async def _complete_login(
        self, account: Account, client: Optional[ClientInfo]
    ) -> LoginResult:
        client = client or ClientInfo()
        self.lockout.record_success(account)
        pair = self.tokens.issue_pair(account)
        session_id = await self.sessions.create(
            account.id, pair.refresh_token, client.ip_address, client.user_agent
        )
        self.logger.info("login_succeeded", account_id=account.id, session_id=session_id)
        self._emit(
            AuditEventType.USER_LOGIN_SUCCESS,
            client,
            account_id=account.id,
            detail={"email": account.email},
        )
        return LoginResult(tokens=pair, session_id=session_id)

    # refresh & logout
    async def refresh(
        self, refresh_token: str, client: Optional[ClientInfo] = None
    ) -> TokenPair:
        pair = self.tokens.rotate(refresh_token)
        session = await self.sessions.find_by_refresh_token(pair.account_id, refresh_token)
        if session:
            await self.sessions.rebind_refresh_token(session.id, pair.refresh_token)
            await self.sessions.refresh(session.id)
        self.logger.info("token_refreshed", account_id=pair.account_id)
        self._emit(AuditEventType.TOKEN_REFRESHED, client, account_id=pair.account_id)
        return pair

    async def logout(self, refresh_token: str, client: Optional[ClientInfo] = None) -> None:
        """Revoke a refresh token and end its session. Unknown tokens are a no-op."""
        record = self.tokens.revoke(refresh_token)
        if not record:
            self.logger.debug("logout_unknown_token")
            return
        session = await self.sessions.find_by_refresh_token(record.account_id, refresh_token)
        if session:
            await self.sessions.invalidate(session.id)
        self.logger.info("logout", account_id=record.account_id)
        self._emit(AuditEventType.USER_LOGOUT, client, account_id=record.account_id)

    async def revoke_all_user_tokens(
        self, account_id: str, client: Optional[ClientInfo] = None
    ) -> Dict[str, int]:
        revoked = self.tokens.revoke_all(account_id)
        invalidated = await self.sessions.invalidate_all(account_id)
        self.logger.info(
            "tokens_revoked_all",
            account_id=account_id,
            revoked_tokens=revoked,
            invalidated_sessions=invalidated,
        )
        self._emit(
            AuditEventType.TOKEN_REVOKED,
            client,
            account_id=account_id,
            detail={"scope": "all", "revoked_tokens": revoked},
        )
        return {"revoked_tokens": revoked, "invalidated_sessions": invalidated}

    # bearer authentication
    def authenticate(self, authorization: Optional[str]) -> Principal:
        if not authorization:
            raise AuthenticationError("missing bearer token")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.validate(token.strip())
        return Principal(account_id=claims.account_id, email=claims.email, roles=claims.roles)

    @staticmethod
    def require_role(principal: Principal, role: str) -> None:
        if not principal.has_role(role):
            raise ForbiddenError(f"{role.lower()} role required")

    def _load_account(self, principal: Principal) -> Account:
        account = self.store.get_account(principal.account_id)
        if not account:
            raise InvalidTokenError(reason="account_missing")
        return account

    # mfa enrollment
    def mfa_setup(self, principal: Principal) -> MfaSetup:
        return self.mfa.setup(self._load_account(principal))

    def mfa_enable(
        self, principal: Principal, code: str, client: Optional[ClientInfo] = None
    ) -> List[str]:
        codes = self.mfa.enable(self._load_account(principal), code)
        self._emit(AuditEventType.MFA_ENABLED, client, account_id=principal.account_id)
        return codes

    def mfa_disable(
        self, principal: Principal, code: str, client: Optional[ClientInfo] = None
    ) -> None:
        self.mfa.disable(self._load_account(principal), code)
        self._emit(AuditEventType.MFA_DISABLED, client, account_id=principal.account_id)

    def mfa_regenerate_backup_codes(self, principal: Principal, code: str) -> List[str]:
        return self.mfa.regenerate_backup_codes(self._load_account(principal), code)

    def mfa_status(self, principal: Principal) -> Dict[str, Any]:
        account = self._load_account(principal)
        return {
            "mfa_enabled": account.mfa_enabled,
            "backup_codes_remaining": self.mfa.remaining_backup_codes(account)
            if account.mfa_enabled
            else 0,
        }

    # administration
    def unlock_account(
        self, principal: Principal, account_id: str, client: Optional[ClientInfo] = None
    ) -> Account:
        self.require_role(principal, ADMIN_ROLE)
        account = self.lockout.unlock(account_id)
        if not account:
            raise NotFoundError("account not found")
        self._emit(
            AuditEventType.ACCOUNT_UNLOCKED,
            client,
            account_id=account_id,
            detail={"unlocked_by": principal.account_id},
        )
        return account

    # sessions
    async def list_sessions(self, principal: Principal) -> List[SessionRecord]:
        return await self.sessions.list_active(principal.account_id)

    async def revoke_session(
        self, principal: Principal, session_id: str, client: Optional[ClientInfo] = None
    ) -> None:
        record = await self.sessions.get(session_id)
        if not record or record.account_id != principal.account_id:
            raise NotFoundError("session not found")
        self.tokens.revoke(record.refresh_token)
        await self.sessions.invalidate(session_id)
        self._emit(
            AuditEventType.TOKEN_REVOKED,
            client,
            account_id=principal.account_id,
            detail={"scope": "session", "session_id": session_id},
        )
