"""End-to-end flows through AuthService on the in-memory runtime."""

import asyncio

import pyotp
import pytest

from authgate.service.audit import AuditEventType
from authgate.service.auth import ADMIN_ROLE, ClientInfo, Principal
from authgate.service.errors import (
    AccountLockedError,
    AlreadyExistsError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
)
from authgate.service.runtime import get_runtime

PASSWORD = "CorrectHorse42"
CLIENT = ClientInfo(ip_address="198.51.100.7", user_agent="pytest-agent")


def _principal(account):
    return Principal(account_id=account.id, email=account.email, roles=list(account.roles))


async def _enroll_mfa(runtime, account):
    principal = _principal(account)
    setup = runtime.auth.mfa_setup(principal)
    codes = runtime.auth.mfa_enable(principal, pyotp.TOTP(setup.secret).now())
    return setup.secret, codes


class TestRegistration:
    async def test_register_then_duplicate_conflicts(self):
        runtime = get_runtime()
        account = await runtime.auth.register("Erin@Example.com", PASSWORD, CLIENT)
        assert account.email == "erin@example.com"
        assert account.roles == ["USER"]

        with pytest.raises(AlreadyExistsError):
            await runtime.auth.register("erin@example.com", PASSWORD)

    async def test_password_stored_as_argon2_hash(self):
        runtime = get_runtime()
        account = await runtime.auth.register("erin@example.com", PASSWORD)
        assert account.password_hash.startswith("$argon2id$")
        assert PASSWORD not in account.password_hash


class TestPasswordLogin:
    async def test_login_issues_tokens_and_session(self):
        runtime = get_runtime()
        account = await runtime.auth.register("frank@example.com", PASSWORD)
        result = await runtime.auth.login("frank@example.com", PASSWORD, CLIENT)

        assert result.mfa_required is False
        claims = runtime.tokens.validate(result.tokens.access_token)
        assert claims.account_id == account.id
        session = await runtime.sessions.get(result.session_id)
        assert session.refresh_token == result.tokens.refresh_token
        assert session.ip_address == "198.51.100.7"

        await runtime.audit.drain()
        success = runtime.audit.sink.of_type(AuditEventType.USER_LOGIN_SUCCESS)
        assert success[0].account_id == account.id
        assert success[0].user_agent == "pytest-agent"

    async def test_unknown_email_and_bad_password_look_alike(self):
        runtime = get_runtime()
        await runtime.auth.register("frank@example.com", PASSWORD)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await runtime.auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await runtime.auth.login("frank@example.com", "not-the-password")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_fifth_failure_emits_account_locked(self):
        runtime = get_runtime()
        account = await runtime.auth.register("frank@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("frank@example.com", "nope", CLIENT)

        await runtime.audit.drain()
        assert len(runtime.audit.sink.of_type(AuditEventType.USER_LOGIN_FAILED)) == 5
        locked = runtime.audit.sink.of_type(AuditEventType.ACCOUNT_LOCKED)
        assert [e.account_id for e in locked] == [account.id]

    async def test_unreadable_stored_hash_is_server_error(self):
        runtime = get_runtime()
        account = runtime.store.create_account("frank@example.com", "not-an-argon2-hash")

        with pytest.raises(ServerError):
            await runtime.auth.login("frank@example.com", PASSWORD)
        assert runtime.store.get_account(account.id).failed_login_attempts == 0

        await runtime.audit.drain()
        assert runtime.audit.sink.of_type(AuditEventType.USER_LOGIN_FAILED) == []


class TestMfaLogin:
    async def test_login_with_totp(self):
        runtime = get_runtime()
        account = await runtime.auth.register("gina@example.com", PASSWORD)
        secret, _ = await _enroll_mfa(runtime, account)

        first = await runtime.auth.login("gina@example.com", PASSWORD)
        assert first.mfa_required is True
        assert first.tokens is None

        second = await runtime.auth.verify_mfa(first.mfa_token, pyotp.TOTP(secret).now(), CLIENT)
        assert runtime.tokens.validate(second.tokens.access_token).account_id == account.id

        await runtime.audit.drain()
        verified = runtime.audit.sink.of_type(AuditEventType.MFA_VERIFIED)
        assert verified[0].detail == {"method": "totp"}

    async def test_login_with_backup_code(self):
        runtime = get_runtime()
        account = await runtime.auth.register("gina@example.com", PASSWORD)
        _, codes = await _enroll_mfa(runtime, account)

        first = await runtime.auth.login("gina@example.com", PASSWORD)
        second = await runtime.auth.verify_mfa(first.mfa_token, codes[0])
        assert second.tokens is not None
        status = runtime.auth.mfa_status(_principal(account))
        assert status == {"mfa_enabled": True, "backup_codes_remaining": 9}

    async def test_wrong_code_leaves_challenge_for_retry(self):
        runtime = get_runtime()
        account = await runtime.auth.register("gina@example.com", PASSWORD)
        secret, _ = await _enroll_mfa(runtime, account)

        first = await runtime.auth.login("gina@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await runtime.auth.verify_mfa(first.mfa_token, "000000")
        retry = await runtime.auth.verify_mfa(first.mfa_token, pyotp.TOTP(secret).now())
        assert runtime.tokens.validate(retry.tokens.access_token).account_id == account.id

        with pytest.raises(InvalidTokenError):
            await runtime.auth.verify_mfa(first.mfa_token, pyotp.TOTP(secret).now())

        await runtime.audit.drain()
        assert len(runtime.audit.sink.of_type(AuditEventType.MFA_FAILED)) == 1
        assert len(runtime.audit.sink.of_type(AuditEventType.MFA_VERIFIED)) == 1

    async def test_challenge_claimed_by_only_one_racer(self):
        runtime = get_runtime()
        account = await runtime.auth.register("gina@example.com", PASSWORD)
        secret, _ = await _enroll_mfa(runtime, account)
        first = await runtime.auth.login("gina@example.com", PASSWORD)
        code = pyotp.TOTP(secret).now()

        results = await asyncio.gather(
            runtime.auth.verify_mfa(first.mfa_token, code),
            runtime.auth.verify_mfa(first.mfa_token, code),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, InvalidTokenError)) == 1
        assert sum(1 for r in results if getattr(r, "tokens", None) is not None) == 1

    async def test_challenge_rejected_after_lock(self):
        runtime = get_runtime()
        account = await runtime.auth.register("gina@example.com", PASSWORD)
        secret, _ = await _enroll_mfa(runtime, account)
        first = await runtime.auth.login("gina@example.com", PASSWORD)

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("gina@example.com", "nope")
        with pytest.raises(AccountLockedError):
            await runtime.auth.verify_mfa(first.mfa_token, pyotp.TOTP(secret).now())


class TestRefreshAndLogout:
    async def test_refresh_rebinds_session(self):
        runtime = get_runtime()
        await runtime.auth.register("hank@example.com", PASSWORD)
        login = await runtime.auth.login("hank@example.com", PASSWORD)

        pair = await runtime.auth.refresh(login.tokens.refresh_token)
        session = await runtime.sessions.get(login.session_id)
        assert session.refresh_token == pair.refresh_token

        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh(login.tokens.refresh_token)

    async def test_logout_revokes_token_and_session(self):
        runtime = get_runtime()
        await runtime.auth.register("hank@example.com", PASSWORD)
        login = await runtime.auth.login("hank@example.com", PASSWORD)

        await runtime.auth.logout(login.tokens.refresh_token, CLIENT)

        assert await runtime.sessions.get(login.session_id) is None
        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh(login.tokens.refresh_token)
        await runtime.audit.drain()
        assert len(runtime.audit.sink.of_type(AuditEventType.USER_LOGOUT)) == 1

    async def test_logout_unknown_token_is_noop(self):
        runtime = get_runtime()
        await runtime.auth.logout("never-issued")
        await runtime.audit.drain()
        assert runtime.audit.sink.of_type(AuditEventType.USER_LOGOUT) == []

    async def test_revoke_all(self):
        runtime = get_runtime()
        account = await runtime.auth.register("hank@example.com", PASSWORD)
        logins = [await runtime.auth.login("hank@example.com", PASSWORD) for _ in range(3)]

        result = await runtime.auth.revoke_all_user_tokens(account.id)
        assert result == {"revoked_tokens": 3, "invalidated_sessions": 3}
        for login in logins:
            with pytest.raises(InvalidTokenError):
                await runtime.auth.refresh(login.tokens.refresh_token)
        assert await runtime.sessions.active_count(account.id) == 0


class TestBearerAuthentication:
    async def test_valid_bearer_header(self):
        runtime = get_runtime()
        account = await runtime.auth.register("iris@example.com", PASSWORD)
        login = await runtime.auth.login("iris@example.com", PASSWORD)

        principal = runtime.auth.authenticate(f"Bearer {login.tokens.access_token}")
        assert principal.account_id == account.id
        assert principal.has_role(ADMIN_ROLE) is False

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
    def test_missing_or_wrong_scheme(self, header):
        with pytest.raises(AuthenticationError):
            get_runtime().auth.authenticate(header)


class TestAdministration:
    async def test_admin_unlocks_account(self):
        runtime = get_runtime()
        admin = runtime.store.create_account("root@example.com", "x", ["USER", ADMIN_ROLE])
        account = await runtime.auth.register("jack@example.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("jack@example.com", "nope")

        unlocked = runtime.auth.unlock_account(_principal(admin), account.id, CLIENT)
        assert unlocked.account_locked is False
        assert (await runtime.auth.login("jack@example.com", PASSWORD)).tokens is not None

        await runtime.audit.drain()
        events = runtime.audit.sink.of_type(AuditEventType.ACCOUNT_UNLOCKED)
        assert events[0].detail == {"unlocked_by": admin.id}

    async def test_non_admin_cannot_unlock(self):
        runtime = get_runtime()
        account = await runtime.auth.register("jack@example.com", PASSWORD)
        with pytest.raises(ForbiddenError):
            runtime.auth.unlock_account(_principal(account), account.id)

    async def test_unlock_missing_account(self):
        runtime = get_runtime()
        admin = runtime.store.create_account("root@example.com", "x", ["USER", ADMIN_ROLE])
        with pytest.raises(NotFoundError):
            runtime.auth.unlock_account(_principal(admin), "missing")


class TestSessionManagement:
    async def test_list_and_revoke_own_session(self):
        runtime = get_runtime()
        account = await runtime.auth.register("kate@example.com", PASSWORD)
        first = await runtime.auth.login("kate@example.com", PASSWORD)
        second = await runtime.auth.login("kate@example.com", PASSWORD)
        principal = _principal(account)

        listed = await runtime.auth.list_sessions(principal)
        assert {s.id for s in listed} == {first.session_id, second.session_id}

        await runtime.auth.revoke_session(principal, first.session_id)
        assert [s.id for s in await runtime.auth.list_sessions(principal)] == [second.session_id]
        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh(first.tokens.refresh_token)

    async def test_cannot_revoke_someone_elses_session(self):
        runtime = get_runtime()
        owner = await runtime.auth.register("kate@example.com", PASSWORD)
        other = await runtime.auth.register("liam@example.com", PASSWORD)
        login = await runtime.auth.login("kate@example.com", PASSWORD)

        with pytest.raises(NotFoundError):
            await runtime.auth.revoke_session(_principal(other), login.session_id)
        assert await runtime.sessions.is_valid(login.session_id) is True
        assert owner.id != other.id
