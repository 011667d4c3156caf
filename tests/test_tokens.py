"""Unit tests for access token issuance/validation and refresh rotation."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from authgate.config import Settings
from authgate.service.errors import InvalidTokenError
from authgate.service.keys import SigningKeyManager
from authgate.service.tokens import TokenIssuer
from authgate.storage.memory import MemoryStore
from authgate.storage.models import RefreshToken


@pytest.fixture(scope="module")
def keys():
    return SigningKeyManager.generate()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-key")


@pytest.fixture
def issuer(keys, store):
    return TokenIssuer(keys, store, Settings(jwt_issuer="authgate-test"))


@pytest.fixture
def account(store):
    return store.create_account("alice@example.com", "hash", ["USER", "ADMIN"])


class TestAccessTokens:
    def test_validate_returns_issued_claims(self, issuer, account):
        token = issuer.issue_access_token(account.id, account.email, account.roles)
        claims = issuer.validate(token)

        assert claims.account_id == account.id
        assert claims.email == "alice@example.com"
        assert claims.roles == ["USER", "ADMIN"]
        assert claims.issuer == "authgate-test"
        assert claims.expires_at - claims.issued_at == timedelta(minutes=15)

    def test_header_carries_key_id(self, issuer, keys, account):
        token = issuer.issue_access_token(account.id, account.email, account.roles)
        header = jwt.get_unverified_header(token)
        assert header["alg"] == "RS256"
        assert header["kid"] == keys.key_id

    def test_same_inputs_and_time_give_same_token(self, issuer, account):
        now = datetime.now(timezone.utc)
        first = issuer.issue_access_token(account.id, account.email, account.roles, now=now)
        second = issuer.issue_access_token(account.id, account.email, account.roles, now=now)
        assert first == second

    def test_expired_token_rejected(self, issuer, account):
        issued = datetime.now(timezone.utc) - timedelta(hours=1)
        token = issuer.issue_access_token(account.id, account.email, account.roles, now=issued)
        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.validate(token)
        assert exc_info.value.reason == "expired"

    def test_foreign_signature_rejected(self, store, account):
        foreign = TokenIssuer(SigningKeyManager.generate(), store, Settings(jwt_issuer="authgate-test"))
        local = TokenIssuer(SigningKeyManager.generate(), store, Settings(jwt_issuer="authgate-test"))
        token = foreign.issue_access_token(account.id, account.email, account.roles)
        with pytest.raises(InvalidTokenError) as exc_info:
            local.validate(token)
        assert exc_info.value.reason == "bad_signature"

    def test_garbage_rejected_as_malformed(self, issuer):
        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.validate("not-a-jwt")
        assert exc_info.value.reason == "malformed"

    def test_wrong_issuer_rejected(self, keys, store, account):
        other = TokenIssuer(keys, store, Settings(jwt_issuer="someone-else"))
        token = other.issue_access_token(account.id, account.email, account.roles)
        issuer = TokenIssuer(keys, store, Settings(jwt_issuer="authgate-test"))
        with pytest.raises(InvalidTokenError):
            issuer.validate(token)

    def test_missing_required_claim_rejected(self, keys, issuer):
        token = jwt.encode(
            {"sub": "abc", "iss": "authgate-test", "exp": int(datetime.now(timezone.utc).timestamp()) + 60},
            keys.private_key,
            algorithm="RS256",
        )
        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.validate(token)
        assert exc_info.value.reason == "malformed"

    def test_error_message_does_not_leak_reason(self, issuer):
        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.validate("not-a-jwt")
        assert exc_info.value.message == "invalid token"


class TestRefreshTokens:
    def test_issue_persists_valid_token(self, issuer, store, account):
        refresh = issuer.issue_refresh_token(account.id)
        assert store.find_valid_refresh_token(refresh.token) is not None
        assert refresh.expires_at - refresh.created_at == timedelta(days=7)

    def test_rotate_returns_new_pair_and_revokes_old(self, issuer, store, account):
        pair = issuer.issue_pair(account)
        rotated = issuer.rotate(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        assert rotated.account_id == account.id
        assert rotated.expires_in == 900
        assert store.find_valid_refresh_token(pair.refresh_token) is None
        assert store.find_valid_refresh_token(rotated.refresh_token) is not None

    def test_replaying_rotated_token_fails(self, issuer, account):
        pair = issuer.issue_pair(account)
        issuer.rotate(pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            issuer.rotate(pair.refresh_token)

    def test_losing_concurrent_rotation_fails(self, issuer, store, account):
        """The conditional revoke decides the winner even after a successful lookup."""
        pair = issuer.issue_pair(account)
        original_find = store.find_valid_refresh_token

        def find_then_race(value, now=None):
            record = original_find(value, now)
            # Another request rotates the same token between lookup and revoke
            store.revoke_refresh_token(value)
            return record

        store.find_valid_refresh_token = find_then_race
        with pytest.raises(InvalidTokenError):
            issuer.rotate(pair.refresh_token)

    def test_unknown_token_rejected(self, issuer):
        with pytest.raises(InvalidTokenError):
            issuer.rotate("does-not-exist")

    def test_expired_token_rejected(self, issuer, store, account):
        expired = RefreshToken.new(account.id, "expired-value", timedelta(seconds=-1))
        store.insert_refresh_token(expired)
        with pytest.raises(InvalidTokenError):
            issuer.rotate("expired-value")

    def test_revoke_and_revoke_all(self, issuer, store, account):
        first = issuer.issue_refresh_token(account.id)
        issuer.issue_refresh_token(account.id)
        issuer.issue_refresh_token(account.id)

        assert issuer.revoke(first.token) is not None
        assert issuer.revoke(first.token) is None
        assert issuer.revoke_all(account.id) == 2
