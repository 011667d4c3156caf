from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authgate.logging import get_logger
from authgate.storage.common import SecretCipher, normalize_email
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import Account, RefreshToken, utcnow


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT ARRAY['USER'],
        mfa_enabled BOOLEAN NOT NULL DEFAULT false,
        mfa_secret TEXT,
        mfa_backup_codes TEXT[] NOT NULL DEFAULT '{}',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked BOOLEAN NOT NULL DEFAULT false,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_token_account_idx ON auth_refresh_token (account_id)",
)

_ACCOUNT_COLUMNS = (
    "id, email, password_hash, roles, mfa_enabled, mfa_secret, mfa_backup_codes, "
    "failed_login_attempts, account_locked, last_login_at, created_at, updated_at"
)
_TOKEN_COLUMNS = "id, account_id, token, expires_at, revoked, created_at"


class PostgresStore:
    """Postgres-backed store for accounts and refresh tokens."""

    def __init__(self, dsn: str, *, mfa_encryption_key: Optional[str] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    def _ensure_schema(self) -> None:
        """Create the account and refresh token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    def _account_from_row(self, row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            roles=list(row.get("roles") or []),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_secret=self._cipher.decrypt(row.get("mfa_secret")),
            mfa_backup_codes=list(row.get("mfa_backup_codes") or []),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked=bool(row.get("account_locked")),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Optional[Dict[str, Any]]) -> Optional[RefreshToken]:
        if not row:
            return None
        return RefreshToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked")),
            created_at=row.get("created_at") or utcnow(),
        )

    # accounts
    def create_account(
        self, email: str, password_hash: str, roles: Optional[List[str]] = None
    ) -> Account:
        account = Account.new(email, password_hash, roles)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, roles, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.roles,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM auth_account WHERE id = %s",
                (account_id,),
            ).fetchone()
        return self._account_from_row(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM auth_account WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._account_from_row(row)

    def set_account_roles(self, account_id: str, roles: List[str]) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_account SET roles = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (list(roles), account_id),
            ).fetchone()
        return self._account_from_row(row)

    def record_failed_login(
        self, account_id: str, max_attempts: int
    ) -> Optional[Account]:
        # Increment and lock flag in one statement
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_account
                SET failed_login_attempts = failed_login_attempts + 1,
                    account_locked = account_locked OR failed_login_attempts + 1 >= %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (max_attempts, account_id),
            ).fetchone()
        return self._account_from_row(row)

    def record_successful_login(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_account
                SET failed_login_attempts = 0, account_locked = false,
                    last_login_at = now(), updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row)

    def unlock_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_account
                SET failed_login_attempts = 0, account_locked = false, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row)

    # mfa
    def set_mfa_secret(self, account_id: str, secret: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_account SET mfa_secret = %s, updated_at = now() WHERE id = %s",
                (self._cipher.encrypt(secret), account_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})

    def enable_mfa(self, account_id: str, backup_code_hashes: List[str]) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET mfa_enabled = true, mfa_backup_codes = %s, updated_at = now()
                WHERE id = %s AND mfa_enabled = false AND mfa_secret IS NOT NULL
                RETURNING id
                """,
                (list(backup_code_hashes), account_id),
            ).fetchone()
        return row is not None

    def disable_mfa(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_account
                SET mfa_enabled = false, mfa_secret = NULL, mfa_backup_codes = '{}',
                    updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )

    def set_backup_codes(self, account_id: str, backup_code_hashes: List[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_account SET mfa_backup_codes = %s, updated_at = now() WHERE id = %s",
                (list(backup_code_hashes), account_id),
            )

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET mfa_backup_codes = array_remove(mfa_backup_codes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(mfa_backup_codes)
                RETURNING id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    # refresh tokens
    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO auth_refresh_token ({_TOKEN_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.account_id,
                        token.token,
                        token.expires_at,
                        token.revoked,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": token.account_id})
        return token

    def find_valid_refresh_token(
        self, value: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM auth_refresh_token
                WHERE token = %s AND revoked = false AND expires_at > %s
                """,
                (value, now or utcnow()),
            ).fetchone()
        return self._token_from_row(row)

    def rotate_refresh_token(
        self, old_value: str, successor: RefreshToken, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Revoke the predecessor and insert the successor in one transaction.

        The conditional UPDATE is the serialization point: of two concurrent
        rotations of the same value only one sees ``revoked = false``.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE auth_refresh_token SET revoked = true
                    WHERE token = %s AND revoked = false AND expires_at > %s
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (old_value, now or utcnow()),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    f"""
                    INSERT INTO auth_refresh_token ({_TOKEN_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        successor.id,
                        successor.account_id,
                        successor.token,
                        successor.expires_at,
                        successor.revoked,
                        successor.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return self._token_from_row(row)

    def revoke_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_refresh_token SET revoked = true
                WHERE token = %s AND revoked = false
                RETURNING {_TOKEN_COLUMNS}
                """,
                (value,),
            ).fetchone()
        return self._token_from_row(row)

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_refresh_token SET revoked = true WHERE account_id = %s AND revoked = false",
                (account_id,),
            )
            return result.rowcount or 0
