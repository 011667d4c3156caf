from __future__ import annotations

from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

from authgate.storage.models import SessionRecord

SESSION_PREFIX = "session:"
ACCOUNT_SESSIONS_PREFIX = "user_sessions:"
MFA_CHALLENGE_PREFIX = "mfa:"


def _session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def _index_key(account_id: str) -> str:
    return f"{ACCOUNT_SESSIONS_PREFIX}{account_id}"


class RedisCache:
    """Redis wrapper for sessions, MFA challenges and rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Drop the session hash and its index membership together, provided the
    # hash still belongs to the account read beforehand
    _DELETE_SESSION_SCRIPT = """
if redis.call('HGET', KEYS[1], 'account_id') ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[2], ARGV[2])
return 1
"""

    _SET_SESSION_FIELD_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
return 1
"""

    # Fixed window: the first hit in a window sets the expiry
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_session = self.client.register_script(self._DELETE_SESSION_SCRIPT)
        self._set_session_field = self.client.register_script(self._SET_SESSION_FIELD_SCRIPT)
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    # sessions
    async def create_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.hset(_session_key(record.id), mapping=record.to_mapping())
        pipe.expire(_session_key(record.id), ttl_seconds)
        pipe.sadd(_index_key(record.account_id), record.id)
        pipe.expire(_index_key(record.account_id), ttl_seconds)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        data = await self.client.hgetall(_session_key(session_id))
        if not data:
            return None
        return SessionRecord.from_mapping(session_id, data)

    async def delete_session(self, session_id: str) -> Optional[str]:
        account_id = await self.client.hget(_session_key(session_id), "account_id")
        if not account_id:
            return None
        removed = await self._delete_session(
            keys=[_session_key(session_id), _index_key(account_id)],
            args=[account_id, session_id],
        )
        return account_id if removed else None

    async def list_account_session_ids(self, account_id: str) -> List[str]:
        return sorted(await self.client.smembers(_index_key(account_id)))

    async def prune_account_session_ids(self, account_id: str, session_ids: List[str]) -> None:
        if session_ids:
            await self.client.srem(_index_key(account_id), *session_ids)

    async def delete_account_sessions(self, account_id: str) -> int:
        session_ids = await self.client.smembers(_index_key(account_id))
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(_session_key(session_id))
        # Members added after SMEMBERS stay indexed
        pipe.srem(_index_key(account_id), *session_ids)
        results = await pipe.execute()
        return sum(int(r) for r in results[:-1])

    async def touch_session(self, session_id: str, ttl_seconds: int) -> bool:
        account_id = await self.client.hget(_session_key(session_id), "account_id")
        if not account_id:
            return False
        pipe = self.client.pipeline()
        pipe.expire(_session_key(session_id), ttl_seconds)
        pipe.expire(_index_key(account_id), ttl_seconds)
        results = await pipe.execute()
        return bool(results[0])

    async def set_session_refresh_token(self, session_id: str, refresh_token: str) -> bool:
        updated = await self._set_session_field(
            keys=[_session_key(session_id)], args=["refresh_token", refresh_token]
        )
        return bool(updated)

    # mfa challenges
    async def set_mfa_challenge(self, token: str, email: str, ttl_seconds: int) -> None:
        await self.client.set(f"{MFA_CHALLENGE_PREFIX}{token}", email, ex=ttl_seconds)

    async def get_mfa_challenge(self, token: str) -> Optional[str]:
        return await self.client.get(f"{MFA_CHALLENGE_PREFIX}{token}")

    async def delete_mfa_challenge(self, token: str) -> bool:
        # Only one caller sees DEL return 1, so a challenge is claimed at most once
        return bool(await self.client.delete(f"{MFA_CHALLENGE_PREFIX}{token}"))

    # rate counters
    async def incr_window_counter(self, key: str, window_seconds: int) -> int:
        return int(await self._window_counter(keys=[key], args=[window_seconds]))

    async def get_window_counter(self, key: str) -> int:
        value = await self.client.get(key)
        return int(value) if value else 0


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_session = self._sync_client.register_script(
            RedisCache._DELETE_SESSION_SCRIPT
        )
        self._set_session_field = self._sync_client.register_script(
            RedisCache._SET_SESSION_FIELD_SCRIPT
        )
        self._window_counter = self._sync_client.register_script(
            RedisCache._WINDOW_COUNTER_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()

    async def create_session(self, record: SessionRecord, ttl_seconds: int) -> None:
        pipe = self._sync_client.pipeline()
        pipe.hset(_session_key(record.id), mapping=record.to_mapping())
        pipe.expire(_session_key(record.id), ttl_seconds)
        pipe.sadd(_index_key(record.account_id), record.id)
        pipe.expire(_index_key(record.account_id), ttl_seconds)
        pipe.execute()

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        data = self._sync_client.hgetall(_session_key(session_id))
        if not data:
            return None
        return SessionRecord.from_mapping(session_id, data)

    async def delete_session(self, session_id: str) -> Optional[str]:
        account_id = self._sync_client.hget(_session_key(session_id), "account_id")
        if not account_id:
            return None
        removed = self._delete_session(
            keys=[_session_key(session_id), _index_key(account_id)],
            args=[account_id, session_id],
        )
        return account_id if removed else None

    async def list_account_session_ids(self, account_id: str) -> List[str]:
        return sorted(self._sync_client.smembers(_index_key(account_id)))

    async def prune_account_session_ids(self, account_id: str, session_ids: List[str]) -> None:
        if session_ids:
            self._sync_client.srem(_index_key(account_id), *session_ids)

    async def delete_account_sessions(self, account_id: str) -> int:
        session_ids = self._sync_client.smembers(_index_key(account_id))
        if not session_ids:
            return 0
        pipe = self._sync_client.pipeline()
        for session_id in session_ids:
            pipe.delete(_session_key(session_id))
        pipe.srem(_index_key(account_id), *session_ids)
        results = pipe.execute()
        return sum(int(r) for r in results[:-1])

    async def touch_session(self, session_id: str, ttl_seconds: int) -> bool:
        account_id = self._sync_client.hget(_session_key(session_id), "account_id")
        if not account_id:
            return False
        pipe = self._sync_client.pipeline()
        pipe.expire(_session_key(session_id), ttl_seconds)
        pipe.expire(_index_key(account_id), ttl_seconds)
        results = pipe.execute()
        return bool(results[0])

    async def set_session_refresh_token(self, session_id: str, refresh_token: str) -> bool:
        updated = self._set_session_field(
            keys=[_session_key(session_id)], args=["refresh_token", refresh_token]
        )
        return bool(updated)

    async def set_mfa_challenge(self, token: str, email: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"{MFA_CHALLENGE_PREFIX}{token}", email, ex=ttl_seconds)

    async def get_mfa_challenge(self, token: str) -> Optional[str]:
        return self._sync_client.get(f"{MFA_CHALLENGE_PREFIX}{token}")

    async def delete_mfa_challenge(self, token: str) -> bool:
        return bool(self._sync_client.delete(f"{MFA_CHALLENGE_PREFIX}{token}"))

    async def incr_window_counter(self, key: str, window_seconds: int) -> int:
        return int(self._window_counter(keys=[key], args=[window_seconds]))

    async def get_window_counter(self, key: str) -> int:
        value = self._sync_client.get(key)
        return int(value) if value else 0
