from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authgate.config import get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.audit import AuditEmitter, build_sink
from authgate.service.auth import AuthService
from authgate.service.keys import SigningKeyManager
from authgate.service.lockout import LockoutPolicy
from authgate.service.mfa import MfaEngine
from authgate.service.passwords import Argon2Hasher
from authgate.service.rate_limit import RateAdmissionGate
from authgate.service.sessions import SessionRegistry
from authgate.service.tokens import TokenIssuer
from authgate.storage.memory import MemoryCache, MemoryStore
from authgate.storage.postgres import PostgresStore
from authgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

CacheBackend = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_secret_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: CacheBackend
        cache: Optional[CacheBackend] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, MFA challenges and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, MFA challenges "
                    "and rate counters are process-local."
                ),
                mode=fallback_mode,
            )
            cache = MemoryCache()
        self.cache = cache

        self.keys = SigningKeyManager.from_settings(self.settings)
        self.hasher = Argon2Hasher()
        self.audit = AuditEmitter(build_sink(self.settings))
        self.tokens = TokenIssuer(self.keys, self.store, self.settings)
        self.lockout = LockoutPolicy(self.store, self.settings.max_failed_login_attempts)
        self.mfa = MfaEngine(self.store, self.cache, self.hasher, self.settings)
        self.sessions = SessionRegistry(
            self.cache, timedelta(days=self.settings.session_ttl_days)
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.tokens,
            self.lockout,
            self.mfa,
            self.sessions,
            self.audit,
        )
        self.rate_gate = RateAdmissionGate(self.cache, self.settings)
        logger.info("runtime_init_completed", key_id=self.keys.key_id)

    async def close(self) -> None:
        await self.audit.close()
        await self.cache.close()
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
