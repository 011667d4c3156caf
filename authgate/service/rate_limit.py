from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "rate_limit:"

ENDPOINT_LOGIN = "login"
ENDPOINT_REGISTER = "register"
ENDPOINT_DEFAULT = "default"

_EXEMPT_PREFIXES = ("/healthz", "/docs", "/redoc", "/openapi.json")


class CounterCache(Protocol):
    async def incr_window_counter(self, key: str, window_seconds: int) -> int: ...

    async def get_window_counter(self, key: str) -> int: ...


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    window_seconds: int


def classify_path(path: str) -> Optional[str]:
    """Map a request path to its endpoint class, or None when exempt."""
    if path.startswith(_EXEMPT_PREFIXES):
        return None
    if "/auth/login" in path:
        return ENDPOINT_LOGIN
    if "/auth/register" in path:
        return ENDPOINT_REGISTER
    return ENDPOINT_DEFAULT


def resolve_client_address(headers: Mapping[str, str], peer: Optional[str]) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


class RateAdmissionGate:
    """Fixed-window request counters keyed by client address and endpoint class.

    Denied requests still increment the counter. When the counter store is
    unreachable the gate admits the request.
    """

    def __init__(self, cache: CounterCache, settings: Settings) -> None:
        self.cache = cache
        self.enabled = settings.rate_limit_enabled
        self.limits: Dict[str, Tuple[int, int]] = {
            ENDPOINT_LOGIN: (settings.login_rate_limit_per_minute, 60),
            ENDPOINT_REGISTER: (settings.register_rate_limit_per_minute, 60),
            ENDPOINT_DEFAULT: (settings.default_rate_limit_per_second, 1),
        }

    @staticmethod
    def key_for(address: str, endpoint_class: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{address}:{endpoint_class}"

    async def admit(self, key: str, limit: int, window_seconds: int) -> bool:
        try:
            count = await self.cache.incr_window_counter(key, window_seconds)
        except (RedisError, StoreUnavailable, OSError) as exc:
            logger.warning("rate_limit_store_unavailable", key=key, error=str(exc))
            return True
        return count <= limit

    async def remaining(self, key: str, limit: int) -> int:
        try:
            count = await self.cache.get_window_counter(key)
        except (RedisError, StoreUnavailable, OSError) as exc:
            logger.warning("rate_limit_store_unavailable", key=key, error=str(exc))
            return limit
        return max(0, limit - count)

    async def admit_request(self, address: str, endpoint_class: str) -> RateDecision:
        limit, window_seconds = self.limits.get(endpoint_class, self.limits[ENDPOINT_DEFAULT])
        if not self.enabled:
            return RateDecision(True, limit, limit, window_seconds)
        key = self.key_for(address, endpoint_class)
        allowed = await self.admit(key, limit, window_seconds)
        remaining = await self.remaining(key, limit)
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                client_address=address,
                endpoint_class=endpoint_class,
                limit=limit,
            )
        return RateDecision(allowed, limit, remaining, window_seconds)
