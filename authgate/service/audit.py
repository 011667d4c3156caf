"""Fire-and-forget security audit events.

Persistence belongs to the downstream audit service; this module only shapes
events and hands them to a sink without blocking the request that caused them.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

from authgate.config import AuditSinkKind, Settings
from authgate.logging import get_correlation_id, get_logger
from authgate.storage.models import utcnow

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    # Password events are defined for downstream consumers; never emitted here
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_FAILED = "MFA_FAILED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"


@dataclass
class AuditEvent:
    event_type: AuditEventType
    success: bool
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type.value
        payload["occurred_at"] = self.occurred_at.isoformat()
        return payload


class AuditSink(Protocol):
    async def deliver(self, event: AuditEvent) -> None: ...

    async def close(self) -> None: ...


class LogAuditSink:
    """Writes events as structured log lines on the ``authgate.audit`` logger."""

    def __init__(self) -> None:
        self._logger = get_logger("authgate.audit")

    async def deliver(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        self._logger.info("audit_event", **payload)

    async def close(self) -> None:
        return None


class HttpAuditSink:
    """POSTs events as JSON to an external audit service."""

    def __init__(self, url: str, *, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(self.timeout_seconds, 2.0)),
            )
        return self._client

    async def deliver(self, event: AuditEvent) -> None:
        client = await self._get_client()
        response = await client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class MemoryAuditSink:
    """Collects events in a list; used by tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def deliver(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]

    async def close(self) -> None:
        return None


def build_sink(settings: Settings) -> AuditSink:
    if settings.audit_sink == AuditSinkKind.HTTP:
        return HttpAuditSink(
            settings.audit_sink_url, timeout_seconds=settings.audit_sink_timeout_seconds
        )
    if settings.audit_sink == AuditSinkKind.MEMORY:
        return MemoryAuditSink()
    return LogAuditSink()


class AuditEmitter:
    """Schedules sink deliveries as background tasks.

    ``emit`` never raises and never waits for the sink; call ``drain`` to
    await outstanding deliveries.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def emit(
        self,
        event_type: AuditEventType,
        *,
        success: bool = True,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            success=success,
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            detail=dict(detail or {}),
            request_id=get_correlation_id(),
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("audit_emit_failed", event_type=event_type.value, error="no running event loop")
            return
        task = loop.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: AuditEvent) -> None:
        try:
            await self.sink.deliver(event)
        except Exception as exc:
            logger.error(
                "audit_emit_failed",
                event_type=event.event_type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.sink.close()
