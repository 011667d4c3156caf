from __future__ import annotations

import uuid
from datetime import timedelta
from typing import List, Optional, Protocol

from authgate.logging import get_logger
from authgate.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class SessionCache(Protocol):
    async def create_session(self, record: SessionRecord, ttl_seconds: int) -> None: ...

    async def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    async def delete_session(self, session_id: str) -> Optional[str]: ...

    async def list_account_session_ids(self, account_id: str) -> List[str]: ...

    async def prune_account_session_ids(self, account_id: str, session_ids: List[str]) -> None: ...

    async def delete_account_sessions(self, account_id: str) -> int: ...

    async def touch_session(self, session_id: str, ttl_seconds: int) -> bool: ...

    async def set_session_refresh_token(self, session_id: str, refresh_token: str) -> bool: ...


class SessionRegistry:
    """TTL-bound session records with a per-account reverse index.

    Index members can outlive their record when the record expires first;
    ``list_active`` and ``invalidate_all`` tolerate and prune them.
    """

    def __init__(self, cache: SessionCache, ttl: timedelta = timedelta(days=7)) -> None:
        self.cache = cache
        self.ttl_seconds = int(ttl.total_seconds())

    async def create(
        self,
        account_id: str,
        refresh_token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        record = SessionRecord(
            id=str(uuid.uuid4()),
            account_id=account_id,
            refresh_token=refresh_token,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        await self.cache.create_session(record, self.ttl_seconds)
        logger.info("session_created", session_id=record.id, account_id=account_id)
        return record.id

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        return await self.cache.get_session(session_id)

    async def is_valid(self, session_id: str) -> bool:
        return await self.get(session_id) is not None

    async def get_account_id(self, session_id: str) -> Optional[str]:
        record = await self.get(session_id)
        return record.account_id if record else None

    async def invalidate(self, session_id: str) -> bool:
        account_id = await self.cache.delete_session(session_id)
        if account_id:
            logger.info("session_invalidated", session_id=session_id, account_id=account_id)
        return account_id is not None

    async def invalidate_all(self, account_id: str) -> int:
        removed = await self.cache.delete_account_sessions(account_id)
        logger.info("sessions_invalidated", account_id=account_id, count=removed)
        return removed

    async def refresh(self, session_id: str) -> bool:
        return await self.cache.touch_session(session_id, self.ttl_seconds)

    async def list_active(self, account_id: str) -> List[SessionRecord]:
        active: List[SessionRecord] = []
        dangling: List[str] = []
        for session_id in await self.cache.list_account_session_ids(account_id):
            record = await self.cache.get_session(session_id)
            if record is None:
                dangling.append(session_id)
            else:
                active.append(record)
        if dangling:
            await self.cache.prune_account_session_ids(account_id, dangling)
        return sorted(active, key=lambda r: r.created_at)

    async def active_count(self, account_id: str) -> int:
        return len(await self.list_active(account_id))

    async def find_by_refresh_token(
        self, account_id: str, refresh_token: str
    ) -> Optional[SessionRecord]:
        for record in await self.list_active(account_id):
            if record.refresh_token == refresh_token:
                return record
        return None

    async def rebind_refresh_token(self, session_id: str, refresh_token: str) -> bool:
        return await self.cache.set_session_refresh_token(session_id, refresh_token)
