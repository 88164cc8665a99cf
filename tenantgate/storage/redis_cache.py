from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis


def _ttl_seconds(expires_at: datetime) -> int:
    """Compute a safe TTL from an absolute expiry timestamp.

    Clamped to at least 1 second so Redis never rejects the value.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCache:
    """Revocation markers and session activity kept in Redis.

    The relational store stays authoritative. A marker can only make a check
    fail faster; a missing marker always falls through to the store.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_session_revoked(self, session_id: str, expires_at: datetime) -> None:
        await self.client.set(
            f"auth:session:revoked:{session_id}", "1", ex=_ttl_seconds(expires_at)
        )

    async def mark_sessions_revoked(
        self, session_ids: Iterable[str], ttl_seconds: int
    ) -> None:
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.set(f"auth:session:revoked:{session_id}", "1", ex=max(1, ttl_seconds))
        await pipe.execute()

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:session:revoked:{session_id}"))

    async def mark_refresh_revoked(self, token_id: str, ttl_seconds: int) -> None:
        await self.client.set(
            f"auth:refresh:revoked:{token_id}", "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_revoked(self, token_id: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{token_id}"))

    async def update_session_activity(
        self, session_id: str, ttl_seconds: int = 86400
    ) -> None:
        key = f"session:activity:{session_id}"
        now = datetime.now(timezone.utc).isoformat()
        await self.client.set(key, now, ex=max(1, ttl_seconds))

    async def get_session_activity(self, session_id: str) -> Optional[datetime]:
        value = await self.client.get(f"session:activity:{session_id}")
        if value:
            try:
                return datetime.fromisoformat(value)
            except (ValueError, TypeError):
                return None
        return None

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable interface.

    Avoids event loop binding issues when each test runs its own loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def mark_session_revoked(self, session_id: str, expires_at: datetime) -> None:
        self._sync_client.set(
            f"auth:session:revoked:{session_id}", "1", ex=_ttl_seconds(expires_at)
        )

    async def mark_sessions_revoked(
        self, session_ids: Iterable[str], ttl_seconds: int
    ) -> None:
        pipe = self._sync_client.pipeline()
        for session_id in session_ids:
            pipe.set(f"auth:session:revoked:{session_id}", "1", ex=max(1, ttl_seconds))
        pipe.execute()

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(self._sync_client.exists(f"auth:session:revoked:{session_id}"))

    async def mark_refresh_revoked(self, token_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            f"auth:refresh:revoked:{token_id}", "1", ex=max(1, ttl_seconds)
        )

    async def is_refresh_revoked(self, token_id: str) -> bool:
        return bool(self._sync_client.exists(f"auth:refresh:revoked:{token_id}"))

    async def update_session_activity(
        self, session_id: str, ttl_seconds: int = 86400
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._sync_client.set(f"session:activity:{session_id}", now, ex=max(1, ttl_seconds))

    async def get_session_activity(self, session_id: str) -> Optional[datetime]:
        value = self._sync_client.get(f"session:activity:{session_id}")
        if value:
            try:
                return datetime.fromisoformat(value)
            except (ValueError, TypeError):
                return None
        return None

    async def close(self) -> None:
        self._sync_client.close()
