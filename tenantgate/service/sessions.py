from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from tenantgate.config import Settings, system_setting_defaults
from tenantgate.logging import get_logger
from tenantgate.storage.base import AuthStore
from tenantgate.storage.models import DeviceInfo, Session
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionLifecycleManager:
    """Server-side sessions: creation, validity checks and revocation.

    Expiry is enforced on read. A session found past its absolute expiry or
    idle beyond the inactivity window is revoked by the check that noticed
    it, so every later check sees a revoked session.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        logger=logger,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _get_system_settings(self) -> dict[str, Any]:
        return {**system_setting_defaults(self.settings), **self.store.get_system_settings()}

    def _inactivity_window(self) -> timedelta:
        minutes = self._get_system_settings().get("global_session_timeout_minutes")
        try:
            minutes = int(minutes)
        except (TypeError, ValueError):
            minutes = self.settings.session_inactivity_timeout_minutes
        return timedelta(minutes=minutes)

    async def _cache_marked_revoked(self, session_id: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_session_revoked(session_id)
        except Exception as exc:
            self.logger.warning("session_cache_read_failed", error=str(exc))
            return False

    async def _cache_mark_revoked(self, session_ids: List[str], expires_at: Optional[datetime] = None) -> None:
        if not self.cache or not session_ids:
            return
        try:
            if len(session_ids) == 1 and expires_at is not None:
                await self.cache.mark_session_revoked(session_ids[0], expires_at)
            else:
                await self.cache.mark_sessions_revoked(
                    session_ids, self.settings.session_ttl_minutes * 60
                )
        except Exception as exc:
            self.logger.warning("session_cache_write_failed", error=str(exc))

    async def _last_activity(self, session: Session) -> datetime:
        """Later of the stored activity and the cached one."""
        last = session.last_activity
        if not self.cache:
            return last
        try:
            cached = await self.cache.get_session_activity(session.id)
        except Exception as exc:
            self.logger.warning("session_cache_read_failed", error=str(exc))
            return last
        if cached is not None and cached > last:
            return cached
        return last

    async def create_session(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> Session:
        ttl_minutes = self.settings.session_ttl_minutes or 24 * 60
        session = self.store.create_session(
            Session.new(user_id, ttl_minutes=ttl_minutes, device=device)
        )
        self.logger.info("session_created", session_id=session.id, user_id=user_id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    async def is_session_valid(self, user_id: str, session_id: str) -> bool:
        if not session_id or await self._cache_marked_revoked(session_id):
            return False
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id or session.revoked:
            return False
        now = self._now()
        if session.expires_at <= now:
            await self.revoke_session(session_id, revoked_by=None)
            self.logger.info("session_expired", session_id=session_id, reason="lifetime")
            return False
        if now - await self._last_activity(session) > self._inactivity_window():
            await self.revoke_session(session_id, revoked_by=None)
            self.logger.info("session_expired", session_id=session_id, reason="inactivity")
            return False
        return True

    async def get_session_remaining_time(self, session_id: str) -> int:
        """Seconds until the inactivity timeout, never below zero."""

        session = self.store.get_session(session_id)
        if session is None or session.revoked:
            return 0
        elapsed = self._now() - await self._last_activity(session)
        remaining = (self._inactivity_window() - elapsed).total_seconds()
        return max(0, math.floor(remaining))

    async def update_session_activity(self, session_id: str) -> bool:
        now = self._now()
        touched = self.store.touch_session(session_id, now)
        if touched and self.cache:
            try:
                await self.cache.update_session_activity(
                    session_id, int(self._inactivity_window().total_seconds())
                )
            except Exception as exc:
                self.logger.warning("session_cache_write_failed", error=str(exc))
        return touched

    async def revoke_session(
        self, session_id: str, revoked_by: Optional[str] = None
    ) -> bool:
        """Revoke one session. Revoking an already revoked session is a no-op."""

        changed = self.store.revoke_session(
            session_id, revoked_by=revoked_by, now=self._now()
        )
        if changed:
            session = self.store.get_session(session_id)
            await self._cache_mark_revoked(
                [session_id], session.expires_at if session else None
            )
            self.logger.info("session_revoked", session_id=session_id, revoked_by=revoked_by)
        return changed

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> List[str]:
        revoked = self.store.revoke_user_sessions(
            user_id,
            except_session_id=except_session_id,
            revoked_by=revoked_by,
            now=self._now(),
        )
        await self._cache_mark_revoked(revoked)
        self.logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            except_session_id=except_session_id,
            count=len(revoked),
        )
        return revoked

    async def list_active_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id)

    async def get_active_sessions(self, user_id: str) -> List[Session]:
        return await self.list_active_sessions(user_id)
