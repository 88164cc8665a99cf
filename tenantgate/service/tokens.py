from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import NotFoundError, TokenInvalidOrExpiredError
from tenantgate.service.jwt import ACCESS, REFRESH, TokenIssuer, build_claims
from tenantgate.service.sessions import SessionLifecycleManager
from tenantgate.storage.base import AuthStore
from tenantgate.storage.common import hash_token
from tenantgate.storage.models import (
    DeviceInfo,
    RefreshToken,
    TokenBundle,
    UserCredential,
    UserSummary,
    new_id,
)
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_TOKEN = "invalid or expired token"


class TokenLifecycleManager:
    """Issues token pairs, rotates refresh tokens and cascades revocations.

    Refresh tokens are persisted as digests bound to a user and a session.
    A signed refresh token is only as good as its row: revoking the row
    revokes the token regardless of its signature or ``exp`` claim.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionLifecycleManager,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        logger=logger,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.issuer = issuer
        self.settings = settings
        self.cache = cache
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # tenant context
    def tenant_context(self, user_id: str) -> Tuple[Optional[str], List[str]]:
        """Default tenant id plus every tenant the user can access.

        Memberships come back oldest first, so the default tenant is the
        earliest one joined.
        """

        memberships = self.store.list_user_memberships(user_id)
        tenant_access = [m.tenant_id for m in memberships]
        return (tenant_access[0] if tenant_access else None), tenant_access

    def claims_for(self, user: UserCredential, session_id: str) -> dict[str, Any]:
        tenant_id, tenant_access = self.tenant_context(user.id)
        return build_claims(
            user_id=user.id,
            email=user.email,
            role=user.role,
            tenant_id=tenant_id,
            tenant_access=tenant_access,
            session_id=session_id,
        )

    # issuance
    async def generate_tokens(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> TokenBundle:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        session = await self.sessions.create_session(user.id, device)
        claims = self.claims_for(user, session.id)
        access_token = self.generate_access_token(claims)
        refresh_token = self.generate_refresh_token(claims)
        self.logger.info("tokens_issued", user_id=user.id, session_id=session.id)
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            user=UserSummary.from_user(
                user,
                tenant_id=claims["tenant_id"],
                tenant_access=claims["tenant_access"],
            ),
            expires_in=self.issuer.ttl_seconds(ACCESS),
        )

    def generate_access_token(self, claims: dict[str, Any]) -> str:
        return self.issuer.sign(claims, ACCESS)

    def _mint_refresh(self, claims: dict[str, Any]) -> Tuple[str, RefreshToken]:
        token = self.issuer.sign(claims, REFRESH)
        row = RefreshToken(
            id=new_id(),
            user_id=claims["sub"],
            session_id=claims["session_id"],
            token_hash=hash_token(token),
            expires_at=self._now() + timedelta(seconds=self.issuer.ttl_seconds(REFRESH)),
        )
        return token, row

    def generate_refresh_token(self, claims: dict[str, Any]) -> str:
        token, row = self._mint_refresh(claims)
        self.store.create_refresh_token(row)
        return token

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return self.store.get_refresh_token_by_hash(hash_token(token))

    # validation
    async def _cache_marked_revoked(self, token_id: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_refresh_revoked(token_id)
        except Exception as exc:
            self.logger.warning("refresh_cache_read_failed", error=str(exc))
            return False

    async def _cache_mark_revoked(self, row: RefreshToken) -> None:
        if not self.cache:
            return
        ttl = int((row.expires_at - self._now()).total_seconds())
        try:
            await self.cache.mark_refresh_revoked(row.id, ttl)
        except Exception as exc:
            self.logger.warning("refresh_cache_write_failed", error=str(exc))

    async def is_refresh_token_valid(self, token: str) -> bool:
        if self.issuer.verify(token, REFRESH) is None:
            return False
        row = self.find_refresh_token(token)
        if row is None or row.revoked:
            return False
        if await self._cache_marked_revoked(row.id):
            return False
        if row.expires_at <= self._now():
            self.store.revoke_refresh_token(
                row.id, revoked_by=None, reason="expired", now=self._now()
            )
            self.logger.info("refresh_token_expired", token_id=row.id)
            return False
        return True

    async def validate_token(self, token: str, expected_type: str) -> dict[str, Any]:
        """Verified claims for ``token``; every failure looks the same."""

        payload = self.issuer.verify(token, expected_type)
        if payload is None:
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        if expected_type == REFRESH and not await self.is_refresh_token_valid(token):
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        return payload

    # revocation
    async def revoke_refresh_token(
        self,
        token: str,
        revoked_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        row = self.find_refresh_token(token)
        if row is None:
            return False
        changed = self.store.revoke_refresh_token(
            row.id, revoked_by=revoked_by, reason=reason, now=self._now()
        )
        if changed:
            await self._cache_mark_revoked(row)
        return changed

    async def revoke_session(
        self,
        session_id: str,
        revoked_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """Revoke a session and every refresh token bound to it."""

        await self.sessions.revoke_session(session_id, revoked_by=revoked_by)
        count = self.store.revoke_session_refresh_tokens(
            session_id,
            revoked_by=revoked_by,
            reason=reason or "session_revoked",
            now=self._now(),
        )
        self.logger.info("session_tokens_revoked", session_id=session_id, count=count)
        return count

    async def revoke_all_user_tokens(
        self,
        user_id: str,
        reason: Optional[str] = None,
        revoked_by: Optional[str] = None,
    ) -> int:
        count = self.store.revoke_user_refresh_tokens(
            user_id, revoked_by=revoked_by, reason=reason, now=self._now()
        )
        self.logger.info("user_tokens_revoked", user_id=user_id, count=count, reason=reason)
        return count

    async def revoke_all_user_credentials(
        self,
        user_id: str,
        reason: str,
        revoked_by: Optional[str] = None,
    ) -> Tuple[int, int]:
        """Revoke every session and refresh token of a user.

        The two bulk updates are separate writes. Both only touch rows that
        are still live, so a caller interrupted between them can call this
        again (or ``reconcile_revocations``) to finish the job.
        """

        sessions = await self.sessions.revoke_all_user_sessions(
            user_id, revoked_by=revoked_by
        )
        tokens = await self.revoke_all_user_tokens(
            user_id, reason=reason, revoked_by=revoked_by
        )
        return len(sessions), tokens

    async def reconcile_revocations(self, user_id: Optional[str] = None) -> int:
        """Revoke live refresh tokens whose session is already revoked."""

        count = self.store.revoke_tokens_of_revoked_sessions(
            user_id=user_id, reason="session_revoked", now=self._now()
        )
        if count:
            self.logger.warning("revocations_reconciled", user_id=user_id, count=count)
        return count

    # rotation
    async def rotate_refresh_token(
        self, old_token: str, user_id: str, session_id: str
    ) -> str:
        """Swap ``old_token`` for a new refresh token on the same session."""

        payload = self.issuer.verify(old_token, REFRESH)
        row = self.find_refresh_token(old_token)
        if (
            payload is None
            or row is None
            or payload.get("sub") != user_id
            or payload.get("session_id") != session_id
            or row.user_id != user_id
            or row.session_id != session_id
        ):
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        user = self.store.get_user(user_id)
        if user is None:
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        claims = self.claims_for(user, session_id)
        if not claims["tenant_access"]:
            self.logger.warning("refresh_rotation_without_tenant", user_id=user_id)
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        new_token, new_row = self._mint_refresh(claims)
        if not self.store.rotate_refresh_token(
            row.id, new_row, revoked_by=user_id, now=self._now()
        ):
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        await self._cache_mark_revoked(row)
        self.logger.info("refresh_token_rotated", user_id=user_id, session_id=session_id)
        return new_token
