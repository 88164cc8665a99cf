from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.audit import AuditLogService
from tenantgate.service.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    TenantAccessDeniedError,
    TokenInvalidOrExpiredError,
)
from tenantgate.service.notifications import NotificationDispatcher
from tenantgate.storage.base import AuthStore
from tenantgate.storage.common import normalize_email, slugify
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    Tenant,
    TenantInvitation,
    TenantMembership,
    new_id,
)

logger = get_logger(__name__)


def has_tenant_access(claims: Mapping[str, Any], tenant_id: str) -> bool:
    return bool(tenant_id) and tenant_id in (claims.get("tenant_access") or [])


def require_tenant_access(claims: Mapping[str, Any], tenant_id: str) -> None:
    """Reject a request scoped to a tenant the token does not grant."""

    if not has_tenant_access(claims, tenant_id):
        raise TenantAccessDeniedError("no access to this tenant")


class TenantService:
    """Tenants, their members and pending invitations."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        audit: Optional[AuditLogService] = None,
        notifications: Optional[NotificationDispatcher] = None,
        logger=logger,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.notifications = notifications
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _audit(self, event: str, **kwargs: Any) -> None:
        if self.audit:
            self.audit.log(event, **kwargs)

    # tenants
    def new_tenant(self, name: str, *, slug: Optional[str] = None) -> Tenant:
        """Build (without saving) a tenant with a slug that is currently free."""

        name = (name or "").strip()
        if not name:
            raise BadRequestError("tenant name is required")
        if slug:
            return Tenant(id=new_id(), name=name, slug=slugify(slug))
        candidate = slugify(name)
        while self.store.get_tenant_by_slug(candidate) is not None:
            candidate = f"{slugify(name)}-{secrets.token_hex(3)}"
        return Tenant(id=new_id(), name=name, slug=candidate)

    def create_tenant(
        self,
        name: str,
        *,
        owner_id: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Tenant:
        tenant = self.new_tenant(name, slug=slug)
        try:
            created = self.store.create_tenant(tenant)
        except ConstraintViolation as exc:
            raise ConflictError("a tenant with this slug already exists") from exc
        if owner_id:
            self.add_member(created.id, owner_id, role="owner")
        self._audit("tenant_created", actor=owner_id, tenant_id=created.id)
        return created

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def get_tenant_by_slug(self, slug: str) -> Tenant:
        tenant = self.store.get_tenant_by_slug(slug)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    # members
    def add_member(self, tenant_id: str, user_id: str, role: str = "member") -> TenantMembership:
        if not role:
            raise BadRequestError("role is required")
        if self.store.get_membership(tenant_id, user_id) is not None:
            raise ConflictError("user is already a member of this tenant")
        try:
            membership = self.store.add_membership(
                TenantMembership(id=new_id(), tenant_id=tenant_id, user_id=user_id, role=role)
            )
        except ConstraintViolation as exc:
            if exc.field == "membership":
                raise ConflictError("user is already a member of this tenant") from exc
            raise NotFoundError("tenant or user not found") from exc
        self._audit("tenant_member_added", tenant_id=tenant_id, user_id=user_id, role=role)
        return membership

    def get_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]:
        return self.store.get_membership(tenant_id, user_id)

    def get_user_tenant_memberships(self, user_id: str) -> List[TenantMembership]:
        """Memberships oldest first; the first is the user's default tenant."""
        return self.store.list_user_memberships(user_id)

    def list_members(self, tenant_id: str) -> List[TenantMembership]:
        return self.store.list_tenant_members(tenant_id)

    def update_member_role(self, tenant_id: str, user_id: str, role: str) -> TenantMembership:
        if not role:
            raise BadRequestError("role is required")
        updated = self.store.update_membership_role(tenant_id, user_id, role)
        if updated is None:
            raise NotFoundError("tenant membership not found")
        self._audit("tenant_member_role_updated", tenant_id=tenant_id, user_id=user_id, role=role)
        return updated

    def remove_member(self, tenant_id: str, user_id: str) -> None:
        if not self.store.remove_membership(tenant_id, user_id):
            raise NotFoundError("tenant membership not found")
        self._audit("tenant_member_removed", tenant_id=tenant_id, user_id=user_id)

    # invitations
    async def invite(
        self,
        tenant_id: str,
        email: str,
        *,
        role: str = "member",
        invited_by: Optional[str] = None,
    ) -> TenantInvitation:
        tenant = self.get_tenant(tenant_id)
        email = normalize_email(email)
        if not email:
            raise BadRequestError("email is required")
        existing = self.store.get_user_by_email(email)
        if existing and self.store.get_membership(tenant_id, existing.id):
            raise ConflictError("user is already a member of this tenant")
        now = self._now()
        try:
            invitation = self.store.create_invitation(
                TenantInvitation(
                    id=new_id(),
                    tenant_id=tenant_id,
                    email=email,
                    role=role or "member",
                    token=secrets.token_hex(32),
                    invited_by=invited_by,
                    expires_at=now + timedelta(days=self.settings.invitation_ttl_days),
                    created_at=now,
                )
            )
        except ConstraintViolation as exc:
            raise ConflictError("an invitation has already been sent to this email") from exc
        self._audit("tenant_invitation_created", actor=invited_by, tenant_id=tenant_id)
        if self.notifications:
            await self.notifications.send(
                "tenant_invitation", email, tenant.name, invitation.token
            )
        return invitation

    def accept_invitation(self, token: str, user_id: str) -> TenantMembership:
        """Turn a pending invitation into a membership; each token works once."""

        invitation = self.store.get_invitation_by_token(token) if token else None
        if invitation is None:
            raise TokenInvalidOrExpiredError("invalid or expired invitation")
        if self.store.get_membership(invitation.tenant_id, user_id) is not None:
            raise ConflictError("user is already a member of this tenant")
        try:
            membership = self.store.accept_invitation(token, user_id, now=self._now())
        except ConstraintViolation as exc:
            raise ConflictError("user is already a member of this tenant") from exc
        if membership is None:
            raise TokenInvalidOrExpiredError("invalid or expired invitation")
        self._audit(
            "tenant_invitation_accepted",
            actor=user_id,
            tenant_id=membership.tenant_id,
            role=membership.role,
        )
        return membership

    def cancel_invitation(self, invitation_id: str, *, actor: Optional[str] = None) -> None:
        if not self.store.cancel_invitation(invitation_id, now=self._now()):
            raise NotFoundError("invitation not found")
        self._audit("tenant_invitation_cancelled", actor=actor, invitation_id=invitation_id)

    def list_pending_invitations(self, tenant_id: str) -> List[TenantInvitation]:
        return self.store.list_pending_invitations(tenant_id, self._now())
