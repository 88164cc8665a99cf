from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from tenantgate.storage.models import (
    AuditEvent,
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantInvitation,
    TenantMembership,
    UserCredential,
)


class AuthStore(Protocol):
    """Persistence operations the services rely on.

    Implementations raise ``ConstraintViolation`` for uniqueness and foreign
    key problems and let connectivity errors propagate unchanged. Every
    bulk revocation is a single predicate update.
    """

    # users
    def create_user(
        self,
        user: UserCredential,
        *,
        tenant: Optional[Tenant] = None,
        membership_role: str = "owner",
    ) -> UserCredential: ...

    def get_user(self, user_id: str) -> Optional[UserCredential]: ...

    def get_user_by_email(self, email: str) -> Optional[UserCredential]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserCredential]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[UserCredential]: ...

    def find_user_by_token(self, kind: str, token: str) -> Optional[UserCredential]: ...

    def clear_user_token(self, kind: str, token: str) -> bool: ...

    def consume_user_token(
        self,
        kind: str,
        token: str,
        *,
        now: datetime,
        updates: Dict[str, Any],
        otp: Optional[str] = None,
        require_active: bool = False,
    ) -> Optional[UserCredential]: ...

    # password history
    def add_password_history(
        self, user_id: str, password_hash: str
    ) -> PasswordHistoryEntry: ...

    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def prune_password_history(self, user_id: str, keep: int) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_session(
        self, session_id: str, *, revoked_by: Optional[str], now: datetime
    ) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str] = None,
        now: datetime,
    ) -> List[str]: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> bool: ...

    def rotate_refresh_token(
        self,
        old_token_id: str,
        new_token: RefreshToken,
        *,
        revoked_by: Optional[str],
        now: datetime,
    ) -> bool: ...

    def revoke_session_refresh_tokens(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int: ...

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int: ...

    def revoke_tokens_of_revoked_sessions(
        self, *, user_id: Optional[str] = None, reason: str, now: datetime
    ) -> int: ...

    # mfa codes
    def consume_sms_code(self, user_id: str, code: str, now: datetime) -> bool: ...

    def replace_recovery_codes(self, user_id: str, code_hashes: List[str]) -> None: ...

    def consume_recovery_code(
        self, user_id: str, code_hash: str, now: datetime
    ) -> bool: ...

    def count_unused_recovery_codes(self, user_id: str) -> int: ...

    # tenants
    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def add_membership(self, membership: TenantMembership) -> TenantMembership: ...

    def get_membership(
        self, tenant_id: str, user_id: str
    ) -> Optional[TenantMembership]: ...

    def list_user_memberships(self, user_id: str) -> List[TenantMembership]: ...

    def list_tenant_members(self, tenant_id: str) -> List[TenantMembership]: ...

    def update_membership_role(
        self, tenant_id: str, user_id: str, role: str
    ) -> Optional[TenantMembership]: ...

    def remove_membership(self, tenant_id: str, user_id: str) -> bool: ...

    def create_invitation(self, invitation: TenantInvitation) -> TenantInvitation: ...

    def get_invitation_by_token(self, token: str) -> Optional[TenantInvitation]: ...

    def accept_invitation(
        self, token: str, user_id: str, *, now: datetime
    ) -> Optional[TenantMembership]: ...

    def cancel_invitation(self, invitation_id: str, *, now: datetime) -> bool: ...

    def list_pending_invitations(
        self, tenant_id: str, now: datetime
    ) -> List[TenantInvitation]: ...

    # system settings and audit
    def get_system_settings(self) -> Dict[str, Any]: ...

    def set_system_setting(self, name: str, value: Any) -> None: ...

    def record_audit_event(self, event: AuditEvent) -> None: ...
