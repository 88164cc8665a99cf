from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class DeviceInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None


@dataclass
class UserCredential:
    """Account row: identity, password hash, lockout and one-time tokens."""

    id: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_type: Optional[str] = None
    mfa_secret: Optional[str] = None
    sms_code: Optional[str] = None
    sms_code_expires_at: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    password_reset_otp: Optional[str] = None
    password_reset_otp_expires_at: Optional[datetime] = None
    account_recovery_token: Optional[str] = None
    account_recovery_expires_at: Optional[datetime] = None
    phone_number: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    last_used_at: Optional[datetime] = None
    is_active: bool = True
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        device: Optional[DeviceInfo] = None,
    ) -> "Session":
        now = utcnow()
        device = device or DeviceInfo()
        return cls(
            id=new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            device_info=device.device_info,
            last_used_at=now,
        )

    @property
    def last_activity(self) -> datetime:
        return self.last_used_at or self.created_at


@dataclass
class RefreshToken:
    """Persisted counterpart of a signed refresh token.

    Only the SHA-256 digest of the token is stored.
    """

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    replaced_by_token_id: Optional[str] = None


@dataclass
class PasswordHistoryEntry:
    id: str
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaRecoveryCode:
    id: str
    user_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantMembership:
    id: str
    tenant_id: str
    user_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantInvitation:
    id: str
    tenant_id: str
    email: str
    role: str
    token: str
    invited_by: Optional[str]
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.accepted_at is None and self.cancelled_at is None


@dataclass
class AuditEvent:
    id: str
    event: str
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSummary:
    id: str
    email: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    tenant_id: Optional[str] = None
    tenant_access: List[str] = field(default_factory=list)

    @classmethod
    def from_user(
        cls,
        user: UserCredential,
        *,
        tenant_id: Optional[str] = None,
        tenant_access: Optional[List[str]] = None,
    ) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            email_verified=user.email_verified,
            mfa_enabled=user.mfa_enabled,
            tenant_id=tenant_id,
            tenant_access=list(tenant_access or []),
        )


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    session_id: str
    user: UserSummary
    token_type: str = "bearer"
    expires_in: int = 0
