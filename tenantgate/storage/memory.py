from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from tenantgate.logging import get_logger
from tenantgate.storage.common import (
    check_user_fields,
    generate_uuid,
    normalize_email,
    token_fields,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    AuditEvent,
    MfaRecoveryCode,
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantInvitation,
    TenantMembership,
    UserCredential,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory store used for tests and local development.

    All reads return copies so callers cannot mutate stored rows behind the
    lock. Conditional updates (token consumption, rotation, invitation
    acceptance) run entirely under ``_data_lock``.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.recovery_codes: Dict[str, List[MfaRecoveryCode]] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.memberships: Dict[str, TenantMembership] = {}
        self.invitations: Dict[str, TenantInvitation] = {}
        self.system_settings: Dict[str, Any] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can be called from inside other locked operations
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        # without configured material the key only lives as long as the process
        material = key_material or secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _user_copy(self, user: Optional[UserCredential]) -> Optional[UserCredential]:
        if user is None:
            return None
        return replace(user, mfa_secret=self._decrypt_mfa_secret(user.mfa_secret))

    # users
    def create_user(
        self,
        user: UserCredential,
        *,
        tenant: Optional[Tenant] = None,
        membership_role: str = "owner",
    ) -> UserCredential:
        email = normalize_email(user.email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant is not None and any(
                t.slug == tenant.slug for t in self.tenants.values()
            ):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            stored = replace(
                user,
                email=email,
                mfa_secret=self._encrypt_mfa_secret(user.mfa_secret),
            )
            self.users[stored.id] = stored
            if tenant is not None:
                self.tenants[tenant.id] = replace(tenant)
                membership = TenantMembership(
                    id=generate_uuid(),
                    tenant_id=tenant.id,
                    user_id=stored.id,
                    role=membership_role,
                )
                self.memberships[membership.id] = membership
            return self._user_copy(stored)

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            return self._user_copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[UserCredential]:
        normalized = normalize_email(email)
        with self._data_lock:
            return self._user_copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def _apply_user_fields(self, user: UserCredential, fields: Dict[str, Any]) -> UserCredential:
        values = dict(fields)
        updated_at = values.pop("updated_at", None) or utcnow()
        check_user_fields(values)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
            clash = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == values["email"] and u.id != user.id
                ),
                None,
            )
            if clash is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
        if "mfa_secret" in values:
            values["mfa_secret"] = self._encrypt_mfa_secret(values["mfa_secret"])
        updated = replace(user, **values, updated_at=updated_at)
        self.users[user.id] = updated
        return updated

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserCredential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            return self._user_copy(self._apply_user_fields(user, fields))

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[UserCredential]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            attempts = user.failed_login_attempts
            locked_until = user.locked_until
            if locked_until is not None and locked_until <= now:
                # previous lock has run out; start a fresh window
                attempts = 0
                locked_until = None
            attempts += 1
            if attempts >= max_attempts:
                locked_until = lock_until
            updated = replace(
                user,
                failed_login_attempts=attempts,
                locked_until=locked_until,
                updated_at=now,
            )
            self.users[user_id] = updated
            return self._user_copy(updated)

    def find_user_by_token(self, kind: str, token: str) -> Optional[UserCredential]:
        fields = token_fields(kind)
        if not token:
            return None
        with self._data_lock:
            return self._user_copy(
                next(
                    (
                        u
                        for u in self.users.values()
                        if getattr(u, fields.token) == token
                    ),
                    None,
                )
            )

    def clear_user_token(self, kind: str, token: str) -> bool:
        fields = token_fields(kind)
        if not token:
            return False
        with self._data_lock:
            for user in self.users.values():
                if getattr(user, fields.token) == token:
                    self.users[user.id] = replace(
                        user, **{col: None for col in fields.columns}
                    )
                    return True
            return False

    def consume_user_token(
        self,
        kind: str,
        token: str,
        *,
        now: datetime,
        updates: Dict[str, Any],
        otp: Optional[str] = None,
        require_active: bool = False,
    ) -> Optional[UserCredential]:
        fields = token_fields(kind)
        if not token:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if getattr(u, fields.token) == token),
                None,
            )
            if user is None:
                return None
            expires_at = getattr(user, fields.expires_at)
            if expires_at is None or expires_at <= now:
                return None
            if fields.otp:
                if otp is None:
                    return None
                stored_otp = getattr(user, fields.otp)
                otp_expires = getattr(user, fields.otp_expires_at)
                if stored_otp is None or not hmac.compare_digest(
                    stored_otp.encode(), otp.encode()
                ):
                    return None
                if otp_expires is None or otp_expires <= now:
                    return None
            if require_active and (not user.is_active or user.is_locked(now)):
                return None
            cleared = {col: None for col in fields.columns}
            updated = self._apply_user_fields(
                user, {**updates, **cleared, "updated_at": now}
            )
            return self._user_copy(updated)

    # password history
    def add_password_history(self, user_id: str, password_hash: str) -> PasswordHistoryEntry:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for history", {"user_id": user_id})
            entry = PasswordHistoryEntry(
                id=generate_uuid(), user_id=user_id, password_hash=password_hash
            )
            self.password_history.setdefault(user_id, []).append(entry)
            return replace(entry)

    def _history_newest_first(self, user_id: str) -> List[PasswordHistoryEntry]:
        # stable sort keeps insertion order for identical timestamps
        entries = list(enumerate(self.password_history.get(user_id, [])))
        entries.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [entry for _, entry in entries]

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._data_lock:
            return [replace(e) for e in self._history_newest_first(user_id)[:limit]]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._data_lock:
            ordered = self._history_newest_first(user_id)
            kept = ordered[: max(keep, 0)]
            removed = len(ordered) - len(kept)
            # restore chronological order for storage
            self.password_history[user_id] = list(reversed(kept))
            return removed

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked:
                return False
            self.sessions[session_id] = replace(sess, last_used_at=now)
            return True

    def revoke_session(
        self, session_id: str, *, revoked_by: Optional[str], now: datetime
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked:
                return False
            self.sessions[session_id] = replace(
                sess,
                revoked=True,
                revoked_at=now,
                revoked_by=revoked_by,
                is_active=False,
            )
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str] = None,
        now: datetime,
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for sid, sess in self.sessions.items():
                if sess.user_id != user_id or sess.revoked or sid == except_session_id:
                    continue
                self.sessions[sid] = replace(
                    sess,
                    revoked=True,
                    revoked_at=now,
                    revoked_by=revoked_by,
                    is_active=False,
                )
                revoked.append(sid)
            return revoked

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and not s.revoked
            ]
        active.sort(key=lambda s: s.last_activity, reverse=True)
        return active

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if any(t.token_hash == token.token_hash for t in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.id] = replace(token)
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            found = next(
                (t for t in self.refresh_tokens.values() if t.token_hash == token_hash),
                None,
            )
            return replace(found) if found else None

    def _revoke_token_row(
        self,
        token: RefreshToken,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
        replaced_by: Optional[str] = None,
    ) -> None:
        self.refresh_tokens[token.id] = replace(
            token,
            revoked=True,
            revoked_at=now,
            revoked_by=revoked_by,
            revocation_reason=reason,
            replaced_by_token_id=replaced_by,
        )

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.revoked:
                return False
            self._revoke_token_row(token, revoked_by=revoked_by, reason=reason, now=now)
            return True

    def rotate_refresh_token(
        self,
        old_token_id: str,
        new_token: RefreshToken,
        *,
        revoked_by: Optional[str],
        now: datetime,
    ) -> bool:
        with self._data_lock:
            old = self.refresh_tokens.get(old_token_id)
            if old is None or old.revoked or old.expires_at <= now:
                return False
            self.create_refresh_token(new_token)
            self._revoke_token_row(
                old,
                revoked_by=revoked_by,
                reason="rotated",
                now=now,
                replaced_by=new_token.id,
            )
            return True

    def _revoke_tokens_where(self, predicate, *, revoked_by, reason, now) -> int:
        count = 0
        for token in list(self.refresh_tokens.values()):
            if token.revoked or not predicate(token):
                continue
            self._revoke_token_row(token, revoked_by=revoked_by, reason=reason, now=now)
            count += 1
        return count

    def revoke_session_refresh_tokens(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int:
        with self._data_lock:
            return self._revoke_tokens_where(
                lambda t: t.session_id == session_id,
                revoked_by=revoked_by,
                reason=reason,
                now=now,
            )

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int:
        with self._data_lock:
            return self._revoke_tokens_where(
                lambda t: t.user_id == user_id,
                revoked_by=revoked_by,
                reason=reason,
                now=now,
            )

    def revoke_tokens_of_revoked_sessions(
        self, *, user_id: Optional[str] = None, reason: str, now: datetime
    ) -> int:
        with self._data_lock:
            revoked_sessions = {
                sid
                for sid, sess in self.sessions.items()
                if sess.revoked and (user_id is None or sess.user_id == user_id)
            }
            return self._revoke_tokens_where(
                lambda t: t.session_id in revoked_sessions,
                revoked_by=None,
                reason=reason,
                now=now,
            )

    # mfa codes
    def consume_sms_code(self, user_id: str, code: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or not user.sms_code or not code:
                return False
            if user.sms_code_expires_at is None or user.sms_code_expires_at <= now:
                return False
            if not hmac.compare_digest(user.sms_code.encode(), code.encode()):
                return False
            self._apply_user_fields(
                user, {"sms_code": None, "sms_code_expires_at": None, "updated_at": now}
            )
            return True

    def replace_recovery_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for recovery codes", {"user_id": user_id})
            self.recovery_codes[user_id] = [
                MfaRecoveryCode(id=generate_uuid(), user_id=user_id, code_hash=h)
                for h in code_hashes
            ]

    def consume_recovery_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._data_lock:
            codes = self.recovery_codes.get(user_id, [])
            for idx, code in enumerate(codes):
                if code.used or code.code_hash != code_hash:
                    continue
                codes[idx] = replace(code, used=True, used_at=now)
                return True
            return False

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.recovery_codes.get(user_id, []) if not c.used)

    # tenants
    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            if any(t.slug == tenant.slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            self.tenants[tenant.id] = replace(tenant)
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = next((t for t in self.tenants.values() if t.slug == slug), None)
            return replace(tenant) if tenant else None

    def _find_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]:
        return next(
            (
                m
                for m in self.memberships.values()
                if m.tenant_id == tenant_id and m.user_id == user_id
            ),
            None,
        )

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        with self._data_lock:
            if membership.tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": membership.tenant_id})
            if membership.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": membership.user_id})
            if self._find_membership(membership.tenant_id, membership.user_id):
                raise ConstraintViolation("membership already exists", {"field": "membership"})
            self.memberships[membership.id] = replace(membership)
            return replace(membership)

    def get_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]:
        with self._data_lock:
            found = self._find_membership(tenant_id, user_id)
            return replace(found) if found else None

    def list_user_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._data_lock:
            found = [replace(m) for m in self.memberships.values() if m.user_id == user_id]
        found.sort(key=lambda m: (m.created_at, m.id))
        return found

    def list_tenant_members(self, tenant_id: str) -> List[TenantMembership]:
        with self._data_lock:
            found = [replace(m) for m in self.memberships.values() if m.tenant_id == tenant_id]
        found.sort(key=lambda m: (m.created_at, m.id))
        return found

    def update_membership_role(
        self, tenant_id: str, user_id: str, role: str
    ) -> Optional[TenantMembership]:
        with self._data_lock:
            found = self._find_membership(tenant_id, user_id)
            if found is None:
                return None
            updated = replace(found, role=role)
            self.memberships[found.id] = updated
            return replace(updated)

    def remove_membership(self, tenant_id: str, user_id: str) -> bool:
        with self._data_lock:
            found = self._find_membership(tenant_id, user_id)
            if found is None:
                return False
            del self.memberships[found.id]
            return True

    def create_invitation(self, invitation: TenantInvitation) -> TenantInvitation:
        email = normalize_email(invitation.email)
        with self._data_lock:
            if invitation.tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": invitation.tenant_id})
            open_invite = False
            for inv in list(self.invitations.values()):
                if inv.tenant_id != invitation.tenant_id or inv.email != email or not inv.is_pending:
                    continue
                if inv.expires_at <= invitation.created_at:
                    # an expired invite no longer blocks a fresh one
                    self.invitations[inv.id] = replace(inv, cancelled_at=invitation.created_at)
                else:
                    open_invite = True
            if open_invite:
                raise ConstraintViolation("invitation already pending", {"field": "email"})
            stored = replace(invitation, email=email)
            self.invitations[stored.id] = stored
            return replace(stored)

    def get_invitation_by_token(self, token: str) -> Optional[TenantInvitation]:
        with self._data_lock:
            found = next((i for i in self.invitations.values() if i.token == token), None)
            return replace(found) if found else None

    def accept_invitation(
        self, token: str, user_id: str, *, now: datetime
    ) -> Optional[TenantMembership]:
        with self._data_lock:
            invitation = next(
                (i for i in self.invitations.values() if i.token == token), None
            )
            if invitation is None or not invitation.is_pending or invitation.expires_at <= now:
                return None
            membership = self.add_membership(
                TenantMembership(
                    id=generate_uuid(),
                    tenant_id=invitation.tenant_id,
                    user_id=user_id,
                    role=invitation.role,
                    created_at=now,
                )
            )
            self.invitations[invitation.id] = replace(
                invitation, accepted_at=now, accepted_by=user_id
            )
            return membership

    def cancel_invitation(self, invitation_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or not invitation.is_pending:
                return False
            self.invitations[invitation_id] = replace(invitation, cancelled_at=now)
            return True

    def list_pending_invitations(self, tenant_id: str, now: datetime) -> List[TenantInvitation]:
        with self._data_lock:
            pending = [
                replace(i)
                for i in self.invitations.values()
                if i.tenant_id == tenant_id and i.is_pending and i.expires_at > now
            ]
        pending.sort(key=lambda i: i.created_at)
        return pending

    # system settings and audit
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, name: str, value: Any) -> None:
        with self._data_lock:
            self.system_settings[name] = value

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event))
