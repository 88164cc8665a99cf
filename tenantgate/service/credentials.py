from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    EmailInUseError,
    NotFoundError,
    TokenInvalidOrExpiredError,
)
from tenantgate.service.passwords import PasswordManager
from tenantgate.storage.base import AuthStore
from tenantgate.storage.common import normalize_email, token_fields
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import Tenant, UserCredential, new_id

logger = get_logger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
ACCOUNT_RECOVERY = "account_recovery"


@dataclass
class PasswordResetTicket:
    token: str
    otp: str
    expires_at: datetime
    otp_expires_at: datetime


def _new_token() -> str:
    return secrets.token_hex(32)


def _new_otp(digits: int = 6) -> str:
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


class CredentialService:
    """Account records: password checks, lockout counters, one-time tokens.

    One-time tokens are consumed with a single conditional update keyed on
    the token value, so two requests presenting the same token cannot both
    succeed.
    """

    def __init__(
        self,
        store: AuthStore,
        passwords: PasswordManager,
        settings: Settings,
        *,
        logger=logger,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # lookups
    def find_by_email(self, email: str) -> Optional[UserCredential]:
        return self.store.get_user_by_email(normalize_email(email))

    def find_by_id(self, user_id: str) -> Optional[UserCredential]:
        return self.store.get_user(user_id)

    def get_or_404(self, user_id: str) -> UserCredential:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def create(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
        tenant: Optional[Tenant] = None,
        membership_role: str = "owner",
    ) -> UserCredential:
        """Create an account, optionally with its owning tenant in one write."""

        normalized = normalize_email(email)
        if self.store.get_user_by_email(normalized) is not None:
            raise EmailInUseError("email already in use")
        user = UserCredential(
            id=new_id(),
            email=normalized,
            password_hash=self.passwords.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        try:
            created = self.store.create_user(
                user, tenant=tenant, membership_role=membership_role
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailInUseError("email already in use") from exc
            raise
        self.logger.info("user_created", user_id=created.id)
        return created

    def update(self, user_id: str, **fields: Any) -> UserCredential:
        """Apply a partial update; a plaintext ``password`` is re-hashed."""

        password = fields.pop("password", None)
        if password is not None:
            fields["password_hash"] = self.passwords.hash(password)
        try:
            updated = self.store.update_user(user_id, **fields)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailInUseError("email already in use") from exc
            raise
        if updated is None:
            raise NotFoundError("user not found")
        return updated

    def verify_password(self, user: Optional[UserCredential], password: str) -> bool:
        if user is None:
            self.passwords.dummy_verify(password)
            return False
        return self.passwords.verify(user.password_hash, password)

    # lockout
    def _resolve_identifier(self, id_or_email: str) -> Optional[UserCredential]:
        if not id_or_email:
            return None
        if "@" in id_or_email:
            return self.store.get_user_by_email(id_or_email)
        try:
            uuid.UUID(id_or_email)
        except ValueError:
            return None
        return self.store.get_user(id_or_email)

    def record_failed_login_attempt(self, id_or_email: str) -> None:
        """Count a failed attempt; unknown identifiers are ignored silently."""

        user = self._resolve_identifier(id_or_email)
        if user is None:
            return
        now = self._now()
        updated = self.store.record_failed_login(
            user.id,
            max_attempts=self.settings.max_failed_login_attempts,
            lock_until=now + timedelta(minutes=self.settings.lockout_duration_minutes),
            now=now,
        )
        if updated is not None and updated.is_locked(now) and not user.is_locked(now):
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=updated.failed_login_attempts,
            )

    def reset_failed_login_attempts(self, user_id: str) -> None:
        self.store.update_user(user_id, failed_login_attempts=0, locked_until=None)

    def update_last_login(self, user_id: str) -> None:
        self.store.update_user(user_id, last_login_at=self._now())

    # token generators
    def generate_email_verification_token(self, user_id: str) -> str:
        token = _new_token()
        expires = self._now() + timedelta(
            minutes=self.settings.email_verification_token_ttl_minutes
        )
        self._set_token(
            user_id,
            email_verification_token=token,
            email_verification_expires_at=expires,
        )
        return token

    def generate_password_reset_token(self, user_id: str) -> PasswordResetTicket:
        now = self._now()
        ticket = PasswordResetTicket(
            token=_new_token(),
            otp=_new_otp(),
            expires_at=now + timedelta(minutes=self.settings.password_reset_token_ttl_minutes),
            otp_expires_at=now + timedelta(minutes=self.settings.password_reset_otp_ttl_minutes),
        )
        self._set_token(
            user_id,
            password_reset_token=ticket.token,
            password_reset_expires_at=ticket.expires_at,
            password_reset_otp=ticket.otp,
            password_reset_otp_expires_at=ticket.otp_expires_at,
        )
        return ticket

    def generate_account_recovery_token(self, user_id: str) -> str:
        token = _new_token()
        expires = self._now() + timedelta(
            minutes=self.settings.account_recovery_token_ttl_minutes
        )
        self._set_token(
            user_id,
            account_recovery_token=token,
            account_recovery_expires_at=expires,
        )
        return token

    def _set_token(self, user_id: str, **fields: Any) -> None:
        # overwriting invalidates any value issued earlier for the same kind
        if self.store.update_user(user_id, **fields) is None:
            raise NotFoundError("user not found")

    # token consumers
    def inspect_token(
        self,
        kind: str,
        token: str,
        *,
        check_account: bool = False,
    ) -> UserCredential:
        """Resolve the account holding ``token`` without consuming it.

        Expired tokens are cleared on the way out so later checks fail the
        same way.
        """

        fields = token_fields(kind)
        user = self.store.find_user_by_token(kind, token) if token else None
        if user is None:
            raise TokenInvalidOrExpiredError("invalid or expired token")
        now = self._now()
        expires_at = getattr(user, fields.expires_at)
        if expires_at is None or expires_at <= now:
            self.store.clear_user_token(kind, token)
            self.logger.info("one_time_token_expired", kind=kind, user_id=user.id)
            raise TokenInvalidOrExpiredError("invalid or expired token")
        if check_account:
            if not user.is_active:
                raise AccountInactiveError("account is deactivated")
            if user.is_locked(now):
                raise AccountLockedError("account is locked")
        return user

    def _consume(
        self,
        kind: str,
        token: str,
        updates: dict[str, Any],
        *,
        otp: Optional[str] = None,
        check_account: bool = False,
    ) -> UserCredential:
        self.inspect_token(kind, token, check_account=check_account)
        consumed = self.store.consume_user_token(
            kind,
            token,
            now=self._now(),
            updates=updates,
            otp=otp,
            require_active=check_account,
        )
        if consumed is None:
            # lost a race, or the OTP did not match
            raise TokenInvalidOrExpiredError("invalid or expired token")
        return consumed

    def verify_email(self, token: str) -> UserCredential:
        user = self._consume(EMAIL_VERIFICATION, token, {"email_verified": True})
        self.logger.info("email_verified", user_id=user.id)
        return user

    def reset_password(
        self, token: str, new_password: str, otp: Optional[str] = None
    ) -> UserCredential:
        return self._consume(
            PASSWORD_RESET,
            token,
            {
                "password_hash": self.passwords.hash(new_password),
                "failed_login_attempts": 0,
                "locked_until": None,
            },
            otp=otp,
            check_account=True,
        )

    def complete_account_recovery(self, token: str, new_password: str) -> UserCredential:
        return self._consume(
            ACCOUNT_RECOVERY,
            token,
            {
                "password_hash": self.passwords.hash(new_password),
                "failed_login_attempts": 0,
                "locked_until": None,
            },
            check_account=True,
        )
