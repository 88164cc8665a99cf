from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tenantgate.config import Settings, system_setting_defaults
from tenantgate.logging import get_logger, sanitize_error_message
from tenantgate.service.audit import AuditLogService
from tenantgate.service.credentials import (
    ACCOUNT_RECOVERY,
    PASSWORD_RESET,
    CredentialService,
)
from tenantgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    BadRequestError,
    ConflictError,
    EmailInUseError,
    InvalidCredentialsError,
    MfaInvalidError,
    MfaRequiredError,
    PasswordReusedError,
    SessionInvalidError,
    TokenInvalidOrExpiredError,
)
from tenantgate.service.jwt import ACCESS, REFRESH, TokenIssuer
from tenantgate.service.mfa import (
    SMS,
    TOTP,
    MfaFactor,
    RecoveryCodeManager,
    build_factor_registry,
)
from tenantgate.service.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
)
from tenantgate.service.password_history import PasswordHistoryLedger
from tenantgate.service.passwords import PasswordManager
from tenantgate.service.sessions import SessionLifecycleManager
from tenantgate.service.tenants import TenantService
from tenantgate.service.tokens import INVALID_TOKEN, TokenLifecycleManager
from tenantgate.storage.base import AuthStore
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    DeviceInfo,
    Session,
    TokenBundle,
    UserCredential,
    UserSummary,
)
from tenantgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists for this email, password reset instructions have been sent."
)
ACCOUNT_RECOVERY_MESSAGE = (
    "If an account exists for this email, recovery instructions have been sent."
)


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str
    session_id: str
    tenant_id: Optional[str] = None
    tenant_access: List[str] = field(default_factory=list)


@dataclass
class MfaEnrollment:
    mfa_type: str
    secret: Optional[str] = None
    otpauth_url: Optional[str] = None


@dataclass
class MfaVerification:
    enabled: bool
    recovery_codes: Optional[List[str]] = None


class AuthService:
    """User-facing authentication flows built from the lifecycle managers.

    Every flow reports failures through the closed set of errors in
    ``tenantgate.service.errors``; storage errors never leave this class
    untranslated.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        logger=logger,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self.audit = AuditLogService(store)
        self.notifications = NotificationDispatcher(notifier or LoggingNotifier())
        self.passwords = PasswordManager(settings)
        self.credentials = CredentialService(store, self.passwords, settings)
        self.history = PasswordHistoryLedger(store, self.passwords)
        self.sessions = SessionLifecycleManager(store, cache, settings)
        self.issuer = TokenIssuer(settings)
        self.tokens = TokenLifecycleManager(
            store, self.sessions, self.issuer, settings, cache=cache
        )
        self.factors: Dict[str, MfaFactor] = build_factor_registry(store, settings)
        self.totp = self.factors[TOTP]
        self.sms = self.factors[SMS]
        self.recovery_codes = RecoveryCodeManager(store, settings)
        self.tenants = TenantService(
            store, settings, audit=self.audit, notifications=self.notifications
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _get_system_settings(self) -> dict[str, Any]:
        """Runtime policy overrides merged over the static defaults."""

        return {**system_setting_defaults(self.settings), **self.store.get_system_settings()}

    @contextlib.contextmanager
    def _storage_conflicts(self, operation: str):
        try:
            yield
        except ConstraintViolation as exc:
            self.logger.warning(
                "storage_conflict",
                operation=operation,
                error=sanitize_error_message(exc.message),
            )
            raise ConflictError("request conflicts with existing data") from exc

    def _summary(self, user: UserCredential) -> UserSummary:
        tenant_id, tenant_access = self.tokens.tenant_context(user.id)
        return UserSummary.from_user(user, tenant_id=tenant_id, tenant_access=tenant_access)

    # password policy
    def _history_lookback(self) -> int:
        value = self._get_system_settings().get("password_history_count")
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return self.settings.password_history_count

    def _ensure_not_reused(self, user_id: str, password: str) -> None:
        lookback = self._history_lookback()
        if lookback and self.history.is_password_in_history(user_id, password, lookback):
            raise PasswordReusedError("password was used recently")

    def _record_new_password(self, user: UserCredential) -> None:
        self.history.add_to_history(user.id, user.password_hash)
        self.history.prune_history(user.id, max(1, self._history_lookback()))

    # mfa helpers
    def _mfa_enforced_for_recovery(self) -> bool:
        if self.settings.is_production:
            return True
        return bool(self._get_system_settings().get("enforce_mfa_in_dev"))

    def _verify_mfa_code(
        self, user: UserCredential, code: Optional[str], *, allow_recovery: bool
    ) -> bool:
        if not code:
            return False
        factor = self.factors.get(user.mfa_type or TOTP)
        if factor is not None and factor.verify(user, code):
            return True
        return allow_recovery and self.recovery_codes.consume(user.id, code)

    # login and registration
    async def login(
        self,
        email: str,
        password: str,
        device: Optional[DeviceInfo] = None,
        mfa_code: Optional[str] = None,
    ) -> TokenBundle:
        user = self.credentials.find_by_email(email)
        if user is None:
            self.credentials.verify_password(None, password)
            self.audit.log("login_failed", reason="unknown_account")
            raise InvalidCredentialsError("invalid email or password")
        if user.is_locked(self._now()):
            self.passwords.dummy_verify(password)
            self.audit.log("login_failed", actor=user.id, reason="locked")
            raise AccountLockedError("account is locked")
        if not self.credentials.verify_password(user, password):
            self.credentials.record_failed_login_attempt(user.id)
            self.audit.log("login_failed", actor=user.id, reason="bad_password")
            raise InvalidCredentialsError("invalid email or password")
        if not user.is_active:
            self.audit.log("login_failed", actor=user.id, reason="inactive")
            raise AccountInactiveError("account is deactivated")

        if user.mfa_enabled:
            if not mfa_code:
                if user.mfa_type == SMS:
                    await self._send_sms_code(user)
                raise MfaRequiredError("mfa code required")
            if not self._verify_mfa_code(user, mfa_code, allow_recovery=True):
                self.credentials.record_failed_login_attempt(user.id)
                self.audit.log("login_failed", actor=user.id, reason="bad_mfa_code")
                raise MfaInvalidError("invalid mfa code")

        self.credentials.reset_failed_login_attempts(user.id)
        self.credentials.update_last_login(user.id)
        bundle = await self.tokens.generate_tokens(user.id, device)
        self.audit.log(
            "login_succeeded",
            actor=user.id,
            tenant_id=bundle.user.tenant_id,
            session_id=bundle.session_id,
        )
        return bundle

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        organization_name: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> TokenBundle:
        """Create an account (and its organisation, if named) and sign it in."""

        self.passwords.validate_strength(password)
        if self.credentials.find_by_email(email) is not None:
            raise EmailInUseError("email already in use")
        tenant = self.tenants.new_tenant(organization_name) if organization_name else None
        with self._storage_conflicts("register"):
            user = self.credentials.create(
                email,
                password,
                first_name=first_name,
                last_name=last_name,
                tenant=tenant,
                membership_role="owner",
            )
        self.history.add_to_history(user.id, user.password_hash)
        token = self.credentials.generate_email_verification_token(user.id)
        await self.notifications.send("email_verification", user.email, token)
        bundle = await self.tokens.generate_tokens(user.id, device)
        self.audit.log(
            "user_registered",
            actor=user.id,
            tenant_id=tenant.id if tenant else None,
        )
        return bundle

    # token refresh and sign-out
    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Exchange a refresh token for a new pair on the same session.

        A refresh token that was already rotated away is a replay: the whole
        session is revoked, since either the legitimate client or an
        attacker holds a copy.
        """

        payload = self.issuer.verify(refresh_token, REFRESH)
        row = self.tokens.find_refresh_token(refresh_token) if payload else None
        if payload is None or row is None:
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        if row.revoked:
            if row.replaced_by_token_id and row.session_id:
                await self.tokens.revoke_session(row.session_id, reason="refresh_token_reuse")
                self.audit.log(
                    "refresh_token_reuse_detected",
                    actor=row.user_id,
                    session_id=row.session_id,
                )
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)
        if not await self.tokens.is_refresh_token_valid(refresh_token):
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)

        user_id = payload["sub"]
        session_id = payload["session_id"]
        if not await self.sessions.is_session_valid(user_id, session_id):
            await self.tokens.revoke_session(session_id, reason="session_expired")
            raise SessionInvalidError("session is no longer valid")
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise TokenInvalidOrExpiredError(INVALID_TOKEN)

        new_refresh = await self.tokens.rotate_refresh_token(refresh_token, user_id, session_id)
        claims = self.tokens.claims_for(user, session_id)
        access_token = self.tokens.generate_access_token(claims)
        await self.sessions.update_session_activity(session_id)
        return TokenBundle(
            access_token=access_token,
            refresh_token=new_refresh,
            session_id=session_id,
            user=UserSummary.from_user(
                user,
                tenant_id=claims["tenant_id"],
                tenant_access=claims["tenant_access"],
            ),
            expires_in=self.issuer.ttl_seconds(ACCESS),
        )

    async def logout(self, session_id: str, actor: Optional[str] = None) -> None:
        await self.tokens.revoke_session(session_id, revoked_by=actor, reason="logout")
        self.audit.log("logout", actor=actor, session_id=session_id)

    # password management
    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        """Set a new password and sign the user out everywhere."""

        user = self.credentials.get_or_404(user_id)
        if not self.credentials.verify_password(user, old_password):
            self.audit.log("password_change_failed", actor=user_id, reason="bad_password")
            raise InvalidCredentialsError("current password is incorrect")
        self.passwords.validate_strength(new_password)
        self._ensure_not_reused(user_id, new_password)
        with self._storage_conflicts("change_password"):
            updated = self.credentials.update(user_id, password=new_password)
        self._record_new_password(updated)
        await self.tokens.revoke_all_user_credentials(
            user_id, reason="password_changed", revoked_by=user_id
        )
        await self.notifications.send("password_changed", updated.email)
        self.audit.log("password_changed", actor=user_id)

    async def forgot_password(self, email: str) -> dict[str, str]:
        user = self.credentials.find_by_email(email)
        if user is not None and user.is_active:
            ticket = self.credentials.generate_password_reset_token(user.id)
            self.notifications.dispatch(
                "password_reset_otp", user.email, ticket.token, ticket.otp
            )
            self.audit.log("password_reset_requested", actor=user.id)
        else:
            # keep the unknown-account path from returning noticeably faster
            self.passwords.dummy_verify(email or "")
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(
        self, token: str, new_password: str, otp: Optional[str] = None
    ) -> UserSummary:
        self.passwords.validate_strength(new_password)
        user = self.credentials.inspect_token(PASSWORD_RESET, token, check_account=True)
        self._ensure_not_reused(user.id, new_password)
        updated = self.credentials.reset_password(token, new_password, otp)
        self._record_new_password(updated)
        await self.tokens.revoke_all_user_credentials(updated.id, reason="password_reset")
        await self.notifications.send("password_reset_success", updated.email)
        self.audit.log("password_reset_completed", actor=updated.id)
        return self._summary(updated)

    # account recovery
    async def request_account_recovery(self, email: str) -> dict[str, str]:
        """Start recovery. The response has the same shape for any email.

        Outside production the recovery token is echoed back for existing
        accounts so the flow can be exercised without a mail server.
        """

        response = {"message": ACCOUNT_RECOVERY_MESSAGE}
        user = self.credentials.find_by_email(email)
        if user is not None and user.is_active:
            token = self.credentials.generate_account_recovery_token(user.id)
            self.notifications.dispatch("recovery_notification", user.email, token)
            self.audit.log("account_recovery_requested", actor=user.id)
            if not self.settings.is_production:
                response["recovery_token"] = token
        else:
            self.passwords.dummy_verify(email or "")
        return response

    async def complete_account_recovery(
        self, token: str, new_password: str, mfa_code: Optional[str] = None
    ) -> None:
        self.passwords.validate_strength(new_password)
        user = self.credentials.inspect_token(ACCOUNT_RECOVERY, token, check_account=True)
        if user.mfa_enabled and self._mfa_enforced_for_recovery():
            if not mfa_code:
                raise MfaRequiredError("mfa code required for account recovery")
            if not self._verify_mfa_code(user, mfa_code, allow_recovery=False):
                self.audit.log("account_recovery_failed", actor=user.id, reason="bad_mfa_code")
                raise MfaInvalidError("invalid mfa code")
        self._ensure_not_reused(user.id, new_password)
        updated = self.credentials.complete_account_recovery(token, new_password)
        self._record_new_password(updated)
        await self.tokens.revoke_all_user_credentials(updated.id, reason="account_recovery")
        await self.notifications.send("account_recovery_success", updated.email)
        self.audit.log("account_recovery_completed", actor=updated.id)

    # email verification
    async def request_email_verification(self, user_id: str) -> None:
        user = self.credentials.get_or_404(user_id)
        if user.email_verified:
            return
        token = self.credentials.generate_email_verification_token(user.id)
        await self.notifications.send("email_verification", user.email, token)

    async def verify_email(self, token: str) -> UserSummary:
        user = self.credentials.verify_email(token)
        self.audit.log("email_verified", actor=user.id)
        return self._summary(user)

    # mfa lifecycle
    async def enroll_mfa(
        self,
        user_id: str,
        mfa_type: str = TOTP,
        *,
        phone_number: Optional[str] = None,
    ) -> MfaEnrollment:
        """Stage a factor. MFA stays disabled until ``verify_mfa`` succeeds."""

        user = self.credentials.get_or_404(user_id)
        if user.mfa_enabled:
            raise ConflictError("mfa is already enabled")
        if mfa_type == TOTP:
            secret = self.totp.generate_secret()
            self.credentials.update(user.id, mfa_secret=secret, mfa_type=TOTP, mfa_enabled=False)
            self.audit.log("mfa_enrollment_started", actor=user.id, mfa_type=TOTP)
            return MfaEnrollment(
                mfa_type=TOTP,
                secret=secret,
                otpauth_url=self.totp.provisioning_uri(secret, user.email),
            )
        if mfa_type == SMS:
            phone_number = phone_number or user.phone_number
            if not phone_number:
                raise BadRequestError("phone number is required for sms mfa")
            updated = self.credentials.update(
                user.id, phone_number=phone_number, mfa_type=SMS, mfa_enabled=False
            )
            await self._send_sms_code(updated)
            self.audit.log("mfa_enrollment_started", actor=user.id, mfa_type=SMS)
            return MfaEnrollment(mfa_type=SMS)
        raise BadRequestError(f"unsupported mfa type {mfa_type!r}")

    async def _send_sms_code(self, user: UserCredential) -> None:
        if not user.phone_number:
            raise BadRequestError("no phone number on file")
        code = self.sms.issue_code(user)
        await self.notifications.send("sms_mfa_code", user.phone_number, code)

    async def send_sms_mfa_code(self, user_id: str) -> None:
        user = self.credentials.get_or_404(user_id)
        if user.mfa_type != SMS:
            raise BadRequestError("sms mfa is not configured")
        await self._send_sms_code(user)

    async def verify_mfa(
        self, user_id: str, code: str, mfa_type: str = TOTP
    ) -> MfaVerification:
        """Check a code; the first success after enrollment enables MFA.

        Recovery codes are generated on that first success and returned
        exactly once.
        """

        user = self.credentials.get_or_404(user_id)
        if mfa_type == "recovery":
            if not user.mfa_enabled or not self.recovery_codes.consume(user.id, code):
                raise MfaInvalidError("invalid recovery code")
            return MfaVerification(enabled=True)
        factor = self.factors.get(mfa_type)
        if factor is None:
            raise BadRequestError(f"unsupported mfa type {mfa_type!r}")
        if user.mfa_type != mfa_type or not factor.verify(user, code):
            self.audit.log("mfa_verification_failed", actor=user.id, mfa_type=mfa_type)
            raise MfaInvalidError("invalid mfa code")
        if user.mfa_enabled:
            return MfaVerification(enabled=True)
        self.credentials.update(user.id, mfa_enabled=True, mfa_type=mfa_type)
        codes = self.recovery_codes.generate(user.id)
        self.audit.log("mfa_enabled", actor=user.id, mfa_type=mfa_type)
        return MfaVerification(enabled=True, recovery_codes=codes)

    async def disable_mfa(self, user_id: str, code: str) -> None:
        user = self.credentials.get_or_404(user_id)
        if not user.mfa_enabled:
            raise BadRequestError("mfa is not enabled")
        if not self._verify_mfa_code(user, code, allow_recovery=True):
            raise MfaInvalidError("invalid mfa code")
        self.credentials.update(
            user.id,
            mfa_enabled=False,
            mfa_type=None,
            mfa_secret=None,
            sms_code=None,
            sms_code_expires_at=None,
        )
        self.store.replace_recovery_codes(user.id, [])
        self.audit.log("mfa_disabled", actor=user.id)

    async def regenerate_recovery_codes(self, user_id: str, code: str) -> List[str]:
        user = self.credentials.get_or_404(user_id)
        if not user.mfa_enabled:
            raise BadRequestError("mfa is not enabled")
        if not self._verify_mfa_code(user, code, allow_recovery=False):
            raise MfaInvalidError("invalid mfa code")
        codes = self.recovery_codes.generate(user.id)
        self.audit.log("mfa_recovery_codes_regenerated", actor=user.id)
        return codes

    # sessions
    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_active_sessions(user_id)

    async def revoke_session(self, session_id: str, actor_user_id: str) -> None:
        """Revoke one of the actor's own sessions and its refresh tokens."""

        session = await self.sessions.get_session(session_id)
        if session is None or session.user_id != actor_user_id:
            self.audit.log("session_revoke_denied", actor=actor_user_id, session_id=session_id)
            raise SessionInvalidError("session not found")
        await self.tokens.revoke_session(
            session_id, revoked_by=actor_user_id, reason="user_revoked"
        )
        self.audit.log("session_revoked", actor=actor_user_id, session_id=session_id)

    async def session_status(self, user_id: str, session_id: str) -> dict[str, Any]:
        valid = await self.sessions.is_session_valid(user_id, session_id)
        remaining = await self.sessions.get_session_remaining_time(session_id) if valid else 0
        return {"valid": valid, "remaining_seconds": remaining}

    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve an access token to its caller for a protected request."""

        payload = await self.tokens.validate_token(access_token, ACCESS)
        user_id = payload["sub"]
        session_id = payload["session_id"]
        if not await self.sessions.is_session_valid(user_id, session_id):
            raise SessionInvalidError("session is no longer valid")
        await self.sessions.update_session_activity(session_id)
        return AuthContext(
            user_id=user_id,
            email=payload.get("email", ""),
            role=payload.get("role", "user"),
            session_id=session_id,
            tenant_id=payload.get("tenant_id"),
            tenant_access=list(payload.get("tenant_access") or []),
        )
