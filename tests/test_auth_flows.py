"""End-to-end tests for the authentication flows.

Every test drives ``AuthService`` over the in-memory store. Time-dependent
checks move stored timestamps into the past rather than sleeping.
"""

import asyncio
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from tenantgate.config import Environment
from tenantgate.service.auth import (
    ACCOUNT_RECOVERY_MESSAGE,
    FORGOT_PASSWORD_MESSAGE,
    AuthService,
)
from tenantgate.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ConflictError,
    EmailInUseError,
    InvalidCredentialsError,
    MfaInvalidError,
    MfaRequiredError,
    PasswordReusedError,
    SessionInvalidError,
    TenantAccessDeniedError,
    TokenInvalidOrExpiredError,
    WeakPasswordError,
)
from tenantgate.service.jwt import ACCESS
from tenantgate.service.tenants import require_tenant_access
from tenantgate.storage.models import DeviceInfo

STRONG_PASSWORD = "CorrectHorse42"

NEW_PASSWORD = "BrandNewPass77"


class GatedMailer:
    """Holds every delivery until ``release`` is set."""

    def __init__(self):
        self.release = threading.Event()
        self.sent = []

    def _deliver(self, kind):
        self.release.wait(5)
        self.sent.append(kind)
        return True

    def send_password_reset_otp(self, to_email, token, otp):
        return self._deliver("password_reset_otp")

    def send_recovery_notification(self, to_email, token):
        return self._deliver("recovery_notification")


def _past(minutes=1):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def _wrong_code(code):
    return str((int(code) + 500000) % 1000000).zfill(6)


async def _register(auth, email="alice@example.com", organization="Acme"):
    return await auth.register(
        email,
        STRONG_PASSWORD,
        first_name="Alice",
        organization_name=organization,
        device=DeviceInfo(ip_address="127.0.0.1", user_agent="pytest"),
    )


async def _enable_totp(auth, user_id):
    enrollment = await auth.enroll_mfa(user_id)
    code = auth.totp.generate_code(enrollment.secret)
    verification = await auth.verify_mfa(user_id, code)
    return enrollment.secret, verification.recovery_codes


class TestRegistration:
    async def test_register_creates_owner_tenant(self, auth_service, memory_store):
        bundle = await _register(auth_service)

        assert bundle.user.email == "alice@example.com"
        assert bundle.user.tenant_id is not None
        assert bundle.user.tenant_access == [bundle.user.tenant_id]
        membership = memory_store.get_membership(bundle.user.tenant_id, bundle.user.id)
        assert membership.role == "owner"
        assert memory_store.get_tenant(bundle.user.tenant_id).slug == "acme"

    async def test_register_sends_verification_email(self, auth_service, notifier):
        bundle = await _register(auth_service)

        [(to_email, token)] = notifier.of_kind("email_verification")
        assert to_email == "alice@example.com"
        summary = await auth_service.verify_email(token)
        assert summary.id == bundle.user.id
        assert summary.email_verified is True

    async def test_duplicate_email_is_rejected(self, auth_service):
        await _register(auth_service)

        with pytest.raises(EmailInUseError):
            await _register(auth_service, email="ALICE@example.com", organization="Other")

    async def test_weak_password_is_rejected(self, auth_service, memory_store):
        with pytest.raises(WeakPasswordError):
            await auth_service.register("weak@example.com", "short")
        assert memory_store.get_user_by_email("weak@example.com") is None

    async def test_same_organization_name_gets_unique_slug(self, auth_service, memory_store):
        first = await _register(auth_service)
        second = await _register(auth_service, email="bob@example.com")

        first_slug = memory_store.get_tenant(first.user.tenant_id).slug
        second_slug = memory_store.get_tenant(second.user.tenant_id).slug
        assert first_slug != second_slug
        assert second_slug.startswith("acme-")


class TestLogin:
    async def test_login_issues_tokens(self, auth_service):
        registered = await _register(auth_service)

        bundle = await auth_service.login("Alice@Example.com", STRONG_PASSWORD)

        assert bundle.user.id == registered.user.id
        assert bundle.session_id != registered.session_id
        context = await auth_service.authenticate(bundle.access_token)
        assert context.user_id == registered.user.id
        assert context.session_id == bundle.session_id
        assert context.tenant_id == registered.user.tenant_id

    async def test_forged_non_ascii_token_is_rejected(self, auth_service):
        registered = await _register(auth_service)
        header, payload, _ = registered.access_token.split(".")

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.authenticate(f"{header}.{payload}.ésig")

    async def test_locked_account_still_hashes(self, auth_service, settings, monkeypatch):
        """A locked account costs one hash like an unknown one."""
        await _register(auth_service)
        for _ in range(settings.max_failed_login_attempts):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "WrongPassword1")
        burned = []
        monkeypatch.setattr(auth_service.passwords, "dummy_verify", burned.append)

        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@example.com", "WrongPassword1")

        assert burned == ["WrongPassword1"]

    async def test_unknown_account_and_wrong_password_look_alike(self, auth_service):
        await _register(auth_service)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("alice@example.com", "WrongPassword1")
        assert str(unknown.value) == str(wrong.value)

    async def test_lockout_blocks_correct_password(self, auth_service, memory_store, settings):
        """After the limit, even the right password fails until the lock ends."""
        bundle = await _register(auth_service)
        for _ in range(settings.max_failed_login_attempts):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "WrongPassword1")

        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD)

        stored = memory_store.users[bundle.user.id]
        memory_store.users[bundle.user.id] = replace(stored, locked_until=_past())
        unlocked = await auth_service.login("alice@example.com", STRONG_PASSWORD)
        assert unlocked.user.id == bundle.user.id
        assert memory_store.get_user(bundle.user.id).failed_login_attempts == 0

    async def test_inactive_account_cannot_login(self, auth_service):
        bundle = await _register(auth_service)
        auth_service.credentials.update(bundle.user.id, is_active=False)

        with pytest.raises(AccountInactiveError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD)

    async def test_login_records_last_login(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        assert memory_store.get_user(bundle.user.id).last_login_at is None

        await auth_service.login("alice@example.com", STRONG_PASSWORD)

        assert memory_store.get_user(bundle.user.id).last_login_at is not None


class TestLoginWithMfa:
    async def test_totp_required_after_enrollment(self, auth_service):
        bundle = await _register(auth_service)
        secret, codes = await _enable_totp(auth_service, bundle.user.id)
        assert len(codes) == auth_service.settings.mfa_recovery_code_count

        with pytest.raises(MfaRequiredError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD)
        code = auth_service.totp.generate_code(secret)
        with pytest.raises(MfaInvalidError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD, mfa_code=_wrong_code(code))

        signed_in = await auth_service.login(
            "alice@example.com", STRONG_PASSWORD, mfa_code=code
        )
        assert signed_in.user.mfa_enabled is True

    async def test_bad_mfa_code_counts_as_failure(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        secret, _ = await _enable_totp(auth_service, bundle.user.id)
        code = auth_service.totp.generate_code(secret)

        with pytest.raises(MfaInvalidError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD, mfa_code=_wrong_code(code))

        assert memory_store.get_user(bundle.user.id).failed_login_attempts == 1

    async def test_non_ascii_mfa_code_is_invalid(self, auth_service):
        bundle = await _register(auth_service)
        await _enable_totp(auth_service, bundle.user.id)

        with pytest.raises(MfaInvalidError):
            await auth_service.login(
                "alice@example.com", STRONG_PASSWORD, mfa_code="１２３４５６"
            )

    async def test_recovery_code_works_once(self, auth_service):
        bundle = await _register(auth_service)
        _, codes = await _enable_totp(auth_service, bundle.user.id)

        await auth_service.login("alice@example.com", STRONG_PASSWORD, mfa_code=codes[0])

        with pytest.raises(MfaInvalidError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD, mfa_code=codes[0])
        assert auth_service.recovery_codes.remaining(bundle.user.id) == len(codes) - 1

    async def test_sms_code_sent_on_login(self, auth_service, notifier):
        bundle = await _register(auth_service)
        await auth_service.enroll_mfa(bundle.user.id, "sms", phone_number="+15550100")
        [(phone, enroll_code)] = notifier.of_kind("sms_mfa_code")
        assert phone == "+15550100"
        await auth_service.verify_mfa(bundle.user.id, enroll_code, "sms")

        with pytest.raises(MfaRequiredError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD)
        login_code = notifier.of_kind("sms_mfa_code")[-1][1]

        signed_in = await auth_service.login(
            "alice@example.com", STRONG_PASSWORD, mfa_code=login_code
        )
        assert signed_in.user.id == bundle.user.id

    async def test_enrollment_is_inactive_until_verified(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        enrollment = await auth_service.enroll_mfa(bundle.user.id)

        assert enrollment.otpauth_url.startswith("otpauth://totp/")
        assert memory_store.get_user(bundle.user.id).mfa_enabled is False
        await auth_service.login("alice@example.com", STRONG_PASSWORD)

    async def test_enroll_twice_is_conflict(self, auth_service):
        bundle = await _register(auth_service)
        await _enable_totp(auth_service, bundle.user.id)

        with pytest.raises(ConflictError):
            await auth_service.enroll_mfa(bundle.user.id)

    async def test_disable_requires_valid_code(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        secret, _ = await _enable_totp(auth_service, bundle.user.id)
        code = auth_service.totp.generate_code(secret)

        with pytest.raises(MfaInvalidError):
            await auth_service.disable_mfa(bundle.user.id, _wrong_code(code))
        await auth_service.disable_mfa(bundle.user.id, code)

        user = memory_store.get_user(bundle.user.id)
        assert user.mfa_enabled is False and user.mfa_secret is None
        assert auth_service.recovery_codes.remaining(bundle.user.id) == 0

    async def test_regenerate_replaces_codes(self, auth_service):
        bundle = await _register(auth_service)
        secret, old_codes = await _enable_totp(auth_service, bundle.user.id)

        new_codes = await auth_service.regenerate_recovery_codes(
            bundle.user.id, auth_service.totp.generate_code(secret)
        )

        assert set(new_codes).isdisjoint(old_codes)
        assert not auth_service.recovery_codes.consume(bundle.user.id, old_codes[0])
        assert auth_service.recovery_codes.consume(bundle.user.id, new_codes[0])


class TestRefresh:
    async def test_refresh_rotates_within_session(self, auth_service):
        bundle = await _register(auth_service)

        refreshed = await auth_service.refresh(bundle.refresh_token)

        assert refreshed.session_id == bundle.session_id
        assert refreshed.refresh_token != bundle.refresh_token
        context = await auth_service.authenticate(refreshed.access_token)
        assert context.session_id == bundle.session_id

    async def test_replayed_refresh_token_revokes_session(self, auth_service, memory_store):
        """Presenting a rotated-away token kills the whole session."""
        bundle = await _register(auth_service)
        refreshed = await auth_service.refresh(bundle.refresh_token)

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.refresh(bundle.refresh_token)

        assert memory_store.get_session(bundle.session_id).revoked
        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.refresh(refreshed.refresh_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate(refreshed.access_token)

    async def test_refresh_after_session_idle_fails(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        stored = memory_store.sessions[bundle.session_id]
        memory_store.sessions[bundle.session_id] = replace(
            stored, last_used_at=_past(minutes=60)
        )

        with pytest.raises(SessionInvalidError):
            await auth_service.refresh(bundle.refresh_token)
        assert not await auth_service.tokens.is_refresh_token_valid(bundle.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        bundle = await _register(auth_service)

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.refresh(bundle.access_token)

    async def test_refresh_requires_a_tenant(self, auth_service):
        bundle = await auth_service.register("solo@example.com", STRONG_PASSWORD)
        assert bundle.user.tenant_access == []

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.refresh(bundle.refresh_token)


class TestPasswordChange:
    async def test_change_revokes_every_session(self, auth_service, notifier):
        first = await _register(auth_service)
        second = await auth_service.login("alice@example.com", STRONG_PASSWORD)

        await auth_service.change_password(first.user.id, STRONG_PASSWORD, NEW_PASSWORD)

        for bundle in (first, second):
            with pytest.raises(SessionInvalidError):
                await auth_service.authenticate(bundle.access_token)
            with pytest.raises(TokenInvalidOrExpiredError):
                await auth_service.refresh(bundle.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", STRONG_PASSWORD)
        fresh = await auth_service.login("alice@example.com", NEW_PASSWORD)
        assert (await auth_service.authenticate(fresh.access_token)).user_id == first.user.id
        assert notifier.of_kind("password_changed") == [("alice@example.com",)]

    async def test_wrong_current_password(self, auth_service):
        bundle = await _register(auth_service)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(bundle.user.id, "WrongPassword1", NEW_PASSWORD)

    async def test_recent_password_cannot_be_reused(self, auth_service):
        bundle = await _register(auth_service)

        with pytest.raises(PasswordReusedError):
            await auth_service.change_password(bundle.user.id, STRONG_PASSWORD, STRONG_PASSWORD)

        await auth_service.change_password(bundle.user.id, STRONG_PASSWORD, NEW_PASSWORD)
        with pytest.raises(PasswordReusedError):
            await auth_service.change_password(bundle.user.id, NEW_PASSWORD, STRONG_PASSWORD)

    async def test_history_lookback_follows_system_setting(self, auth_service, memory_store):
        bundle = await _register(auth_service)
        memory_store.set_system_setting("password_history_count", 1)
        await auth_service.change_password(bundle.user.id, STRONG_PASSWORD, NEW_PASSWORD)

        await auth_service.change_password(bundle.user.id, NEW_PASSWORD, STRONG_PASSWORD)


class TestPasswordReset:
    async def test_reset_flow(self, auth_service, notifier):
        registered = await _register(auth_service)

        response = await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        assert response == {"message": FORGOT_PASSWORD_MESSAGE}
        [(to_email, token, otp)] = notifier.of_kind("password_reset_otp")
        assert to_email == "alice@example.com"

        summary = await auth_service.reset_password(token, NEW_PASSWORD, otp)

        assert summary.id == registered.user.id
        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate(registered.access_token)
        await auth_service.login("alice@example.com", NEW_PASSWORD)
        assert notifier.of_kind("password_reset_success") == [("alice@example.com",)]

    async def test_reset_token_is_single_use(self, auth_service, notifier):
        await _register(auth_service)
        await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        [(_, token, otp)] = notifier.of_kind("password_reset_otp")
        await auth_service.reset_password(token, NEW_PASSWORD, otp)

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.reset_password(token, "AnotherPass88", otp)

    async def test_reset_requires_otp(self, auth_service, notifier):
        await _register(auth_service)
        await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        [(_, token, otp)] = notifier.of_kind("password_reset_otp")

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.reset_password(token, NEW_PASSWORD)
        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.reset_password(token, NEW_PASSWORD, "éééééé")
        await auth_service.reset_password(token, NEW_PASSWORD, otp)

    async def test_expired_reset_token_is_rejected(self, auth_service, memory_store, notifier):
        registered = await _register(auth_service)
        await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        [(_, token, otp)] = notifier.of_kind("password_reset_otp")
        stored = memory_store.users[registered.user.id]
        memory_store.users[registered.user.id] = replace(
            stored, password_reset_expires_at=_past()
        )

        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.reset_password(token, NEW_PASSWORD, otp)
        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.reset_password(token, NEW_PASSWORD, otp)
        await auth_service.login("alice@example.com", STRONG_PASSWORD)

    async def test_reset_to_recent_password_is_rejected(self, auth_service, notifier):
        await _register(auth_service)
        await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        [(_, token, otp)] = notifier.of_kind("password_reset_otp")

        with pytest.raises(PasswordReusedError):
            await auth_service.reset_password(token, STRONG_PASSWORD, otp)

    async def test_reset_unlocks_account(self, auth_service, notifier, settings):
        await _register(auth_service)
        await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        [(_, token, otp)] = notifier.of_kind("password_reset_otp")
        for _ in range(settings.max_failed_login_attempts - 1):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "WrongPassword1")

        await auth_service.reset_password(token, NEW_PASSWORD, otp)

        user = auth_service.credentials.find_by_email("alice@example.com")
        assert user.failed_login_attempts == 0


class TestAccountRecovery:
    async def test_recovery_without_mfa(self, auth_service, notifier):
        registered = await _register(auth_service)

        response = await auth_service.request_account_recovery("alice@example.com")
        await auth_service.notifications.drain()
        assert response["message"] == ACCOUNT_RECOVERY_MESSAGE
        [(_, token)] = notifier.of_kind("recovery_notification")
        assert response["recovery_token"] == token

        await auth_service.complete_account_recovery(token, NEW_PASSWORD)

        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate(registered.access_token)
        await auth_service.login("alice@example.com", NEW_PASSWORD)
        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.complete_account_recovery(token, "AnotherPass88")

    async def test_mfa_gate_when_enforced(self, auth_service, memory_store):
        """With enforcement on, recovery needs a valid second factor."""
        bundle = await _register(auth_service)
        secret, _ = await _enable_totp(auth_service, bundle.user.id)
        memory_store.set_system_setting("enforce_mfa_in_dev", True)
        token = (await auth_service.request_account_recovery("alice@example.com"))[
            "recovery_token"
        ]

        with pytest.raises(MfaRequiredError):
            await auth_service.complete_account_recovery(token, NEW_PASSWORD)
        code = auth_service.totp.generate_code(secret)
        with pytest.raises(MfaInvalidError):
            await auth_service.complete_account_recovery(token, NEW_PASSWORD, _wrong_code(code))

        await auth_service.complete_account_recovery(token, NEW_PASSWORD, code)

        await auth_service.login(
            "alice@example.com",
            NEW_PASSWORD,
            mfa_code=auth_service.totp.generate_code(secret),
        )

    async def test_mfa_gate_off_outside_production(self, auth_service):
        bundle = await _register(auth_service)
        await _enable_totp(auth_service, bundle.user.id)
        token = (await auth_service.request_account_recovery("alice@example.com"))[
            "recovery_token"
        ]

        await auth_service.complete_account_recovery(token, NEW_PASSWORD)

    async def test_mfa_gate_enforced_in_production(self, memory_store, settings, notifier):
        auth = AuthService(
            memory_store,
            None,
            settings.model_copy(update={"environment": Environment.PRODUCTION}),
            notifier=notifier,
        )
        bundle = await _register(auth)
        await _enable_totp(auth, bundle.user.id)
        response = await auth.request_account_recovery("alice@example.com")
        await auth.notifications.drain()
        assert "recovery_token" not in response
        [(_, token)] = notifier.of_kind("recovery_notification")

        with pytest.raises(MfaRequiredError):
            await auth.complete_account_recovery(token, NEW_PASSWORD)


class TestNonDisclosure:
    async def test_forgot_password_same_for_unknown_email(self, auth_service, notifier):
        await _register(auth_service)

        known = await auth_service.forgot_password("alice@example.com")
        await auth_service.notifications.drain()
        unknown = await auth_service.forgot_password("nobody@example.com")

        assert known == unknown
        assert len(notifier.of_kind("password_reset_otp")) == 1

    async def test_requests_do_not_wait_for_delivery(self, memory_store, settings):
        """A slow mail server must not make known accounts answer later."""
        mailer = GatedMailer()
        auth = AuthService(memory_store, None, settings, notifier=mailer)
        await _register(auth)

        reset = await asyncio.wait_for(auth.forgot_password("alice@example.com"), 1)
        recovery = await asyncio.wait_for(
            auth.request_account_recovery("alice@example.com"), 1
        )

        assert reset == {"message": FORGOT_PASSWORD_MESSAGE}
        assert recovery["message"] == ACCOUNT_RECOVERY_MESSAGE
        assert mailer.sent == []
        mailer.release.set()
        await auth.notifications.drain()
        assert sorted(mailer.sent) == ["password_reset_otp", "recovery_notification"]

    async def test_recovery_response_shape(self, auth_service):
        await _register(auth_service)

        known = await auth_service.request_account_recovery("alice@example.com")
        unknown = await auth_service.request_account_recovery("nobody@example.com")

        assert known["message"] == unknown["message"]
        assert "recovery_token" not in unknown

    async def test_recovery_identical_in_production(self, memory_store, settings, notifier):
        auth = AuthService(
            memory_store,
            None,
            settings.model_copy(update={"environment": Environment.PRODUCTION}),
            notifier=notifier,
        )
        await _register(auth)

        known = await auth.request_account_recovery("alice@example.com")
        unknown = await auth.request_account_recovery("nobody@example.com")

        assert known == unknown == {"message": ACCOUNT_RECOVERY_MESSAGE}


class TestSessionsAndTenants:
    async def test_only_owner_can_revoke_session(self, auth_service):
        alice = await _register(auth_service)
        bob = await _register(auth_service, email="bob@example.com", organization="Bobco")

        with pytest.raises(SessionInvalidError):
            await auth_service.revoke_session(alice.session_id, bob.user.id)

        assert (await auth_service.authenticate(alice.access_token)).user_id == alice.user.id
        await auth_service.revoke_session(alice.session_id, alice.user.id)
        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate(alice.access_token)

    async def test_list_sessions_and_status(self, auth_service):
        first = await _register(auth_service)
        second = await auth_service.login("alice@example.com", STRONG_PASSWORD)

        sessions = await auth_service.list_sessions(first.user.id)
        assert {s.id for s in sessions} == {first.session_id, second.session_id}

        status = await auth_service.session_status(first.user.id, second.session_id)
        assert status["valid"] is True and status["remaining_seconds"] > 0

        await auth_service.logout(second.session_id, actor=first.user.id)
        status = await auth_service.session_status(first.user.id, second.session_id)
        assert status == {"valid": False, "remaining_seconds": 0}
        with pytest.raises(TokenInvalidOrExpiredError):
            await auth_service.refresh(second.refresh_token)

    async def test_tenant_access_is_limited_to_memberships(self, auth_service):
        alice = await _register(auth_service)
        bob = await _register(auth_service, email="bob@example.com", organization="Bobco")
        beta = auth_service.tenants.create_tenant("Beta", owner_id=alice.user.id)

        bundle = await auth_service.login("alice@example.com", STRONG_PASSWORD)
        claims = auth_service.issuer.verify(bundle.access_token, ACCESS)

        assert set(claims["tenant_access"]) == {alice.user.tenant_id, beta.id}
        assert claims["tenant_id"] == alice.user.tenant_id
        require_tenant_access(claims, beta.id)
        with pytest.raises(TenantAccessDeniedError):
            require_tenant_access(claims, bob.user.tenant_id)

    async def test_accepted_invitation_grants_access_on_refresh(self, auth_service, notifier):
        alice = await _register(auth_service)
        bob = await _register(auth_service, email="bob@example.com", organization="Bobco")
        await auth_service.tenants.invite(
            alice.user.tenant_id, "bob@example.com", invited_by=alice.user.id
        )
        [(_, tenant_name, token)] = notifier.of_kind("tenant_invitation")
        assert tenant_name == "Acme"

        auth_service.tenants.accept_invitation(token, bob.user.id)
        refreshed = await auth_service.refresh(bob.refresh_token)

        assert alice.user.tenant_id in refreshed.user.tenant_access
        assert refreshed.user.tenant_id == bob.user.tenant_id
