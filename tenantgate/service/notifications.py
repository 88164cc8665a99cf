from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from tenantgate.config import Settings
from tenantgate.logging import get_logger

logger = get_logger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Notifier(Protocol):
    """Outbound messages sent to account holders."""

    def send_password_reset_otp(self, to_email: str, token: str, otp: str) -> bool: ...

    def send_password_reset_success(self, to_email: str) -> bool: ...

    def send_recovery_notification(self, to_email: str, token: str) -> bool: ...

    def send_account_recovery_success(self, to_email: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_sms_mfa_code(self, phone_number: str, code: str) -> bool: ...

    def send_tenant_invitation(self, to_email: str, tenant_name: str, token: str) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...


class LoggingNotifier:
    """Development notifier: records that a message would have been sent."""

    def __init__(self, *, logger=logger) -> None:
        self.logger = logger

    def _log(self, kind: str, recipient: str) -> bool:
        self.logger.info("notification_logged", kind=kind, to=redact_email(recipient))
        return True

    def send_password_reset_otp(self, to_email: str, token: str, otp: str) -> bool:
        return self._log("password_reset_otp", to_email)

    def send_password_reset_success(self, to_email: str) -> bool:
        return self._log("password_reset_success", to_email)

    def send_recovery_notification(self, to_email: str, token: str) -> bool:
        return self._log("account_recovery", to_email)

    def send_account_recovery_success(self, to_email: str) -> bool:
        return self._log("account_recovery_success", to_email)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._log("email_verification", to_email)

    def send_sms_mfa_code(self, phone_number: str, code: str) -> bool:
        self.logger.info("notification_logged", kind="sms_mfa_code", to="redacted")
        return True

    def send_tenant_invitation(self, to_email: str, tenant_name: str, token: str) -> bool:
        return self._log("tenant_invitation", to_email)

    def send_password_changed(self, to_email: str) -> bool:
        return self._log("password_changed", to_email)


class EmailNotifier:
    """SMTP notifier with TLS/SSL support.

    When no SMTP host is configured, messages are logged instead of sent.
    SMS delivery needs a gateway this notifier does not have, so SMS codes
    are reported as undeliverable.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "TenantGate",
        base_url: Optional[str] = None,
        logger=logger,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.logger = logger

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, paragraphs: list[str], link: Optional[str] = None) -> tuple[str, str]:
        text_parts = [title, ""] + paragraphs
        html_parts = [f"<h1>{html.escape(title)}</h1>"]
        html_parts += [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if link:
            text_parts += ["", link]
            safe = html.escape(link, quote=True)
            html_parts.append(f'<p><a href="{safe}">{safe}</a></p>')
        text_parts += ["", "---", self.from_name]
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
            + "".join(html_parts)
            + f"<p style=\"font-size: 12px; color: #5b6470;\">{html.escape(self.from_name)}</p>"
            + "</body></html>"
        )
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            self.logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            self.logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            self.logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            self.logger.error("email_recipient_refused", to=redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            self.logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except (ssl.SSLError, OSError) as e:
            self.logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

    def send_password_reset_otp(self, to_email: str, token: str, otp: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"Your one-time code is {otp}. It expires in 10 minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=f"{self.base_url}/reset-password?token={token}",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_password_reset_success(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was reset",
            [
                "The password for your account has been reset and all sessions were signed out.",
                "If you didn't make this change, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was reset", html_body, text_body)

    def send_recovery_notification(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            "Recover your account",
            [
                "Use the link below to recover access to your account. It expires in 1 hour.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=f"{self.base_url}/account-recovery?token={token}",
        )
        return self._send_email(to_email, "Recover your account", html_body, text_body)

    def send_account_recovery_success(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Account recovered",
            [
                "Your account was recovered and a new password was set.",
                "All previous sessions have been signed out.",
            ],
        )
        return self._send_email(to_email, "Account recovered", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please verify your email address.",
                "This link will expire in 24 hours.",
            ],
            link=f"{self.base_url}/verify-email?token={token}",
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)

    def send_sms_mfa_code(self, phone_number: str, code: str) -> bool:
        self.logger.warning("sms_gateway_not_configured")
        return False

    def send_tenant_invitation(self, to_email: str, tenant_name: str, token: str) -> bool:
        subject = f"You're invited to join {tenant_name}"
        html_body, text_body = self._render(
            subject,
            [f"You have been invited to join {tenant_name}. The invitation expires in 7 days."],
            link=f"{self.base_url}/invitations/accept?token={token}",
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was changed and all sessions were signed out.",
                "If you didn't make this change, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)


class NotificationDispatcher:
    """Fire-and-forget wrapper: delivery problems are logged, never raised.

    ``send`` waits for delivery. ``dispatch`` schedules it on the running
    loop and returns at once, so the caller's latency does not depend on
    whether anything was sent.
    """

    def __init__(self, notifier: Notifier, *, logger=logger) -> None:
        self.notifier = notifier
        self.logger = logger
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, kind: str, *args) -> asyncio.Task:
        task = asyncio.create_task(self.send(kind, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched notification to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def send(self, kind: str, *args) -> bool:
        method = getattr(self.notifier, f"send_{kind}", None)
        if method is None:
            self.logger.error("notification_kind_unknown", kind=kind)
            return False
        try:
            delivered = await asyncio.to_thread(method, *args)
        except Exception as exc:
            self.logger.error(
                "notification_failed", kind=kind, error_type=type(exc).__name__
            )
            return False
        if not delivered:
            self.logger.warning("notification_not_delivered", kind=kind)
        return bool(delivered)
