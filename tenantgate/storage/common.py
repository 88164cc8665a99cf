"""Storage utilities shared between the memory and postgres implementations.

Keeps the one-time-token column mapping, e-mail normalisation and token
digesting identical across backends.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Any, Dict, Optional

from tenantgate.storage.errors import ConstraintViolation


@dataclass(frozen=True)
class TokenFields:
    """Column names backing one kind of one-time token on the user row."""

    token: str
    expires_at: str
    otp: Optional[str] = None
    otp_expires_at: Optional[str] = None

    @property
    def columns(self) -> tuple[str, ...]:
        cols = [self.token, self.expires_at]
        if self.otp:
            cols.extend([self.otp, self.otp_expires_at])
        return tuple(cols)


TOKEN_KINDS: Dict[str, TokenFields] = {
    "email_verification": TokenFields(
        "email_verification_token", "email_verification_expires_at"
    ),
    "password_reset": TokenFields(
        "password_reset_token",
        "password_reset_expires_at",
        "password_reset_otp",
        "password_reset_otp_expires_at",
    ),
    "account_recovery": TokenFields(
        "account_recovery_token", "account_recovery_expires_at"
    ),
}


def token_fields(kind: str) -> TokenFields:
    """Return the column mapping for a token kind.

    Raises:
        ValueError: if ``kind`` is not a known one-time token kind
    """
    try:
        return TOKEN_KINDS[kind]
    except KeyError as exc:
        raise ValueError(f"unknown token kind: {kind}") from exc


# Columns callers may change through update_user; identity and the
# one-time token columns have dedicated operations.
USER_UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "role",
        "is_active",
        "email_verified",
        "failed_login_attempts",
        "locked_until",
        "last_login_at",
        "mfa_enabled",
        "mfa_type",
        "mfa_secret",
        "sms_code",
        "sms_code_expires_at",
        "phone_number",
        *(col for fields in TOKEN_KINDS.values() for col in fields.columns),
    }
)


def check_user_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - USER_UPDATABLE_FIELDS
    if unknown:
        raise ConstraintViolation(
            "unknown user fields", {"fields": sorted(unknown)}
        )


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store refresh tokens and recovery codes."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", (name or "").strip().lower()).strip("-")
    return slug or "tenant"


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalise an IP address value; invalid input is dropped.

    Args:
        raw_ip: Raw IP address value (string, object, or None)

    Returns:
        Canonical string form or None
    """
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
