from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote, urlencode

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.storage.base import AuthStore
from tenantgate.storage.common import hash_token
from tenantgate.storage.models import UserCredential

logger = get_logger(__name__)

TOTP = "totp"
SMS = "sms"

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class MfaFactor(Protocol):
    """A second factor that can check a code for an account."""

    type: str

    def verify(self, user: UserCredential, code: str) -> bool: ...


class TotpFactor:
    """RFC 6238 time-based codes (HMAC-SHA1, 30 second steps, 6 digits)."""

    type = TOTP

    def __init__(self, settings: Settings, *, logger=logger) -> None:
        self.settings = settings
        self.logger = logger

    def generate_secret(self) -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        if timestamp is None:
            timestamp = time.time()
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def verify_secret(self, secret: Optional[str], code: Optional[str]) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        window = max(0, self.settings.totp_window)
        now = time.time()
        for step in range(-window, window + 1):
            generated = self.generate_code(secret, now + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated.encode(), code.encode()):
                return True
        return False

    def verify(self, user: UserCredential, code: str) -> bool:
        return self.verify_secret(user.mfa_secret, code)


class SmsFactor:
    """Short-lived numeric codes delivered out of band, single use."""

    type = SMS

    def __init__(self, store: AuthStore, settings: Settings, *, logger=logger) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def issue_code(self, user: UserCredential) -> str:
        code = str(secrets.randbelow(10**TOTP_DIGITS)).zfill(TOTP_DIGITS)
        expires = datetime.now(timezone.utc) + timedelta(
            minutes=self.settings.sms_code_ttl_minutes
        )
        self.store.update_user(user.id, sms_code=code, sms_code_expires_at=expires)
        return code

    def verify(self, user: UserCredential, code: str) -> bool:
        if not code or not code.strip():
            return False
        return self.store.consume_sms_code(
            user.id, code.strip(), datetime.now(timezone.utc)
        )


class RecoveryCodeManager:
    """One-time recovery codes stored as digests, one row per code."""

    def __init__(self, store: AuthStore, settings: Settings, *, logger=logger) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    @staticmethod
    def _normalize(code: str) -> str:
        return code.strip().lower().replace("-", "").replace(" ", "")

    def hash_code(self, code: str) -> str:
        return hash_token(self._normalize(code))

    def generate(self, user_id: str) -> List[str]:
        """Replace the user's codes with a fresh batch and return them once."""

        codes = []
        for _ in range(self.settings.mfa_recovery_code_count):
            raw = secrets.token_hex(5)
            codes.append(f"{raw[:5]}-{raw[5:]}")
        self.store.replace_recovery_codes(user_id, [self.hash_code(c) for c in codes])
        self.logger.info("mfa_recovery_codes_generated", user_id=user_id, count=len(codes))
        return codes

    def consume(self, user_id: str, code: Optional[str]) -> bool:
        if not code or not self._normalize(code):
            return False
        used = self.store.consume_recovery_code(
            user_id, self.hash_code(code), datetime.now(timezone.utc)
        )
        if used:
            self.logger.info(
                "mfa_recovery_code_used",
                user_id=user_id,
                remaining=self.store.count_unused_recovery_codes(user_id),
            )
        return used

    def remaining(self, user_id: str) -> int:
        return self.store.count_unused_recovery_codes(user_id)


def build_factor_registry(store: AuthStore, settings: Settings) -> Dict[str, MfaFactor]:
    return {
        TOTP: TotpFactor(settings),
        SMS: SmsFactor(store, settings),
    }
