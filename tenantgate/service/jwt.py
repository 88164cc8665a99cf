from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Iterable, Optional

from tenantgate.config import MIN_JWT_SECRET_LENGTH, Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import ConfigurationError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)


def build_claims(
    *,
    user_id: str,
    email: str,
    role: str,
    tenant_id: Optional[str],
    tenant_access: Iterable[str],
    session_id: str,
) -> dict[str, Any]:
    """Claims shared by both halves of a token pair."""

    return {
        "sub": user_id,
        "email": email,
        "role": role,
        "tenant_id": tenant_id,
        "tenant_access": list(tenant_access),
        "session_id": session_id,
    }


class TokenIssuer:
    """Stateless HS256 signer and verifier for access and refresh tokens."""

    def __init__(self, settings: Settings, *, logger=logger) -> None:
        self.settings = settings
        self.logger = logger
        self._leeway_seconds = 30

    def check_configuration(self) -> None:
        secret = self.settings.jwt_secret
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT_SECRET must be set and at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        for token_type in TOKEN_TYPES:
            self.ttl_seconds(token_type)

    def ttl_seconds(self, token_type: str) -> int:
        if token_type == ACCESS:
            ttl = self.settings.access_token_ttl_seconds
        elif token_type == REFRESH:
            ttl = self.settings.refresh_token_ttl_seconds
        else:
            raise ConfigurationError(f"unknown token type {token_type!r}")
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ConfigurationError(f"{token_type} token TTL must be a positive integer")
        return ttl

    def _secret(self) -> bytes:
        secret = self.settings.jwt_secret
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError("signing key is not configured")
        return secret.encode()

    def sign(self, claims: dict[str, Any], token_type: str) -> str:
        """Mint a token of ``token_type`` carrying ``claims``."""

        ttl = self.ttl_seconds(token_type)
        now = int(time.time())
        payload = {
            **claims,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            # two tokens minted in the same second must still differ
            "jti": secrets.token_hex(16),
        }
        return self.encode(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for any defect."""

        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected = self._signature(signing_input)
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway_seconds:
            return None
        if payload.get("type") not in TOKEN_TYPES:
            return None
        if not payload.get("sub") or not payload.get("session_id"):
            return None
        return payload

    def verify(self, token: str, expected_type: str) -> Optional[dict[str, Any]]:
        payload = self.decode(token)
        if payload is None or payload.get("type") != expected_type:
            return None
        return payload
