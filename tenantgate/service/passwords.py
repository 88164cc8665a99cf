from __future__ import annotations

import re
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.service.errors import WeakPasswordError

logger = get_logger(__name__)

_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")


class PasswordManager:
    """argon2id hashing plus the password strength policy.

    Hashing is deliberately CPU-expensive; the work factor comes from
    settings so tests can run with cheap parameters.
    """

    def __init__(self, settings: Settings, *, logger=logger) -> None:
        self.settings = settings
        self.logger = logger
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # verified against unknown accounts so failures take comparable time
        self._dummy_hash = self._hasher.hash("tenantgate-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash or password is None:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unverifiable")
            return False

    def dummy_verify(self, password: str) -> None:
        """Burn one verification for an identifier that does not exist."""
        self.verify(self._dummy_hash, password or "")

    def strength_problems(self, password: str) -> List[str]:
        problems: List[str] = []
        if not password or len(password) < self.settings.password_min_length:
            problems.append(
                f"must be at least {self.settings.password_min_length} characters"
            )
        if self.settings.password_require_numbers and not any(
            ch.isdigit() for ch in password or ""
        ):
            problems.append("must contain a number")
        if self.settings.password_require_special and not _SPECIAL_CHARS.search(
            password or ""
        ):
            problems.append("must contain a special character")
        return problems

    def validate_strength(self, password: str) -> None:
        problems = self.strength_problems(password)
        if problems:
            raise WeakPasswordError(
                "password does not meet requirements", detail={"problems": problems}
            )
