from __future__ import annotations

from tenantgate.logging import get_logger
from tenantgate.service.passwords import PasswordManager
from tenantgate.storage.base import AuthStore
from tenantgate.storage.models import PasswordHistoryEntry

logger = get_logger(__name__)


class PasswordHistoryLedger:
    """Append-only record of previous password hashes per user."""

    def __init__(self, store: AuthStore, passwords: PasswordManager, *, logger=logger) -> None:
        self.store = store
        self.passwords = passwords
        self.logger = logger

    def add_to_history(self, user_id: str, password_hash: str) -> PasswordHistoryEntry:
        return self.store.add_password_history(user_id, password_hash)

    def is_password_in_history(
        self, user_id: str, plaintext: str, lookback_count: int
    ) -> bool:
        """True iff ``plaintext`` matches one of the last ``lookback_count`` hashes."""

        for entry in self.store.list_password_history(user_id, lookback_count):
            if self.passwords.verify(entry.password_hash, plaintext):
                return True
        return False

    def prune_history(self, user_id: str, keep_count: int) -> int:
        removed = self.store.prune_password_history(user_id, keep_count)
        if removed:
            self.logger.debug("password_history_pruned", user_id=user_id, removed=removed)
        return removed
