"""Tests for the password history ledger."""

import pytest

from tenantgate.service.password_history import PasswordHistoryLedger
from tenantgate.service.passwords import PasswordManager
from tenantgate.storage.models import UserCredential, new_id


@pytest.fixture
def passwords(settings):
    return PasswordManager(settings)


@pytest.fixture
def ledger(memory_store, passwords):
    return PasswordHistoryLedger(memory_store, passwords)


@pytest.fixture
def user_id(memory_store, passwords):
    user = UserCredential(id=new_id(), email="hist@example.com", password_hash=passwords.hash("Initial111"))
    return memory_store.create_user(user).id


def _seed(ledger, passwords, user_id, plaintexts):
    for plaintext in plaintexts:
        ledger.add_to_history(user_id, passwords.hash(plaintext))


class TestPasswordHistory:
    def test_match_within_lookback(self, ledger, passwords, user_id):
        _seed(ledger, passwords, user_id, ["First111", "Second222", "Third333"])

        assert ledger.is_password_in_history(user_id, "Third333", 1)
        assert ledger.is_password_in_history(user_id, "Second222", 2)

    def test_no_match_outside_lookback(self, ledger, passwords, user_id):
        """Only the last ``k`` entries by recency count."""
        _seed(ledger, passwords, user_id, ["First111", "Second222", "Third333"])

        assert not ledger.is_password_in_history(user_id, "First111", 2)
        assert ledger.is_password_in_history(user_id, "First111", 3)

    def test_zero_lookback_never_matches(self, ledger, passwords, user_id):
        _seed(ledger, passwords, user_id, ["First111"])

        assert not ledger.is_password_in_history(user_id, "First111", 0)

    def test_unknown_password_does_not_match(self, ledger, passwords, user_id):
        _seed(ledger, passwords, user_id, ["First111"])

        assert not ledger.is_password_in_history(user_id, "Different444", 5)

    def test_prune_keeps_most_recent(self, ledger, passwords, user_id, memory_store):
        _seed(ledger, passwords, user_id, ["First111", "Second222", "Third333", "Fourth444"])

        removed = ledger.prune_history(user_id, 2)

        assert removed == 2
        remaining = memory_store.list_password_history(user_id, 10)
        assert len(remaining) == 2
        assert ledger.is_password_in_history(user_id, "Fourth444", 10)
        assert ledger.is_password_in_history(user_id, "Third333", 10)
        assert not ledger.is_password_in_history(user_id, "First111", 10)
