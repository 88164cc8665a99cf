import asyncio
import inspect
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from tenantgate.config import Settings  # noqa: E402
from tenantgate.service.auth import AuthService  # noqa: E402
from tenantgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "CorrectHorse42"


class RecordingNotifier:
    """Captures outbound notifications instead of delivering them."""

    def __init__(self):
        self.sent = []

    def _record(self, kind, *args):
        self.sent.append((kind, args))
        return True

    def of_kind(self, kind):
        return [args for sent_kind, args in self.sent if sent_kind == kind]

    def send_password_reset_otp(self, to_email, token, otp):
        return self._record("password_reset_otp", to_email, token, otp)

    def send_password_reset_success(self, to_email):
        return self._record("password_reset_success", to_email)

    def send_recovery_notification(self, to_email, token):
        return self._record("recovery_notification", to_email, token)

    def send_account_recovery_success(self, to_email):
        return self._record("account_recovery_success", to_email)

    def send_email_verification(self, to_email, token):
        return self._record("email_verification", to_email, token)

    def send_sms_mfa_code(self, phone_number, code):
        return self._record("sms_mfa_code", phone_number, code)

    def send_tenant_invitation(self, to_email, tenant_name, token):
        return self._record("tenant_invitation", to_email, tenant_name, token)

    def send_password_changed(self, to_email):
        return self._record("password_changed", to_email)


@pytest.fixture
def settings():
    """Test settings with cheap argon2 parameters."""
    return Settings(
        environment="test",
        use_memory_store=True,
        jwt_secret=TEST_SECRET,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, settings, notifier):
    return AuthService(memory_store, None, settings, notifier=notifier)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
