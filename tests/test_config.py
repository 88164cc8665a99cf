import pytest
from pydantic import ValidationError

from tenantgate.config import (
    Environment,
    Settings,
    get_settings,
    reset_settings_cache,
    system_setting_defaults,
)


@pytest.fixture
def fresh_settings(monkeypatch):
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_environment_variables_override_defaults(monkeypatch, fresh_settings):
    monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("SESSION_INACTIVITY_TIMEOUT_MINUTES", "45")

    settings = get_settings()

    assert settings.max_failed_login_attempts == 7
    assert settings.session_inactivity_timeout_minutes == 45
    assert get_settings() is settings


def test_reset_rereads_environment(monkeypatch, fresh_settings):
    monkeypatch.setenv("PASSWORD_HISTORY_COUNT", "3")
    assert get_settings().password_history_count == 3

    monkeypatch.setenv("PASSWORD_HISTORY_COUNT", "9")
    reset_settings_cache()

    assert get_settings().password_history_count == 9


@pytest.mark.parametrize("raw", ["dev", "LOCAL", " development "])
def test_development_aliases(raw):
    settings = Settings(environment=raw)
    assert settings.environment == Environment.DEVELOPMENT
    assert not settings.is_production


def test_production_is_default():
    assert Settings().is_production


def test_unknown_environment_is_rejected():
    with pytest.raises(ValidationError):
        Settings(environment="staging")


def test_blank_jwt_secret_counts_as_missing():
    assert Settings(jwt_secret="   ").jwt_secret is None


def test_system_setting_defaults_follow_settings():
    settings = Settings(
        password_history_count=4,
        session_inactivity_timeout_minutes=15,
        enforce_mfa_in_dev=True,
    )

    assert system_setting_defaults(settings) == {
        "enforce_mfa_in_dev": True,
        "password_history_count": 4,
        "global_session_timeout_minutes": 15,
    }
