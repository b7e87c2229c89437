import pytest

from core import config as config_module


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_critical_window_cannot_exceed_warning_window(monkeypatch):
    monkeypatch.setenv("EXPIRY_CRITICAL_DAYS", "45")
    monkeypatch.setenv("EXPIRY_WARNING_DAYS", "30")

    with pytest.raises(ValueError, match="expiry_critical_days"):
        config_module.get_settings()


def test_lookback_outside_supported_range(monkeypatch):
    monkeypatch.setenv("VELOCITY_LOOKBACK_DAYS", "120")

    with pytest.raises(ValueError, match="velocity_lookback_days"):
        config_module.get_settings()


def test_malformed_cron_is_blocked(monkeypatch):
    monkeypatch.setenv("THRESHOLD_CHECK_CRON", "every two hours")

    with pytest.raises(ValueError, match="threshold_check_cron"):
        config_module.get_settings()


def test_local_defaults_load(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")

    settings = config_module.get_settings()
    assert settings.app_env == "local"
    assert settings.expiry_check_cron == "0 */6 * * *"
    assert settings.alert_dedup_window_hours == 24
