import importlib
import sys

import pytest

STRONG_KEY = "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"


def reload_config_module():
    config_module = sys.modules.get("tessera.config")
    if config_module:
        config_module.get_settings.cache_clear()
        sys.modules.pop("tessera.config", None)
    return importlib.import_module("tessera.config")


def test_missing_secret_key_fails_closed(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="secret_key|SECRET_KEY"):
        config_module.get_settings()


def test_weak_secret_key_fails_closed(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "changeme-in-production")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="secret_key|SECRET_KEY"):
        config_module.get_settings()


def test_low_entropy_secret_key_fails_closed(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "a" * 64)

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="entropy"):
        config_module.get_settings()


def test_strong_secret_key_passes(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", STRONG_KEY)
    monkeypatch.delenv("FINGERPRINT_SALT", raising=False)

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()
    settings = config_module.get_settings()

    assert settings.secret_key == STRONG_KEY
    assert settings.effective_fingerprint_salt == STRONG_KEY
    assert settings.access_token_expire_minutes == 15
    assert settings.session_expire_days == 7


def test_fingerprint_salt_overrides_secret_key(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", STRONG_KEY)
    monkeypatch.setenv("FINGERPRINT_SALT", "separate-salt")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    assert config_module.get_settings().effective_fingerprint_salt == "separate-salt"


def test_unknown_log_format_is_rejected(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", STRONG_KEY)
    monkeypatch.setenv("LOG_FORMAT", "xml")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="LOG_FORMAT"):
        config_module.get_settings()
