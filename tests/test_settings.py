import logging

from extrand.core import logging_config
from extrand.core.settings import Settings


def test_settings_read_from_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./extrand.db")
    monkeypatch.setenv("EXTRAND_LOG_LEVEL", "debug")

    settings = Settings()

    assert settings.DATABASE_URL == "sqlite:///./extrand.db"
    assert settings.LOG_LEVEL == "DEBUG"
    assert settings.MAX_STRATIFICATION_FACTORS == 15


def test_configure_logging_uses_configured_level(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(logging_config.config_settings, "LOG_LEVEL", "WARNING")

    logging_config.configure_logging()
    logging_config.configure_logging("DEBUG")

    assert [c["level"] for c in calls] == ["WARNING", "DEBUG"]
