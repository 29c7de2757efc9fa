import os
import stat

import pytest
from pydantic import ValidationError

from taskmanager.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_declared_env_names(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("STRICT_TASK_READS", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test, http://b.test")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.strict_task_reads is True
    assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]


def test_token_ttl_defaults():
    settings = Settings(jwt_secret="x" * 40)
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 10 * 24 * 60


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, access_token_ttl_minutes=0)


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    secret_file = tmp_path / ".jwt_secret"
    assert first.jwt_secret == second.jwt_secret
    assert secret_file.read_text() == first.jwt_secret
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "7")
    reset_settings_cache()
    assert get_settings().access_token_ttl_minutes == 7
    reset_settings_cache()
