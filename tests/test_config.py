import pytest
from pydantic import ValidationError

from credkeep.config import Settings, _load_or_create_secret


def test_generated_secret_is_persisted_and_reused(tmp_path):
    first = _load_or_create_secret(tmp_path)
    second = _load_or_create_secret(tmp_path)

    assert first == second
    assert (tmp_path / ".jwt_secret").read_text() == first
    assert (tmp_path / ".jwt_secret").stat().st_mode & 0o077 == 0


def test_short_persisted_secret_is_replaced(tmp_path):
    (tmp_path / ".jwt_secret").write_text("short")

    secret = _load_or_create_secret(tmp_path)

    assert secret != "short"
    assert len(secret) >= 32


def test_missing_jwt_secret_falls_back_to_shared_root(tmp_path, monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    settings = Settings()

    assert settings.jwt_secret == (tmp_path / ".jwt_secret").read_text()


def test_from_env_reads_named_variables(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
    monkeypatch.setenv("FRONTEND_URL", "https://app.example.com/")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.rotate_refresh_tokens is True
    assert settings.frontend_url == "https://app.example.com"


def test_dotenv_is_used_when_env_is_unset(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("APP_NAME", raising=False)
    (tmp_path / ".env").write_text("APP_NAME=from-dotenv\n")

    assert Settings.from_env().app_name == "from-dotenv"


def test_defaults_match_token_lifetimes():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 7
    assert settings.password_reset_ttl_minutes == 60
    assert settings.email_verification_ttl_hours == 24
    assert settings.rotate_refresh_tokens is False


def test_samesite_is_unset_unless_configured():
    assert Settings(jwt_secret="x" * 40).cookie_samesite is None
    assert Settings(jwt_secret="x" * 40, cookie_samesite="").cookie_samesite is None
    assert Settings(jwt_secret="x" * 40, cookie_samesite=" Lax ").cookie_samesite == "lax"


def test_samesite_rejects_unknown_values():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, cookie_samesite="sometimes")


def test_app_import_reuses_cached_settings(tmp_path, monkeypatch):
    """Loading the app resolves a missing JWT secret once, through get_settings."""
    import importlib

    from credkeep import app as app_module
    from credkeep import config

    calls = []
    real = config._load_or_create_secret

    def counting(fs_root):
        calls.append(fs_root)
        return real(fs_root)

    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setattr(config, "_load_or_create_secret", counting)
    config.reset_settings_cache()

    importlib.reload(app_module)

    assert len(calls) == 1
    assert config.get_settings().jwt_secret == (tmp_path / ".jwt_secret").read_text()
