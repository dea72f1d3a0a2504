import pytest
from pydantic import ValidationError

from schoolauth import config
from schoolauth.config import Settings, TenantStrategy

SECRET = "x" * 40


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.max_login_attempts == 5
    assert settings.lockout_duration_minutes == 30
    assert settings.password_reset_ttl_minutes == 60
    assert settings.tenant_strategy is TenantStrategy.HEADER
    assert settings.require_registered_tenant is True


@pytest.mark.parametrize("secret", [None, "", "too-short"])
def test_jwt_secret_required_and_long_enough(secret):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=secret)


def test_jwt_secret_missing_entirely():
    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("header", TenantStrategy.HEADER),
        ("SUBDOMAIN", TenantStrategy.SUBDOMAIN),
        (" Hybrid ", TenantStrategy.HYBRID),
    ],
)
def test_tenant_strategy_parsing(raw, expected):
    assert Settings(jwt_secret=SECRET, tenant_strategy=raw).tenant_strategy is expected


def test_unknown_tenant_strategy_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, tenant_strategy="cookie")


@pytest.mark.parametrize("field", ["max_login_attempts", "lockout_duration_minutes", "access_token_ttl_minutes"])
def test_positive_limits(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, **{field: 0})


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("TENANT_STRATEGY", "subdomain")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")

    settings = Settings.from_env()
    assert settings.jwt_secret == SECRET
    assert settings.max_login_attempts == 3
    assert settings.tenant_strategy is TenantStrategy.SUBDOMAIN
    assert settings.use_memory_store is True


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LOCKOUT_DURATION_MINUTES", raising=False)
    (tmp_path / ".env").write_text("LOCKOUT_DURATION_MINUTES=45\n")

    assert Settings.from_env().lockout_duration_minutes == 45


def test_get_settings_is_cached_until_reset(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    config.reset_settings_cache()
    first = config.get_settings()
    assert config.get_settings() is first

    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
    assert config.get_settings().max_login_attempts == first.max_login_attempts
    config.reset_settings_cache()
    assert config.get_settings().max_login_attempts == 7
    config.reset_settings_cache()
