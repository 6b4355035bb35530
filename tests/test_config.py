import pytest
from pydantic import ValidationError

from gatekeep.config import Settings, get_settings, reset_settings_cache
from gatekeep.service.runtime import reset_runtime_for_tests


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)
        assert settings.password_reset_token_ttl_minutes == 60
        assert settings.verification_token_ttl_minutes == 60
        assert settings.two_factor_token_ttl_minutes == 5
        assert settings.jwt_issuer == "gatekeep"

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, two_factor_token_ttl_minutes=0)

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TWO_FACTOR_TOKEN_TTL_MINUTES", "3")
        monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
        settings = Settings.from_env()
        assert settings.two_factor_token_ttl_minutes == 3
        assert settings.smtp_host == "smtp.example.com"

    def test_from_env_reads_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("APP_BASE_URL", raising=False)
        (tmp_path / ".env").write_text("APP_BASE_URL=https://auth.example.com\n")
        assert Settings.from_env().app_base_url == "https://auth.example.com"

    def test_environment_wins_over_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("JWT_ISSUER=from-file\n")
        monkeypatch.setenv("JWT_ISSUER", "from-env")
        assert Settings.from_env().jwt_issuer == "from-env"


class TestJwtSecret:
    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_explicit_secret_kept(self):
        assert Settings(jwt_secret="explicit-secret").jwt_secret == "explicit-secret"


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("JWT_ISSUER", "changed")
    reset_settings_cache()
    assert get_settings().jwt_issuer == "changed"


class TestPasswordMinLength:
    @pytest.mark.parametrize("value", [0, 129])
    def test_out_of_range_rejected(self, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, password_min_length=value)

    async def test_runtime_actions_use_configured_minimum(self, monkeypatch):
        monkeypatch.setenv("PASSWORD_MIN_LENGTH", "12")
        runtime = reset_runtime_for_tests()

        result = await runtime.actions.new_password({"password": "short6"}, "any-token")

        assert result.error == "Invalid fields!"
