import pytest

from consultas.config import EngineConfig
from consultas.errors import ConfigurationError

ENV_KEYS = (
    "CAPTCHA_PROVIDER",
    "CAPMONSTER_API_KEY",
    "CAPTCHA_API_KEY",
    "MAX_ATTEMPTS",
    "BACKOFF_BASE_S",
    "HEADLESS",
    "SOLVER_TIMEOUT_WIDGET_S",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv primero para que monkeypatch restaure también lo que cargue load_dotenv
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


class TestFromEnv:
    def test_defaults(self, tmp_path):
        config = EngineConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.solver_provider == "capmonster"
        assert config.max_attempts == 3
        assert config.solver_timeout_widget_s == 300
        assert config.headless is True

    def test_reads_values(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CAPTCHA_PROVIDER", "2Captcha")
        monkeypatch.setenv("MAX_ATTEMPTS", "5")
        monkeypatch.setenv("BACKOFF_BASE_S", "4.5")
        monkeypatch.setenv("HEADLESS", "false")

        config = EngineConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.solver_provider == "2captcha"
        assert config.max_attempts == 5
        assert config.backoff_base_s == 4.5
        assert config.headless is False

    def test_malformed_number_falls_back_to_default(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MAX_ATTEMPTS", "tres")

        config = EngineConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.max_attempts == 3

    def test_loads_dotenv_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("CAPMONSTER_API_KEY=cm-key\nSOLVER_TIMEOUT_WIDGET_S=240\n")

        config = EngineConfig.from_env(dotenv_path=str(env_file))

        assert config.capmonster_api_key == "cm-key"
        assert config.solver_timeout_widget_s == 240

    def test_twocaptcha_key_trailing_garbage_is_trimmed(self, monkeypatch, tmp_path):
        key = "0123456789abcdef0123456789abcdef"
        monkeypatch.setenv("CAPTCHA_API_KEY", f"{key}   # cuenta principal")

        config = EngineConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert config.twocaptcha_api_key == key

    def test_api_keys_not_in_repr(self):
        config = EngineConfig(capmonster_api_key="secreto", twocaptcha_api_key="otro")

        assert "secreto" not in repr(config)
        assert "otro" not in repr(config)


class TestValidate:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_attempts": 0},
            {"solver_error_retries": -1},
            {"session_timeout_s": 0},
            {"backoff_base_s": -1},
            {"solver_provider": "anticaptcha"},
        ],
    )
    def test_rejects_impossible_values(self, overrides):
        with pytest.raises(ConfigurationError):
            EngineConfig(**overrides).validate()

    def test_from_env_validates(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MAX_ATTEMPTS", "0")

        with pytest.raises(ConfigurationError):
            EngineConfig.from_env(dotenv_path=str(tmp_path / "missing.env"))


class TestBackoff:
    def test_grows_linearly_with_attempt(self):
        config = EngineConfig(backoff_base_s=3.0, backoff_max_s=30.0)

        assert [config.backoff_delay(n) for n in (1, 2, 3)] == [3.0, 6.0, 9.0]

    def test_capped_at_max(self):
        config = EngineConfig(backoff_base_s=5.0, backoff_max_s=12.0)

        assert config.backoff_delay(10) == 12.0
