import os
import re
from dataclasses import dataclass, field

from dotenv import load_dotenv

from consultas.errors import ConfigurationError


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no"}


def _clean_2captcha_key(raw: str | None) -> str | None:
    """
    Las keys de 2Captcha son 32 hex; a veces el .env trae basura pegada al final
    (comentarios, espacios), así que nos quedamos con el prefijo válido.
    """
    if not raw:
        return None
    raw = raw.strip()
    match = re.match(r"^([a-f0-9]{32})", raw, flags=re.IGNORECASE)
    return match.group(1) if match else raw


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuración única del motor. Se construye una vez (normalmente con
    `EngineConfig.from_env()`) y se pasa a cada componente.
    """

    solver_provider: str = "capmonster"
    capmonster_api_key: str | None = field(default=None, repr=False)
    twocaptcha_api_key: str | None = field(default=None, repr=False)
    twocaptcha_base_url: str = "https://2captcha.com"

    max_attempts: int = 3
    backoff_base_s: float = 3.0
    backoff_max_s: float = 30.0

    session_timeout_s: float = 30.0
    challenge_load_timeout_s: float = 10.0
    challenge_poll_interval_s: float = 0.5

    solver_poll_interval_s: float = 5.0
    solver_timeout_short_code_s: float = 30.0
    solver_timeout_image_s: float = 120.0
    solver_timeout_widget_s: float = 300.0
    solver_http_timeout_s: float = 30.0
    solver_error_retries: int = 1

    selector_missing_retries: int = 1
    result_wait_s: float = 15.0
    attempt_timeout_s: float = 420.0
    request_timeout_s: float = 900.0
    service_timeout_s: float = 900.0

    headless: bool = True
    locale: str = "es-PE"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "EngineConfig":
        """
        Lee el .env (best-effort) y arma la configuración. Valores mal
        formados caen al default en vez de reventar al arrancar.
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)
        defaults = cls()
        config = cls(
            solver_provider=(_env_str("CAPTCHA_PROVIDER", defaults.solver_provider) or "").lower(),
            capmonster_api_key=_env_str("CAPMONSTER_API_KEY"),
            twocaptcha_api_key=_clean_2captcha_key(_env_str("CAPTCHA_API_KEY")),
            twocaptcha_base_url=_env_str("TWOCAPTCHA_BASE_URL", defaults.twocaptcha_base_url),
            max_attempts=_env_int("MAX_ATTEMPTS", defaults.max_attempts),
            backoff_base_s=_env_float("BACKOFF_BASE_S", defaults.backoff_base_s),
            backoff_max_s=_env_float("BACKOFF_MAX_S", defaults.backoff_max_s),
            session_timeout_s=_env_float("SESSION_TIMEOUT_S", defaults.session_timeout_s),
            challenge_load_timeout_s=_env_float(
                "CHALLENGE_LOAD_TIMEOUT_S", defaults.challenge_load_timeout_s
            ),
            challenge_poll_interval_s=_env_float(
                "CHALLENGE_POLL_INTERVAL_S", defaults.challenge_poll_interval_s
            ),
            solver_poll_interval_s=_env_float(
                "SOLVER_POLL_INTERVAL_S", defaults.solver_poll_interval_s
            ),
            solver_timeout_short_code_s=_env_float(
                "SOLVER_TIMEOUT_SHORT_CODE_S", defaults.solver_timeout_short_code_s
            ),
            solver_timeout_image_s=_env_float(
                "SOLVER_TIMEOUT_IMAGE_S", defaults.solver_timeout_image_s
            ),
            solver_timeout_widget_s=_env_float(
                "SOLVER_TIMEOUT_WIDGET_S", defaults.solver_timeout_widget_s
            ),
            solver_http_timeout_s=_env_float(
                "SOLVER_HTTP_TIMEOUT_S", defaults.solver_http_timeout_s
            ),
            solver_error_retries=_env_int("SOLVER_ERROR_RETRIES", defaults.solver_error_retries),
            selector_missing_retries=_env_int(
                "SELECTOR_MISSING_RETRIES", defaults.selector_missing_retries
            ),
            result_wait_s=_env_float("RESULT_WAIT_S", defaults.result_wait_s),
            attempt_timeout_s=_env_float("ATTEMPT_TIMEOUT_S", defaults.attempt_timeout_s),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", defaults.request_timeout_s),
            service_timeout_s=_env_float("SERVICE_TIMEOUT_S", defaults.service_timeout_s),
            headless=_env_bool("HEADLESS", defaults.headless),
            locale=_env_str("BROWSER_LOCALE", defaults.locale),
            user_agent=_env_str("BROWSER_USER_AGENT", defaults.user_agent),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("MAX_ATTEMPTS debe ser al menos 1")
        if self.solver_error_retries < 0 or self.selector_missing_retries < 0:
            raise ConfigurationError("Los reintentos no pueden ser negativos")
        timeouts = {
            "SESSION_TIMEOUT_S": self.session_timeout_s,
            "CHALLENGE_LOAD_TIMEOUT_S": self.challenge_load_timeout_s,
            "SOLVER_TIMEOUT_SHORT_CODE_S": self.solver_timeout_short_code_s,
            "SOLVER_TIMEOUT_IMAGE_S": self.solver_timeout_image_s,
            "SOLVER_TIMEOUT_WIDGET_S": self.solver_timeout_widget_s,
            "ATTEMPT_TIMEOUT_S": self.attempt_timeout_s,
            "REQUEST_TIMEOUT_S": self.request_timeout_s,
            "SERVICE_TIMEOUT_S": self.service_timeout_s,
        }
        for name, value in timeouts.items():
            if value <= 0:
                raise ConfigurationError(f"{name} debe ser mayor que 0")
        for name, value in {
            "BACKOFF_BASE_S": self.backoff_base_s,
            "BACKOFF_MAX_S": self.backoff_max_s,
            "CHALLENGE_POLL_INTERVAL_S": self.challenge_poll_interval_s,
            "SOLVER_POLL_INTERVAL_S": self.solver_poll_interval_s,
        }.items():
            if value < 0:
                raise ConfigurationError(f"{name} no puede ser negativo")
        if self.solver_provider not in {"capmonster", "2captcha"}:
            raise ConfigurationError(
                f"CAPTCHA_PROVIDER no soportado: {self.solver_provider!r} (usa capmonster o 2captcha)"
            )

    def backoff_delay(self, attempt_number: int) -> float:
        """Espera antes del siguiente intento; crece con el número de intento."""
        return min(self.backoff_base_s * max(attempt_number, 1), self.backoff_max_s)
