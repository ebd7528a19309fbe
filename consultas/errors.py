"""Errores del motor de consultas.

Jerarquía:
    ConsultaError (base)
    ├── SessionUnavailable     - no se pudo abrir sesión / cargar el formulario (reintentable)
    ├── ChallengeUnavailable   - captcha presente pero no cargó a tiempo (reintentable)
    ├── InvalidCaptcha         - captcha rechazado o irresoluble (reintentable, captcha nuevo)
    ├── SolverServiceError     - error de cuenta/servicio del resolvedor (reintento acotado)
    ├── SolverTimeout          - el resolvedor no respondió dentro del plazo (reintentable)
    ├── TransientError         - página de resultado no reconocida, red lenta (reintentable)
    ├── Blocked                - WAF / anti-bot / rate limit (fatal, sin reintento)
    ├── SelectorMissing        - el adaptador ya no encuentra el formulario (fatal tras reintento mínimo)
    │   └── SiteChanged        - hay resultados pero el adaptador no sabe leerlos
    ├── RequestTimeout         - venció el plazo total de la consulta (fatal)
    ├── ChallengeReuseError    - se intentó reutilizar un captcha vencido o ajeno (contrato)
    ├── ConfigurationError
    ├── UnknownTarget
    └── UnsupportedSearchMode
"""


class ConsultaError(Exception):
    """Error base de todas las consultas."""

    code = "error"
    retryable = False

    def __init__(self, message: str, target_id: str | None = None) -> None:
        self.message = message
        self.target_id = target_id
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.target_id:
            return f"{self.message} (target: {self.target_id})"
        return self.message


class SessionUnavailable(ConsultaError):
    code = "session_unavailable"
    retryable = True


class ChallengeUnavailable(ConsultaError):
    code = "challenge_unavailable"
    retryable = True


class InvalidCaptcha(ConsultaError):
    """El portal o el resolvedor indicaron que el captcha no sirve; hace falta uno nuevo."""

    code = "invalid_captcha"
    retryable = True

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        error_code: str | None = None,
        rejected_by_portal: bool = False,
    ) -> None:
        super().__init__(message, target_id)
        self.error_code = error_code
        self.rejected_by_portal = rejected_by_portal


class SolverServiceError(ConsultaError):
    """Error de la cuenta o del servicio de resolución (saldo, key inválida, sin slots...)."""

    code = "solver_service_error"
    retryable = True

    def __init__(self, message: str, target_id: str | None = None, error_code: str | None = None) -> None:
        super().__init__(message, target_id)
        self.error_code = error_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.error_code:
            return f"{base} (code={self.error_code})"
        return base


class SolverTimeout(ConsultaError):
    code = "solver_timeout"
    retryable = True

    def __init__(self, message: str, target_id: str | None = None, timeout_seconds: float | None = None) -> None:
        super().__init__(message, target_id)
        self.timeout_seconds = timeout_seconds


class TransientError(ConsultaError):
    code = "transient_error"
    retryable = True


class Blocked(ConsultaError):
    """
    El sitio nos bloqueó (403/429 o página anti-bot). No se reintenta en el
    proceso: el llamador debe esperar bastante más que un backoff normal.
    """

    code = "blocked"
    retryable = False

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        status_code: int | None = None,
        marker: str | None = None,
    ) -> None:
        super().__init__(message, target_id)
        self.status_code = status_code
        self.marker = marker

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.status_code:
            parts.append(f"status={self.status_code}")
        if self.marker:
            parts.append(f"marker={self.marker}")
        return " | ".join(parts)


class SelectorMissing(ConsultaError):
    code = "selector_missing"
    retryable = False


class SiteChanged(SelectorMissing):
    code = "site_changed"


class RequestTimeout(ConsultaError):
    """La consulta completa superó REQUEST_TIMEOUT_S; el intento en curso se canceló."""

    code = "timeout"


class ChallengeReuseError(ConsultaError):
    code = "challenge_reuse"


class ConfigurationError(ConsultaError):
    code = "configuration_error"


class UnknownTarget(ConsultaError):
    code = "unknown_target"


class UnsupportedSearchMode(ConsultaError):
    code = "unsupported_search_mode"
