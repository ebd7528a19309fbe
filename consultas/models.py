import uuid
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any

from consultas.errors import ChallengeReuseError, UnsupportedSearchMode

CanonicalRecord = dict[str, Any]


class SearchMode(str, Enum):
    PLATE = "plate"
    DOCUMENT = "document"
    NAME = "name"
    TICKET_NUMBER = "ticket_number"

    @classmethod
    def parse(cls, value: "str | SearchMode") -> "SearchMode":
        if isinstance(value, SearchMode):
            return value
        slug = (value or "").strip().lower()
        slug = _SEARCH_MODE_ALIASES.get(slug, slug)
        try:
            return cls(slug)
        except ValueError:
            raise UnsupportedSearchMode(f"Modo de búsqueda no soportado: {value!r}") from None


_SEARCH_MODE_ALIASES = {
    "placa": "plate",
    "documento": "document",
    "dni": "document",
    "nombre": "name",
    "nombres": "name",
    "ticketnumber": "ticket_number",
    "ticket": "ticket_number",
    "papeleta": "ticket_number",
}


class ChallengeKind(str, Enum):
    IMAGE = "image"
    WIDGET = "widget"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    INVALID_CAPTCHA = "invalid_captcha"
    BLOCKED = "blocked"
    TRANSIENT_ERROR = "transient_error"


class QueryStatus(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryRequest:
    """Una consulta lógica; no cambia entre intentos."""

    target_id: str
    search_mode: SearchMode
    search_value: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class Session:
    """
    Cookies y campos anti-forgery de un portal durante un intento.
    Pertenece a un solo intento; se descarta al terminarlo.
    """

    target_id: str
    transport: Any = field(repr=False)
    document: Any = field(default=None, repr=False)
    cookies: dict[str, str] = field(default_factory=dict)
    anti_forgery: dict[str, str] = field(default_factory=dict)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=monotonic)
    closed: bool = False

    @property
    def age_s(self) -> float:
        return monotonic() - self.created_at


@dataclass
class ChallengeToken:
    """
    Captcha obtenido en una sesión concreta. Se invalida al terminar el
    intento que lo usó: reutilizarlo es un error de contrato.
    """

    kind: ChallengeKind
    challenge_id: str
    session_id: str
    image: bytes | None = field(default=None, repr=False)
    mime_type: str | None = None
    site_key: str | None = None
    page_url: str | None = None
    widget_type: str | None = None  # "recaptcha" | "turnstile"
    issued_at: float = field(default_factory=monotonic)
    consumed: bool = False

    def ensure_usable(self, session_id: str) -> None:
        if self.consumed:
            raise ChallengeReuseError(f"El captcha {self.challenge_id} ya fue usado en un intento anterior")
        if self.session_id != session_id:
            raise ChallengeReuseError(
                f"El captcha {self.challenge_id} pertenece a otra sesión ({self.session_id})"
            )

    def consume(self) -> None:
        self.consumed = True


@dataclass(frozen=True)
class CaptchaSolution:
    answer: str
    solve_latency_ms: int
    challenge_id: str
    job_id: str | None = None


@dataclass
class RawResponse:
    """Lo que devolvió el portal tras enviar la búsqueda, sin interpretar."""

    url: str
    status: int | None = None
    html: str = ""
    text: str = ""
    tables: list[list[list[str]]] = field(default_factory=list)
    payload: Any = None
    elapsed_ms: int = 0
    timed_out: bool = False


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    records: tuple[dict[str, Any], ...] = ()
    message: str = ""
    marker: str | None = None


@dataclass
class QueryAttempt:
    attempt_number: int
    session_id: str | None = None
    challenge_id: str | None = None
    solve_latency_ms: int | None = None
    outcome: OutcomeKind | None = None
    error_code: str | None = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt_number,
            "session_id": self.session_id,
            "challenge_id": self.challenge_id,
            "solve_latency_ms": self.solve_latency_ms,
            "outcome": self.outcome.value if self.outcome else None,
            "error_code": self.error_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class QueryResult:
    """Resultado terminal que recibe el llamador. Inmutable."""

    status: QueryStatus
    records: tuple[CanonicalRecord, ...]
    message: str
    attempts_used: int
    target_id: str
    search_mode: SearchMode
    search_value: str
    error_code: str | None = None
    elapsed_ms: int = 0
    attempts: tuple[QueryAttempt, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is not QueryStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status": self.status.value,
            "records": [dict(r) for r in self.records],
            "message": self.message,
            "attempts_used": self.attempts_used,
            "target_id": self.target_id,
            "search_mode": self.search_mode.value,
            "search_value": self.search_value,
            "error_code": self.error_code,
            "elapsed_ms": self.elapsed_ms,
            "attempts": [a.to_dict() for a in self.attempts],
        }
