from dataclasses import dataclass, field
from typing import Any, Callable

from consultas.models import SearchMode

# Marcadores comunes a todos los portales; los adaptadores agregan los suyos.
# Se comparan contra el texto en minúsculas y sin tildes. Prefijo "re:" = regex.
DEFAULT_BLOCK_MARKERS = (
    "attention required! | cloudflare",
    "just a moment...",
    "checking your browser before accessing",
    "access denied",
    "request unsuccessful. incapsula",
    "the requested url was rejected",
    "demasiadas solicitudes",
    "too many requests",
)

DEFAULT_CAPTCHA_ERROR_MARKERS = (
    "captcha incorrecto",
    "codigo incorrecto",
    "codigo ingresado es incorrecto",
    "codigo ingresado no es correcto",
    "codigo de seguridad incorrecto",
    "codigo no coincide",
    "captcha no resuelto",
    "token captcha invalido",
    "captcha invalido",
)

DEFAULT_NO_DATA_MARKERS = (
    r"re:se encontraron\s+0\s+coincidencias",
    "no se encontraron registros",
    "no se encontraron resultados",
    "no existen registros",
    "no presenta registros",
    "no presentan registros",
    "sin registros",
)

ASPNET_ANTI_FORGERY_FIELDS = (
    "__VIEWSTATE",
    "__VIEWSTATEGENERATOR",
    "__EVENTVALIDATION",
    "__RequestVerificationToken",
)


@dataclass(frozen=True)
class SolveConstraints:
    """Pistas para el resolvedor en captchas de imagen cortos."""

    numeric: bool = False
    min_length: int | None = None
    max_length: int | None = None
    case_sensitive: bool = False

    @property
    def is_short_code(self) -> bool:
        return self.max_length is not None and self.max_length <= 6


@dataclass(frozen=True)
class ChallengeHints:
    """
    Dónde está el captcha. `kind`: "image" | "recaptcha" | "turnstile" | "none".
    `optional` indica que el portal solo lo muestra a veces.
    """

    kind: str = "image"
    image_selectors: tuple[str, ...] = ()
    widget_selectors: tuple[str, ...] = ("[data-sitekey]", "[data-site-key]", ".g-recaptcha", ".cf-turnstile")
    input_selectors: tuple[str, ...] = ()
    response_fields: tuple[str, ...] = ()
    frame_hint: str | None = None
    fetch_mode: str = "capture"  # "capture" (canvas/screenshot) | "src" (GET con cookies)
    optional: bool = False
    grayscale: bool = False
    constraints: SolveConstraints = field(default_factory=SolveConstraints)

    @property
    def is_widget(self) -> bool:
        return self.kind in {"recaptcha", "turnstile"}


@dataclass(frozen=True)
class SearchField:
    """Input de búsqueda para un modo concreto y, opcionalmente, el select que lo activa."""

    input_selectors: tuple[str, ...]
    select_selectors: tuple[str, ...] = ()
    select_value: str | None = None
    uppercase: bool = True


@dataclass(frozen=True)
class SiteAdapter:
    """
    Configuración declarativa de un portal: selectores, marcadores y mapeo de
    campos. No tiene lógica de control; eso lo hace el motor.
    """

    target_id: str
    name: str
    category: str  # "infraction" | "insurance"
    search_url: str
    search_modes: dict[SearchMode, SearchField]
    form_selectors: tuple[str, ...]
    submit_selectors: tuple[str, ...]
    challenge: ChallengeHints = field(default_factory=ChallengeHints)
    frame_hint: str | None = None
    result_view: str = "inline"  # "inline" | "popup"
    result_selectors: tuple[str, ...] = ()
    table_selectors: tuple[str, ...] = ("table",)
    no_data_markers: tuple[str, ...] = ()
    captcha_error_markers: tuple[str, ...] = ()
    block_markers: tuple[str, ...] = ()
    blocked_status_codes: tuple[int, ...] = (403, 429)
    anti_forgery_fields: tuple[str, ...] = ()
    field_map: dict[str, tuple[str, ...]] = field(default_factory=dict)
    # JS que devuelve el resultado estructurado de la página (JSON o lista de objetos)
    payload_script: str | None = None
    map_record: Callable[[dict[str, Any]], dict[str, Any]] | None = None

    def supports(self, mode: SearchMode) -> bool:
        return mode in self.search_modes

    @property
    def all_block_markers(self) -> tuple[str, ...]:
        return DEFAULT_BLOCK_MARKERS + self.block_markers

    @property
    def all_captcha_error_markers(self) -> tuple[str, ...]:
        return DEFAULT_CAPTCHA_ERROR_MARKERS + self.captcha_error_markers

    @property
    def all_no_data_markers(self) -> tuple[str, ...]:
        return self.no_data_markers + DEFAULT_NO_DATA_MARKERS

    def describe(self) -> dict:
        return {
            "target_id": self.target_id,
            "name": self.name,
            "category": self.category,
            "search_modes": [m.value for m in self.search_modes],
            "captcha": self.challenge.kind,
        }
