import re
import unicodedata
from typing import Iterable

_WS_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def normalize_text(value: str | None) -> str:
    """
    Minúsculas, sin tildes y con espacios colapsados. Es la forma contra la
    que se comparan todos los marcadores de los portales.
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS_RE.sub(" ", stripped.lower()).strip()


def normalize_header(value: str | None) -> str:
    """'N° Papeleta' -> 'n papeleta', 'Fecha Infracción' -> 'fecha infraccion'."""
    return _NON_ALNUM_RE.sub(" ", normalize_text(value)).strip()


def _compile(marker: str) -> re.Pattern:
    if marker.startswith("re:"):
        return re.compile(marker[3:])
    return re.compile(re.escape(normalize_text(marker)))


def find_marker(text: str, markers: Iterable[str]) -> str | None:
    """
    Devuelve el primer marcador presente en `text`. Los marcadores con
    prefijo "re:" son regex; el resto, subcadenas literales.
    """
    haystack = normalize_text(text)
    if not haystack:
        return None
    for marker in markers:
        if _compile(marker).search(haystack):
            return marker
    return None


def matching_line(text: str, marker: str) -> str | None:
    """Línea original del portal donde aparece el marcador (para el mensaje)."""
    pattern = _compile(marker)
    for line in (text or "").splitlines():
        line = line.strip()
        if line and pattern.search(normalize_text(line)):
            return _WS_RE.sub(" ", line)
    return None
