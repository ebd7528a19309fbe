import re
from datetime import date, datetime
from typing import Any, Iterable

from consultas.adapters.base import SiteAdapter
from consultas.extraction import is_header_echo
from consultas.models import CanonicalRecord
from consultas.text import normalize_header

CANONICAL_FIELDS = {
    "infraction": ("number", "date", "description", "amount", "status"),
    "insurance": ("insurer", "policy_number", "valid_from", "valid_to", "status"),
}

DATE_FIELDS = {"date", "valid_from", "valid_to"}
AMOUNT_FIELDS = {"amount"}

_DMY_RE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})\b")
_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ]|$)")
_AMOUNT_CHARS_RE = re.compile(r"[^\d,.-]")


def to_iso_date(value: Any) -> str | None:
    """
    dd/mm/yyyy, dd-mm-yyyy o ISO (con o sin hora) -> YYYY-MM-DD.
    Si no se reconoce el formato se devuelve el texto tal cual.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    m = _ISO_RE.match(text)
    if m:
        y, mo, d = (int(x) for x in m.groups())
    else:
        m = _DMY_RE.match(text)
        if not m:
            return text
        d, mo, y = (int(x) for x in m.groups())
    try:
        return date(y, mo, d).isoformat()
    except ValueError:
        return text


def to_amount(value: Any) -> float | None:
    """'S/. 1,234.50' -> 1234.5; '1.234,50' -> 1234.5; '12,5' -> 12.5; '-' -> None."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _AMOUNT_CHARS_RE.sub("", str(value)).strip(".-,")
    if not any(ch.isdigit() for ch in text):
        return None
    negative = str(value).strip().startswith("-")
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        text = f"{head.replace(',', '')}.{tail}" if len(tail) in (1, 2) else text.replace(",", "")
    try:
        amount = float(text)
    except ValueError:
        return None
    return -amount if negative else amount


def _coerce(field: str, value: Any) -> Any:
    if field in DATE_FIELDS:
        return to_iso_date(value)
    if field in AMOUNT_FIELDS:
        return to_amount(value)
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def _match_keys(raw_keys: Iterable[str], fields: tuple[str, ...], field_map: dict) -> dict[str, str]:
    """canonical -> clave cruda. Primero coincidencia exacta, luego por contención."""
    normalized = {k: normalize_header(k) for k in raw_keys if k != "extra"}
    candidates = {
        f: [normalize_header(f)] + [normalize_header(a) for a in field_map.get(f, ())]
        for f in fields
    }
    used: set[str] = set()
    matched: dict[str, str] = {}
    for f in fields:
        for alias in candidates[f]:
            key = next((k for k, nk in normalized.items() if k not in used and nk == alias), None)
            if key is not None:
                matched[f] = key
                used.add(key)
                break
    for f in fields:
        if f in matched:
            continue
        for alias in candidates[f]:
            key = next((k for k, nk in normalized.items() if k not in used and alias and alias in nk), None)
            if key is not None:
                matched[f] = key
                used.add(key)
                break
    return matched


def normalize_record(raw: dict[str, Any], adapter: SiteAdapter) -> CanonicalRecord | None:
    if adapter.map_record is not None and "extra" not in raw:
        raw = adapter.map_record(raw)
    if is_header_echo(raw):
        return None
    fields = CANONICAL_FIELDS.get(adapter.category, CANONICAL_FIELDS["infraction"])
    matched = _match_keys(raw.keys(), fields, adapter.field_map)

    record: CanonicalRecord = {f: _coerce(f, raw.get(matched[f])) if f in matched else None for f in fields}
    if all(record[f] is None for f in fields):
        return None

    extra = dict(raw.get("extra") or {})
    used = set(matched.values())
    for key, value in raw.items():
        if key != "extra" and key not in used:
            extra[key] = value
    record["extra"] = extra
    return record


def normalize(raw_records: Iterable[dict[str, Any]], adapter: SiteAdapter) -> list[CanonicalRecord]:
    """
    Función pura: aplica el mapeo de campos del adaptador, convierte fechas
    y montos, y descarta filas que no aportan ningún campo conocido.
    Aplicarla sobre registros ya canónicos devuelve los mismos registros.
    """
    out: list[CanonicalRecord] = []
    for raw in raw_records:
        record = normalize_record(dict(raw), adapter)
        if record is not None:
            out.append(record)
    return out
