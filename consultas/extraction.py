"""
Estrategias para sacar filas crudas de una respuesta del portal.

Cada estrategia es una función pura `(raw, adapter) -> list[dict]`; se prueban
en orden y gana la primera que devuelve al menos un registro plausible.
"""

import json
import re
from typing import Any, Callable

from consultas.adapters.base import SiteAdapter
from consultas.models import RawResponse
from consultas.text import normalize_header, normalize_text

# Filas "sin datos" que algunos grids pintan como una fila más (colspan)
NO_DATA_ROW_PATTERNS = (
    re.compile(r"^no (se )?(encontr|existe|registr|hay|present)"),
    re.compile(r"^sin (registros|resultados|datos|informacion)"),
    re.compile(r"^(0|cero) (registros|resultados|coincidencias)"),
)

# Claves de un payload JSON que suelen contener la lista de resultados
PAYLOAD_LIST_KEYS = ("data", "records", "results", "items", "rows", "lista", "resultado")

_LABEL_VALUE_RE = re.compile(
    r"^\s*([A-Za-zÁÉÍÓÚÜÑáéíóúüñ°º][A-Za-zÁÉÍÓÚÜÑáéíóúüñ°º0-9 ./()-]{1,39}?)\s*:\s*(\S.{0,199}?)\s*$"
)

_MAX_HEADER_CELL = 60
_MAX_COLUMNS = 30

Strategy = Callable[[RawResponse, SiteAdapter], list[dict[str, Any]]]


def _clean(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value if value is not None else "")).strip()


def is_header_echo(row: dict[str, Any]) -> bool:
    """True si la fila repite los encabezados (grids que reimprimen el header)."""
    pairs = [(k, v) for k, v in row.items() if k != "extra" and _clean(v)]
    if not pairs:
        return False
    return all(normalize_header(k) == normalize_header(str(v)) for k, v in pairs)


def is_no_data_row(cells: list[str]) -> bool:
    filled = [c for c in cells if _clean(c)]
    if len(filled) != 1:
        return False
    text = normalize_text(filled[0])
    return any(p.search(text) for p in NO_DATA_ROW_PATTERNS)


def _plausible(row: dict[str, Any]) -> bool:
    return any(_clean(v) for v in row.values()) and not is_header_echo(row)


def from_payload(raw: RawResponse, adapter: SiteAdapter) -> list[dict[str, Any]]:
    payload = raw.payload
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return []
    if isinstance(payload, dict):
        for key in PAYLOAD_LIST_KEYS:
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
        else:
            return []
    if not isinstance(payload, list):
        return []
    return [dict(item) for item in payload if isinstance(item, dict) and _plausible(item)]


def _looks_like_header(cells: list[str]) -> bool:
    filled = [c for c in cells if c]
    return (
        len(filled) >= 2
        and len(cells) <= _MAX_COLUMNS
        and all(len(c) <= _MAX_HEADER_CELL for c in filled)
    )


def table_to_rows(table: list[list[str]]) -> list[dict[str, Any]]:
    """
    Primera fila con 2+ celdas cortas = encabezado; el resto son filas de
    datos. Se descartan columnas sin título, filas vacías y filas "sin datos".
    """
    rows = [[_clean(c) for c in row] for row in table if row]
    header: list[str] | None = None
    out: list[dict[str, Any]] = []
    for cells in rows:
        if header is None:
            if _looks_like_header(cells):
                header = cells
            continue
        if is_no_data_row(cells):
            continue
        record = {h: cells[i] if i < len(cells) else "" for i, h in enumerate(header) if h}
        if _plausible(record):
            out.append(record)
    return out


def from_tables(raw: RawResponse, adapter: SiteAdapter) -> list[dict[str, Any]]:
    for table in raw.tables:
        rows = table_to_rows(table)
        if rows:
            return rows
    return []


def from_label_values(raw: RawResponse, adapter: SiteAdapter) -> list[dict[str, Any]]:
    """
    Fichas "Etiqueta: valor". Solo cuenta si al menos una etiqueta
    corresponde a un campo conocido del adaptador; si no, es ruido de la página.
    """
    record: dict[str, Any] = {}
    for line in (raw.text or "").splitlines():
        m = _LABEL_VALUE_RE.match(line)
        if m:
            record.setdefault(m.group(1).strip(), m.group(2).strip())
    if len(record) < 2:
        return []
    aliases = {normalize_header(a) for names in adapter.field_map.values() for a in names}
    aliases |= {normalize_header(k) for k in adapter.field_map}
    if not any(normalize_header(label) in aliases for label in record):
        return []
    return [record]


STRUCTURED_STRATEGIES: tuple[Strategy, ...] = (from_payload, from_tables)
DEFAULT_STRATEGIES: tuple[Strategy, ...] = STRUCTURED_STRATEGIES + (from_label_values,)


def extract_records(
    raw: RawResponse,
    adapter: SiteAdapter,
    strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
) -> list[dict[str, Any]]:
    for strategy in strategies:
        rows = strategy(raw, adapter)
        if rows:
            return rows
    return []
