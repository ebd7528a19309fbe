import json
import logging
import re

from consultas.adapters.base import SiteAdapter
from consultas.extraction import STRUCTURED_STRATEGIES, extract_records
from consultas.models import Outcome, OutcomeKind, RawResponse
from consultas.text import find_marker, matching_line

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<(script|style)\b.*?</\1>|<[^>]+>", re.IGNORECASE | re.DOTALL)


def response_text(raw: RawResponse) -> str:
    """
    Texto visible de la respuesta más el payload serializado. Si el
    transporte no dio texto se quitan las etiquetas del HTML.
    """
    text = raw.text or _TAG_RE.sub("\n", raw.html or "")
    if raw.payload is not None:
        payload = raw.payload if isinstance(raw.payload, str) else json.dumps(raw.payload, ensure_ascii=False)
        text = f"{text}\n{payload}"
    return text


class ResponseClassifier:
    """
    Decide qué pasó con un envío. Orden de prioridad:
      1. bloqueo (status HTTP o página anti-bot)
      2. captcha rechazado
      3. "sin resultados", solo si no hay filas de datos reales
      4. al menos una fila -> éxito
      5. nada reconocible -> error transitorio
    """

    def __init__(self, adapter: SiteAdapter) -> None:
        self.adapter = adapter

    def classify(self, raw: RawResponse) -> Outcome:
        adapter = self.adapter
        text = response_text(raw)

        if raw.status in adapter.blocked_status_codes:
            return Outcome(OutcomeKind.BLOCKED, message=f"El portal respondió HTTP {raw.status}")
        marker = find_marker(text, adapter.all_block_markers)
        if marker:
            return Outcome(OutcomeKind.BLOCKED, message="El portal mostró una página anti-bot", marker=marker)

        marker = find_marker(text, adapter.all_captcha_error_markers)
        if marker:
            return Outcome(
                OutcomeKind.INVALID_CAPTCHA,
                message=matching_line(text, marker) or "Captcha rechazado por el portal",
                marker=marker,
            )

        no_data = find_marker(text, adapter.all_no_data_markers)
        if no_data:
            # La ficha "Etiqueta: valor" no cuenta aquí: en una página sin
            # datos suele ser el eco de la búsqueda.
            rows = extract_records(raw, adapter, STRUCTURED_STRATEGIES)
            if not rows:
                return Outcome(
                    OutcomeKind.EMPTY,
                    message=matching_line(text, no_data) or "No se encontraron registros",
                    marker=no_data,
                )
            logger.info(
                "[%s] marcador sin-datos %r presente pero hay %d filas; se toma como éxito",
                adapter.target_id, no_data, len(rows),
            )
            return Outcome(OutcomeKind.SUCCESS, records=tuple(rows), message=f"{len(rows)} registro(s)")

        rows = extract_records(raw, adapter)
        if rows:
            return Outcome(OutcomeKind.SUCCESS, records=tuple(rows), message=f"{len(rows)} registro(s)")

        if raw.timed_out:
            message = "El portal no mostró resultados dentro del tiempo de espera"
        else:
            message = "No se reconoció la página de resultados"
        return Outcome(OutcomeKind.TRANSIENT_ERROR, message=message)
