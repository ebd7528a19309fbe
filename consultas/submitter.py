import json
import logging
import time
from typing import Any

from consultas.adapters.base import SiteAdapter
from consultas.config import EngineConfig
from consultas.errors import UnsupportedSearchMode
from consultas.models import (
    CaptchaSolution,
    ChallengeKind,
    ChallengeToken,
    QueryRequest,
    RawResponse,
    Session,
)
from consultas.transport import FormField, Transport

logger = logging.getLogger(__name__)


class QuerySubmitter:
    """
    Llena el formulario con el valor buscado y la respuesta del captcha,
    reenvía los campos anti-forgery de ESTA sesión y devuelve la respuesta
    cruda. El captcha queda consumido pase lo que pase.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    async def read_payload(self, transport: Transport, text: str, adapter: SiteAdapter) -> Any:
        """
        Resultado estructurado de la respuesta, si lo hay: lo que devuelva
        `adapter.payload_script` o, sin script, el cuerpo cuando es JSON.
        """
        if adapter.payload_script:
            try:
                return await transport.evaluate(
                    adapter.payload_script, timeout_ms=int(self.config.result_wait_s * 1000)
                )
            except Exception as e:
                logger.warning("[%s] no se pudo leer el payload de la página: %s", adapter.target_id, e)
                return None
        body = (text or "").strip()
        if not body.startswith(("{", "[")):
            return None
        try:
            return json.loads(body)
        except ValueError:
            return None

    def build_fields(
        self,
        request: QueryRequest,
        adapter: SiteAdapter,
        challenge: ChallengeToken | None,
        solution: CaptchaSolution | None,
    ) -> list[FormField]:
        search = adapter.search_modes.get(request.search_mode)
        if search is None:
            raise UnsupportedSearchMode(
                f"{adapter.name} no permite buscar por {request.search_mode.value}", adapter.target_id
            )
        value = request.search_value.strip()
        if search.uppercase:
            value = value.upper()

        fields: list[FormField] = []
        if search.select_selectors and search.select_value is not None:
            fields.append(FormField(search.select_selectors, search.select_value, kind="select"))
        fields.append(FormField(search.input_selectors, value))
        if challenge is not None and challenge.kind is ChallengeKind.IMAGE and solution is not None:
            fields.append(FormField(adapter.challenge.input_selectors, solution.answer))
        return fields

    async def submit(
        self,
        session: Session,
        challenge: ChallengeToken | None,
        solution: CaptchaSolution | None,
        request: QueryRequest,
        adapter: SiteAdapter,
    ) -> RawResponse:
        if challenge is not None:
            challenge.ensure_usable(session.session_id)
        transport = session.transport
        started = time.perf_counter()
        try:
            fields = self.build_fields(request, adapter, challenge, solution)
            if challenge is not None and challenge.kind is ChallengeKind.WIDGET and solution is not None:
                response_fields = adapter.challenge.response_fields or (
                    ("cf-turnstile-response",) if challenge.widget_type == "turnstile" else ("g-recaptcha-response",)
                )
                await transport.inject_token(response_fields, solution.answer)

            wait_ms = int(self.config.result_wait_s * 1000)
            doc = await transport.submit_form(
                fields,
                submit_selectors=adapter.submit_selectors,
                hidden=session.anti_forgery or None,
                expect_popup=adapter.result_view == "popup",
                wait_selectors=adapter.result_selectors,
                timeout_ms=wait_ms,
            )
            found = None
            if adapter.result_selectors:
                found = await transport.wait_for_any(adapter.result_selectors, timeout_ms=0)
            tables = await transport.extract_tables(adapter.table_selectors)
            payload = await self.read_payload(transport, doc.text, adapter)
        finally:
            if challenge is not None:
                challenge.consume()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "[%s] búsqueda enviada (%s=%s) en %dms, %d tabla(s)",
            adapter.target_id, request.search_mode.value, request.search_value, elapsed_ms, len(tables),
        )
        return RawResponse(
            url=doc.url,
            status=doc.status,
            html=doc.html,
            text=doc.text,
            tables=tables,
            payload=payload,
            elapsed_ms=elapsed_ms,
            timed_out=bool(adapter.result_selectors) and found is None,
        )
