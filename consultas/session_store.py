import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from consultas.adapters.base import SiteAdapter
from consultas.config import EngineConfig
from consultas.errors import Blocked, ConsultaError, SelectorMissing, SessionUnavailable
from consultas.models import Session
from consultas.text import find_marker
from consultas.transport import TransportFactory

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Abre una sesión nueva por intento: navega al formulario (saltando al
    iframe si el portal lo embebe) y guarda cookies y campos anti-forgery.
    """

    def __init__(self, transport_factory: TransportFactory, config: EngineConfig) -> None:
        self.transport_factory = transport_factory
        self.config = config

    async def open(self, adapter: SiteAdapter) -> Session:
        timeout_ms = int(self.config.session_timeout_s * 1000)
        try:
            transport = await self.transport_factory.open()
        except ConsultaError:
            raise
        except Exception as e:
            raise SessionUnavailable(f"No se pudo abrir el navegador ({e})", adapter.target_id) from e

        session = Session(target_id=adapter.target_id, transport=transport)
        try:
            await self._handshake(session, adapter, timeout_ms)
        except BaseException:
            await self.close(session)
            raise
        logger.info("[%s] sesión %s abierta (%s)", adapter.target_id, session.session_id, session.document.url)
        return session

    async def _handshake(self, session: Session, adapter: SiteAdapter, timeout_ms: int) -> None:
        transport = session.transport
        doc = await transport.navigate(adapter.search_url, timeout_ms=timeout_ms)
        self._check_blocked(doc, adapter)

        if adapter.frame_hint:
            framed = await transport.enter_frame(adapter.frame_hint, timeout_ms=timeout_ms)
            if framed is None:
                raise SessionUnavailable(
                    f"No apareció el iframe del formulario ({adapter.frame_hint})", adapter.target_id
                )
            doc = framed
            self._check_blocked(doc, adapter)

        found = await transport.wait_for_any(adapter.form_selectors, timeout_ms=timeout_ms)
        if found is None:
            raise SelectorMissing("No se encontró el formulario de búsqueda", adapter.target_id)

        session.document = doc
        session.cookies = await transport.cookies()
        if adapter.anti_forgery_fields:
            session.anti_forgery = await transport.hidden_fields(adapter.anti_forgery_fields)

    @staticmethod
    def _check_blocked(doc, adapter: SiteAdapter) -> None:
        if doc.status in adapter.blocked_status_codes:
            raise Blocked("El portal rechazó la conexión", adapter.target_id, status_code=doc.status)
        marker = find_marker(doc.text, adapter.all_block_markers)
        if marker:
            raise Blocked("El portal mostró una página anti-bot", adapter.target_id, marker=marker)

    async def close(self, session: Session) -> None:
        if session.closed:
            return
        session.closed = True
        try:
            await session.transport.close()
        except Exception as e:
            logger.warning("[%s] error cerrando sesión %s: %s", session.target_id, session.session_id, e)

    @asynccontextmanager
    async def opened(self, adapter: SiteAdapter) -> AsyncIterator[Session]:
        """La sesión se cierra en cualquier salida, incluida la cancelación."""
        session = await self.open(adapter)
        try:
            yield session
        finally:
            await self.close(session)
