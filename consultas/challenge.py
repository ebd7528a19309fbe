import asyncio
import base64
import logging
import time
import uuid
from urllib.parse import parse_qs, urljoin, urlparse

from consultas.adapters.base import SiteAdapter
from consultas.config import EngineConfig
from consultas.errors import ChallengeUnavailable
from consultas.models import ChallengeKind, ChallengeToken, Session
from consultas.solver import prepare_image
from consultas.transport import ImageProbe

logger = logging.getLogger(__name__)

# Parámetros de query que algunos portales usan como id del captcha
CHALLENGE_ID_PARAMS = ("numAleatorio", "id", "t", "token", "rnd")


def challenge_id_from_src(src: str | None) -> str | None:
    if not src or src.startswith("data:"):
        return None
    query = parse_qs(urlparse(src).query)
    for name in CHALLENGE_ID_PARAMS:
        if query.get(name):
            return query[name][0]
    return None


def decode_data_url(src: str) -> bytes | None:
    if not src.startswith("data:") or "base64," not in src:
        return None
    try:
        return base64.b64decode(src.split("base64,", 1)[1])
    except ValueError:
        return None


class ChallengeRetriever:
    """
    Obtiene el captcha de la sesión actual. Distingue "no hay captcha"
    (portales que lo muestran a veces) de "hay captcha pero aún no carga",
    caso en el que espera con polling corto.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    async def get_challenge(self, session: Session, adapter: SiteAdapter) -> ChallengeToken | None:
        hints = adapter.challenge
        if hints.kind == "none":
            return None
        if hints.is_widget:
            return await self._widget(session, adapter)
        return await self._image(session, adapter)

    async def _wait_for_image(self, session: Session, adapter: SiteAdapter) -> ImageProbe | None:
        hints = adapter.challenge
        transport = session.transport
        deadline = time.monotonic() + self.config.challenge_load_timeout_s
        probe = None
        while True:
            probe = await transport.probe_image(hints.image_selectors, frame_hint=hints.frame_hint)
            if probe is not None and probe.loaded:
                return probe
            if probe is None and hints.optional:
                # El captcha opcional no está en el DOM: no hace falta esperar
                return None
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.config.challenge_poll_interval_s)
        if probe is None:
            raise ChallengeUnavailable("No se encontró la imagen del captcha", adapter.target_id)
        raise ChallengeUnavailable(
            f"El captcha no terminó de cargar en {self.config.challenge_load_timeout_s:g}s", adapter.target_id
        )

    async def _image(self, session: Session, adapter: SiteAdapter) -> ChallengeToken | None:
        hints = adapter.challenge
        transport = session.transport
        probe = await self._wait_for_image(session, adapter)
        if probe is None:
            logger.info("[%s] el portal no mostró captcha en esta sesión", adapter.target_id)
            return None

        timeout_ms = int(self.config.challenge_load_timeout_s * 1000)
        image = decode_data_url(probe.src or "")
        if image is None:
            if hints.fetch_mode == "src" and probe.src:
                image = await transport.fetch_bytes(urljoin(session.document.url, probe.src), timeout_ms=timeout_ms)
            else:
                image = await transport.capture_image(probe.selector, frame_hint=hints.frame_hint, timeout_ms=timeout_ms)
        if not image:
            raise ChallengeUnavailable("La imagen del captcha llegó vacía", adapter.target_id)

        image, mime_type = prepare_image(image, grayscale=hints.grayscale)
        return ChallengeToken(
            kind=ChallengeKind.IMAGE,
            challenge_id=challenge_id_from_src(probe.src) or uuid.uuid4().hex,
            session_id=session.session_id,
            image=image,
            mime_type=mime_type,
        )

    async def _widget(self, session: Session, adapter: SiteAdapter) -> ChallengeToken | None:
        hints = adapter.challenge
        transport = session.transport
        timeout_ms = int(self.config.challenge_load_timeout_s * 1000)
        found = await transport.wait_for_any(hints.widget_selectors, timeout_ms=0 if hints.optional else timeout_ms)
        if found is None:
            if hints.optional:
                logger.info("[%s] el portal no mostró captcha en esta sesión", adapter.target_id)
                return None
            raise ChallengeUnavailable("No apareció el widget del captcha", adapter.target_id)

        deadline = time.monotonic() + self.config.challenge_load_timeout_s
        site_key = await transport.find_site_key(hints.widget_selectors)
        while not site_key and time.monotonic() < deadline:
            await asyncio.sleep(self.config.challenge_poll_interval_s)
            site_key = await transport.find_site_key(hints.widget_selectors)
        if not site_key:
            raise ChallengeUnavailable("No se pudo obtener el sitekey del captcha", adapter.target_id)

        doc = await transport.current_document()
        return ChallengeToken(
            kind=ChallengeKind.WIDGET,
            challenge_id=uuid.uuid4().hex,
            session_id=session.session_id,
            site_key=site_key,
            page_url=doc.url,
            widget_type=hints.kind,
        )
