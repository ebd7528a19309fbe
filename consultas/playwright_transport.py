import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from typing import Any, Iterable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from consultas.config import EngineConfig
from consultas.errors import SelectorMissing, SessionUnavailable, TransientError
from consultas.transport import Document, FormField, ImageProbe, Transport, TransportFactory

logger = logging.getLogger(__name__)

_POLL_STEP_MS = 250

# Copia la imagen ya pintada a un canvas: no dispara un GET nuevo, así el
# captcha no se desincroniza de la sesión.
CANVAS_CAPTURE_SCRIPT = """(el) => {
    try {
        if (!el || !el.complete || !el.naturalWidth) return null;
        const canvas = document.createElement('canvas');
        canvas.width = el.naturalWidth || el.width;
        canvas.height = el.naturalHeight || el.height;
        const ctx = canvas.getContext('2d');
        ctx.drawImage(el, 0, 0);
        return canvas.toDataURL('image/png');
    } catch (e) { return null; }
}"""

PROBE_IMAGE_SCRIPT = """(selectors) => {
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (!el) continue;
        return {
            selector: sel,
            src: el.currentSrc || el.src || el.getAttribute('src') || null,
            loaded: !!(el.complete && el.naturalWidth),
        };
    }
    return null;
}"""

SITE_KEY_SCRIPT = """(selectors) => {
    for (const sel of selectors) {
        for (const el of document.querySelectorAll(sel)) {
            const key = el.getAttribute('data-sitekey') || el.getAttribute('data-site-key');
            if (key) return key;
        }
    }
    for (const fr of document.querySelectorAll('iframe[src]')) {
        const src = fr.getAttribute('src') || '';
        const m = src.match(/[?&]k=([^&]+)/) || src.match(/\\/(0x[0-9A-Za-z]{8,})\\//);
        if (m) return decodeURIComponent(m[1]);
    }
    return null;
}"""

INJECT_TOKEN_SCRIPT = """([names, token]) => {
    let hits = 0;
    for (const name of names) {
        const els = document.querySelectorAll(`[name="${name}"], #${CSS.escape(name)}`);
        els.forEach(el => {
            el.value = token;
            el.setAttribute('value', token);
            el.dispatchEvent(new Event('input', { bubbles: true }));
            el.dispatchEvent(new Event('change', { bubbles: true }));
            hits += 1;
        });
    }
    return hits;
}"""

HIDDEN_FIELDS_SCRIPT = """(names) => {
    const out = {};
    for (const name of names) {
        const el = document.querySelector(`input[name="${name}"]`);
        if (el && el.value) out[name] = el.value;
    }
    return out;
}"""

SET_HIDDEN_FIELDS_SCRIPT = """(fields) => {
    for (const [name, value] of Object.entries(fields)) {
        const el = document.querySelector(`input[name="${name}"]`);
        if (el) el.value = value;
    }
}"""

EXTRACT_TABLES_SCRIPT = """(selectors) => {
    const seen = new Set();
    const out = [];
    for (const sel of selectors) {
        for (const t of document.querySelectorAll(sel)) {
            if (seen.has(t)) continue;
            seen.add(t);
            out.push(Array.from(t.querySelectorAll('tr')).map(tr =>
                Array.from(tr.children).map(td => (td.innerText || '').trim())
            ));
        }
    }
    return out;
}"""


@asynccontextmanager
async def launch_browser(config: EngineConfig):
    """
    Inicia Playwright y Chromium una sola vez para todo el proceso.
    """
    pw = await async_playwright().start()
    # --no-sandbox evita errores en entornos sin sandbox de Chrome (contenedores, CI)
    browser = await pw.chromium.launch(headless=config.headless, args=["--no-sandbox"])
    try:
        yield browser
    finally:
        await browser.close()
        await pw.stop()


async def first_locator(scope, selectors: Iterable[str]):
    """
    Devuelve el primer locator que exista entre varios selectores.
    """
    for sel in selectors:
        loc = scope.locator(sel)
        if await loc.count():
            return loc.first
    return None


async def inner_text_or_empty(scope, selector: str = "body") -> str:
    """
    Lee inner_text del selector indicado y devuelve '' en caso de error.
    """
    try:
        return await scope.inner_text(selector)
    except PlaywrightError:
        return ""


class PlaywrightTransport(Transport):
    """
    Un contexto de Playwright por sesión. `_scope` es la página o el iframe
    que contiene el formulario.
    """

    def __init__(self, context, page) -> None:
        self._context = context
        self._page = page
        self._scope = page
        self._last_status: int | None = None
        self._last_headers: dict[str, str] = {}
        self._attach(page)

    def _attach(self, page) -> None:
        page.on("response", self._on_response)

    def _on_response(self, response) -> None:
        try:
            if response.request.is_navigation_request():
                self._last_status = response.status
                self._last_headers = dict(response.headers)
        except PlaywrightError:
            pass

    def _frame_for(self, frame_hint: str | None):
        if not frame_hint:
            return self._scope
        for f in self._page.frames:
            if frame_hint in (f.url or ""):
                return f
        return None

    async def navigate(self, url: str, *, timeout_ms: int) -> Document:
        try:
            resp = await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise SessionUnavailable(f"Timeout cargando {url} ({e})") from e
        except PlaywrightError as e:
            raise SessionUnavailable(f"No se pudo cargar la URL {url} ({e})") from e
        self._scope = self._page
        if resp is not None:
            self._last_status = resp.status
            self._last_headers = dict(resp.headers)
        try:
            await self._page.wait_for_load_state("networkidle", timeout=min(timeout_ms, 8000))
        except PlaywrightTimeoutError:
            # Portales con polling/analytics nunca llegan a networkidle
            pass
        return await self.current_document()

    async def enter_frame(self, url_fragment: str, *, timeout_ms: int) -> Document | None:
        async def _find_frame():
            while True:
                for f in self._page.frames:
                    if url_fragment in (f.url or ""):
                        return f
                await asyncio.sleep(_POLL_STEP_MS / 1000)

        try:
            frame = await asyncio.wait_for(_find_frame(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return None
        try:
            await frame.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            pass
        self._scope = frame
        return await self.current_document()

    async def current_document(self) -> Document:
        try:
            html = await self._scope.content()
        except PlaywrightError:
            html = ""
        text = await inner_text_or_empty(self._scope)
        return Document(
            url=self._scope.url,
            status=self._last_status,
            html=html,
            text=text,
            headers=dict(self._last_headers),
        )

    async def wait_for_any(self, selectors: Iterable[str], *, timeout_ms: int) -> str | None:
        selectors = list(selectors)
        if not selectors:
            return None
        elapsed = 0
        while True:
            for sel in selectors:
                try:
                    if await self._scope.locator(sel).count():
                        return sel
                except PlaywrightError:
                    pass
            if elapsed >= timeout_ms:
                return None
            await asyncio.sleep(_POLL_STEP_MS / 1000)
            elapsed += _POLL_STEP_MS

    async def fetch_bytes(self, url: str, *, timeout_ms: int) -> bytes:
        try:
            resp = await self._context.request.get(url, timeout=timeout_ms)
        except PlaywrightError as e:
            raise TransientError(f"No se pudo descargar {url} ({e})") from e
        if not resp.ok:
            raise TransientError(f"Descarga de {url} devolvió HTTP {resp.status}")
        return await resp.body()

    async def probe_image(self, selectors: Iterable[str], *, frame_hint: str | None = None) -> ImageProbe | None:
        scope = self._frame_for(frame_hint)
        if scope is None:
            return None
        try:
            found = await scope.evaluate(PROBE_IMAGE_SCRIPT, list(selectors))
        except PlaywrightError:
            return None
        if not found:
            return None
        return ImageProbe(selector=found["selector"], src=found.get("src"), loaded=bool(found.get("loaded")))

    async def capture_image(self, selector: str, *, frame_hint: str | None = None, timeout_ms: int) -> bytes:
        scope = self._frame_for(frame_hint)
        if scope is None:
            raise TransientError(f"No se encontró el iframe del captcha ({frame_hint})")
        img = scope.locator(selector).first
        try:
            await img.wait_for(state="visible", timeout=timeout_ms)
            data_url = await img.evaluate(CANVAS_CAPTURE_SCRIPT)
            if data_url and isinstance(data_url, str) and "base64," in data_url:
                return base64.b64decode(data_url.split("base64,", 1)[1])
            # Fallback: screenshot del elemento (PNG)
            return await img.screenshot(type="png", timeout=timeout_ms)
        except PlaywrightError as e:
            raise TransientError(f"Fallo al capturar captcha ({e})") from e

    async def find_site_key(self, selectors: Iterable[str]) -> str | None:
        try:
            return await self._scope.evaluate(SITE_KEY_SCRIPT, list(selectors))
        except PlaywrightError:
            return None

    async def inject_token(self, field_names: Iterable[str], token: str) -> None:
        hits = await self._scope.evaluate(INJECT_TOKEN_SCRIPT, [list(field_names), token])
        if not hits:
            logger.warning("No se encontró campo de respuesta para inyectar el token del captcha")

    async def hidden_fields(self, names: Iterable[str]) -> dict[str, str]:
        try:
            return await self._scope.evaluate(HIDDEN_FIELDS_SCRIPT, list(names)) or {}
        except PlaywrightError:
            return {}

    async def cookies(self) -> dict[str, str]:
        return {c["name"]: c["value"] for c in await self._context.cookies()}

    async def submit_form(
        self,
        fields: list[FormField],
        *,
        submit_selectors: Iterable[str],
        hidden: dict[str, str] | None = None,
        expect_popup: bool = False,
        wait_selectors: Iterable[str] = (),
        timeout_ms: int,
    ) -> Document:
        for f in fields:
            loc = await first_locator(self._scope, f.selectors)
            if loc is None:
                raise SelectorMissing(f"No se encontró el campo ({', '.join(f.selectors)})")
            if f.kind == "select":
                await loc.select_option(value=f.value)
                # Los select de WebForms disparan __doPostBack y recargan paneles
                try:
                    await self._scope.wait_for_load_state("networkidle", timeout=6000)
                except PlaywrightTimeoutError:
                    pass
            elif f.kind == "check":
                await loc.check()
            else:
                await loc.fill(f.value)

        if hidden:
            await self._scope.evaluate(SET_HIDDEN_FIELDS_SCRIPT, hidden)

        btn = await first_locator(self._scope, submit_selectors)
        if btn is None:
            raise SelectorMissing("No se encontró el botón de búsqueda")

        if expect_popup:
            try:
                async with self._context.expect_page(timeout=timeout_ms) as popup_info:
                    await btn.click()
                popup = await popup_info.value
                await popup.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
            except PlaywrightTimeoutError as e:
                raise TransientError("No se abrió la ventana de resultados") from e
            self._page = popup
            self._scope = popup
            self._attach(popup)
        else:
            await btn.click()
            try:
                await self._scope.wait_for_load_state("networkidle", timeout=timeout_ms)
            except PlaywrightTimeoutError:
                pass

        wait_selectors = list(wait_selectors)
        if wait_selectors:
            await self.wait_for_any(wait_selectors, timeout_ms=timeout_ms)
        return await self.current_document()

    async def extract_tables(self, selectors: Iterable[str]) -> list[list[list[str]]]:
        try:
            return await self._scope.evaluate(EXTRACT_TABLES_SCRIPT, list(selectors)) or []
        except PlaywrightError:
            return []

    async def evaluate(self, script: str, arg: Any = None, *, timeout_ms: int | None = None) -> Any:
        call = self._scope.evaluate(script, arg)
        if timeout_ms is None:
            return await call
        return await asyncio.wait_for(call, timeout=timeout_ms / 1000)

    async def close(self) -> None:
        await self._context.close()


class PlaywrightTransportFactory(TransportFactory):
    def __init__(self, browser, config: EngineConfig) -> None:
        self.browser = browser
        self.config = config

    async def open(self) -> Transport:
        context = await self.browser.new_context(
            locale=self.config.locale,
            timezone_id="America/Lima",
            ignore_https_errors=True,
            user_agent=self.config.user_agent,
            viewport={"width": 1366, "height": 768},
        )
        try:
            page = await context.new_page()
        except PlaywrightError:
            await context.close()
            raise
        return PlaywrightTransport(context, page)
