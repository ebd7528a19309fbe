import io
from typing import Any, Iterable

import pytest
from PIL import Image

from consultas.adapters.base import ChallengeHints, SearchField, SiteAdapter
from consultas.config import EngineConfig
from consultas.models import SearchMode
from consultas.solver import PollResult, SolverService
from consultas.transport import Document, ImageProbe, Transport, TransportFactory

DEMO_URL = "https://demo.gob.pe/consulta.aspx"
CAPTCHA_SRC = "https://demo.gob.pe/Captcha.aspx?numAleatorio=4711"

RESULT_HTML_TABLE = [
    ["N° Papeleta", "Fecha", "Falta", "Importe", "Estado"],
    ["P-001", "05/01/2024", "M20", "S/. 1,234.50", "Pendiente"],
]


def png_bytes(size=(60, 20), color=(200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


class FakeTransport(Transport):
    """Transporte con guion fijo; registra todo lo que el motor le pide."""

    def __init__(
        self,
        *,
        nav_status: int | None = 200,
        nav_text: str = "Consulta de papeletas",
        frame_ok: bool = True,
        missing: Iterable[str] = (),
        probes: list[ImageProbe | None] | None = None,
        image: bytes | None = None,
        site_key: str | None = None,
        hidden: dict[str, str] | None = None,
        result_text: str = "",
        result_status: int | None = 200,
        tables: list | None = None,
        submit_error: Exception | None = None,
        evaluated: Any = None,
    ) -> None:
        self.nav_status = nav_status
        self.nav_text = nav_text
        self.frame_ok = frame_ok
        self.missing = set(missing)
        self.probes = list(probes) if probes is not None else [ImageProbe("img#captcha", CAPTCHA_SRC, True)]
        self.image = image if image is not None else png_bytes()
        self.site_key = site_key
        self.hidden = hidden or {}
        self.result_text = result_text
        self.result_status = result_status
        self.tables = tables if tables is not None else []
        self.submit_error = submit_error
        self.evaluated = evaluated

        self.url = DEMO_URL
        self.navigations: list[str] = []
        self.frames: list[str] = []
        self.submitted: list[dict[str, Any]] = []
        self.injected: list[tuple[tuple[str, ...], str]] = []
        self.probe_calls = 0
        self.scripts_run: list[str] = []
        self.closed = False

    async def navigate(self, url, *, timeout_ms):
        self.navigations.append(url)
        self.url = url
        return Document(url=url, status=self.nav_status, text=self.nav_text)

    async def enter_frame(self, url_fragment, *, timeout_ms):
        self.frames.append(url_fragment)
        if not self.frame_ok:
            return None
        self.url = f"https://frames.demo.gob.pe/{url_fragment}"
        return Document(url=self.url, status=200, text=self.nav_text)

    async def current_document(self):
        return Document(url=self.url, status=self.nav_status, text=self.nav_text)

    async def wait_for_any(self, selectors, *, timeout_ms):
        for sel in selectors:
            if sel not in self.missing:
                return sel
        return None

    async def fetch_bytes(self, url, *, timeout_ms):
        return self.image

    async def probe_image(self, selectors, *, frame_hint=None):
        self.probe_calls += 1
        if len(self.probes) > 1:
            return self.probes.pop(0)
        return self.probes[0] if self.probes else None

    async def capture_image(self, selector, *, frame_hint=None, timeout_ms):
        return self.image

    async def find_site_key(self, selectors):
        return self.site_key

    async def inject_token(self, field_names, token):
        self.injected.append((tuple(field_names), token))

    async def hidden_fields(self, names):
        return {n: self.hidden[n] for n in names if n in self.hidden}

    async def cookies(self):
        return {"ASP.NET_SessionId": "abc123"}

    async def submit_form(self, fields, *, submit_selectors, hidden=None, expect_popup=False, wait_selectors=(), timeout_ms):
        self.submitted.append({"fields": list(fields), "hidden": hidden, "expect_popup": expect_popup})
        if self.submit_error is not None:
            raise self.submit_error
        return Document(url=self.url, status=self.result_status, text=self.result_text)

    async def extract_tables(self, selectors):
        return self.tables

    async def evaluate(self, script, arg=None, *, timeout_ms=None):
        self.scripts_run.append(script)
        if isinstance(self.evaluated, Exception):
            raise self.evaluated
        return self.evaluated

    async def close(self):
        self.closed = True


class FakeTransportFactory(TransportFactory):
    """
    Cada sesión abierta recibe un transporte NUEVO armado con el siguiente
    guion (kwargs de FakeTransport); el último guion se repite.
    """

    def __init__(self, *scripts: dict) -> None:
        self.scripts = list(scripts) or [{}]
        self.opened: list[FakeTransport] = []

    async def open(self):
        kwargs = self.scripts.pop(0) if len(self.scripts) > 1 else self.scripts[0]
        transport = FakeTransport(**kwargs)
        self.opened.append(transport)
        return transport


class FakeSolverService(SolverService):
    """
    `script` es la lista de respuestas de poll para cada trabajo, en orden.
    Un str es la respuesta lista, None es "no listo", y ("ERROR", code) un error.
    """

    name = "fake"

    def __init__(self, *scripts: list) -> None:
        self.scripts = [list(s) for s in scripts] or [["ABCD"]]
        self.submitted: list[tuple[Any, Any]] = []
        self.polls = 0
        self.reported_bad: list[str] = []
        self._jobs: dict[str, list] = {}

    async def submit(self, challenge, constraints):
        self.submitted.append((challenge, constraints))
        script = self.scripts.pop(0) if len(self.scripts) > 1 else list(self.scripts[0])
        job_id = f"job-{len(self.submitted)}"
        self._jobs[job_id] = script
        return job_id

    async def poll(self, job_id):
        self.polls += 1
        script = self._jobs[job_id]
        step = script.pop(0) if len(script) > 1 else script[0]
        if step is None:
            return PollResult(ready=False)
        if isinstance(step, tuple):
            return PollResult(ready=True, error_code=step[1])
        return PollResult(ready=True, answer=step)

    async def report_bad(self, job_id):
        self.reported_bad.append(job_id)


def make_adapter(**overrides) -> SiteAdapter:
    values = dict(
        target_id="demo",
        name="Portal demo",
        category="infraction",
        search_url=DEMO_URL,
        search_modes={
            SearchMode.PLATE: SearchField(input_selectors=("#placa",)),
            SearchMode.TICKET_NUMBER: SearchField(
                input_selectors=("#valor",), select_selectors=("#tipo",), select_value="2"
            ),
        },
        form_selectors=("#placa",),
        submit_selectors=("#buscar",),
        challenge=ChallengeHints(
            kind="image",
            image_selectors=("img#captcha",),
            input_selectors=("#captcha",),
        ),
        result_selectors=("table",),
        field_map={
            "number": ("n papeleta", "papeleta"),
            "date": ("fecha",),
            "description": ("falta", "infraccion"),
            "amount": ("importe", "monto"),
            "status": ("estado",),
        },
    )
    values.update(overrides)
    return SiteAdapter(**values)


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        max_attempts=3,
        backoff_base_s=3.0,
        backoff_max_s=30.0,
        session_timeout_s=1,
        challenge_load_timeout_s=0.05,
        challenge_poll_interval_s=0,
        solver_poll_interval_s=0,
        solver_timeout_short_code_s=5,
        solver_timeout_image_s=5,
        solver_timeout_widget_s=5,
        result_wait_s=0.1,
        attempt_timeout_s=5,
        request_timeout_s=10,
    )


@pytest.fixture
def adapter() -> SiteAdapter:
    return make_adapter()


class RecordingSleep:
    """Registra las esperas del backoff sin dormir de verdad."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()
