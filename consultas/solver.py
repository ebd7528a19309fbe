"""
Resolución de captchas con servicios externos (CapMonster / 2Captcha).

Todos los backends exponen el mismo contrato de dos pasos: `submit` devuelve
un id de trabajo y `poll` informa si ya hay respuesta o un código de error.
`CaptchaSolverClient` hace el bucle de polling con su plazo máximo.
"""

import asyncio
import base64
import io
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
from capmonstercloudclient import CapMonsterClient, ClientOptions
from capmonstercloudclient.requests import ImageToTextRequest, RecaptchaV2Request, TurnstileRequest
from PIL import Image, ImageOps, UnidentifiedImageError

from consultas.adapters.base import SolveConstraints
from consultas.config import EngineConfig
from consultas.errors import (
    ConfigurationError,
    ConsultaError,
    InvalidCaptcha,
    SolverServiceError,
    SolverTimeout,
    TransientError,
)
from consultas.models import CaptchaSolution, ChallengeKind, ChallengeToken

logger = logging.getLogger(__name__)

NOT_READY = "CAPCHA_NOT_READY"

# Códigos que significan "este captcha no sirve, pide otro"
INVALID_CAPTCHA_CODES = frozenset(
    {
        "ERROR_CAPTCHA_UNSOLVABLE",
        "ERROR_WRONG_CAPTCHA_ID",
        "ERROR_NO_SUCH_CAPCHA_ID",
        "ERROR_BAD_DUPLICATES",
        "ERROR_TOKEN_EXPIRED",
        "ERROR_IMAGE_TYPE_NOT_SUPPORTED",
        "ERROR_ZERO_CAPTCHA_FILESIZE",
        "ERROR_TOO_BIG_CAPTCHA_FILESIZE",
        "ERROR_EMPTY_ANSWER",
    }
)

_ERROR_CODE_RE = re.compile(r"\b(ERROR_[A-Z0-9_]+)\b")


def classify_solver_error(code: str, target_id: str | None = None) -> ConsultaError:
    """Traduce un código del servicio a la excepción del motor."""
    code = (code or "").strip().upper()
    if code in INVALID_CAPTCHA_CODES:
        return InvalidCaptcha(f"El servicio no pudo resolver el captcha ({code})", target_id, error_code=code)
    return SolverServiceError(f"Error del servicio de captcha ({code or 'desconocido'})", target_id, error_code=code)


def prepare_image(image: bytes, *, grayscale: bool = False) -> tuple[bytes, str]:
    """
    Devuelve (bytes, mime). Con `grayscale` re-codifica a PNG en escala de
    grises con autocontraste, que suele mejorar el acierto en captchas ruidosos.
    """
    try:
        img = Image.open(io.BytesIO(image))
        fmt = (img.format or "PNG").upper()
        if not grayscale:
            return image, Image.MIME.get(fmt, "image/png")
        img = ImageOps.autocontrast(img.convert("L"))
        out = io.BytesIO()
        img.save(out, format="PNG")
        return out.getvalue(), "image/png"
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidCaptcha(f"La imagen del captcha no es válida ({e})") from e


def clean_answer(raw: str, constraints: SolveConstraints) -> str:
    """Deja solo alfanuméricos; mayúsculas si el captcha no distingue."""
    answer = re.sub(r"[^A-Za-z0-9]", "", raw or "")
    if constraints.numeric:
        answer = re.sub(r"\D", "", answer)
    if not constraints.case_sensitive:
        answer = answer.upper()
    return answer


@dataclass(frozen=True)
class PollResult:
    ready: bool
    answer: str | None = None
    error_code: str | None = None


class SolverService(ABC):
    name = "solver"

    @abstractmethod
    async def submit(self, challenge: ChallengeToken, constraints: SolveConstraints) -> str: ...

    @abstractmethod
    async def poll(self, job_id: str) -> PollResult: ...

    async def report_bad(self, job_id: str) -> None:
        """Avisa que el portal rechazó la respuesta. Opcional por backend."""

    def cancel(self, job_id: str) -> None:
        pass

    async def aclose(self) -> None:
        pass


class TwoCaptchaService(SolverService):
    """API clásica in.php / res.php de 2Captcha con json=1."""

    name = "2captcha"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://2captcha.com",
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s)

    def _submit_data(self, challenge: ChallengeToken, constraints: SolveConstraints) -> dict:
        data = {"key": self.api_key, "json": 1}
        if challenge.kind is ChallengeKind.IMAGE:
            data.update(method="base64", body=base64.b64encode(challenge.image or b"").decode("ascii"))
            if constraints.numeric:
                data["numeric"] = 1
            if constraints.min_length:
                data["min_len"] = constraints.min_length
            if constraints.max_length:
                data["max_len"] = constraints.max_length
            if constraints.case_sensitive:
                data["regsense"] = 1
        elif challenge.widget_type == "turnstile":
            data.update(method="turnstile", sitekey=challenge.site_key, pageurl=challenge.page_url)
        else:
            data.update(method="userrecaptcha", googlekey=challenge.site_key, pageurl=challenge.page_url)
        return data

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransientError(f"No se pudo contactar a 2Captcha ({e.__class__.__name__})") from e
        if resp.status_code != 200:
            raise SolverServiceError(
                f"2Captcha devolvió HTTP {resp.status_code}", error_code=f"HTTP_{resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError:
            # Algunas respuestas de error llegan como texto plano aunque se pida json
            return {"status": 0, "request": resp.text.strip()}

    async def submit(self, challenge: ChallengeToken, constraints: SolveConstraints) -> str:
        body = await self._call("POST", "/in.php", data=self._submit_data(challenge, constraints))
        if str(body.get("status")) != "1":
            raise classify_solver_error(str(body.get("request") or ""))
        return str(body["request"])

    async def poll(self, job_id: str) -> PollResult:
        params = {"key": self.api_key, "action": "get", "id": job_id, "json": 1}
        body = await self._call("GET", "/res.php", params=params)
        request = str(body.get("request") or "")
        if str(body.get("status")) == "1":
            return PollResult(ready=True, answer=request)
        if request == NOT_READY:
            return PollResult(ready=False)
        return PollResult(ready=True, error_code=request or "ERROR_UNKNOWN")

    async def report_bad(self, job_id: str) -> None:
        params = {"key": self.api_key, "action": "reportbad", "id": job_id, "json": 1}
        try:
            await self._client.get("/res.php", params=params)
        except httpx.HTTPError as e:
            logger.warning("No se pudo reportar captcha %s a 2Captcha: %s", job_id, e)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CapMonsterService(SolverService):
    """
    El cliente de CapMonster resuelve en una sola llamada; aquí se lanza como
    tarea y `poll` consulta su estado, para que encaje en submit/poll.
    """

    name = "capmonster"

    def __init__(self, api_key: str, client=None) -> None:
        if client is None:
            client = CapMonsterClient(options=ClientOptions(api_key=api_key))
        self._client = client
        self._jobs: dict[str, asyncio.Task] = {}

    def _build_request(self, challenge: ChallengeToken, constraints: SolveConstraints):
        if challenge.kind is ChallengeKind.IMAGE:
            return ImageToTextRequest(
                image_bytes=challenge.image,
                module_name="universal",
                numeric=1 if constraints.numeric else 0,
                case=constraints.case_sensitive,
                math=False,
            )
        if challenge.widget_type == "turnstile":
            return TurnstileRequest(websiteURL=challenge.page_url, websiteKey=challenge.site_key)
        return RecaptchaV2Request(websiteUrl=challenge.page_url, websiteKey=challenge.site_key)

    async def submit(self, challenge: ChallengeToken, constraints: SolveConstraints) -> str:
        request = self._build_request(challenge, constraints)
        job_id = uuid.uuid4().hex
        self._jobs[job_id] = asyncio.create_task(self._client.solve_captcha(request))
        return job_id

    async def poll(self, job_id: str) -> PollResult:
        task = self._jobs.get(job_id)
        if task is None:
            return PollResult(ready=True, error_code="ERROR_NO_SUCH_CAPCHA_ID")
        if not task.done():
            return PollResult(ready=False)
        self._jobs.pop(job_id, None)
        if task.cancelled():
            return PollResult(ready=True, error_code="ERROR_CANCELLED")
        exc = task.exception()
        if exc is not None:
            m = _ERROR_CODE_RE.search(str(exc))
            logger.warning("CapMonster falló: %s", exc)
            return PollResult(ready=True, error_code=m.group(1) if m else "ERROR_UNKNOWN")
        solution = task.result() or {}
        answer = (
            solution.get("text")
            or solution.get("answer")
            or solution.get("code")
            or solution.get("token")
            or solution.get("gRecaptchaResponse")
            or ""
        )
        if not answer:
            return PollResult(ready=True, error_code="ERROR_EMPTY_ANSWER")
        return PollResult(ready=True, answer=str(answer))

    def cancel(self, job_id: str) -> None:
        task = self._jobs.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        for job_id in list(self._jobs):
            self.cancel(job_id)


class UnconfiguredSolverService(SolverService):
    """
    Se usa cuando falta la API key: los portales sin captcha siguen
    funcionando y el error aparece recién cuando hay que resolver uno.
    """

    name = "sin-configurar"

    def __init__(self, reason: str) -> None:
        self.reason = reason

    async def submit(self, challenge: ChallengeToken, constraints: SolveConstraints) -> str:
        raise ConfigurationError(self.reason)

    async def poll(self, job_id: str) -> PollResult:
        raise ConfigurationError(self.reason)


def build_solver_service(config: EngineConfig, strict: bool = True) -> SolverService:
    """
    Elige el backend según CAPTCHA_PROVIDER. Con `strict=False` una key
    faltante no impide arrancar la API.
    """
    if config.solver_provider == "2captcha":
        if not config.twocaptcha_api_key:
            reason = "Falta CAPTCHA_API_KEY para usar 2Captcha"
            if not strict:
                return UnconfiguredSolverService(reason)
            raise ConfigurationError(reason)
        return TwoCaptchaService(
            config.twocaptcha_api_key,
            base_url=config.twocaptcha_base_url,
            timeout_s=config.solver_http_timeout_s,
        )
    if config.solver_provider == "capmonster":
        if not config.capmonster_api_key:
            reason = "Falta CAPMONSTER_API_KEY para usar CapMonster (carga el .env y reinicia la API)"
            if not strict:
                return UnconfiguredSolverService(reason)
            raise ConfigurationError(reason)
        return CapMonsterService(config.capmonster_api_key)
    raise ConfigurationError(f"CAPTCHA_PROVIDER no soportado: {config.solver_provider!r}")


class CaptchaSolverClient:
    """Envía el captcha al servicio y hace polling hasta respuesta, error o plazo."""

    def __init__(self, service: SolverService, config: EngineConfig, target_id: str | None = None) -> None:
        self.service = service
        self.config = config
        self.target_id = target_id

    def deadline_for(self, challenge: ChallengeToken, constraints: SolveConstraints) -> float:
        if challenge.kind is ChallengeKind.WIDGET:
            return self.config.solver_timeout_widget_s
        if constraints.is_short_code:
            return self.config.solver_timeout_short_code_s
        return self.config.solver_timeout_image_s

    async def solve(self, challenge: ChallengeToken, constraints: SolveConstraints | None = None) -> CaptchaSolution:
        constraints = constraints or SolveConstraints()
        started = time.perf_counter()
        deadline = self.deadline_for(challenge, constraints)

        job_id = await self.service.submit(challenge, constraints)
        logger.info(
            "[%s] captcha %s enviado a %s (job=%s, plazo=%gs)",
            self.target_id, challenge.challenge_id, self.service.name, job_id, deadline,
        )

        polls = 0
        try:
            while True:
                await asyncio.sleep(self.config.solver_poll_interval_s)
                polls += 1
                result = await self.service.poll(job_id)
                if result.ready:
                    break
                if time.perf_counter() - started >= deadline:
                    raise SolverTimeout(
                        f"El servicio de captcha no respondió en {deadline:g}s",
                        self.target_id,
                        timeout_seconds=deadline,
                    )
        except BaseException:
            # Plazo vencido o intento cancelado desde arriba: el job no debe seguir corriendo
            self.service.cancel(job_id)
            raise

        if result.error_code:
            raise classify_solver_error(result.error_code, self.target_id)

        answer = result.answer or ""
        if challenge.kind is ChallengeKind.IMAGE:
            answer = clean_answer(answer, constraints)
        if not answer:
            raise InvalidCaptcha("El servicio devolvió una respuesta vacía", self.target_id, error_code="ERROR_EMPTY_ANSWER")

        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.info("[%s] captcha resuelto en %dms tras %d consulta(s)", self.target_id, latency_ms, polls)
        return CaptchaSolution(
            answer=answer,
            solve_latency_ms=latency_ms,
            challenge_id=challenge.challenge_id,
            job_id=job_id,
        )
