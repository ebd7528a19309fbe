# main.py
import os
import asyncio
import logging
from time import perf_counter
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from consultas.adapters import resolve_target_id
from consultas.config import EngineConfig
from consultas.engine import QueryEngine
from consultas.errors import ConfigurationError, ConsultaError, UnknownTarget, UnsupportedSearchMode
from consultas.models import SearchMode
from consultas.playwright_transport import PlaywrightTransportFactory, launch_browser
from consultas.solver import build_solver_service

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class ConsultaRequest(BaseModel):
    servicio: str = Field(..., alias="target")
    modo: str = Field("placa", alias="search_mode")
    valor: str = Field(..., alias="search_value")

    model_config = {
        # permite usar tanto los nombres en español como los alias del JSON
        "populate_by_name": True,
        "extra": "ignore",
    }


class PlacaRequest(BaseModel):
    placa: str


class ConsultaVehicularFullRequest(BaseModel):
    placa: str
    servicios: list[str] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Inicia Playwright y el navegador una sola vez para todo el proceso y
    arma el motor de consultas con la configuración del .env.
    """
    config = EngineConfig.from_env()
    solver = build_solver_service(config, strict=False)
    async with launch_browser(config) as browser:
        app.state.browser = browser
        app.state.engine = QueryEngine(config, PlaywrightTransportFactory(browser, config), solver)
        logger.info("Motor listo (captcha: %s, intentos: %d)", solver.name, config.max_attempts)
        try:
            yield
        finally:
            await solver.aclose()


app = FastAPI(lifespan=lifespan)

# CORS para permitir llamadas desde Expo / web
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # ajusta a los orígenes de tu app si quieres restringir
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _engine() -> QueryEngine:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="El motor de consultas no está iniciado")
    return engine


def _servicios_por_placa(engine: QueryEngine) -> list[str]:
    return [t for t, a in engine.adapters.items() if a.supports(SearchMode.PLATE)]


def _normalizar_servicios(engine: QueryEngine, lista: list[str] | None) -> list[str]:
    """
    Devuelve la lista de servicios a ejecutar, normalizada y sin duplicados.
    """
    if not lista:
        return _servicios_por_placa(engine)
    normalizados = []
    invalidos = []
    for item in lista:
        slug = resolve_target_id(item)
        if not slug:
            continue
        if slug not in engine.adapters:
            invalidos.append(item)
            continue
        if slug not in normalizados:
            normalizados.append(slug)
    if invalidos:
        raise HTTPException(
            status_code=400,
            detail=f"Servicios no soportados: {', '.join(invalidos)}",
        )
    return normalizados


async def _consultar(servicio: str, modo: str, valor: str) -> dict:
    """
    Ejecuta una consulta y traduce los errores del llamador a HTTP.
    """
    try:
        result = await _engine().query_target(servicio, modo, valor)
    except UnknownTarget as e:
        raise HTTPException(status_code=404, detail=e.message)
    except UnsupportedSearchMode as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return result.to_dict()


async def _wrap_servicio(nombre: str, placa: str, timeout_s: float):
    """
    Ejecuta un servicio y captura errores sin lanzar excepciones al cliente.
    """
    started = perf_counter()
    try:
        result = await asyncio.wait_for(
            _engine().query_target(nombre, SearchMode.PLATE, placa),
            timeout=timeout_s,
        )
        return {
            "ok": result.ok,
            "data": result.to_dict(),
            "error": None if result.ok else result.message,
            "duracion_ms": int((perf_counter() - started) * 1000),
        }
    except asyncio.TimeoutError:
        return {
            "ok": False,
            "error": f"Timeout después de {timeout_s:g} s",
            "status": 504,
            "duracion_ms": int((perf_counter() - started) * 1000),
        }
    except ConsultaError as e:
        return {
            "ok": False,
            "error": e.message,
            "status": 400 if isinstance(e, (UnknownTarget, UnsupportedSearchMode)) else 500,
            "duracion_ms": int((perf_counter() - started) * 1000),
        }
    except Exception as e:
        logger.exception("Error inesperado en %s", nombre)
        return {
            "ok": False,
            "error": str(e),
            "status": 500,
            "duracion_ms": int((perf_counter() - started) * 1000),
        }


@app.get("/")
async def root():
    return {
        "ok": True,
        "message": "API de consultas vehiculares (SAT, SAT Callao, SUTRAN, Piura, SOAT)",
    }


@app.get("/health")
async def health():
    engine = getattr(app.state, "engine", None)
    return {
        "ok": engine is not None,
        "captcha": engine.solver_service.name if engine else None,
    }


@app.get("/targets")
async def targets():
    return {"ok": True, "targets": _engine().describe_targets()}


@app.post("/consulta")
async def consulta(req: ConsultaRequest):
    """
    Consulta genérica: cualquier portal registrado, por placa, documento,
    nombre o número de papeleta según lo que soporte.
    """
    return await _consultar(req.servicio, req.modo, req.valor)


@app.post("/consulta-vehicular-full")
async def consulta_vehicular_full(req: ConsultaVehicularFullRequest):
    """
    Endpoint agregador: ejecuta varias consultas por placa en paralelo
    y devuelve un bloque por servicio solicitado.
    """
    engine = _engine()
    placa = req.placa.strip().upper()
    if not placa:
        raise HTTPException(status_code=400, detail="La placa es obligatoria")
    servicios = _normalizar_servicios(engine, req.servicios)
    timeout_s = engine.config.service_timeout_s

    bloques = await asyncio.gather(*(_wrap_servicio(s, placa, timeout_s) for s in servicios))
    return {
        "ok": True,
        "placa": placa,
        "servicios": dict(zip(servicios, bloques)),
        "orden_solicitado": servicios,
    }


# -------- SAT LIMA --------
@app.post("/consulta-sat")
async def endpoint_sat(req: PlacaRequest):
    return await _consultar("sat_capturas", "placa", req.placa)


# -------- SAT CALLAO --------
@app.post("/consulta-satcallao")
async def endpoint_satcallao(req: PlacaRequest):
    return await _consultar("sat_callao", "placa", req.placa)


# -------- SUTRAN --------
@app.post("/consulta-sutran")
async def endpoint_sutran(req: PlacaRequest):
    """
    Récord de infracciones SUTRAN (formulario y captcha dentro de iframes).
    """
    return await _consultar("sutran", "placa", req.placa)


# -------- PIURA --------
@app.post("/consulta-piura")
async def endpoint_piura(req: PlacaRequest):
    return await _consultar("piura", "placa", req.placa)


# -------- SOAT --------
@app.post("/consulta-soat")
async def consulta_soat_endpoint(req: PlacaRequest):
    """
    Certificados SOAT (SBS).
    """
    return await _consultar("soat", "placa", req.placa)
