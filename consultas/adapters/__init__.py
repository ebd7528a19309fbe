from consultas.adapters.base import (
    ChallengeHints,
    SearchField,
    SiteAdapter,
    SolveConstraints,
)
from consultas.adapters.piura import PIURA
from consultas.adapters.sat import SAT_CAPTURAS
from consultas.adapters.satcallao import SAT_CALLAO
from consultas.adapters.soat import SOAT
from consultas.adapters.sutran import SUTRAN
from consultas.errors import UnknownTarget

ADAPTERS: dict[str, SiteAdapter] = {
    a.target_id: a for a in (SAT_CAPTURAS, SAT_CALLAO, SUTRAN, PIURA, SOAT)
}

TARGET_ALIASES = {
    "sat": "sat_capturas",
    "satcallao": "sat_callao",
    "callao": "sat_callao",
    "sbs": "soat",
}


def resolve_target_id(target_id: str) -> str:
    slug = (target_id or "").strip().lower()
    return TARGET_ALIASES.get(slug, slug)


def get_adapter(target_id: str, adapters: dict[str, SiteAdapter] | None = None) -> SiteAdapter:
    adapters = ADAPTERS if adapters is None else adapters
    slug = resolve_target_id(target_id)
    adapter = adapters.get(slug)
    if adapter is None:
        raise UnknownTarget(f"Servicio no soportado: {target_id}")
    return adapter


def register_adapter(adapter: SiteAdapter) -> None:
    ADAPTERS[adapter.target_id] = adapter


__all__ = [
    "ADAPTERS",
    "ChallengeHints",
    "SearchField",
    "SiteAdapter",
    "SolveConstraints",
    "get_adapter",
    "register_adapter",
    "resolve_target_id",
]
