import asyncio
import logging
from typing import Iterable

from consultas.adapters import ADAPTERS, SiteAdapter, get_adapter
from consultas.challenge import ChallengeRetriever
from consultas.config import EngineConfig
from consultas.coordinator import RetryCoordinator
from consultas.errors import ConsultaError, UnsupportedSearchMode
from consultas.models import QueryRequest, QueryResult, SearchMode
from consultas.session_store import SessionStore
from consultas.solver import CaptchaSolverClient, SolverService
from consultas.submitter import QuerySubmitter
from consultas.transport import TransportFactory

logger = logging.getLogger(__name__)


class QueryEngine:
    """
    Punto de entrada del motor. Cada consulta arma sus propios componentes;
    lo único compartido es la fábrica de transportes y el servicio de captcha,
    que no guardan estado de una consulta.
    """

    def __init__(
        self,
        config: EngineConfig,
        transport_factory: TransportFactory,
        solver_service: SolverService,
        adapters: dict[str, SiteAdapter] | None = None,
    ) -> None:
        self.config = config
        self.transport_factory = transport_factory
        self.solver_service = solver_service
        self.adapters = ADAPTERS if adapters is None else adapters

    def build_request(self, target_id: str, search_mode: str | SearchMode, search_value: str) -> tuple[SiteAdapter, QueryRequest]:
        """Valida la consulta antes de abrir nada; los errores aquí son del llamador."""
        adapter = get_adapter(target_id, self.adapters)
        mode = SearchMode.parse(search_mode)
        if not adapter.supports(mode):
            raise UnsupportedSearchMode(
                f"{adapter.name} no permite buscar por {mode.value} "
                f"(soporta: {', '.join(m.value for m in adapter.search_modes)})",
                adapter.target_id,
            )
        value = (search_value or "").strip()
        if not value:
            raise UnsupportedSearchMode("El valor de búsqueda está vacío", adapter.target_id)
        return adapter, QueryRequest(target_id=adapter.target_id, search_mode=mode, search_value=value)

    def coordinator_for(self, adapter: SiteAdapter) -> RetryCoordinator:
        return RetryCoordinator(
            adapter,
            self.config,
            SessionStore(self.transport_factory, self.config),
            ChallengeRetriever(self.config),
            CaptchaSolverClient(self.solver_service, self.config, target_id=adapter.target_id),
            QuerySubmitter(self.config),
        )

    async def query_target(self, target_id: str, search_mode: str | SearchMode, search_value: str) -> QueryResult:
        adapter, request = self.build_request(target_id, search_mode, search_value)
        coordinator = self.coordinator_for(adapter)
        try:
            return await asyncio.wait_for(coordinator.run(request), timeout=self.config.request_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("[%s] consulta %s superó %gs", adapter.target_id, request.request_id, self.config.request_timeout_s)
            return coordinator.deadline_exceeded(request, self.config.request_timeout_s)

    async def query_many(
        self,
        targets: Iterable[str],
        search_mode: str | SearchMode,
        search_value: str,
    ) -> dict[str, QueryResult | ConsultaError]:
        """
        Corre varios portales en paralelo con el mismo valor de búsqueda.
        Un error de llamador en un portal no cancela a los demás.
        """
        targets = list(dict.fromkeys(targets))

        async def _one(target: str):
            try:
                return await self.query_target(target, search_mode, search_value)
            except ConsultaError as e:
                return e

        results = await asyncio.gather(*(_one(t) for t in targets))
        return dict(zip(targets, results))

    def describe_targets(self) -> list[dict]:
        return [a.describe() for a in self.adapters.values()]
