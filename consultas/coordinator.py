"""
Máquina de estados de una consulta:

    PENDING -> ATTEMPTING -> SUCCESS | EMPTY | RETRYING | BLOCKED | EXHAUSTED | FAILED
    RETRYING -> ATTEMPTING

Cada intento usa sesión y captcha nuevos; nunca corren dos intentos de la
misma consulta a la vez.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from consultas.adapters.base import SiteAdapter
from consultas.challenge import ChallengeRetriever
from consultas.classifier import ResponseClassifier
from consultas.config import EngineConfig
from consultas.errors import (
    Blocked,
    ChallengeReuseError,
    ConfigurationError,
    ConsultaError,
    InvalidCaptcha,
    RequestTimeout,
    SelectorMissing,
    SiteChanged,
    SolverServiceError,
    TransientError,
)
from consultas.models import (
    Outcome,
    OutcomeKind,
    QueryAttempt,
    QueryRequest,
    QueryResult,
    QueryStatus,
)
from consultas.normalizer import normalize
from consultas.session_store import SessionStore
from consultas.solver import CaptchaSolverClient
from consultas.submitter import QuerySubmitter

logger = logging.getLogger(__name__)


class QueryState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCESS = "success"
    EMPTY = "empty"
    BLOCKED = "blocked"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


TERMINAL_STATES = {QueryState.SUCCESS, QueryState.EMPTY, QueryState.BLOCKED, QueryState.EXHAUSTED, QueryState.FAILED}


def _ms_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class RetryCoordinator:
    def __init__(
        self,
        adapter: SiteAdapter,
        config: EngineConfig,
        session_store: SessionStore,
        challenges: ChallengeRetriever,
        solver: CaptchaSolverClient,
        submitter: QuerySubmitter,
        classifier: ResponseClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.config = config
        self.session_store = session_store
        self.challenges = challenges
        self.solver = solver
        self.submitter = submitter
        self.classifier = classifier or ResponseClassifier(adapter)
        self._sleep = sleep
        self.state = QueryState.PENDING
        self.attempts: list[QueryAttempt] = []
        self._started: float | None = None
        self._attempt_started: float | None = None

    async def _report_bad(self, job_id: str | None) -> None:
        if not job_id:
            return
        try:
            await self.solver.service.report_bad(job_id)
        except Exception as e:
            logger.warning("[%s] no se pudo reportar el captcha %s: %s", self.adapter.target_id, job_id, e)

    async def _attempt(self, request: QueryRequest, attempt: QueryAttempt) -> Outcome:
        adapter = self.adapter
        async with self.session_store.opened(adapter) as session:
            attempt.session_id = session.session_id

            challenge = await self.challenges.get_challenge(session, adapter)
            solution = None
            if challenge is not None:
                attempt.challenge_id = challenge.challenge_id
                solution = await self.solver.solve(challenge, adapter.challenge.constraints)
                attempt.solve_latency_ms = solution.solve_latency_ms

            raw = await self.submitter.submit(session, challenge, solution, request, adapter)

        outcome = self.classifier.classify(raw)
        attempt.outcome = outcome.kind
        if outcome.kind is OutcomeKind.INVALID_CAPTCHA:
            await self._report_bad(solution.job_id if solution else None)
            raise InvalidCaptcha(outcome.message, adapter.target_id, rejected_by_portal=True)
        if outcome.kind is OutcomeKind.BLOCKED:
            raise Blocked(outcome.message, adapter.target_id, status_code=raw.status, marker=outcome.marker)
        if outcome.kind is OutcomeKind.TRANSIENT_ERROR:
            raise TransientError(outcome.message, adapter.target_id)
        return outcome

    def _result(
        self,
        request: QueryRequest,
        status: QueryStatus,
        message: str,
        attempts: list[QueryAttempt],
        started: float,
        records=(),
        error: ConsultaError | None = None,
    ) -> QueryResult:
        return QueryResult(
            status=status,
            records=tuple(records),
            message=message,
            attempts_used=len(attempts),
            target_id=self.adapter.target_id,
            search_mode=request.search_mode,
            search_value=request.search_value,
            error_code=error.code if error else None,
            elapsed_ms=_ms_since(started),
            attempts=tuple(attempts),
        )

    def _failed(self, request, state: QueryState, error: ConsultaError, attempts, started) -> QueryResult:
        self.state = state
        logger.warning(
            "[%s] consulta %s terminó en %s tras %d intento(s): %s",
            self.adapter.target_id, request.request_id, state.value, len(attempts), error,
        )
        return self._result(
            request,
            QueryStatus.FAILED,
            f"No se pudo completar la consulta: {error.message}",
            attempts,
            started,
            error=error,
        )

    def deadline_exceeded(self, request: QueryRequest, timeout_s: float) -> QueryResult:
        """
        Resultado cuando el llamador canceló `run` por el plazo total. Conserva
        los intentos hechos; el que estaba en curso queda marcado como cortado.
        """
        error = RequestTimeout(f"tiempo máximo de {timeout_s:g}s agotado", self.adapter.target_id)
        current = self.attempts[-1] if self.attempts else None
        if current is not None and current.error_code is None and current.outcome is None:
            current.error_code = error.code
            current.error = error.message
            if self._attempt_started is not None:
                current.duration_ms = _ms_since(self._attempt_started)
        started = self._started if self._started is not None else time.perf_counter()
        return self._failed(request, QueryState.FAILED, error, self.attempts, started)

    async def run(self, request: QueryRequest) -> QueryResult:
        adapter = self.adapter
        config = self.config
        self._started = started = time.perf_counter()
        self.attempts = attempts = []
        solver_errors = 0
        selector_misses = 0

        for number in range(1, config.max_attempts + 1):
            self.state = QueryState.ATTEMPTING
            attempt = QueryAttempt(attempt_number=number)
            attempts.append(attempt)
            self._attempt_started = attempt_start = time.perf_counter()
            logger.info("[%s] intento %d/%d (%s)", adapter.target_id, number, config.max_attempts, request.request_id)

            try:
                outcome = await asyncio.wait_for(self._attempt(request, attempt), timeout=config.attempt_timeout_s)
                if outcome.kind is OutcomeKind.EMPTY:
                    attempt.duration_ms = _ms_since(attempt_start)
                    self.state = QueryState.EMPTY
                    logger.info("[%s] sin registros: %s", adapter.target_id, outcome.message)
                    return self._result(request, QueryStatus.EMPTY, outcome.message, attempts, started)

                records = normalize(outcome.records, adapter)
                attempt.duration_ms = _ms_since(attempt_start)
                if not records:
                    raise SiteChanged(
                        "El portal devolvió filas pero ninguna coincide con los campos esperados",
                        adapter.target_id,
                    )
                self.state = QueryState.SUCCESS
                logger.info("[%s] %d registro(s) en el intento %d", adapter.target_id, len(records), number)
                return self._result(
                    request,
                    QueryStatus.SUCCESS,
                    f"Se encontraron {len(records)} registro(s)",
                    attempts,
                    started,
                    records=records,
                )
            except asyncio.TimeoutError:
                error: ConsultaError = TransientError(
                    f"El intento superó {config.attempt_timeout_s:g}s", adapter.target_id
                )
            except (ChallengeReuseError, ConfigurationError):
                raise
            except ConsultaError as e:
                error = e
            except Exception as e:
                logger.exception("[%s] error inesperado en el intento %d", adapter.target_id, number)
                error = TransientError(f"Error inesperado: {e}", adapter.target_id)

            if error.target_id is None:
                error.target_id = adapter.target_id
            attempt.duration_ms = _ms_since(attempt_start)
            attempt.error_code = error.code
            attempt.error = error.message
            if attempt.outcome is None:
                if isinstance(error, Blocked):
                    attempt.outcome = OutcomeKind.BLOCKED
                elif isinstance(error, InvalidCaptcha):
                    attempt.outcome = OutcomeKind.INVALID_CAPTCHA
                elif error.retryable:
                    attempt.outcome = OutcomeKind.TRANSIENT_ERROR

            if isinstance(error, Blocked):
                return self._failed(request, QueryState.BLOCKED, error, attempts, started)
            if isinstance(error, SiteChanged):
                return self._failed(request, QueryState.FAILED, error, attempts, started)
            if isinstance(error, SelectorMissing):
                selector_misses += 1
                if selector_misses > config.selector_missing_retries:
                    return self._failed(request, QueryState.FAILED, error, attempts, started)
            elif isinstance(error, SolverServiceError):
                solver_errors += 1
                if solver_errors > config.solver_error_retries:
                    return self._failed(request, QueryState.FAILED, error, attempts, started)
            elif not error.retryable:
                return self._failed(request, QueryState.FAILED, error, attempts, started)

            if number >= config.max_attempts:
                return self._failed(request, QueryState.EXHAUSTED, error, attempts, started)

            delay = config.backoff_delay(number)
            self.state = QueryState.RETRYING
            logger.info(
                "[%s] intento %d falló (%s): %s; reintento en %.1fs",
                adapter.target_id, number, error.code, error.message, delay,
            )
            await self._sleep(delay)

        raise ConfigurationError("MAX_ATTEMPTS debe ser al menos 1")
