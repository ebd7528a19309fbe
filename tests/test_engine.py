import asyncio
import dataclasses
import json

import pytest

from consultas.engine import QueryEngine
from consultas.errors import UnknownTarget, UnsupportedSearchMode
from consultas.models import QueryStatus, SearchMode

from conftest import RESULT_HTML_TABLE, FakeSolverService, FakeTransportFactory, make_adapter

OK_PAGE = {"result_text": "Resultado", "tables": [RESULT_HTML_TABLE]}


@pytest.fixture
def engine_config(config):
    return dataclasses.replace(config, backoff_base_s=0.0)


def build_engine(config, *scripts, solver=None) -> QueryEngine:
    adapters = {
        "demo": make_adapter(),
        "otro": make_adapter(target_id="otro", name="Otro portal"),
    }
    return QueryEngine(config, FakeTransportFactory(*scripts), solver or FakeSolverService(), adapters=adapters)


class SlowFactory(FakeTransportFactory):
    async def open(self):
        await asyncio.sleep(5)
        return await super().open()


class TestBuildRequest:
    def test_unknown_target(self, engine_config):
        with pytest.raises(UnknownTarget):
            build_engine(engine_config).build_request("sunarp", "placa", "ABC123")

    def test_unsupported_mode(self, engine_config):
        with pytest.raises(UnsupportedSearchMode, match="soporta"):
            build_engine(engine_config).build_request("demo", "documento", "12345678")

    def test_unknown_mode(self, engine_config):
        with pytest.raises(UnsupportedSearchMode):
            build_engine(engine_config).build_request("demo", "vin", "123")

    def test_blank_value(self, engine_config):
        with pytest.raises(UnsupportedSearchMode, match="vacío"):
            build_engine(engine_config).build_request("demo", "placa", "   ")

    def test_spanish_mode_names(self, engine_config):
        adapter, request = build_engine(engine_config).build_request("DEMO", "papeleta", " P-001 ")

        assert adapter.target_id == "demo"
        assert request.search_mode is SearchMode.TICKET_NUMBER
        assert request.search_value == "P-001"


class TestQuery:
    @pytest.mark.asyncio
    async def test_success_round_trip(self, engine_config):
        engine = build_engine(engine_config, OK_PAGE)

        result = await engine.query_target("demo", "placa", "abc123")

        assert result.status is QueryStatus.SUCCESS
        assert result.search_value == "abc123"
        payload = result.to_dict()
        assert json.loads(json.dumps(payload)) == payload
        assert payload["records"][0]["date"] == "2024-01-05"
        assert payload["attempts"][0]["outcome"] == "success"
        # el valor llega al portal en mayúsculas
        assert engine.transport_factory.opened[0].submitted[0]["fields"][0].value == "ABC123"

    @pytest.mark.asyncio
    async def test_json_result_page(self, engine_config):
        body = json.dumps({"ok": True, "data": [{"papeleta": "P-9", "fecha": "05/01/2024", "importe": "12,5"}]})
        engine = build_engine(engine_config, {"result_text": body})

        result = await engine.query_target("demo", "placa", "ABC123")

        assert result.status is QueryStatus.SUCCESS
        record = result.records[0]
        assert record["number"] == "P-9"
        assert record["date"] == "2024-01-05"
        assert record["amount"] == 12.5

    @pytest.mark.asyncio
    async def test_request_deadline(self, engine_config):
        config = dataclasses.replace(engine_config, request_timeout_s=0.05)
        engine = QueryEngine(config, SlowFactory(OK_PAGE), FakeSolverService(), adapters={"demo": make_adapter()})

        result = await engine.query_target("demo", "placa", "ABC123")

        assert result.status is QueryStatus.FAILED
        assert result.error_code == "timeout"
        assert "0.05s" in result.message
        # el intento estaba abriendo sesión cuando venció el plazo
        assert result.attempts_used == 1
        assert result.attempts[0].error_code == "timeout"

    @pytest.mark.asyncio
    async def test_request_deadline_keeps_attempt_in_progress(self, engine_config):
        config = dataclasses.replace(
            engine_config,
            request_timeout_s=0.2,
            attempt_timeout_s=30,
            solver_poll_interval_s=0.01,
            solver_timeout_image_s=30,
        )
        solver = FakeSolverService([None])
        engine = build_engine(config, OK_PAGE, solver=solver)

        result = await engine.query_target("demo", "placa", "ABC123")

        assert result.status is QueryStatus.FAILED
        assert result.error_code == "timeout"
        assert len(engine.transport_factory.opened) == 1
        assert result.attempts_used == 1
        attempt = result.attempts[0]
        assert attempt.error_code == "timeout"
        assert attempt.session_id is not None
        assert attempt.challenge_id is not None
        assert attempt.duration_ms is not None and attempt.duration_ms >= 100
        assert engine.transport_factory.opened[0].closed
        assert len(solver.submitted) == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_do_not_share_sessions(self, engine_config):
        engine = build_engine(engine_config, OK_PAGE)

        results = await asyncio.gather(
            engine.query_target("demo", "placa", "AAA111"),
            engine.query_target("demo", "placa", "BBB222"),
        )

        assert [r.status for r in results] == [QueryStatus.SUCCESS, QueryStatus.SUCCESS]
        sessions = {r.attempts[0].session_id for r in results}
        assert len(sessions) == 2
        assert len(engine.transport_factory.opened) == 2

    @pytest.mark.asyncio
    async def test_query_many_isolates_caller_errors(self, engine_config):
        engine = build_engine(engine_config, OK_PAGE)

        results = await engine.query_many(["demo", "otro", "sunarp", "demo"], "placa", "ABC123")

        assert list(results) == ["demo", "otro", "sunarp"]
        assert results["demo"].status is QueryStatus.SUCCESS
        assert results["otro"].status is QueryStatus.SUCCESS
        assert isinstance(results["sunarp"], UnknownTarget)

    def test_describe_targets(self, engine_config):
        described = build_engine(engine_config).describe_targets()

        assert [d["target_id"] for d in described] == ["demo", "otro"]
        assert described[0]["search_modes"] == ["plate", "ticket_number"]
