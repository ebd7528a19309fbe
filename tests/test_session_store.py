import asyncio

import pytest

from consultas.errors import Blocked, SelectorMissing, SessionUnavailable
from consultas.session_store import SessionStore

from conftest import FakeTransportFactory, make_adapter


@pytest.fixture
def adapter():
    return make_adapter(anti_forgery_fields=("__VIEWSTATE", "__EVENTVALIDATION"))


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_open_captures_cookies_and_anti_forgery(self, config, adapter):
        factory = FakeTransportFactory({"hidden": {"__VIEWSTATE": "vs1", "__EVENTVALIDATION": "ev1", "otro": "x"}})
        store = SessionStore(factory, config)

        session = await store.open(adapter)

        assert session.target_id == "demo"
        assert session.cookies == {"ASP.NET_SessionId": "abc123"}
        assert session.anti_forgery == {"__VIEWSTATE": "vs1", "__EVENTVALIDATION": "ev1"}
        assert session.document.url == adapter.search_url
        assert factory.opened[0].navigations == [adapter.search_url]
        assert not factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_forbidden_status_is_blocked(self, config, adapter):
        factory = FakeTransportFactory({"nav_status": 403})
        store = SessionStore(factory, config)

        with pytest.raises(Blocked) as exc:
            await store.open(adapter)

        assert exc.value.status_code == 403
        assert factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_antibot_page_is_blocked(self, config, adapter):
        factory = FakeTransportFactory({"nav_text": "Attention Required! | Cloudflare"})

        with pytest.raises(Blocked) as exc:
            await SessionStore(factory, config).open(adapter)

        assert exc.value.marker == "attention required! | cloudflare"

    @pytest.mark.asyncio
    async def test_follows_one_frame_hop(self, config):
        adapter = make_adapter(frame_hint="frmRecord.aspx")
        factory = FakeTransportFactory({})

        session = await SessionStore(factory, config).open(adapter)

        assert factory.opened[0].frames == ["frmRecord.aspx"]
        assert session.document.url.endswith("frmRecord.aspx")

    @pytest.mark.asyncio
    async def test_missing_frame_is_session_unavailable(self, config):
        adapter = make_adapter(frame_hint="frmRecord.aspx")
        factory = FakeTransportFactory({"frame_ok": False})

        with pytest.raises(SessionUnavailable):
            await SessionStore(factory, config).open(adapter)

        assert factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_missing_form_is_selector_missing(self, config, adapter):
        factory = FakeTransportFactory({"missing": ["#placa"]})

        with pytest.raises(SelectorMissing):
            await SessionStore(factory, config).open(adapter)

        assert factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_opened_closes_on_exception(self, config, adapter):
        factory = FakeTransportFactory({})
        store = SessionStore(factory, config)

        with pytest.raises(RuntimeError):
            async with store.opened(adapter) as session:
                raise RuntimeError("fallo a mitad del intento")

        assert session.closed
        assert factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_opened_closes_on_cancellation(self, config, adapter):
        factory = FakeTransportFactory({})
        store = SessionStore(factory, config)

        async def _hang():
            async with store.opened(adapter):
                await asyncio.sleep(10)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(_hang(), timeout=0.05)

        assert factory.opened[0].closed

    @pytest.mark.asyncio
    async def test_each_open_is_a_new_session(self, config, adapter):
        factory = FakeTransportFactory({})
        store = SessionStore(factory, config)

        first = await store.open(adapter)
        second = await store.open(adapter)

        assert first.session_id != second.session_id
        assert factory.opened[0] is not factory.opened[1]
