"""Tests for the request path: resolution, admission and default-session policy."""

import asyncio

import pytest

from fakes import FakeBrowser, fake_controller_factory

from webchat_rpc.session_manager.errors import (
    AdmissionError,
    InvalidRequestError,
    ResolutionError,
)
from webchat_rpc.session_manager.governor import AdmissionGovernor
from webchat_rpc.session_manager.manager import SessionManager
from webchat_rpc.session_manager.service import BridgeService


def make_service(max_inflight=6, max_tabs=5, **gov):
    browser = FakeBrowser()
    controllers = {}
    manager = SessionManager(
        browser.open_window,
        fake_controller_factory(controllers),
        max_tabs=max_tabs,
        start_url="https://chat.example.com/",
    )
    governor = AdmissionGovernor(
        max_inflight=max_inflight,
        max_per_minute=gov.get("max_per_minute", 0),
        min_tab_gap_ms=gov.get("min_tab_gap_ms", 0),
        min_global_gap_ms=gov.get("min_global_gap_ms", 0),
        max_wait_ms=gov.get("max_wait_ms", 0),
    )
    return BridgeService(manager, governor), controllers


@pytest.mark.asyncio
class TestResolution:
    async def test_explicit_id_then_key_then_default(self):
        service, _ = make_service()
        default_id = await service.open_default_tab()
        keyed = await service.resolve_tab(key="notes")

        assert await service.resolve_tab() == default_id
        assert await service.resolve_tab(key="notes") == keyed
        assert await service.resolve_tab(tab_id=keyed, key="other") == keyed
        assert "other" not in service.manager.key_to_id

    async def test_no_target_and_no_default(self):
        service, _ = make_service()
        with pytest.raises(InvalidRequestError) as exc:
            await service.resolve_tab()
        assert exc.value.code == "missing_tab_id"

    async def test_default_tab_is_keyed_and_protected(self):
        service, _ = make_service()
        default_id = await service.open_default_tab()
        tabs = service.list_tabs()
        assert tabs["default_tab_id"] == default_id
        assert tabs["tabs"][0]["key"] == "default"
        assert tabs["tabs"][0]["protected"]


@pytest.mark.asyncio
class TestDefaultProtection:
    async def test_default_tab_cannot_be_closed(self):
        service, _ = make_service()
        default_id = await service.open_default_tab()
        with pytest.raises(ResolutionError) as exc:
            await service.close_tab(default_id)
        assert exc.value.code == "default_tab_protected"
        assert default_id in service.manager.sessions

    async def test_other_tabs_close(self):
        service, _ = make_service()
        await service.open_default_tab()
        created = await service.create_tab(key="scratch")
        assert await service.close_tab(created["tab_id"]) == {"ok": True}
        assert created["tab_id"] not in service.manager.sessions

    async def test_close_requires_id(self):
        service, _ = make_service()
        with pytest.raises(InvalidRequestError) as exc:
            await service.close_tab("  ")
        assert exc.value.code == "missing_tab_id"

    async def test_close_unknown(self):
        service, _ = make_service()
        with pytest.raises(ResolutionError) as exc:
            await service.close_tab("nope")
        assert exc.value.code == "tab_not_found"


@pytest.mark.asyncio
class TestAdmission:
    async def test_inflight_cap_across_sessions(self):
        service, controllers = make_service(max_inflight=1)
        first_id = await service.resolve_tab(key="one")
        gate = asyncio.Event()
        controllers[first_id].gate = gate

        first = asyncio.create_task(service.query("slow", key="one"))
        await controllers[first_id].entered.wait()
        assert service.governor.inflight == 1

        with pytest.raises(AdmissionError) as exc:
            await service.query("fast", key="two")
        assert exc.value.reason == "max_inflight"

        gate.set()
        result = await first
        assert result["result"]["text"] == "echo: slow"
        assert service.governor.inflight == 0

    async def test_validation_happens_before_admission(self):
        service, _ = make_service(max_inflight=1)
        with pytest.raises(InvalidRequestError):
            await service.query("", key="fresh")
        assert service.governor.inflight == 0
        assert "fresh" not in service.manager.key_to_id

    async def test_same_tab_gap(self):
        service, _ = make_service(min_tab_gap_ms=60_000)
        await service.open_default_tab()
        await service.send("one")
        with pytest.raises(AdmissionError) as exc:
            await service.send("two")
        assert exc.value.reason == "tab_gap"
        assert exc.value.retry_after_ms > 0

    async def test_reads_are_not_admitted(self):
        service, _ = make_service(max_inflight=1)
        default_id = await service.open_default_tab()
        await service.governor.acquire("elsewhere")
        page = await service.read_page(4)
        assert page == {"ok": True, "tab_id": default_id, "text": "page"}


@pytest.mark.asyncio
class TestOperations:
    async def test_navigate_requires_url(self):
        service, _ = make_service()
        await service.open_default_tab()
        with pytest.raises(InvalidRequestError) as exc:
            await service.navigate("")
        assert exc.value.code == "missing_url"

    async def test_navigate_and_status(self):
        service, _ = make_service()
        default_id = await service.open_default_tab()
        moved = await service.navigate("https://other.example.com/")
        assert moved["url"] == "https://other.example.com/"

        status = await service.status()
        assert status["tab_id"] == default_id
        assert status["prompt_visible"]
        assert not status["blocked"]
        assert status["governor"]["inflight"] == 0
        assert len(status["tabs"]) == 1

    async def test_send_returns_tab(self):
        service, controllers = make_service()
        default_id = await service.open_default_tab()
        assert await service.send("hello") == {"ok": True, "tab_id": default_id}
        assert controllers[default_id].sent == ["hello"]
