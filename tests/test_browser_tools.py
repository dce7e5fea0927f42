"""Tests for the MCP tool bridge against a live control surface."""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeBrowser, fake_controller_factory

from webchat_rpc.session_manager.api import create_app
from webchat_rpc.session_manager.governor import AdmissionGovernor
from webchat_rpc.session_manager.manager import SessionManager
from webchat_rpc.session_manager.service import BridgeService
from webchat_rpc.tools import browser_tools


async def make_service():
    manager = SessionManager(FakeBrowser().open_window, fake_controller_factory(), max_tabs=3)
    governor = AdmissionGovernor(
        max_inflight=4, max_per_minute=0, min_tab_gap_ms=0, min_global_gap_ms=0, max_wait_ms=0
    )
    service = BridgeService(manager, governor)
    await service.open_default_tab()
    return service


def point_tools_at(monkeypatch, client, token=""):
    monkeypatch.setattr(browser_tools, "CONTROL_URL", str(client.make_url("")).rstrip("/"))
    monkeypatch.setattr(browser_tools, "CONTROL_API_TOKEN", token)


def test_target_only_sends_given_fields():
    assert browser_tools._target("", "") == {}
    assert browser_tools._target("t1", "") == {"tab_id": "t1"}
    assert browser_tools._target("", "work") == {"key": "work"}
    assert browser_tools._target("t1", "work") == {"tab_id": "t1", "key": "work"}


@pytest.mark.asyncio
class TestToolBridge:
    async def test_query_formats_reply(self, monkeypatch):
        service = await make_service()
        async with TestClient(TestServer(create_app(service, api_token="tok"))) as client:
            point_tools_at(monkeypatch, client, token="tok")
            text = await browser_tools.query("ping", key="work")
        tab_id = service.manager.key_to_id["work"]
        assert text.startswith("echo: ping")
        assert text.endswith(f"[tab {tab_id}]")

    async def test_error_carries_code_and_data(self, monkeypatch):
        service = await make_service()
        async with TestClient(TestServer(create_app(service, api_token=""))) as client:
            point_tools_at(monkeypatch, client)
            text = await browser_tools.close_tab(service.default_tab_id)
        assert text.startswith("Error: default_tab_protected ")
        assert service.default_tab_id in text

    async def test_missing_token_is_reported(self, monkeypatch):
        service = await make_service()
        async with TestClient(TestServer(create_app(service, api_token="tok"))) as client:
            point_tools_at(monkeypatch, client)
            text = await browser_tools.list_tabs()
        assert text == "Error: unauthorized"

    async def test_list_tabs_marks_default(self, monkeypatch):
        service = await make_service()
        async with TestClient(TestServer(create_app(service, api_token=""))) as client:
            point_tools_at(monkeypatch, client)
            await browser_tools.create_tab(key="notes")
            text = await browser_tools.list_tabs()
        assert text.startswith("2 open tab(s):")
        assert f"- default [{service.default_tab_id}] (default)" in text
        assert "- notes [" in text

    async def test_unreachable_control_surface(self, monkeypatch):
        monkeypatch.setattr(browser_tools, "CONTROL_URL", "http://127.0.0.1:9")
        result = await browser_tools._call_control_surface("GET", "/tabs")
        assert "not reachable" in result["error"]
