"""Tests for the session pool and attention routing."""

import asyncio

import pytest

from fakes import FakeBrowser, blocked_snapshot, fake_controller_factory

from webchat_rpc.session_manager.errors import InvalidRequestError, ResolutionError
from webchat_rpc.session_manager.manager import SessionManager


def make_manager(max_tabs=5, events=None):
    browser = FakeBrowser()
    controllers = {}

    async def sink(event):
        events.append(event)

    manager = SessionManager(
        browser.open_window,
        fake_controller_factory(controllers),
        max_tabs=max_tabs,
        on_needs_attention=sink if events is not None else None,
        start_url="https://chat.example.com/",
    )
    return manager, browser, controllers


@pytest.mark.asyncio
class TestLifecycle:
    async def test_ensure_tab_is_idempotent(self):
        manager, browser, _ = make_manager()
        first = await manager.ensure_tab("research")
        second = await manager.ensure_tab("research")
        assert first == second
        assert len(browser.pages) == 1

    async def test_concurrent_ensure_tab_creates_one_session(self):
        manager, browser, _ = make_manager()
        ids = await asyncio.gather(*(manager.ensure_tab("shared") for _ in range(5)))
        assert len(set(ids)) == 1
        assert len(browser.pages) == 1
        assert len(manager.sessions) == 1

    async def test_ensure_tab_requires_key(self):
        manager, _, _ = make_manager()
        with pytest.raises(InvalidRequestError) as exc:
            await manager.ensure_tab("")
        assert exc.value.code == "missing_key"

    async def test_max_tabs(self):
        manager, browser, _ = make_manager(max_tabs=2)
        await manager.create_tab()
        await manager.create_tab()
        with pytest.raises(ResolutionError) as exc:
            await manager.create_tab()
        assert exc.value.code == "max_tabs_reached"
        assert len(browser.pages) == 2

    async def test_existing_key_does_not_count_against_cap(self):
        manager, _, _ = make_manager(max_tabs=1)
        tab_id = await manager.ensure_tab("only")
        assert await manager.ensure_tab("only") == tab_id

    async def test_close_tab_frees_key(self):
        manager, browser, _ = make_manager()
        tab_id = await manager.ensure_tab("k")
        await manager.close_tab(tab_id)
        assert browser.pages[0].closed
        assert manager.sessions == {}
        assert await manager.ensure_tab("k") != tab_id

    async def test_close_unknown_tab(self):
        manager, _, _ = make_manager()
        with pytest.raises(ResolutionError) as exc:
            await manager.close_tab("missing")
        assert exc.value.code == "tab_not_found"

    async def test_window_close_event_forgets_session(self):
        manager, browser, _ = make_manager()
        tab_id = await manager.ensure_tab("k")
        await browser.pages[0].close()
        assert tab_id not in manager.sessions
        assert "k" not in manager.key_to_id

    async def test_factory_failure_closes_window(self):
        browser = FakeBrowser()

        def broken(tab_id, window, on_blocked, on_unblocked):
            raise RuntimeError("no controller")

        manager = SessionManager(browser.open_window, broken)
        with pytest.raises(RuntimeError):
            await manager.create_tab()
        assert browser.pages[0].closed
        assert manager.sessions == {}

    async def test_shutdown_closes_everything(self):
        manager, browser, _ = make_manager()
        await manager.create_tab()
        await manager.create_tab()
        await manager.shutdown()
        assert all(p.closed for p in browser.pages)
        assert manager.sessions == {}


@pytest.mark.asyncio
class TestLookup:
    async def test_unknown_id(self):
        manager, _, _ = make_manager()
        with pytest.raises(ResolutionError) as exc:
            manager.get_controller_by_id("nope")
        assert exc.value.code == "tab_not_found"

    async def test_closed_window_before_close_event(self):
        manager, browser, _ = make_manager()
        tab_id = await manager.create_tab()
        browser.pages[0].closed = True
        with pytest.raises(ResolutionError) as exc:
            manager.get_window_by_id(tab_id)
        assert exc.value.code == "tab_closed"

    async def test_list_tabs_most_recent_first(self):
        manager, _, _ = make_manager()
        a = await manager.create_tab(key="a")
        b = await manager.create_tab(key="b")
        manager.sessions[a].last_used_at = 100.0
        manager.sessions[b].last_used_at = 50.0
        assert [t.id for t in manager.list_tabs()] == [a, b]
        manager.sessions[b].last_used_at = 200.0
        tabs = manager.list_tabs()
        assert [t.id for t in tabs] == [b, a]
        assert tabs[0].key == "b"
        assert tabs[0].name == "b"


@pytest.mark.asyncio
class TestAttention:
    async def test_blocked_session_is_surfaced_and_restored(self):
        events = []
        manager, browser, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        b = await manager.create_tab(key="b", show=True)
        page_a, page_b = browser.pages

        await manager.needs_attention(a, blocked_snapshot("captcha"))
        assert page_a.front_count == 1
        assert a in manager.forced_focus
        assert events[-1].reason == "blocked"
        assert events[-1].kind == "captcha"
        assert events[-1].tab_id == a

        fronts_before = page_b.front_count
        await manager.resolved_attention(a)
        assert page_b.front_count == fronts_before + 1
        assert manager.forced_focus == set()
        assert events[-1].reason == "all_clear"

    async def test_all_clear_only_after_last_blocked_session(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        b = await manager.create_tab(key="b")

        await manager.needs_attention(a, blocked_snapshot("login"))
        await manager.needs_attention(b, blocked_snapshot("captcha"))
        await manager.resolved_attention(a)
        assert [e.reason for e in events] == ["blocked", "blocked"]

        await manager.resolved_attention(b)
        assert [e.reason for e in events] == ["blocked", "blocked", "all_clear"]

        await manager.resolved_attention(b)
        assert [e.reason for e in events].count("all_clear") == 1

    async def test_unforced_resolution_is_silent(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab()
        await manager.resolved_attention(a)
        assert events == []

    async def test_controller_callbacks_reach_manager(self):
        events = []
        browser = FakeBrowser()
        callbacks = {}

        def create(tab_id, window, on_blocked, on_unblocked):
            callbacks[tab_id] = (on_blocked, on_unblocked)
            return fake_controller_factory()(tab_id, window, on_blocked, on_unblocked)

        async def sink(event):
            events.append(event)

        manager = SessionManager(browser.open_window, create, on_needs_attention=sink)
        tab_id = await manager.create_tab()
        on_blocked, on_unblocked = callbacks[tab_id]
        await on_blocked(blocked_snapshot("login"))
        await on_unblocked()
        assert [e.reason for e in events] == ["blocked", "all_clear"]

    async def test_closing_last_blocked_session_sends_all_clear(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        await manager.needs_attention(a, blocked_snapshot("captcha"))

        await manager.close_tab(a)
        assert manager.forced_focus == set()
        assert [e.reason for e in events] == ["blocked", "all_clear"]

    async def test_closing_one_of_two_blocked_sessions_stays_alerted(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        b = await manager.create_tab(key="b")
        await manager.needs_attention(a, blocked_snapshot("login"))
        await manager.needs_attention(b, blocked_snapshot("captcha"))

        await manager.close_tab(a)
        assert [e.reason for e in events] == ["blocked", "blocked"]

    async def test_closing_unblocked_session_is_silent(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        await manager.close_tab(a)
        assert events == []

    async def test_external_window_close_sends_all_clear(self):
        events = []
        manager, browser, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        await manager.needs_attention(a, blocked_snapshot("login"))

        await browser.pages[0].close()
        await asyncio.sleep(0)
        assert a not in manager.sessions
        assert [e.reason for e in events] == ["blocked", "all_clear"]

    async def test_shutdown_sends_one_all_clear(self):
        events = []
        manager, _, _ = make_manager(events=events)
        a = await manager.create_tab(key="a")
        b = await manager.create_tab(key="b")
        await manager.needs_attention(a, blocked_snapshot("login"))
        await manager.needs_attention(b, blocked_snapshot("captcha"))

        await manager.shutdown()
        assert [e.reason for e in events] == ["blocked", "blocked", "all_clear"]
