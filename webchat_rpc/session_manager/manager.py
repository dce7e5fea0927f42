"""Session pool: owns live chat windows, maps stable keys to sessions, routes attention.

Each session is one page (window) plus the ``ChatController`` that drives it.
Creation and closing run under a manager-wide lock so the key map and the
live set stay consistent under concurrent requests. Which session is the
protected default is policy for the layer above; the manager only records
the flag.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..config import MAX_TABS, START_URL
from ..models.page import ChallengeSnapshot
from ..models.session import AttentionEvent, TabInfo, Timings
from .controller import BlockedCallback, ChatController, UnblockedCallback
from .errors import InvalidRequestError, ResolutionError
from .uploads import FileBinder

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

WindowOpener = Callable[[str], Awaitable[Page]]
ControllerFactory = Callable[[str, Page, BlockedCallback, UnblockedCallback], ChatController]
AttentionSink = Callable[[AttentionEvent], Awaitable[None]]


def controller_factory(
    selectors: dict[str, str],
    timings: Optional[Timings] = None,
    file_binder: Optional[FileBinder] = None,
) -> ControllerFactory:
    """Build controllers sharing one selector set."""

    def create(tab_id: str, window: Page, on_blocked: BlockedCallback, on_unblocked: UnblockedCallback):
        return ChatController(
            window,
            selectors,
            on_blocked=on_blocked,
            on_unblocked=on_unblocked,
            timings=timings,
            file_binder=file_binder,
        )

    return create


@dataclass
class Session:
    id: str
    key: Optional[str]
    name: str
    window: Page
    controller: ChatController
    protected: bool = False
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)

    def info(self) -> TabInfo:
        return TabInfo(
            id=self.id,
            key=self.key,
            name=self.name,
            url="" if self.window.is_closed() else self.window.url,
            protected=self.protected,
            blocked=self.controller.blocked,
            blocked_kind=self.controller.blocked_kind,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
        )


class SessionManager:
    """Bounded pool of chat sessions keyed by id and optional stable key."""

    def __init__(
        self,
        open_window: WindowOpener,
        create_controller: ControllerFactory,
        max_tabs: int = MAX_TABS,
        on_needs_attention: Optional[AttentionSink] = None,
        start_url: str = START_URL,
    ):
        self._open_window = open_window
        self._create_controller = create_controller
        self.max_tabs = max(1, int(max_tabs))
        self.on_needs_attention = on_needs_attention
        self.start_url = start_url

        self.sessions: dict[str, Session] = {}
        self.key_to_id: dict[str, str] = {}
        self.forced_focus: set[str] = set()
        self._restore_to: dict[str, Optional[str]] = {}
        self._foreground_id: Optional[str] = None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create_tab(
        self,
        key: Optional[str] = None,
        name: Optional[str] = None,
        url: Optional[str] = None,
        show: bool = False,
        protected: bool = False,
    ) -> str:
        """Open a session. Returns the existing id when ``key`` is already mapped."""
        async with self._lock:
            if key and key in self.key_to_id:
                return self.key_to_id[key]
            if len(self.sessions) >= self.max_tabs:
                raise ResolutionError("max_tabs_reached", {"max_tabs": self.max_tabs})

            tab_id = str(uuid.uuid4())
            window = await self._open_window(url or self.start_url)
            try:
                controller = self._create_controller(
                    tab_id,
                    window,
                    lambda st: self.needs_attention(tab_id, st),
                    lambda: self.resolved_attention(tab_id),
                )
                if inspect.isawaitable(controller):
                    controller = await controller
            except Exception:
                await window.close()
                raise

            session = Session(
                id=tab_id,
                key=key,
                name=name or key or f"tab-{tab_id[:8]}",
                window=window,
                controller=controller,
                protected=protected,
            )
            self.sessions[tab_id] = session
            if key:
                self.key_to_id[key] = tab_id
            window.on("close", lambda _page: self._window_closed(tab_id))

            logger.info(f"Created session {session.name} ({tab_id}), {len(self.sessions)}/{self.max_tabs} live")
            if show:
                await self._bring_to_front(tab_id)
            return tab_id

    async def ensure_tab(self, key: str, name: Optional[str] = None, show: bool = False) -> str:
        if not key:
            raise InvalidRequestError("missing_key")
        existing = self.key_to_id.get(key)
        if existing:
            return existing
        return await self.create_tab(key=key, name=name, show=show)

    async def close_tab(self, tab_id: str) -> bool:
        async with self._lock:
            session = self.sessions.get(tab_id)
            if session is None:
                raise ResolutionError("tab_not_found", {"tab_id": tab_id})
            cleared = self._forget(tab_id)
            try:
                await session.window.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing window for {tab_id}: {e}")
            if cleared:
                await self._notify(AttentionEvent(tab_id=None, reason="all_clear"))
            logger.info(f"Closed session {session.name} ({tab_id})")
            return True

    async def shutdown(self):
        async with self._lock:
            cleared = False
            for tab_id in list(self.sessions):
                session = self.sessions[tab_id]
                if self._forget(tab_id):
                    cleared = True
                try:
                    await session.window.close()
                except PlaywrightError as e:
                    logger.warning(f"Error closing window for {tab_id}: {e}")
            if cleared:
                await self._notify(AttentionEvent(tab_id=None, reason="all_clear"))

    def _forget(self, tab_id: str) -> bool:
        """Drop all bookkeeping for ``tab_id``.

        Returns True when this emptied the set of sessions needing attention.
        """
        was_forced = tab_id in self.forced_focus
        session = self.sessions.pop(tab_id, None)
        if session is not None and session.key and self.key_to_id.get(session.key) == tab_id:
            del self.key_to_id[session.key]
        self.forced_focus.discard(tab_id)
        self._restore_to.pop(tab_id, None)
        if self._foreground_id == tab_id:
            self._foreground_id = None
        return was_forced and not self.forced_focus

    def _window_closed(self, tab_id: str):
        """Close-event handler for windows closed outside the manager."""
        if tab_id in self.sessions:
            logger.info(f"Window for {tab_id} was closed")
        if self._forget(tab_id):
            task = asyncio.get_running_loop().create_task(
                self._notify(AttentionEvent(tab_id=None, reason="all_clear"))
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    # ── Lookup ───────────────────────────────────────────────────────────────

    def list_tabs(self) -> list[TabInfo]:
        tabs = [s.info() for s in self.sessions.values()]
        tabs.sort(key=lambda t: t.last_used_at, reverse=True)
        return tabs

    def get_session(self, tab_id: str) -> Session:
        session = self.sessions.get(tab_id)
        if session is None:
            raise ResolutionError("tab_not_found", {"tab_id": tab_id})
        # The window can die before its close event has been processed.
        if session.window.is_closed():
            raise ResolutionError("tab_closed", {"tab_id": tab_id})
        session.last_used_at = time.time()
        return session

    def get_controller_by_id(self, tab_id: str) -> ChatController:
        return self.get_session(tab_id).controller

    def get_window_by_id(self, tab_id: str) -> Page:
        return self.get_session(tab_id).window

    # ── Attention routing ────────────────────────────────────────────────────

    async def show_tab(self, tab_id: str):
        self.get_session(tab_id)
        await self._bring_to_front(tab_id)

    async def _bring_to_front(self, tab_id: str) -> bool:
        try:
            await self.get_window_by_id(tab_id).bring_to_front()
        except (ResolutionError, PlaywrightError) as e:
            logger.warning(f"Could not bring {tab_id} to front: {e}")
            return False
        self._foreground_id = tab_id
        return True

    async def needs_attention(self, tab_id: str, snapshot: ChallengeSnapshot):
        """A session entered the blocked state: surface its window and notify."""
        if tab_id not in self.forced_focus:
            self._restore_to[tab_id] = self._foreground_id
        self.forced_focus.add(tab_id)
        await self._bring_to_front(tab_id)
        await self._notify(
            AttentionEvent(
                tab_id=tab_id,
                reason="blocked",
                kind=snapshot.kind,
                detail={"url": snapshot.url, **snapshot.indicators.model_dump()},
            )
        )

    async def resolved_attention(self, tab_id: str):
        """A session left the blocked state: restore focus, maybe send all-clear."""
        was_forced = tab_id in self.forced_focus
        self.forced_focus.discard(tab_id)
        previous = self._restore_to.pop(tab_id, None)
        if not was_forced:
            return

        if previous and previous != tab_id and previous in self.sessions and not self.forced_focus:
            await self._bring_to_front(previous)
        if not self.forced_focus:
            await self._notify(AttentionEvent(tab_id=None, reason="all_clear"))

    async def _notify(self, event: AttentionEvent):
        if self.on_needs_attention is not None:
            await self.on_needs_attention(event)
