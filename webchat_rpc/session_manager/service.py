"""Request path shared by every caller-facing surface.

validate input -> resolve session -> admission (query/send only) -> controller.

Session resolution order: explicit tab id, then stable key (created on first
use), then the configured default session. The default session is protected:
closing it is refused here, before the manager is involved.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence

from ..config import START_URL
from ..constants import (
    DEFAULT_MAX_IMAGES,
    DEFAULT_QUERY_TIMEOUT_MS,
    DEFAULT_READ_MAX_CHARS,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_SEND_TIMEOUT_MS,
)
from ..models.session import AttentionEvent, SessionStatus
from .controller import validate_attachments, validate_prompt
from .errors import InvalidRequestError, ResolutionError
from .governor import AdmissionGovernor
from .manager import SessionManager

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

DEFAULT_TAB_KEY = "default"

ATTENTION_MESSAGES = {
    "login": "Log in to the chat site in the browser window that was just brought to front.",
    "captcha": "Solve the captcha in the browser window that was just brought to front.",
    "ui": "The chat composer is not visible. Check the browser window that was just brought to front.",
    "blocked": "The chat site refused access. Check the browser window that was just brought to front.",
}


async def log_attention(event: AttentionEvent):
    """Default attention sink: tell the operator what the surfaced window needs."""
    if event.reason == "all_clear":
        return
    if event.reason == "blocked":
        message = ATTENTION_MESSAGES.get(event.kind or "blocked", ATTENTION_MESSAGES["blocked"])
        logger.warning(f"[{event.tab_id}] {message}")
    else:
        logger.info(f"[{event.tab_id}] Session {event.reason}")


class BridgeService:
    def __init__(
        self,
        manager: SessionManager,
        governor: AdmissionGovernor,
        default_tab_id: Optional[str] = None,
    ):
        self.manager = manager
        self.governor = governor
        self.default_tab_id = default_tab_id

    async def open_default_tab(self, url: str = START_URL, show: bool = True) -> str:
        self.default_tab_id = await self.manager.create_tab(
            key=DEFAULT_TAB_KEY, name=DEFAULT_TAB_KEY, url=url, show=show, protected=True
        )
        return self.default_tab_id

    async def resolve_tab(
        self,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        tab_id = (tab_id or "").strip()
        key = (key or "").strip()
        if tab_id:
            return tab_id
        if key:
            return await self.manager.ensure_tab(key, name=(name or "").strip() or None)
        if self.default_tab_id:
            return self.default_tab_id
        raise InvalidRequestError("missing_tab_id")

    # ── Tabs ─────────────────────────────────────────────────────────────────

    def list_tabs(self) -> dict:
        return {
            "ok": True,
            "tabs": [t.model_dump() for t in self.manager.list_tabs()],
            "default_tab_id": self.default_tab_id,
        }

    async def create_tab(self, key: Optional[str] = None, name: Optional[str] = None) -> dict:
        key = (key or "").strip() or None
        name = (name or "").strip() or None
        if key:
            tab_id = await self.manager.ensure_tab(key, name=name)
        else:
            tab_id = await self.manager.create_tab(name=name)
        return {"ok": True, "tab_id": tab_id}

    async def close_tab(self, tab_id: Optional[str]) -> dict:
        tab_id = (tab_id or "").strip()
        if not tab_id:
            raise InvalidRequestError("missing_tab_id")
        session = self.manager.sessions.get(tab_id)
        if tab_id == self.default_tab_id or (session is not None and session.protected):
            raise ResolutionError("default_tab_protected", {"tab_id": tab_id})
        await self.manager.close_tab(tab_id)
        return {"ok": True}

    async def show(self, tab_id: Optional[str] = None, key: Optional[str] = None) -> dict:
        resolved = await self.resolve_tab(tab_id, key)
        await self.manager.show_tab(resolved)
        return {"ok": True, "tab_id": resolved}

    # ── Reads ────────────────────────────────────────────────────────────────

    async def status(self, tab_id: Optional[str] = None) -> dict:
        resolved = await self.resolve_tab(tab_id)
        controller = self.manager.get_controller_by_id(resolved)
        challenge = await controller.detect_challenge()
        status = SessionStatus(
            tab_id=resolved,
            url=controller.url,
            blocked=challenge.blocked,
            prompt_visible=challenge.prompt_visible,
            kind=challenge.kind,
            indicators=challenge.indicators.model_dump(),
            tabs=self.manager.list_tabs(),
        )
        return {**status.model_dump(), "governor": self.governor.snapshot()}

    async def read_page(
        self,
        max_chars: int = DEFAULT_READ_MAX_CHARS,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
    ) -> dict:
        resolved = await self.resolve_tab(tab_id, key)
        controller = self.manager.get_controller_by_id(resolved)
        text = await controller.read_page_text(max_chars or DEFAULT_READ_MAX_CHARS)
        return {"ok": True, "tab_id": resolved, "text": text}

    async def download_images(
        self,
        max_images: int = DEFAULT_MAX_IMAGES,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
    ) -> dict:
        resolved = await self.resolve_tab(tab_id, key)
        controller = self.manager.get_controller_by_id(resolved)
        files = await controller.download_last_assistant_images(max_images or DEFAULT_MAX_IMAGES)
        return {"ok": True, "tab_id": resolved, "files": [f.model_dump() for f in files]}

    # ── Exclusive operations ─────────────────────────────────────────────────

    async def navigate(self, url: str, tab_id: Optional[str] = None, key: Optional[str] = None) -> dict:
        url = (url or "").strip()
        if not url:
            raise InvalidRequestError("missing_url")
        resolved = await self.resolve_tab(tab_id, key)
        controller = self.manager.get_controller_by_id(resolved)
        await controller.navigate(url)
        return {"ok": True, "tab_id": resolved, "url": controller.url}

    async def ensure_ready(
        self,
        timeout_ms: int = DEFAULT_READY_TIMEOUT_MS,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
    ) -> dict:
        resolved = await self.resolve_tab(tab_id, key)
        controller = self.manager.get_controller_by_id(resolved)
        state = await controller.ensure_ready(timeout_ms or DEFAULT_READY_TIMEOUT_MS)
        return {"ok": True, "tab_id": resolved, "state": state.model_dump()}

    async def query(
        self,
        prompt: str,
        attachments: Optional[Sequence[str]] = None,
        timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict:
        prompt = validate_prompt(prompt)
        files = validate_attachments(attachments)
        resolved = await self.resolve_tab(tab_id, key, name)
        controller = self.manager.get_controller_by_id(resolved)

        async with self.governor.admit(resolved):
            result = await controller.query(prompt, files, timeout_ms or DEFAULT_QUERY_TIMEOUT_MS)
        return {"ok": True, "tab_id": resolved, "result": result.model_dump()}

    async def send(
        self,
        text: str,
        timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
        stop_after_send: bool = False,
        tab_id: Optional[str] = None,
        key: Optional[str] = None,
    ) -> dict:
        text = validate_prompt(text)
        resolved = await self.resolve_tab(tab_id, key)
        controller = self.manager.get_controller_by_id(resolved)

        async with self.governor.admit(resolved):
            result = await controller.send(text, timeout_ms or DEFAULT_SEND_TIMEOUT_MS, stop_after_send)
        return {**result, "tab_id": resolved}
