"""Per-session controller: readiness state machine, prompt submission, reply waiting.

A controller exclusively owns one page. ``query``, ``send``, ``navigate`` and
``ensure_ready`` run under the controller's lock so two operations never
touch the same page at once; reads (``detect_challenge``, ``read_page_text``,
images) do not take the lock.

Readiness is a small re-entrant state machine::

    UNKNOWN -> BLOCKED(kind) -> READY
                  ^               |
                  +---------------+

``on_blocked`` fires once when entering BLOCKED and ``on_unblocked`` once when
leaving it. Repeated polls in the same state fire nothing.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..config import BROWSER_TIMEOUT, DOWNLOAD_DIR, MAX_PROMPT_CHARS
from ..constants import (
    ATTACH_LABEL_PATTERN,
    CONTINUE_PATTERN,
    DEFAULT_MAX_IMAGES,
    DEFAULT_QUERY_TIMEOUT_MS,
    DEFAULT_READ_MAX_CHARS,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_SEND_TIMEOUT_MS,
    FALLBACK_COMPOSER_SELECTOR,
)
from ..models.page import ChallengeSnapshot
from ..models.reply import AssistantImage, ReplyMeta, ReplyResult, SavedImage
from ..models.session import Timings
from .errors import (
    AutomationError,
    AutomationTimeout,
    BridgeError,
    InvalidRequestError,
    ResolutionError,
)
from .humanize import InputSynthesizer, jitter, primary_modifier, sleep_ms, submit_combos_for_host
from .inspector import DOM_HELPERS_JS, PageInspector
from .parser import extract_code_blocks
from .scoring import pick_composer, pick_send_button
from .stability import ReplyTracker, Verdict, reply_has_error
from .uploads import FileBinder, PlaywrightFileBinder

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

BlockedCallback = Callable[[ChallengeSnapshot], Awaitable[None]]
UnblockedCallback = Callable[[], Awaitable[None]]


# ── Page actions ─────────────────────────────────────────────────────────────

FOCUS_COMPOSER_JS = (
    "({ promptSel, fallbackSel, index }) => {"
    + DOM_HELPERS_JS
    + r"""
  const n = composerNodes(promptSel, fallbackSel)[index];
  if (!n) return null;
  n.focus();
  return rectOf(n);
}"""
)

CLICK_SEND_JS = (
    "({ sendSel, index }) => {"
    + DOM_HELPERS_JS
    + r"""
  const n = sendNodes(sendSel)[index] || document.querySelector(sendSel);
  if (!n) return false;
  n.click();
  return true;
}"""
)

CLICK_BY_TEXT_JS = r"""({ pattern }) => {
  const re = new RegExp(pattern, 'i');
  const btn = Array.from(document.querySelectorAll('button, a, [role="button"]')).find((b) =>
    re.test(((b.getAttribute('aria-label') || '') + ' ' + (b.textContent || '')).trim())
  );
  if (!btn) return false;
  btn.click();
  return true;
}"""

CLICK_STOP_JS = r"""({ stopSel }) => {
  const stop = document.querySelector(stopSel);
  if (!stop) return false;
  try { stop.click(); return true; } catch (e) { return false; }
}"""


# ── Validation ───────────────────────────────────────────────────────────────


def validate_prompt(prompt) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidRequestError("missing_prompt")
    if len(prompt) > MAX_PROMPT_CHARS:
        raise InvalidRequestError("prompt_too_large", {"max_chars": MAX_PROMPT_CHARS, "chars": len(prompt)})
    return prompt


def validate_attachments(paths: Optional[Sequence[str]]) -> list[str]:
    resolved = []
    for p in paths or []:
        path = Path(str(p)).expanduser().resolve()
        if not path.is_file():
            raise InvalidRequestError("missing_attachment", {"path": str(p)})
        resolved.append(str(path))
    return resolved


# ── Images ───────────────────────────────────────────────────────────────────

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.I | re.S)


def decode_data_url(data_url: Optional[str]) -> tuple[Optional[str], Optional[bytes]]:
    if not data_url:
        return None, None
    match = _DATA_URL_RE.match(data_url)
    if not match:
        return None, None
    return match.group(1), base64.b64decode(match.group(2))


def extension_for(mime: Optional[str]) -> str:
    mime = (mime or "").lower()
    if "png" in mime:
        return "png"
    if "jpeg" in mime or "jpg" in mime:
        return "jpg"
    if "webp" in mime:
        return "webp"
    return "bin"


class ReadinessState(str, Enum):
    UNKNOWN = "unknown"
    BLOCKED = "blocked"
    READY = "ready"


class ChatController:
    """Drives one chat page as a request/response endpoint."""

    def __init__(
        self,
        page: Page,
        selectors: dict[str, str],
        on_blocked: Optional[BlockedCallback] = None,
        on_unblocked: Optional[UnblockedCallback] = None,
        download_dir: Path = DOWNLOAD_DIR,
        file_binder: Optional[FileBinder] = None,
        timings: Optional[Timings] = None,
        inspector: Optional[PageInspector] = None,
        synth: Optional[InputSynthesizer] = None,
    ):
        self.page = page
        self.selectors = dict(selectors)
        self.on_blocked = on_blocked
        self.on_unblocked = on_unblocked
        self.download_dir = Path(download_dir)
        self.timings = timings or Timings()
        t = self.timings
        self.inspector = inspector or PageInspector(page, self.selectors)
        self.synth = synth or InputSynthesizer(page, (t.type_delay_min_ms, t.type_delay_max_ms))
        self.file_binder = file_binder or PlaywrightFileBinder(t.file_input_attempts, t.file_input_backoff_ms)
        self.lock = asyncio.Lock()
        self.state = ReadinessState.UNKNOWN
        self.blocked_kind: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.state is ReadinessState.BLOCKED

    @property
    def url(self) -> str:
        return self.page.url

    async def run_exclusive(self, fn: Callable[..., Awaitable], *args, **kwargs):
        """Run ``fn`` while holding this session's lock."""
        async with self.lock:
            return await fn(*args, **kwargs)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def detect_challenge(self) -> ChallengeSnapshot:
        return await self.inspector.detect_challenge()

    async def read_page_text(self, max_chars: int = DEFAULT_READ_MAX_CHARS) -> str:
        return await self.inspector.read_page_text(max_chars)

    async def get_last_assistant_images(self, max_images: int = DEFAULT_MAX_IMAGES) -> list[AssistantImage]:
        return await self.inspector.last_assistant_images(max_images)

    async def download_last_assistant_images(self, max_images: int = DEFAULT_MAX_IMAGES) -> list[SavedImage]:
        """Save images from the latest reply into the download directory."""
        images = await self.get_last_assistant_images(max_images)
        if not images:
            return []
        self.download_dir.mkdir(parents=True, exist_ok=True)
        saved = []
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            for i, img in enumerate(images, start=1):
                mime, data = decode_data_url(img.data_url)
                if data is None and re.match(r"^https?://", img.src, re.I):
                    try:
                        resp = await client.get(img.src)
                    except httpx.HTTPError as e:
                        logger.warning(f"Image fetch failed for {img.src[:80]}: {e}")
                        continue
                    if resp.status_code >= 400:
                        continue
                    mime = resp.headers.get("content-type", "application/octet-stream")
                    data = resp.content
                if data is None:
                    continue

                name = f"chat-{int(time.time() * 1000)}-{i:02d}.{extension_for(mime)}"
                path = self.download_dir / name
                await asyncio.to_thread(path.write_bytes, data)
                saved.append(SavedImage(path=str(path), alt=img.alt, mime=mime, source=img.src or None))

        logger.info(f"Saved {len(saved)} of {len(images)} image(s) to {self.download_dir}")
        return saved

    # ── Exclusive operations ─────────────────────────────────────────────────

    async def navigate(self, url: str):
        async with self.lock:
            try:
                await self.page.goto(url, wait_until="domcontentloaded", timeout=BROWSER_TIMEOUT)
            except PlaywrightError as e:
                self._raise_if_closed(e)
                logger.warning(f"Navigation timeout, trying with longer wait: {e}")
                try:
                    await self.page.goto(url, wait_until="commit", timeout=BROWSER_TIMEOUT * 2)
                except PlaywrightError as retry_error:
                    raise self._page_error(retry_error, "navigation_failed", target=url) from retry_error

    async def ensure_ready(self, timeout_ms: int = DEFAULT_READY_TIMEOUT_MS) -> ChallengeSnapshot:
        async with self.lock:
            return await self._ensure_ready(timeout_ms)

    async def query(
        self,
        prompt: str,
        attachments: Optional[Sequence[str]] = None,
        timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS,
    ) -> ReplyResult:
        """Submit ``prompt`` and wait for the settled reply."""
        prompt = validate_prompt(prompt)
        files = validate_attachments(attachments)

        async with self.lock:
            await self._ensure_ready(timeout_ms)
            await self._attach_files(files)
            await self._type_prompt(prompt)
            await self._click_send()
            return await self._wait_for_reply(min(timeout_ms, self.timings.query_reply_ceiling_ms))

    async def send(
        self,
        text: str,
        timeout_ms: int = DEFAULT_SEND_TIMEOUT_MS,
        stop_after_send: bool = False,
    ) -> dict:
        """Submit ``text`` without waiting for a reply."""
        prompt = validate_prompt(text)

        async with self.lock:
            await self._ensure_ready(timeout_ms)
            await self._type_prompt(prompt)
            await self._click_send()
            if stop_after_send:
                await self._click_stop()
            return {"ok": True}

    # ── Readiness ────────────────────────────────────────────────────────────

    def _page_error(self, e: PlaywrightError, code: str, **data) -> BridgeError:
        """Classify a Playwright failure: a gone window, or a failed step."""
        if self.page.is_closed():
            return ResolutionError("tab_closed", {"url": self.page.url, "message": str(e)})
        return AutomationError(code, {**data, "message": str(e)})

    def _raise_if_closed(self, e: PlaywrightError):
        if self.page.is_closed():
            raise self._page_error(e, "tab_closed") from e

    async def _inspect(self) -> Optional[ChallengeSnapshot]:
        try:
            return await self.inspector.detect_challenge()
        except PlaywrightError as e:
            self._raise_if_closed(e)
            # Execution contexts vanish mid-navigation; the next poll retries.
            logger.debug(f"Inspection failed: {e}")
            return None

    async def _ensure_ready(self, timeout_ms: int) -> ChallengeSnapshot:
        st = await self._inspect()
        if st and st.blocked:
            await self._enter_blocked(st)
        ready = await self._wait_for_prompt_visible(timeout_ms)
        await self._exit_blocked()
        return ready

    async def _wait_for_prompt_visible(self, timeout_ms: int) -> ChallengeSnapshot:
        t = self.timings
        loop = asyncio.get_event_loop()
        start = loop.time()
        deadline = start + timeout_ms / 1000
        last = None

        while loop.time() < deadline:
            st = await self._inspect()
            if st is not None:
                last = st
                if st.blocked:
                    await self._enter_blocked(st)
                if st.prompt_visible:
                    return st

                # Loaded but no composer and no named challenge: an unknown UI state.
                elapsed_ms = (loop.time() - start) * 1000
                if not self.blocked and elapsed_ms > t.ui_grace_ms and st.ready_state == "complete":
                    await self._enter_blocked(st.model_copy(update={"blocked": True, "kind": "ui"}))
            await sleep_ms(t.ready_poll_ms)

        last = await self._inspect() or last
        raise AutomationTimeout("timeout_waiting_for_prompt", last.model_dump() if last else {})

    async def _enter_blocked(self, st: ChallengeSnapshot) -> bool:
        if self.state is ReadinessState.BLOCKED:
            return False
        self.state = ReadinessState.BLOCKED
        self.blocked_kind = st.kind
        logger.warning(f"Session blocked ({st.kind}) at {st.url}")
        if self.on_blocked is not None:
            await self.on_blocked(st)
        return True

    async def _exit_blocked(self) -> bool:
        was_blocked = self.state is ReadinessState.BLOCKED
        self.state = ReadinessState.READY
        self.blocked_kind = None
        if not was_blocked:
            return False
        logger.info("Session unblocked, composer visible")
        if self.on_unblocked is not None:
            await self.on_unblocked()
        return True

    # ── Submission ───────────────────────────────────────────────────────────

    async def _attach_files(self, files: Sequence[str]):
        if not files:
            return
        try:
            await self.page.evaluate(CLICK_BY_TEXT_JS, {"pattern": ATTACH_LABEL_PATTERN})
        except PlaywrightError as e:
            raise self._page_error(e, "file_upload_unavailable", reason="attach_click_failed") from e
        await self.file_binder.bind(self.page, files)

    async def _type_prompt(self, prompt: str):
        try:
            candidates = await self.inspector.composer_candidates()
        except PlaywrightError as e:
            raise self._page_error(e, "type_failed", reason="composer_lookup_failed") from e
        target = pick_composer(candidates)
        if target is None:
            raise AutomationError("missing_prompt_textarea", {"candidates": len(candidates)})

        try:
            rect = await self.page.evaluate(
                FOCUS_COMPOSER_JS,
                {
                    "promptSel": self.selectors["prompt_textarea"],
                    "fallbackSel": FALLBACK_COMPOSER_SELECTOR,
                    "index": target.index,
                },
            )
            if not rect:
                raise AutomationError("type_failed", {"reason": "composer_detached", "index": target.index})

            if rect["w"] > 0 and rect["h"] > 0:
                cx = round(rect["x"] + min(rect["w"] - 6, 18))
                cy = round(rect["y"] + min(rect["h"] - 6, 18))
                await self.synth.click_at(cx, cy)

            await sleep_ms(jitter(25, 80))
            await self.synth.press("a", (primary_modifier(),))
            await sleep_ms(jitter(15, 50))
            await self.synth.press("Backspace")
            await sleep_ms(jitter(25, 80))
            await self.synth.type_human(prompt)
        except PlaywrightError as e:
            raise self._page_error(e, "type_failed", label=target.label) from e

    async def _wait_for_send_signal(self, timeout_ms: int) -> bool:
        loop = asyncio.get_event_loop()
        deadline = loop.time() + timeout_ms / 1000
        while loop.time() < deadline:
            try:
                if (await self.inspector.send_signal()).submitted:
                    return True
            except PlaywrightError as e:
                self._raise_if_closed(e)
                logger.debug(f"Send signal probe failed: {e}")
            await sleep_ms(self.timings.signal_poll_ms)
        return False

    async def _click_send(self):
        try:
            await self._submit()
        except PlaywrightError as e:
            raise self._page_error(e, "send_not_triggered") from e

    async def _submit(self):
        t = self.timings
        target = await self.inspector.send_target()
        if target.stop_visible:
            raise AutomationError("already_generating", {"host": target.host})

        button = pick_send_button(target.candidates)
        sent = False
        if button is not None and button.rect.w > 0 and button.rect.h > 0:
            cx = round(button.rect.x + button.rect.w / 2)
            cy = round(button.rect.y + button.rect.h / 2)
            await self.synth.click_at(cx, cy)
            sent = await self._wait_for_send_signal(t.send_signal_ms)

        if not sent and button is not None:
            logger.info("Send click produced no signal, invoking the control directly")
            await self.page.evaluate(
                CLICK_SEND_JS, {"sendSel": self.selectors["send_button"], "index": button.index}
            )
            sent = await self._wait_for_send_signal(t.send_retry_signal_ms)

        if not sent:
            for key, modifiers in submit_combos_for_host(target.host):
                await sleep_ms(jitter(25, 90))
                logger.info(f"Trying keyboard submission {'+'.join(modifiers + (key,))} on {target.host}")
                await self.synth.press(key, modifiers)
                sent = await self._wait_for_send_signal(t.key_signal_ms)
                if sent:
                    break

        if not sent:
            raise AutomationError("send_not_triggered", {"host": target.host or None})

    async def _click_stop(self):
        loop = asyncio.get_event_loop()
        deadline = loop.time() + self.timings.stop_after_send_ms / 1000
        while loop.time() < deadline:
            try:
                clicked = await self.page.evaluate(CLICK_STOP_JS, {"stopSel": self.selectors["stop_button"]})
            except PlaywrightError as e:
                raise self._page_error(e, "stop_failed") from e
            if clicked:
                return
            await sleep_ms(self.timings.signal_poll_ms)

    # ── Reply ────────────────────────────────────────────────────────────────

    async def _wait_for_reply(self, timeout_ms: Optional[int] = None) -> ReplyResult:
        t = self.timings
        loop = asyncio.get_event_loop()
        timeout_ms = t.reply_timeout_ms if timeout_ms is None else timeout_ms
        tracker = ReplyTracker(loop.time() * 1000, t)
        deadline = loop.time() + timeout_ms / 1000

        while loop.time() < deadline:
            try:
                snap = await self.inspector.reply_snapshot()
            except PlaywrightError as e:
                self._raise_if_closed(e)
                logger.debug(f"Reply snapshot failed: {e}")
                await sleep_ms(t.reply_poll_ms)
                continue

            verdict = tracker.observe(snap, loop.time() * 1000)
            if verdict is Verdict.CONTINUE:
                logger.info(f"Clicking continue generating ({tracker.continues}/{t.max_continues})")
                try:
                    await self.page.evaluate(CLICK_BY_TEXT_JS, {"pattern": CONTINUE_PATTERN})
                except PlaywrightError as e:
                    self._raise_if_closed(e)
                    logger.debug(f"Continue click failed: {e}")
                await sleep_ms(t.continue_pause_ms)
                continue
            if verdict is Verdict.DONE:
                try:
                    html = await self.inspector.last_assistant_html()
                except PlaywrightError as e:
                    self._raise_if_closed(e)
                    logger.debug(f"Reply markup unavailable, skipping code blocks: {e}")
                    html = ""
                return ReplyResult(
                    text=snap.text,
                    code_blocks=extract_code_blocks(html),
                    meta=ReplyMeta(
                        count=snap.count,
                        has_error=reply_has_error(snap.text),
                        continues=tracker.continues,
                    ),
                )
            await sleep_ms(t.reply_poll_ms)

        raise AutomationTimeout("timeout_waiting_for_response", {"last": tracker.last_text})
