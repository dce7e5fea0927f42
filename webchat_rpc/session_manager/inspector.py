"""Read-only page queries: challenge probes, composer/send candidates, reply snapshots.

Each call evaluates a single script against the page's current DOM and returns
a pydantic model. Nothing here clicks, types or mutates the page; ranking and
classification happen in Python (see scoring.py).
"""

from __future__ import annotations

import logging
import sys

from playwright.async_api import Page

from ..constants import (
    BODY_TEXT_SAMPLE_CHARS,
    CONTINUE_PATTERN,
    FALLBACK_COMPOSER_SELECTOR,
    MAX_INLINE_IMAGE_BYTES,
)
from ..models.page import (
    ChallengeSnapshot,
    ComposerCandidate,
    PageProbe,
    SendSignal,
    SendTarget,
)
from ..models.reply import AssistantImage, ReplySnapshot
from .scoring import build_snapshot

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


# ── Page-side helpers ────────────────────────────────────────────────────────

# Shared by every script that needs to find editable surfaces. The node order
# is deterministic so an index returned here can be acted on by a later call.
DOM_HELPERS_JS = r"""
  const isVisible = (n) => {
    if (!n) return false;
    const r = n.getBoundingClientRect();
    const style = window.getComputedStyle(n);
    return r.width > 0 && r.height > 0 && style.visibility !== 'hidden' && style.display !== 'none';
  };
  const rectOf = (n) => {
    const r = n.getBoundingClientRect();
    return { x: r.x, y: r.y, w: r.width, h: r.height };
  };
  const uniqueNodes = (...selectors) => {
    const out = [];
    const seen = new Set();
    for (const sel of selectors) {
      for (const n of document.querySelectorAll(sel)) {
        if (!n || seen.has(n)) continue;
        seen.add(n);
        out.push(n);
      }
    }
    return out;
  };
  const composerNodes = (promptSel, fallbackSel) => uniqueNodes(promptSel, fallbackSel);
  const sendNodes = (sendSel) => uniqueNodes(sendSel, 'button, [role="button"]');
  const attr = (n, name) => n.getAttribute(name) || '';
  const describeComposer = (n, index) => ({
    index,
    tag: n.tagName.toLowerCase(),
    input_type: n.matches('input') ? String(n.type || 'text') : '',
    label: [attr(n, 'aria-label'), attr(n, 'placeholder'), attr(n, 'name'), attr(n, 'id'), attr(n, 'data-testid')].join(' '),
    visible: isVisible(n),
    disabled: !!n.disabled,
    read_only: !!n.readOnly,
    content_editable: !!n.isContentEditable || attr(n, 'contenteditable') === 'true',
    role: attr(n, 'role'),
    rect: rectOf(n),
  });
"""

PROBE_PAGE_JS = (
    "({ promptSel, fallbackSel, sampleChars }) => {"
    + DOM_HELPERS_JS
    + r"""
  const iframeSrcs = Array.from(document.querySelectorAll('iframe'))
    .map((f) => String(f.getAttribute('src') || ''))
    .filter(Boolean);
  const buttonTexts = Array.from(document.querySelectorAll('button, a'))
    .map((b) => (b.textContent || '').trim())
    .filter((t) => t && t.length <= 200)
    .slice(0, 400);
  return {
    url: location.href || '',
    title: document.title || '',
    ready_state: document.readyState || '',
    body_text: (document.body?.innerText || '').slice(0, sampleChars),
    iframe_srcs: iframeSrcs,
    button_texts: buttonTexts,
    has_password_input: !!document.querySelector(
      'input[type="password"], input[name="password"], input[autocomplete="current-password"]'
    ),
    composers: composerNodes(promptSel, fallbackSel).map(describeComposer),
  };
}"""
)

COMPOSERS_JS = (
    "({ promptSel, fallbackSel }) => {"
    + DOM_HELPERS_JS
    + "  return composerNodes(promptSel, fallbackSel).map(describeComposer);\n}"
)

SEND_TARGET_JS = (
    "({ sendSel, stopSel }) => {"
    + DOM_HELPERS_JS
    + r"""
  const stopVisible = Array.from(document.querySelectorAll(stopSel)).some(isVisible);
  const candidates = sendNodes(sendSel).map((n, index) => ({
    index,
    label: [attr(n, 'aria-label'), attr(n, 'title'), attr(n, 'data-testid'), n.textContent || '']
      .join(' ').replace(/\s+/g, ' ').trim(),
    matches_selector: n.matches(sendSel),
    visible: isVisible(n),
    disabled: !!n.disabled || attr(n, 'aria-disabled').toLowerCase() === 'true',
    rect: rectOf(n),
  }));
  return { host: location.hostname || '', stop_visible: stopVisible, candidates };
}"""
)

SEND_SIGNAL_JS = (
    "({ sendSel, stopSel, promptSel, fallbackSel }) => {"
    + DOM_HELPERS_JS
    + r"""
  const stopVisible = Array.from(document.querySelectorAll(stopSel)).some(isVisible);
  const send = Array.from(document.querySelectorAll(sendSel)).find(isVisible);
  let promptLen = -1;
  for (const n of composerNodes(promptSel, fallbackSel)) {
    if (!isVisible(n)) continue;
    if (n.matches('textarea, input')) {
      promptLen = String(n.value || '').trim().length;
      break;
    }
    if (n.isContentEditable || attr(n, 'contenteditable') === 'true' || attr(n, 'role') === 'textbox') {
      promptLen = String(n.innerText || n.textContent || '').trim().length;
      break;
    }
  }
  return { stop_visible: stopVisible, send_disabled: !!send && !!send.disabled, prompt_len: promptLen };
}"""
)

REPLY_SNAPSHOT_JS = (
    "({ stopSel, sendSel, assistantSel, continuePattern }) => {"
    + DOM_HELPERS_JS
    + r"""
  const stopVisible = Array.from(document.querySelectorAll(stopSel)).some(isVisible);
  const send = Array.from(document.querySelectorAll(sendSel)).find(isVisible);
  const nodes = Array.from(document.querySelectorAll(assistantSel));
  const last = nodes[nodes.length - 1];
  const fallbackText = ((document.querySelector('main') || document.body)?.innerText || '').trim();
  const text = (last?.innerText || fallbackText).trim();
  const continueRe = new RegExp(continuePattern, 'i');
  const controls = Array.from(document.querySelectorAll('button, a')).map((b) => (b.textContent || '').trim());
  return {
    stop_visible: stopVisible,
    composer_enabled: send ? !send.disabled : true,
    text,
    count: nodes.length,
    used_fallback: !last,
    has_continue: controls.some((t) => continueRe.test(t)),
  };
}"""
)

LAST_ASSISTANT_HTML_JS = r"""({ assistantSel }) => {
  const nodes = Array.from(document.querySelectorAll(assistantSel));
  const last = nodes[nodes.length - 1];
  return last ? last.innerHTML : '';
}"""

READ_PAGE_TEXT_JS = r"""({ maxChars }) => {
  const clean = (s) => String(s || '').replace(/\u0000/g, '').replace(/\s+\n/g, '\n').trim();
  const root = document.querySelector('main') || document.body || document.documentElement;
  let txt = clean(root?.innerText) || clean(document.body?.innerText) || clean(document.documentElement?.innerText);
  if (!txt) txt = clean(root?.textContent) || clean(document.body?.textContent) || clean(document.documentElement?.textContent);
  // Pre-hydration shells: summarize labels of interactive elements instead.
  if (!txt) {
    const hints = Array.from(document.querySelectorAll('button, a, input, textarea, [role="button"], [aria-label], [placeholder]'))
      .slice(0, 400)
      .map((n) => [n.getAttribute('aria-label'), n.getAttribute('placeholder'), n.textContent].filter(Boolean).join(' ').trim())
      .filter(Boolean);
    txt = clean(hints.join('\n'));
  }
  return txt.slice(0, maxChars);
}"""

ASSISTANT_IMAGES_JS = r"""async ({ assistantSel, maxImages, maxBytes }) => {
  const nodes = Array.from(document.querySelectorAll(assistantSel));
  const last = nodes[nodes.length - 1];
  if (!last) return [];
  const results = [];
  for (const img of Array.from(last.querySelectorAll('img')).slice(0, maxImages)) {
    const src = img.currentSrc || img.src || '';
    const alt = img.alt || '';
    if (!src) continue;
    if (src.startsWith('blob:') || src.startsWith('https://') || src.startsWith('http://')) {
      try {
        const r = await fetch(src);
        const b = await r.blob();
        if (b.size > maxBytes) { results.push({ src, alt }); continue; }
        const dataUrl = await new Promise((resolve, reject) => {
          const fr = new FileReader();
          fr.onerror = () => reject(new Error('file_reader_error'));
          fr.onload = () => resolve(String(fr.result || ''));
          fr.readAsDataURL(b);
        });
        results.push({ src, alt, data_url: dataUrl });
        continue;
      } catch (e) {}
    }
    results.push({ src, alt });
  }
  const canvases = Array.from(last.querySelectorAll('canvas'));
  for (let i = 0; i < canvases.length && results.length < maxImages; i++) {
    try {
      const dataUrl = canvases[i].toDataURL('image/png');
      if (dataUrl && dataUrl.startsWith('data:image/')) {
        results.push({ src: 'canvas:' + (i + 1), alt: 'canvas', data_url: dataUrl });
      }
    } catch (e) {}
  }
  if (results.length < maxImages) {
    const bgEls = Array.from(last.querySelectorAll('*')).filter((el) => {
      const s = getComputedStyle(el);
      return s && s.backgroundImage && s.backgroundImage.includes('url(');
    }).slice(0, 50);
    for (const el of bgEls) {
      if (results.length >= maxImages) break;
      const m = (getComputedStyle(el).backgroundImage || '').match(/url\(["']?([^"')]+)["']?\)/i);
      const src = (m && m[1]) || '';
      if (src.startsWith('http://') || src.startsWith('https://')) results.push({ src, alt: 'background-image' });
    }
  }
  return results;
}"""


class PageInspector:
    """Snapshots of one session's page. Stateless between calls."""

    def __init__(self, page: Page, selectors: dict[str, str]):
        self._page = page
        self._selectors = selectors

    @property
    def selectors(self) -> dict[str, str]:
        return self._selectors

    async def probe(self) -> PageProbe:
        raw = await self._page.evaluate(
            PROBE_PAGE_JS,
            {
                "promptSel": self._selectors["prompt_textarea"],
                "fallbackSel": FALLBACK_COMPOSER_SELECTOR,
                "sampleChars": BODY_TEXT_SAMPLE_CHARS,
            },
        )
        return PageProbe.model_validate(raw or {})

    async def detect_challenge(self) -> ChallengeSnapshot:
        """Classify what, if anything, obstructs the composer right now."""
        snapshot = build_snapshot(await self.probe())
        if snapshot.blocked:
            logger.debug(f"Challenge on {snapshot.url}: kind={snapshot.kind}")
        return snapshot

    async def composer_candidates(self) -> list[ComposerCandidate]:
        raw = await self._page.evaluate(
            COMPOSERS_JS,
            {"promptSel": self._selectors["prompt_textarea"], "fallbackSel": FALLBACK_COMPOSER_SELECTOR},
        )
        return [ComposerCandidate.model_validate(c) for c in raw or []]

    async def send_target(self) -> SendTarget:
        raw = await self._page.evaluate(
            SEND_TARGET_JS,
            {"sendSel": self._selectors["send_button"], "stopSel": self._selectors["stop_button"]},
        )
        return SendTarget.model_validate(raw or {})

    async def send_signal(self) -> SendSignal:
        raw = await self._page.evaluate(
            SEND_SIGNAL_JS,
            {
                "sendSel": self._selectors["send_button"],
                "stopSel": self._selectors["stop_button"],
                "promptSel": self._selectors["prompt_textarea"],
                "fallbackSel": FALLBACK_COMPOSER_SELECTOR,
            },
        )
        return SendSignal.model_validate(raw or {})

    async def reply_snapshot(self) -> ReplySnapshot:
        raw = await self._page.evaluate(
            REPLY_SNAPSHOT_JS,
            {
                "stopSel": self._selectors["stop_button"],
                "sendSel": self._selectors["send_button"],
                "assistantSel": self._selectors["assistant_message"],
                "continuePattern": CONTINUE_PATTERN,
            },
        )
        return ReplySnapshot.model_validate(raw or {})

    async def last_assistant_html(self) -> str:
        html = await self._page.evaluate(
            LAST_ASSISTANT_HTML_JS, {"assistantSel": self._selectors["assistant_message"]}
        )
        return str(html or "")

    async def last_assistant_images(self, max_images: int) -> list[AssistantImage]:
        raw = await self._page.evaluate(
            ASSISTANT_IMAGES_JS,
            {
                "assistantSel": self._selectors["assistant_message"],
                "maxImages": max_images,
                "maxBytes": MAX_INLINE_IMAGE_BYTES,
            },
        )
        if not isinstance(raw, list):
            return []
        return [AssistantImage.model_validate(i) for i in raw[:max_images]]

    async def read_page_text(self, max_chars: int) -> str:
        """Best-effort visible text of the main region, never longer than ``max_chars``."""
        max_chars = max(0, int(max_chars))
        text = await self._page.evaluate(READ_PAGE_TEXT_JS, {"maxChars": max_chars})
        return str(text or "")[:max_chars]
