"""Tests for the page inspector against a scripted page."""

import pytest

from fakes import FakePage

from webchat_rpc.constants import DEFAULT_SELECTORS
from webchat_rpc.session_manager.inspector import (
    ASSISTANT_IMAGES_JS,
    PROBE_PAGE_JS,
    READ_PAGE_TEXT_JS,
    REPLY_SNAPSHOT_JS,
    SEND_SIGNAL_JS,
    PageInspector,
)


def make_inspector():
    page = FakePage()
    return PageInspector(page, DEFAULT_SELECTORS), page


@pytest.mark.asyncio
class TestPageInspector:
    async def test_read_page_text_is_capped(self):
        inspector, page = make_inspector()
        page.scripts[READ_PAGE_TEXT_JS] = "y" * 5000
        text = await inspector.read_page_text(100)
        assert text == "y" * 100
        assert page.evaluated[-1][1] == {"maxChars": 100}

    async def test_read_page_text_handles_empty_page(self):
        inspector, page = make_inspector()
        page.scripts[READ_PAGE_TEXT_JS] = None
        assert await inspector.read_page_text(100) == ""

    async def test_detect_challenge_from_probe(self):
        inspector, page = make_inspector()
        page.scripts[PROBE_PAGE_JS] = {
            "url": "https://chat.example.com/",
            "title": "Just a moment...",
            "ready_state": "complete",
            "body_text": "Checking your browser",
            "iframe_srcs": ["https://challenges.cloudflare.com/cdn-cgi/challenge-platform"],
            "button_texts": [],
            "has_password_input": False,
            "composers": [],
        }
        snap = await inspector.detect_challenge()
        assert snap.blocked
        assert snap.kind == "captcha"
        assert snap.title == "Just a moment..."
        assert not snap.prompt_visible

    async def test_detect_challenge_ready(self):
        inspector, page = make_inspector()
        page.scripts[PROBE_PAGE_JS] = {
            "url": "https://chat.example.com/",
            "ready_state": "complete",
            "composers": [
                {
                    "index": 0,
                    "tag": "div",
                    "content_editable": True,
                    "visible": True,
                    "rect": {"x": 10, "y": 700, "w": 600, "h": 48},
                }
            ],
        }
        snap = await inspector.detect_challenge()
        assert snap.prompt_visible
        assert not snap.blocked

    async def test_send_signal_uses_configured_selectors(self):
        inspector, page = make_inspector()
        page.scripts[SEND_SIGNAL_JS] = {"stop_visible": False, "send_disabled": False, "prompt_len": 0}
        signal = await inspector.send_signal()
        assert signal.submitted
        arg = page.evaluated[-1][1]
        assert arg["sendSel"] == DEFAULT_SELECTORS["send_button"]
        assert arg["stopSel"] == DEFAULT_SELECTORS["stop_button"]

    async def test_reply_snapshot(self):
        inspector, page = make_inspector()
        page.scripts[REPLY_SNAPSHOT_JS] = {
            "stop_visible": True,
            "composer_enabled": False,
            "text": "Streaming",
            "count": 2,
        }
        snap = await inspector.reply_snapshot()
        assert snap.generating
        assert snap.count == 2
        _, args = page.evaluated[-1]
        assert set(args) == {"stopSel", "sendSel", "assistantSel", "continuePattern"}

    async def test_images_are_bounded(self):
        inspector, page = make_inspector()
        page.scripts[ASSISTANT_IMAGES_JS] = [{"src": f"https://img.test/{i}.png"} for i in range(5)]
        images = await inspector.last_assistant_images(2)
        assert [i.src for i in images] == ["https://img.test/0.png", "https://img.test/1.png"]
