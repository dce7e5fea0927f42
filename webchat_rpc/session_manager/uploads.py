"""Binding local files to a page's file input.

Synthetic input events cannot drive a native file picker, so files are set on
the ``<input type=file>`` element through the browser's automation protocol.
"""

from __future__ import annotations

import logging
import sys
from typing import Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..constants import FILE_INPUT_SELECTOR
from .errors import AutomationError
from .humanize import sleep_with_jitter

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class FileBinder:
    """Capability: put ``files`` into a file input on ``page``."""

    async def bind(self, page: Page, files: Sequence[str]):
        raise NotImplementedError


class NullFileBinder(FileBinder):
    """For hosts without a protocol channel. Fails fast."""

    async def bind(self, page: Page, files: Sequence[str]):
        raise AutomationError("file_upload_unavailable", {"reason": "no_control_channel"})


class PlaywrightFileBinder(FileBinder):
    """Sets files on the most recently added file input, retrying discovery."""

    def __init__(self, attempts: int = 10, backoff_ms: int = 180):
        self.attempts = attempts
        self.backoff_ms = backoff_ms

    async def bind(self, page: Page, files: Sequence[str]):
        if page.is_closed():
            raise AutomationError("file_upload_unavailable", {"reason": "page_closed"})

        found = 0
        for attempt in range(self.attempts):
            handles = await page.query_selector_all(FILE_INPUT_SELECTOR)
            found = len(handles)
            if not handles:
                await sleep_with_jitter(self.backoff_ms)
                continue

            # The last input is usually the live one the app just appended.
            for handle in reversed(handles):
                try:
                    await handle.set_input_files(list(files))
                    logger.info(f"Attached {len(files)} file(s) on attempt {attempt + 1}")
                    return
                except PlaywrightError as e:
                    logger.debug(f"File input rejected files: {e}")
            await sleep_with_jitter(self.backoff_ms)

        raise AutomationError("missing_file_input", {"selector": FILE_INPUT_SELECTOR, "found": found})
