"""Camoufox browser host: one browser, one context, one page per session window."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from ..config import BROWSER_HEADLESS, BROWSER_TIMEOUT

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class BrowserHost:
    """Launches Camoufox lazily and opens pages for the session manager."""

    def __init__(self, headless: Optional[bool] = None, user_agent: Optional[str] = None):
        self._headless = BROWSER_HEADLESS if headless is None else headless
        self._user_agent = user_agent
        self._camoufox = None
        self._browser = None
        self._context: Optional[BrowserContext] = None

    @property
    def is_running(self) -> bool:
        return self._context is not None

    async def start(self):
        if self.is_running:
            return

        logger.info(f"Launching Camoufox (headless={self._headless})...")
        self._camoufox = AsyncCamoufox(
            headless=self._headless,
            humanize=True,
            geoip=True,
            i_know_what_im_doing=True,
            config={"forceScopeAccess": True},
            disable_coop=True,
        )
        try:
            self._browser = await self._camoufox.__aenter__()
            # Sessions share cookies so one login serves every window.
            self._context = await self._browser.new_context(
                viewport={"width": 1100, "height": 800},
                user_agent=self._user_agent,  # None lets Camoufox handle fingerprinting
            )
        except Exception:
            await self.stop()
            raise

    async def open_window(self, url: str) -> Page:
        """Open a new page and load ``url`` into it."""
        await self.start()
        page = await self._context.new_page()
        page.set_default_timeout(BROWSER_TIMEOUT)

        logger.info(f"Opening window at {url}")
        try:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=BROWSER_TIMEOUT)
            except PlaywrightError as e:
                logger.warning(f"Navigation timeout, trying with longer wait: {e}")
                await page.goto(url, wait_until="commit", timeout=BROWSER_TIMEOUT * 2)
        except Exception:
            logger.error(f"Could not load {url}, closing the new window")
            await page.close()
            raise

        logger.info(f"Window landed on {page.url}")
        return page

    async def stop(self):
        """Close every page and the browser."""
        logger.info("Stopping browser...")
        try:
            if self._context:
                await self._context.close()
        except Exception as e:
            logger.warning(f"Error closing context: {e}")
        finally:
            self._context = None

        try:
            if self._camoufox:
                await self._camoufox.__aexit__(None, None, None)
        except Exception as e:
            logger.warning(f"Error closing camoufox: {e}")
        finally:
            self._camoufox = None
            self._browser = None

        logger.info("Browser stopped.")
