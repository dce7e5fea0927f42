"""Human-paced input events: pointer trajectories, key chords, per-character typing."""

from __future__ import annotations

import asyncio
import math
import random
import sys
from typing import Iterable, Optional

from playwright.async_api import Page

from ..constants import DEFAULT_SUBMIT_KEY_COMBOS, PRIMARY_MODIFIER, SUBMIT_KEY_COMBOS

KeyCombo = tuple[str, tuple[str, ...]]


def jitter(min_ms: float, max_ms: float) -> int:
    """Random integer milliseconds in [min_ms, max_ms]."""
    lo = max(0, int(min_ms))
    hi = max(lo, int(max_ms))
    return random.randint(lo, hi)


async def sleep_ms(ms: float):
    await asyncio.sleep(max(0, ms) / 1000)


async def sleep_with_jitter(ms: float, spread: int = 40):
    await sleep_ms(ms + jitter(0, spread))


def primary_modifier(platform: Optional[str] = None) -> str:
    return "Meta" if (platform or sys.platform) == "darwin" else "Control"


def submit_combos_for_host(host: str, platform: Optional[str] = None) -> list[KeyCombo]:
    """Ordered keyboard-submission fallbacks for ``host``."""
    combos = DEFAULT_SUBMIT_KEY_COMBOS
    for pattern, table in SUBMIT_KEY_COMBOS.items():
        if pattern in (host or ""):
            combos = table
            break
    primary = primary_modifier(platform)
    return [
        (key, tuple(primary if m == PRIMARY_MODIFIER else m for m in modifiers))
        for key, modifiers in combos
    ]


class InputSynthesizer:
    """Issues low-level input against one page. Only state is the last pointer position."""

    def __init__(self, page: Page, type_delay_ms: tuple[int, int] = (12, 45)):
        self._page = page
        self._type_delay_ms = type_delay_ms
        self._mouse = (30.0, 30.0)

    async def move_to(self, x: float, y: float):
        fx, fy = self._mouse
        distance = math.hypot(x - fx, y - fy)
        steps = max(6, min(22, int(distance // 35)))
        for i in range(1, steps + 1):
            t = i / steps
            nx = round(fx + (x - fx) * t + random.randint(-2, 2))
            ny = round(fy + (y - fy) * t + random.randint(-2, 2))
            await self._page.mouse.move(nx, ny)
            await sleep_ms(jitter(6, 18))
            self._mouse = (nx, ny)

    async def click_at(self, x: float, y: float):
        await self.move_to(x, y)
        await self._page.mouse.move(x, y)
        await self._page.mouse.down()
        await sleep_ms(jitter(20, 60))
        await self._page.mouse.up()
        self._mouse = (x, y)

    async def press(self, key: str, modifiers: Iterable[str] = ()):
        """Press ``key`` while holding ``modifiers`` (Playwright key names)."""
        held = list(modifiers)
        for m in held:
            await self._page.keyboard.down(m)
        try:
            await self._page.keyboard.press(key)
        finally:
            for m in reversed(held):
                await self._page.keyboard.up(m)

    async def type_human(self, text: str):
        lo, hi = self._type_delay_ms
        for ch in text:
            if ch == "\n":
                # A bare Enter would submit in most composers.
                await self.press("Enter", ("Shift",))
            else:
                await self._page.keyboard.type(ch)
            await sleep_ms(jitter(lo, hi))
