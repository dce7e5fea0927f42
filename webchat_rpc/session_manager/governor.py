"""Admission control for expensive operations (query/send).

The governor is the only owner of the shared rate counters. Callers go
through ``admit()``, an async context manager that either admits (possibly
after sleeping out a short pacing gap), or raises ``AdmissionError`` with a
deterministic ``reason``. Checks always run in the order
max_inflight -> qpm -> gap.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sys
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..config import (
    MAX_INFLIGHT_QUERIES,
    MAX_QUERIES_PER_MINUTE,
    MIN_GLOBAL_GAP_MS,
    MIN_TAB_GAP_MS,
    QUERY_GAP_MAX_WAIT_MS,
)
from .errors import AdmissionError

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

WINDOW_MS = 60_000


class AdmissionGovernor:
    def __init__(
        self,
        max_inflight: int = MAX_INFLIGHT_QUERIES,
        max_per_minute: int = MAX_QUERIES_PER_MINUTE,
        min_tab_gap_ms: int = MIN_TAB_GAP_MS,
        min_global_gap_ms: int = MIN_GLOBAL_GAP_MS,
        max_wait_ms: int = QUERY_GAP_MAX_WAIT_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_inflight = max(1, int(max_inflight))
        self.max_per_minute = max(0, int(max_per_minute))  # 0 disables the per-minute cap
        self.min_tab_gap_ms = max(0, int(min_tab_gap_ms))
        self.min_global_gap_ms = max(0, int(min_global_gap_ms))
        self.max_wait_ms = max(0, int(max_wait_ms))
        self._clock = clock
        self._sleep = sleep

        self.inflight = 0
        self._admitted: deque[float] = deque()  # admission times (ms) within the last minute
        self._last_by_key: dict[str, float] = {}
        self._last_global: Optional[float] = None
        self._lock = asyncio.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, now_ms: float):
        while self._admitted and now_ms - self._admitted[0] >= WINDOW_MS:
            self._admitted.popleft()

    def _next_allowed(self, key: str) -> tuple[float, str]:
        """Earliest admission time for ``key`` and which gap binds it."""
        candidates = [(float("-inf"), "tab_gap")]
        last_tab = self._last_by_key.get(key)
        if last_tab is not None:
            candidates.append((last_tab + self.min_tab_gap_ms, "tab_gap"))
        if self._last_global is not None:
            candidates.append((self._last_global + self.min_global_gap_ms, "global_gap"))
        return max(candidates, key=lambda c: c[0])

    async def acquire(self, key: str):
        """Admit one request for ``key`` or raise ``AdmissionError``."""
        while True:
            async with self._lock:
                now = self._now_ms()
                if self.inflight >= self.max_inflight:
                    raise AdmissionError("max_inflight")

                self._prune(now)
                if self.max_per_minute and len(self._admitted) + 1 > self.max_per_minute:
                    retry = math.ceil(self._admitted[0] + WINDOW_MS - now)
                    raise AdmissionError("qpm", max(1, retry))

                next_allowed, reason = self._next_allowed(key)
                wait_ms = next_allowed - now
                if wait_ms <= 0:
                    self.inflight += 1
                    self._admitted.append(now)
                    self._last_by_key[key] = now
                    self._last_global = now
                    return
                if wait_ms > self.max_wait_ms:
                    logger.info(f"Rejecting {key}: {reason}, retry in {wait_ms:.0f}ms")
                    raise AdmissionError(reason, max(1, math.ceil(wait_ms)))

            # Never admitted before next_allowed; re-evaluate after sleeping.
            await self._sleep(wait_ms / 1000)

    def release(self):
        # No await between read and write, so this is atomic on the event loop.
        self.inflight = max(0, self.inflight - 1)

    @asynccontextmanager
    async def admit(self, key: str) -> AsyncIterator[None]:
        await self.acquire(key)
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict:
        now = self._now_ms()
        self._prune(now)
        return {
            "inflight": self.inflight,
            "max_inflight": self.max_inflight,
            "admitted_last_minute": len(self._admitted),
            "max_per_minute": self.max_per_minute,
        }
