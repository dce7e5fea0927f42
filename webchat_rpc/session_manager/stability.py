"""Deciding when a streamed reply has finished.

``ReplyTracker`` is fed one ``ReplySnapshot`` per poll together with the
current time in milliseconds and answers whether to keep waiting, click a
"continue generating" control, or return the reply.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

from ..constants import REPLY_ERROR_MAX_CHARS, REPLY_ERROR_PATTERN
from ..models.reply import ReplySnapshot
from ..models.session import Timings

_REPLY_ERROR_RE = re.compile(REPLY_ERROR_PATTERN, re.I)


class Verdict(str, Enum):
    WAIT = "wait"
    CONTINUE = "continue"
    DONE = "done"


def required_quiet_ms(length: int, timings: Timings) -> int:
    """Quiet window before a reply of ``length`` chars counts as settled."""
    if length > timings.very_long_text_chars:
        window = timings.stable_very_long_ms
    elif length > timings.long_text_chars:
        window = timings.stable_long_ms
    else:
        window = timings.stable_ms
    return max(timings.stable_ms, window)


def reply_has_error(text: str) -> bool:
    return len(text) < REPLY_ERROR_MAX_CHARS and bool(_REPLY_ERROR_RE.search(text))


class ReplyTracker:
    def __init__(self, started_ms: float, timings: Optional[Timings] = None):
        self.timings = timings or Timings()
        self.started_ms = started_ms
        self.last_text = ""
        self.last_change_ms = started_ms
        self.stop_gone_ms: Optional[float] = None
        self.continues = 0
        self.last: Optional[ReplySnapshot] = None

    def observe(self, snap: ReplySnapshot, now_ms: float) -> Verdict:
        t = self.timings
        self.last = snap

        if snap.text != self.last_text:
            self.last_text = snap.text
            self.last_change_ms = now_ms

        if snap.generating:
            self.stop_gone_ms = None
        elif self.stop_gone_ms is None:
            self.stop_gone_ms = now_ms

        if not snap.generating and snap.has_continue and self.continues < t.max_continues:
            self.continues += 1
            return Verdict.CONTINUE

        stable = now_ms - self.last_change_ms >= required_quiet_ms(len(snap.text), t)
        stop_gone_long_enough = (
            self.stop_gone_ms is not None and now_ms - self.stop_gone_ms >= t.stop_gone_ms
        )
        ready_by_nodes = snap.count > 0
        shell_waited = snap.used_fallback and now_ms - self.started_ms >= t.shell_fallback_ms

        if (
            not snap.generating
            and stop_gone_long_enough
            and snap.composer_enabled
            and stable
            and snap.text
            and (ready_by_nodes or shell_waited)
        ):
            return Verdict.DONE
        return Verdict.WAIT
