"""Pure candidate scoring and challenge classification.

Everything here works on serialized page snapshots (see models.page) so it
can be exercised without a browser. The inspector collects the snapshots,
the controller acts on the winners.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from ..constants import (
    ACCESS_DENIED_PATTERN,
    CAPTCHA_FRAME_PATTERNS,
    COMPOSER_LABEL_PATTERN,
    CONVERSATION_PATTERN,
    LOGIN_TEXT_PATTERN,
    NON_TEXT_INPUT_TYPES,
    SEND_LABEL_PATTERN,
    SEND_PENALTY_PATTERN,
    VERIFY_BUTTON_PATTERN,
)
from ..models.page import (
    ButtonCandidate,
    ChallengeIndicators,
    ChallengeSnapshot,
    ComposerCandidate,
    PageProbe,
)

_CAPTCHA_FRAME_RE = re.compile("|".join(CAPTCHA_FRAME_PATTERNS), re.I)
_VERIFY_RE = re.compile(VERIFY_BUTTON_PATTERN, re.I)
_LOGIN_RE = re.compile(LOGIN_TEXT_PATTERN, re.I)
_DENIED_RE = re.compile(ACCESS_DENIED_PATTERN, re.I)
_CONVERSATION_RE = re.compile(CONVERSATION_PATTERN, re.I)
_NON_TEXT_RE = re.compile(NON_TEXT_INPUT_TYPES, re.I)
_COMPOSER_LABEL_RE = re.compile(COMPOSER_LABEL_PATTERN)
_SEND_LABEL_RE = re.compile(SEND_LABEL_PATTERN)
_SEND_PENALTY_RE = re.compile(SEND_PENALTY_PATTERN)


# ── Composer ─────────────────────────────────────────────────────────────────


def is_editable(c: ComposerCandidate) -> bool:
    """A visible, enabled surface that accepts free text."""
    if not c.visible:
        return False
    if c.tag == "textarea":
        return not c.disabled and not c.read_only
    if c.tag == "input":
        return not c.disabled and not c.read_only and not _NON_TEXT_RE.search(c.input_type or "text")
    return c.content_editable or c.role == "textbox"


def score_composer(c: ComposerCandidate) -> float:
    """Favor prompt-ish labels, textareas, larger area and lower position."""
    r = c.rect
    s = 0.0
    if _COMPOSER_LABEL_RE.search(c.label.lower()):
        s += 80
    if c.tag == "textarea":
        s += 50
    if c.content_editable:
        s += 35
    if c.role == "textbox":
        s += 25
    if r.w >= 260 and r.h >= 26:
        s += 20
    s += min(180.0, max(0.0, (r.w * r.h) / 2500))
    s += max(0.0, r.y / 8)
    return s


def pick_composer(candidates: Sequence[ComposerCandidate]) -> Optional[ComposerCandidate]:
    best = None
    best_score = float("-inf")
    for c in candidates:
        if not is_editable(c):
            continue
        s = score_composer(c)
        if s > best_score:
            best, best_score = c, s
    return best


# ── Send button ──────────────────────────────────────────────────────────────


def score_send_button(c: ButtonCandidate) -> float:
    r = c.rect
    label = c.label.lower()
    s = 0.0
    if c.matches_selector:
        s += 120
    if _SEND_LABEL_RE.search(label):
        s += 90
    if _SEND_PENALTY_RE.search(label):
        s -= 140
    if r.w >= 16 and r.h >= 16:
        s += 10
    s += max(0.0, r.y / 10)
    s += max(0.0, r.x / 20)
    return s


def pick_send_button(candidates: Sequence[ButtonCandidate]) -> Optional[ButtonCandidate]:
    best = None
    best_score = float("-inf")
    for c in candidates:
        if not c.visible or c.disabled:
            continue
        s = score_send_button(c)
        if s > best_score:
            best, best_score = c, s
    return best


# ── Challenges ───────────────────────────────────────────────────────────────


def challenge_indicators(probe: PageProbe, prompt_visible: bool) -> ChallengeIndicators:
    body = probe.body_text
    has_frame = any(_CAPTCHA_FRAME_RE.search(src) for src in probe.iframe_srcs)
    has_verify = any(_VERIFY_RE.search(t.strip()) for t in probe.button_texts)
    looks_denied = bool(_DENIED_RE.search(body)) and not _CONVERSATION_RE.search(body)
    login_like = probe.has_password_input or bool(_LOGIN_RE.search(body))
    return ChallengeIndicators(
        has_captcha_frame=has_frame,
        has_verify_button=has_verify,
        looks_denied=looks_denied,
        # A login link next to a usable composer is just a logged-out chat.
        login_like=login_like and not prompt_visible,
    )


def classify(indicators: ChallengeIndicators) -> tuple[bool, Optional[str]]:
    """Return (blocked, kind) with precedence captcha > login > blocked."""
    if indicators.has_captcha_frame or indicators.has_verify_button:
        return True, "captcha"
    if indicators.login_like:
        return True, "login"
    if indicators.looks_denied:
        return True, "blocked"
    return False, None


def build_snapshot(probe: PageProbe) -> ChallengeSnapshot:
    prompt_visible = pick_composer(probe.composers) is not None
    indicators = challenge_indicators(probe, prompt_visible)
    blocked, kind = classify(indicators)
    return ChallengeSnapshot(
        url=probe.url,
        title=probe.title,
        ready_state=probe.ready_state,
        blocked=blocked,
        kind=kind,
        prompt_visible=prompt_visible,
        indicators=indicators,
    )
