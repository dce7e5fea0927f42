"""Pydantic models for session state."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TabInfo(BaseModel):
    """Public view of one live session."""

    id: str
    key: Optional[str] = None
    name: str
    url: str = ""
    protected: bool = False
    blocked: bool = False
    blocked_kind: Optional[str] = None
    created_at: float
    last_used_at: float


class AttentionEvent(BaseModel):
    """Delivered to the notification sink. ``reason`` is "blocked" or "all_clear"."""

    tab_id: Optional[str] = None
    reason: str
    kind: Optional[str] = None  # login | captcha | blocked | ui
    detail: dict[str, Any] = Field(default_factory=dict)


class SessionStatus(BaseModel):
    """Current state of one session as reported by the control surface."""

    ok: bool = True
    tab_id: str
    url: str = ""
    blocked: bool = False
    prompt_visible: bool = False
    kind: Optional[str] = None
    indicators: Optional[dict[str, bool]] = None
    tabs: list[TabInfo] = Field(default_factory=list)


class Timings(BaseModel):
    """Tunable polling and pacing windows, in milliseconds."""

    ready_poll_ms: int = 500
    ui_grace_ms: int = 5_000
    reply_poll_ms: int = 400
    reply_timeout_ms: int = 5 * 60_000
    query_reply_ceiling_ms: int = 8 * 60_000
    stable_ms: int = 1_500
    stable_long_ms: int = 2_200  # beyond long_text_chars
    stable_very_long_ms: int = 3_000  # beyond very_long_text_chars
    long_text_chars: int = 2_000
    very_long_text_chars: int = 8_000
    stop_gone_ms: int = 800
    shell_fallback_ms: int = 2_500
    max_continues: int = 3
    continue_pause_ms: int = 250
    send_signal_ms: int = 2_200
    send_retry_signal_ms: int = 1_400
    key_signal_ms: int = 1_500
    signal_poll_ms: int = 120
    stop_after_send_ms: int = 2_500
    file_input_attempts: int = 10
    file_input_backoff_ms: int = 180
    type_delay_min_ms: int = 12
    type_delay_max_ms: int = 45
