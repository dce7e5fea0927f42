"""Pydantic models for page snapshots taken by the inspector."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class Rect(BaseModel):
    x: float = 0
    y: float = 0
    w: float = 0
    h: float = 0


class ComposerCandidate(BaseModel):
    """Serialized attributes of one editable surface on the page."""

    index: int = 0
    tag: str = ""  # lower-case tag name
    input_type: str = ""
    label: str = ""  # aria-label, placeholder, name, id, data-testid joined
    visible: bool = False
    disabled: bool = False
    read_only: bool = False
    content_editable: bool = False
    role: str = ""
    rect: Rect = Field(default_factory=Rect)


class ButtonCandidate(BaseModel):
    """Serialized attributes of one clickable control considered for sending."""

    index: int = 0
    label: str = ""  # aria-label, title, data-testid, text joined
    matches_selector: bool = False
    visible: bool = False
    disabled: bool = False
    rect: Rect = Field(default_factory=Rect)


class PageProbe(BaseModel):
    """Raw facts collected from the page in a single evaluate call."""

    url: str = ""
    title: str = ""
    ready_state: str = ""
    body_text: str = ""
    iframe_srcs: list[str] = Field(default_factory=list)
    button_texts: list[str] = Field(default_factory=list)
    has_password_input: bool = False
    composers: list[ComposerCandidate] = Field(default_factory=list)


class ChallengeIndicators(BaseModel):
    has_captcha_frame: bool = False
    has_verify_button: bool = False
    looks_denied: bool = False
    login_like: bool = False


class ChallengeSnapshot(BaseModel):
    """Result of detect_challenge: what (if anything) obstructs the composer."""

    url: str = ""
    title: str = ""
    ready_state: str = ""
    blocked: bool = False
    kind: Optional[str] = None  # captcha | login | blocked | ui | None
    prompt_visible: bool = False
    indicators: ChallengeIndicators = Field(default_factory=ChallengeIndicators)


class SendTarget(BaseModel):
    """Outcome of locating the send affordance."""

    host: str = ""
    stop_visible: bool = False
    candidates: list[ButtonCandidate] = Field(default_factory=list)


class SendSignal(BaseModel):
    stop_visible: bool = False
    send_disabled: bool = False
    prompt_len: int = -1

    @property
    def submitted(self) -> bool:
        return self.stop_visible or self.send_disabled or self.prompt_len == 0
