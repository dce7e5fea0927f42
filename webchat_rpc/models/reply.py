"""Pydantic models for assistant replies."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReplySnapshot(BaseModel):
    """One poll of the conversation while waiting for a reply."""

    stop_visible: bool = False
    composer_enabled: bool = True
    text: str = ""
    count: int = 0  # assistant message nodes observed
    used_fallback: bool = False  # text came from the main region, not a message node
    has_continue: bool = False

    @property
    def generating(self) -> bool:
        # Some UIs keep unrelated stop/cancel controls visible; only trust
        # the stop control while the composer refuses submission.
        return self.stop_visible and not self.composer_enabled


class CodeBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    language: Optional[str] = None
    text: str


class ReplyMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int = 0
    has_error: bool = False
    continues: int = 0


class ReplyResult(BaseModel):
    """A completed reply. Immutable once returned."""

    model_config = ConfigDict(frozen=True)

    text: str
    code_blocks: list[CodeBlock] = Field(default_factory=list)
    meta: ReplyMeta = Field(default_factory=ReplyMeta)


class AssistantImage(BaseModel):
    src: str
    alt: str = ""
    data_url: Optional[str] = None


class SavedImage(BaseModel):
    path: str
    alt: str = ""
    mime: Optional[str] = None
    source: Optional[str] = None
