"""Typed errors surfaced by the session core.

Every error carries a stable string ``code`` that callers (and the control
surface's HTTP mapping) switch on, plus an optional diagnostic ``data`` dict.
"""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all errors with a stable code."""

    default_code = "internal_error"

    def __init__(self, code: Optional[str] = None, data: Optional[dict[str, Any]] = None):
        self.code = code or self.default_code
        self.data = data or {}
        super().__init__(self.code)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.code, "data": self.data or None}


class InvalidRequestError(BridgeError):
    """Rejected before any session interaction (missing/oversized input)."""

    default_code = "invalid_request"


class ResolutionError(BridgeError):
    """Unknown session, closed window, pool exhausted or protected session."""

    default_code = "tab_not_found"


class AutomationError(BridgeError):
    """The page did not behave as expected while driving it."""

    default_code = "automation_failed"


class AutomationTimeout(AutomationError):
    """A bounded wait expired. The session may still finish on its own."""

    default_code = "timeout"


class AdmissionError(BridgeError):
    """The governor refused to admit a request right now."""

    default_code = "rate_limited"

    def __init__(self, reason: str, retry_after_ms: Optional[int] = None):
        self.reason = reason
        self.retry_after_ms = retry_after_ms
        data: dict[str, Any] = {"reason": reason}
        if retry_after_ms is not None:
            data["retry_after_ms"] = retry_after_ms
        super().__init__(data=data)
