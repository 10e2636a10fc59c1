from __future__ import annotations

from typing import Any


class AriaError(Exception):
    """Base exception for the aria-chat-core package."""


class AriaTransportError(AriaError):
    """Raised when the underlying transport fails or disconnects unexpectedly."""


class AriaTimeoutError(AriaError):
    """Raised when a request or stream wait exceeds its timeout policy."""


class AriaStreamInactiveError(AriaTimeoutError):
    """Raised when a running stream emits no events for too long."""

    def __init__(self, message: str, *, idle_seconds: float) -> None:
        super().__init__(message)
        self.idle_seconds = idle_seconds


class AriaProtocolError(AriaError):
    """Raised when the completion service reports an error or breaks the wire contract."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional HTTP status or service error code.
            data: Optional service-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class ThreadIdentityConflictError(AriaProtocolError):
    """Raised when a bound conversation is handed a different thread id."""

    def __init__(self, *, bound_id: str, received_id: str) -> None:
        super().__init__(
            f"thread already bound to {bound_id!r}, refusing {received_id!r}"
        )
        self.bound_id = bound_id
        self.received_id = received_id


class HistoryLoadError(AriaError):
    """Raised when prior turns for a thread cannot be fetched."""


class TranscriptError(AriaError):
    """Raised when a transcript operation would break an ordering or streaming invariant."""
