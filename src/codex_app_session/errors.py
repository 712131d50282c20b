from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .protocol import Notification


class CodexError(Exception):
    """Base exception for the codex-app-session package."""


class CodexTransportError(CodexError):
    """Raised when the underlying transport fails."""


class CodexLaunchError(CodexTransportError):
    """Raised when the app-server process cannot be started."""


class CodexRemoteClosedError(CodexTransportError):
    """Raised when the remote stream ends; the session cannot continue."""

    def __init__(
        self,
        message: str = "remote stream closed",
        *,
        partial_events: list[Notification] | None = None,
    ) -> None:
        super().__init__(message)
        self.partial_events = list(partial_events or [])


class CodexTimeoutError(CodexError):
    """Raised when a request or drain exceeds its deadline."""


class CodexMalformedEnvelopeError(CodexError):
    """Raised when an inbound line is not a valid JSON-RPC envelope."""

    def __init__(self, message: str, *, line: str | None = None) -> None:
        super().__init__(message)
        self.line = line


class CodexProtocolError(CodexError):
    """Raised when a response does not have the shape the protocol promises."""


class CodexRemoteError(CodexProtocolError):
    """Raised when the app-server answers a request with a JSON-RPC error."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a remote error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data
