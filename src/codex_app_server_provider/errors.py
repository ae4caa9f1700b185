from __future__ import annotations

from typing import Any


class CodexError(Exception):
    """Base exception for the codex-app-server-provider package."""


class CodexTransportError(CodexError):
    """Raised when the app-server process fails, exits, or its pipes break."""


class CodexProtocolError(CodexError):
    """Raised when JSON-RPC or app-server protocol reports an error."""

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
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class CodexParseError(CodexProtocolError):
    """Raised when the app-server writes a line that is not a JSON object."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class CodexTurnError(CodexError):
    """Raised when the app-server reports an `error` notification for a turn."""

    def __init__(
        self,
        message: str,
        *,
        thread_id: str | None = None,
        turn_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.thread_id = thread_id
        self.turn_id = turn_id


class CodexConfigError(CodexError, ValueError):
    """Raised when provider settings are unusable."""


class CodexUnsupportedError(CodexError):
    """Raised for model kinds the app-server provider does not offer."""
