"""Application-level exception types for kurostream."""

from __future__ import annotations


class KuroError(Exception):
    """Base exception for kurostream."""


class ConfigurationError(KuroError):
    """Raised when settings are missing or inconsistent."""


class TransportError(KuroError):
    """Base exception for connection-level stream failures. Retryable."""


class StaleStreamError(TransportError):
    """Raised when no stream data arrives within the idle window."""

    def __init__(self, idle_seconds: float) -> None:
        self.idle_seconds = idle_seconds
        super().__init__(f"stream stalled: no data within {idle_seconds:g}s")


class ServerResponseError(KuroError):
    """Raised when the server answers with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Server error: {body or f'HTTP {status_code}'}")


class NonStreamResponseError(KuroError):
    """Raised when a stream request is answered with a plain body."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ToolInvocationError(KuroError):
    """Raised when the side-channel tool endpoint fails."""


class CorrectionError(KuroError):
    """Base exception for mid-stream correction failures."""


class CorrectionRateLimitedError(CorrectionError):
    """Raised when the client-side correction budget is exhausted."""
