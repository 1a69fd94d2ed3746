"""Exception types shared across the agent."""

from __future__ import annotations


class TermpilotError(RuntimeError):
    """Base class for agent errors."""


class ConfigError(TermpilotError):
    """Raised when provider configuration is incomplete (missing URL or key)."""


class TransportError(TermpilotError):
    """Raised for HTTP/network failures talking to the model provider."""

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class RunCancelled(TermpilotError):
    """Raised inside a run when its cancel token fires."""
