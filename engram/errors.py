"""Exception hierarchy for the memory engine.

    EngramError (base)
    ├── ConfigurationError        abort startup
    ├── TransientStorageError     retry on the next flush/recovery pass
    ├── CorruptIndexError         degrade the affected retrieval mode
    └── SemanticUnavailableError  keyword-only search / ignore topic shift
"""

from __future__ import annotations

from typing import Any


class EngramError(Exception):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, details={self.details!r})"


class ConfigurationError(EngramError):
    """Invalid configuration or an unusable store; there is no degraded mode."""


class TransientStorageError(EngramError):
    """A write failed in a way that may succeed on the next attempt."""


class CorruptIndexError(EngramError):
    """The keyword or vector index could not answer a query."""

    def __init__(
        self, message: str, index: str, details: dict[str, Any] | None = None
    ) -> None:
        self.index = index
        super().__init__(message, {"index": index, **(details or {})})


class SemanticUnavailableError(EngramError):
    """No embedding could be computed (missing model, failure or timeout)."""
