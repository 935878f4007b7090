"""Error types for the scoring pipeline.

Provider failures carry a kind tag instead of living in a class hierarchy,
so the retry policy only has to look at ``error.retryable``.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class ProviderError(Exception):
    """A failed provider call, tagged retryable (transient model output) or fatal."""

    def __init__(
        self, message: str, kind: ErrorKind = ErrorKind.FATAL,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE

    @classmethod
    def retryable_error(cls, message: str) -> "ProviderError":
        return cls(message, kind=ErrorKind.RETRYABLE)

    @classmethod
    def fatal(cls, message: str, status_code: Optional[int] = None) -> "ProviderError":
        return cls(message, kind=ErrorKind.FATAL, status_code=status_code)

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, status={self.status_code!r}, message={self.message!r})"


class ConfigurationError(RuntimeError):
    """Required upstream configuration (API key, model list) is missing."""
    pass


class ReferenceDataError(RuntimeError):
    """Reference data needed before any batch can run is absent."""
    pass


class ScenarioNotFoundError(LookupError):
    pass
