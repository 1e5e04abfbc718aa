"""Exception hierarchy for the pedagogy engine.

- EngineError: base for everything raised by the engine
- StoreError: persistence failure (NotFoundError, ConflictError are subclasses)
- RepositoryUnavailableError: content repository gave up after its retry
- GenerationError: the content generator failed or returned garbage
- PersistenceError: a learner write failed twice; session state is kept in memory
"""

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class StoreError(EngineError):
    """A store operation failed (I/O error, timeout, backend unavailable)."""


class NotFoundError(StoreError):
    """The requested record does not exist."""


class ConflictError(StoreError):
    """Optimistic-concurrency check failed: the stored record moved on."""

    def __init__(self, message: str, expected_version: int, actual_version: int):
        super().__init__(
            message,
            details={"expected_version": expected_version, "actual_version": actual_version},
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class RepositoryUnavailableError(EngineError):
    """Recoverable: the content repository could not reach the store.

    Callers fall back to whatever content they already hold.
    """


class GenerationError(EngineError):
    """The external content generator failed or produced unusable output."""


class PersistenceError(EngineError):
    """Recoverable: learner state could not be written after one retry.

    The engine keeps the computed state in memory; the next successful write
    reconciles it. ``directive`` carries the adaptation decision that was
    computed before the write failed so the caller can keep going.
    """

    def __init__(self, message: str, directive: Any = None, details: dict | None = None):
        super().__init__(message, details)
        self.directive = directive
