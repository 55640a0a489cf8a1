"""Shared exception types for the exit engine."""

from typing import Optional, Sequence


class ExitEngineError(RuntimeError):
    """Base class for exit engine errors."""


class ConfigurationError(ExitEngineError):
    """Raised when app.yaml is missing or fails validation."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")


class PriceSourceExhausted(ExitEngineError):
    """Every quote-asset price source failed; there is no safe fallback value."""

    def __init__(self, sources: Sequence[str], original: Optional[Exception] = None):
        super().__init__(f"Quote asset price unavailable from: {', '.join(sources) or 'no sources'}")
        self.sources = list(sources)
        self.original = original


class ExecutionFailure(ExitEngineError):
    """The trade executor did not confirm an exit."""

    def __init__(self, position_id: str, reason: str):
        super().__init__(f"{position_id}: {reason}")
        self.position_id = position_id
        self.reason = reason


class PersistenceFailure(ExitEngineError):
    """The position store did not confirm a write."""

    def __init__(self, position_id: str, reason: str):
        super().__init__(f"{position_id}: {reason}")
        self.position_id = position_id
        self.reason = reason


class StaleVersion(PersistenceFailure):
    """The stored record changed since the decision was computed."""

    def __init__(self, position_id: str, expected: int, actual: int):
        super().__init__(position_id, f"version conflict (expected {expected}, found {actual})")
        self.expected = expected
        self.actual = actual


class NotifierFailure(ExitEngineError):
    """A notification could not be delivered."""
