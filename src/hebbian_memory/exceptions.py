"""Error taxonomy for the Hebbian memory engine.

- :class:`ValidationError` -- bad caller input, raised before any mutation.
- :class:`StoreBusy` -- lock contention outlasted every retry; nothing was
  applied and the caller may retry.
- :class:`StoreCorrupt` / :class:`StoreUnavailable` -- the persisted state
  cannot be read or written.  Fatal for the process, never auto-recovered.

Every error carries the operation name (and, where one exists, the
offending identifier) so callers can log or retry meaningfully.
"""

from __future__ import annotations

from typing import Any


class HebbianError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(HebbianError, ValueError):
    """Raised when caller input fails validation."""

    def __init__(self, field: str, message: str, value: Any = None) -> None:
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to an error response payload."""
        return {
            "error": "validation_error",
            "field": self.field,
            "message": self.message,
        }


class StoreError(HebbianError):
    """Base class for persistence failures."""

    def __init__(
        self,
        operation: str,
        detail: str = "",
        identifier: str | None = None,
    ) -> None:
        self.operation = operation
        self.detail = detail
        self.identifier = identifier
        message = f"{operation} failed"
        if identifier:
            message += f" for {identifier!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class StoreBusy(StoreError):
    """Raised when the store stayed locked through every retry."""

    def __init__(
        self,
        operation: str,
        attempts: int,
        detail: str = "",
        identifier: str | None = None,
    ) -> None:
        self.attempts = attempts
        super().__init__(
            operation,
            f"store busy after {attempts} attempts" + (f" ({detail})" if detail else ""),
            identifier,
        )


class StoreCorrupt(StoreError):
    """Raised when the database file is not a valid SQLite database."""


class StoreUnavailable(StoreError):
    """Raised when the database file cannot be opened or written."""
