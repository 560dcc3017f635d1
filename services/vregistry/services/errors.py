"""Errors raised by the virtual registry service layer.

Validation errors are field-scoped so callers can surface them next to the
offending input. They subclass ValueError, like the rest of the service layer.
"""


class ValidationError(ValueError):
    """A field failed validation."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field.replace('_', ' ').capitalize()} {message}")


class MaxCountExceededError(ValidationError):
    """A per-group or per-registry limit would be exceeded."""


class PositionOutOfRangeError(ValidationError):
    """An upstream position falls outside [1, max_upstreams_count]."""


class BlockedUrlError(ValidationError):
    """An upstream URL points somewhere we refuse to connect to."""

    def __init__(self, reason: str) -> None:
        super().__init__("url", f"is blocked: {reason}")


class UpsertConflictError(RuntimeError):
    """A cache entry upsert kept losing the insert race and gave up."""
