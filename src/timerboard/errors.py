"""Error taxonomy for Timerboard.

- GatewayError: transient failures talking to Discord (timeouts, 5xx, 429).
  Logged and skipped; retried only by the next sweep or event.
- DataIntegrityError: stored data is inconsistent (missing category, missing
  ping format, an id that does not parse). Raised to the caller; retrying
  will not help until the data is fixed.

Persistence failures surface as SQLAlchemy exceptions and are not wrapped.
"""

from __future__ import annotations


class TimerboardError(Exception):
    """Base class for Timerboard errors."""


class GatewayError(TimerboardError):
    """A Discord API call failed or timed out."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(GatewayError):
    """Discord answered 429 Too Many Requests."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class DataIntegrityError(TimerboardError):
    """Stored data is missing or malformed."""


class CategoryNotFoundError(DataIntegrityError):
    """A fleet references a category that does not exist."""

    def __init__(self, category_id: int) -> None:
        super().__init__(f"Fleet category not found: {category_id}")
        self.category_id = category_id


class PingFormatNotFoundError(DataIntegrityError):
    """A category has no ping format attached."""

    def __init__(self, category_id: int) -> None:
        super().__init__(f"Ping format not found for category: {category_id}")
        self.category_id = category_id


class InvalidIdentifierError(DataIntegrityError):
    """A stored Discord snowflake could not be parsed."""

    def __init__(self, kind: str, value: object) -> None:
        super().__init__(f"Invalid {kind}: {value!r}")
        self.kind = kind
        self.value = value


def parse_snowflake(value: object, kind: str = "id") -> int:
    """Parse a stored Discord snowflake into an int.

    Args:
        value: Stored value (usually a string).
        kind: What the id is, for the error message.

    Returns:
        The id as a positive int.

    Raises:
        InvalidIdentifierError: If the value is not a positive integer.
    """
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        raise InvalidIdentifierError(kind, value) from None
    if parsed <= 0:
        raise InvalidIdentifierError(kind, value)
    return parsed
