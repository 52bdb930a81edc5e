from __future__ import annotations

from typing import Any


class TrackingError(Exception):
    """Base class for every failure raised by the tracking core."""

    retryable: bool = False


class ValidationError(TrackingError, ValueError):
    """Missing or malformed input. Raised before the store is touched."""

    def __init__(self, message: str, *, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class NotFoundError(TrackingError, LookupError):
    def __init__(self, resource: str, key: str) -> None:
        super().__init__(f"{resource} not found: {key!r}")
        self.resource = resource
        self.key = key


class StoreError(TrackingError):
    """The store failed or timed out. Callers may retry with backoff."""

    retryable = True


class EnrichmentUnavailable(TrackingError):
    """The enrichment collaborator failed. Never fatal for ingestion."""

    retryable = True


def require(**values: object) -> None:
    """
    Raise ValidationError naming every missing (None or blank) value.
    """
    missing = tuple(
        name
        for name, value in values.items()
        if value is None or (isinstance(value, str) and not value.strip())
    )
    if missing:
        raise ValidationError(f"{', '.join(missing)} required", fields=missing)


def optional_count(name: str, value: Any) -> int | None:
    """
    Coerce an optional non-negative integer sent by a client ("12", 12.7, 12).
    None and "" mean absent.
    """
    if value is None or value == "":
        return None
    try:
        n = int(float(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be numeric, got {value!r}", fields=(name,)) from e
    if n < 0:
        raise ValidationError(f"{name} must be >= 0", fields=(name,))
    return n
