"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from .models import PROVIDER_GMAIL

__all__ = [
    "EPOCH",
    "decode_checkpoint",
    "encode_checkpoint",
    "ensure_utc",
    "parse_datetime",
    "serialize_datetime",
    "to_utc",
    "utcnow",
]

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utcnow() -> datetime:
    """Return the current timezone-aware UTC time."""
    return datetime.now(UTC)


def to_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Like :func:`to_utc` but passes ``None`` through."""
    if value is None:
        return None
    return to_utc(value)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC."""
    if value is None:
        return None
    return to_utc(value).isoformat()


def parse_datetime(value: str | None, *, assume_utc: bool = True) -> datetime | None:
    """Parse an ISO 8601 string into a ``datetime`` instance."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None and assume_utc:
        return parsed.replace(tzinfo=UTC)
    return parsed


def encode_checkpoint(provider: str, value: datetime) -> str:
    """Encode a checkpoint timestamp in the provider's native format.

    Gmail checkpoints are epoch milliseconds; other providers use ISO 8601 UTC.
    """
    normalized = to_utc(value)
    if provider == PROVIDER_GMAIL:
        return str((normalized - EPOCH) // timedelta(milliseconds=1))
    return normalized.isoformat()


def decode_checkpoint(provider: str, checkpoint: str | None) -> datetime | None:
    """Decode a stored checkpoint into an aware UTC datetime."""
    if checkpoint is None or not checkpoint.strip():
        return None
    text = checkpoint.strip()
    if provider == PROVIDER_GMAIL or text.isdigit():
        return EPOCH + timedelta(milliseconds=int(text))
    return ensure_utc(datetime.fromisoformat(text))
