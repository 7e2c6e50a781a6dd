"""Deterministic, human-readable file names for stored raw messages."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime

from ..core.datetime_utils import ensure_utc

MAX_SUBJECT_CHARS = 100
DIGEST_CHARS = 12

_ILLEGAL_CHARS = re.compile(r'[/\\*?:"<>|]')
_NON_PRINTABLE = re.compile(r"[\x00-\x1f\x7f]")
_REPEATED_UNDERSCORES = re.compile(r"_+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def message_digest(account_id: str, native_id: str) -> str:
    """Return a short digest that is unique per ``(account_id, native_id)``."""
    payload = f"{account_id}\x00{native_id}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:DIGEST_CHARS]


def sanitize_subject(subject: str | None) -> str:
    """Replace characters that are illegal in file names with underscores."""
    text = _ILLEGAL_CHARS.sub("_", subject or "")
    text = _NON_PRINTABLE.sub("", text)
    text = _REPEATED_UNDERSCORES.sub("_", text).strip("_")
    return text[:MAX_SUBJECT_CHARS] or "No_Subject"


def slugify_subject(subject: str | None) -> str:
    """Return a lowercase hyphenated slug for ``subject``."""
    slug = _NON_ALNUM.sub("-", (subject or "").lower()).strip("-")
    return slug[:MAX_SUBJECT_CHARS].rstrip("-") or "no-subject"


def build_raw_filename(
    account_id: str,
    native_id: str,
    subject: str | None,
    received_at: datetime | None,
    *,
    intelligent_rename: bool = False,
) -> str:
    """Build the storage key for a raw message.

    The same inputs always produce the same name. The digest suffix keeps two
    messages with equal subjects and minutes apart on disk.
    """
    timestamp = ensure_utc(received_at)
    digest = message_digest(account_id, native_id)
    if intelligent_rename:
        stamp = timestamp.strftime("%Y%m%d-%H%M") if timestamp else "00000000-0000"
        return f"{stamp}-{slugify_subject(subject)}-{digest}.eml"
    stamp = timestamp.strftime("%Y%m%d_%H%M") if timestamp else "00000000_0000"
    return f"{stamp}_{sanitize_subject(subject)}_{digest}.eml"


__all__ = [
    "build_raw_filename",
    "message_digest",
    "sanitize_subject",
    "slugify_subject",
]
