"""Pure evaluation of rule conditions against a message and its classification."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from email.utils import parseaddr
from typing import Any

from ..core.datetime_utils import ensure_utc, utcnow
from ..core.models import Classification, Rule, StoredMessage

_CLASSIFICATION_FIELDS = ("category", "priority", "sentiment", "is_useless")
_SUBSTRING_FIELDS = {
    "sender_contains": "sender",
    "subject_contains": "subject",
    "body_contains": "body_snippet",
}


def is_retention_rule(rule: Rule) -> bool:
    """Return ``True`` when the rule's condition carries an age threshold."""
    return rule.is_retention_rule


def matches(
    message: StoredMessage,
    classification: Classification | None,
    condition: Mapping[str, Any],
    *,
    now: datetime | None = None,
    body: str | None = None,
) -> bool:
    """Return ``True`` when every key present in ``condition`` holds.

    ``body`` replaces the stored snippet for ``body_contains`` when the full
    text is at hand. Missing message fields or a missing classification never
    raise; the affected key simply does not match.
    """
    for key, expected in condition.items():
        if expected is None:
            continue
        if not _key_matches(key, expected, message, classification, now, body):
            return False
    return True


def _key_matches(
    key: str,
    expected: Any,
    message: StoredMessage,
    classification: Classification | None,
    now: datetime | None,
    body: str | None,
) -> bool:
    # pylint: disable=too-many-return-statements,too-many-arguments
    if key == "sender_email":
        address = _sender_address(message)
        return address is not None and address == str(expected).strip().lower()
    if key == "sender_domain":
        address = _sender_address(message)
        domain = str(expected).strip().lower().lstrip("@")
        return address is not None and address.endswith(f"@{domain}")
    if key in _SUBSTRING_FIELDS:
        value = getattr(message, _SUBSTRING_FIELDS[key])
        if key == "body_contains" and body is not None:
            value = body
        return value is not None and str(expected).lower() in value.lower()
    if key == "older_than_days":
        return _older_than(message, expected, now)

    if classification is None:
        return False
    if key in _CLASSIFICATION_FIELDS:
        return getattr(classification, key) == expected
    if key == "suggested_actions":
        required = [expected] if isinstance(expected, str) else list(expected)
        return all(action in classification.suggested_actions for action in required)
    if key not in classification.raw:
        return False
    return classification.raw[key] == expected


def _sender_address(message: StoredMessage) -> str | None:
    if not message.sender:
        return None
    _, address = parseaddr(message.sender)
    address = (address or message.sender).strip().lower()
    return address or None


def _older_than(message: StoredMessage, days: Any, now: datetime | None) -> bool:
    sent = ensure_utc(message.date)
    if sent is None:
        return False
    try:
        threshold = timedelta(days=float(days))
    except (TypeError, ValueError):
        return False
    reference = ensure_utc(now) or utcnow()
    return reference - sent >= threshold


__all__ = ["is_retention_rule", "matches"]
