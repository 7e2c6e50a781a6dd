"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.models import HeaderSignals, ParsedMessage

SNIPPET_CHARS = 500

_WHITESPACE = re.compile(r"\s+")


class EmailParser:
    """Convert raw email payloads into :class:`ParsedMessage` views."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(self, payload: bytes) -> ParsedMessage:
        """Parse raw RFC822 bytes into a :class:`ParsedMessage`."""
        message = self._parser.parsebytes(payload)
        sender = _header_text(message, "From")
        recipients = list(_extract_addresses(message.get_all("To", [])))
        body_text, body_html = _extract_bodies(message)
        body = body_text or body_html or ""

        return ParsedMessage(
            subject=_header_text(message, "Subject"),
            sender=sender,
            sender_email=_take_first_address(sender),
            recipient=", ".join(recipients) or None,
            date=_try_parse_datetime(message.get("Date")),
            body_text=body,
            snippet=_WHITESPACE.sub(" ", body).strip()[:SNIPPET_CHARS],
            signals=_extract_signals(message),
        )


def _header_text(message: EmailMessage, name: str) -> str | None:
    value = message.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = list(_extract_addresses([header_value]))
    return addresses[0].lower() if addresses else None


def _extract_signals(message: EmailMessage) -> HeaderSignals:
    importance = _header_text(message, "Importance") or _header_text(
        message, "X-Priority"
    )
    return HeaderSignals(
        importance=importance,
        list_unsubscribe=message.get("List-Unsubscribe") is not None,
        auto_submitted=_header_text(message, "Auto-Submitted"),
        mailer=_header_text(message, "X-Mailer"),
    )


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(str(header_value)))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser", "SNIPPET_CHARS"]
