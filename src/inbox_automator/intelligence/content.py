"""Body cleaning applied before content is sent to the classifier."""

from __future__ import annotations

import re

import html2text

ORIGINAL_FALLBACK_CHARS = 3000
MIN_CLEAN_CHARS = 10
FOOTER_LINE_CHARS = 60

_HTML_HINT = re.compile(r"<\s*(html|body|div|p|br|table|span|a)\b", re.IGNORECASE)
_REPLY_HEADER = re.compile(r"^On .* wrote:$", re.IGNORECASE)
_FOOTER_PATTERNS = (
    re.compile(r"unsubscribe", re.IGNORECASE),
    re.compile(r"privacy policy", re.IGNORECASE),
    re.compile(r"terms of service", re.IGNORECASE),
    re.compile(r"view in browser", re.IGNORECASE),
    re.compile(r"copyright \d{4}", re.IGNORECASE),
)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_SPECIAL_TOKENS = (
    (re.compile(re.escape("<|")), "< |"),
    (re.compile(re.escape("|>")), "| >"),
    (re.compile(r"\[INST\]", re.IGNORECASE), "[ INST ]"),
    (re.compile(r"\[/INST\]", re.IGNORECASE), "[ /INST ]"),
    (re.compile(r"<s>", re.IGNORECASE), "&lt;s&gt;"),
    (re.compile(r"</s>", re.IGNORECASE), "&lt;/s&gt;"),
)


def html_to_text(html: str) -> str:
    """Convert HTML to markdown-flavoured plain text."""
    converter = html2text.HTML2Text()
    converter.ignore_images = False
    converter.ignore_links = False
    converter.body_width = 0
    return converter.handle(html)


def clean_email_body(text: str | None) -> str:
    """Strip quoted replies, footers and model control tokens from ``text``."""
    if not text:
        return ""
    original = text
    if _HTML_HINT.search(text):
        text = html_to_text(text)

    kept: list[str] = []
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith(">"):
            continue
        if _REPLY_HEADER.match(stripped):
            break
        if len(stripped) < FOOTER_LINE_CHARS and any(
            pattern.search(stripped) for pattern in _FOOTER_PATTERNS
        ):
            continue
        kept.append(line)

    cleaned = "\n".join(kept)
    if len(cleaned.strip()) < MIN_CLEAN_CHARS:
        cleaned = original[:ORIGINAL_FALLBACK_CHARS]

    cleaned = _EXCESS_NEWLINES.sub("\n\n", cleaned)
    for pattern, replacement in _SPECIAL_TOKENS:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned.strip()


def prepare_for_classification(text: str | None, max_chars: int) -> str:
    """Clean ``text`` and truncate it to ``max_chars`` characters."""
    return clean_email_body(text)[:max_chars]


__all__ = ["clean_email_body", "html_to_text", "prepare_for_classification"]
