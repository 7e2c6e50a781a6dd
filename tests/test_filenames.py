"""Tests for raw message file naming."""

from __future__ import annotations

from datetime import UTC, datetime

from inbox_automator.ingestion.filenames import (
    build_raw_filename,
    message_digest,
    sanitize_subject,
    slugify_subject,
)

RECEIVED = datetime(2025, 5, 6, 7, 8, tzinfo=UTC)


def test_default_name_keeps_subject_readable() -> None:
    name = build_raw_filename("acct", "42", "Invoice: May/June?", RECEIVED)

    digest = message_digest("acct", "42")
    assert name == f"20250506_0708_Invoice_ May_June_{digest}.eml"


def test_intelligent_rename_uses_slug() -> None:
    name = build_raw_filename(
        "acct", "42", "Invoice: May/June?", RECEIVED, intelligent_rename=True
    )

    assert name.startswith("20250506-0708-invoice-may-june-")
    assert name.endswith(".eml")


def test_same_subject_and_minute_do_not_collide() -> None:
    first = build_raw_filename("acct", "1", "Hello", RECEIVED)
    second = build_raw_filename("acct", "2", "Hello", RECEIVED)
    other_account = build_raw_filename("other", "1", "Hello", RECEIVED)

    assert len({first, second, other_account}) == 3
    assert first == build_raw_filename("acct", "1", "Hello", RECEIVED)


def test_missing_subject_and_date_fall_back() -> None:
    assert sanitize_subject(None) == "No_Subject"
    assert slugify_subject("   ") == "no-subject"
    assert build_raw_filename("acct", "1", None, None).startswith(
        "00000000_0000_No_Subject_"
    )


def test_sanitize_subject_strips_control_characters() -> None:
    assert sanitize_subject("a\x00b\tc") == "abc"
    assert len(sanitize_subject("x" * 300)) == 100
