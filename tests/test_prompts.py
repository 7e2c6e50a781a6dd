"""Tests for rule compilation and prompt assembly."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from inbox_automator.core.models import Rule
from inbox_automator.intelligence import build_classification_prompt, compile_rules
from inbox_automator.intelligence.prompts import NO_RULES_TEXT

CREATED = datetime(2025, 1, 1, tzinfo=UTC)


def _rule(rule_id: str, priority: int, offset: int = 0, **overrides: object) -> Rule:
    values: dict[str, object] = {
        "id": rule_id,
        "user_id": "u",
        "name": f"Rule {rule_id}",
        "condition": {"category": "newsletter"},
        "actions": ("archive",),
        "priority": priority,
        "created_at": CREATED + timedelta(minutes=offset),
    }
    values.update(overrides)
    return Rule(**values)  # type: ignore[arg-type]


def test_rules_compile_in_priority_then_age_order() -> None:
    compiled = compile_rules(
        [
            _rule("b", 1),
            _rule("newer", 10, offset=5),
            _rule("older", 10, offset=1),
            _rule("off", 99, is_enabled=False),
        ]
    )

    assert compiled.index("[ID: older]") < compiled.index("[ID: newer]")
    assert compiled.index("[ID: newer]") < compiled.index("[ID: b]")
    assert compiled.startswith("Rule 1 [ID: older]")
    assert "[ID: off]" not in compiled


def test_compiled_rule_lists_fields() -> None:
    compiled = compile_rules(
        [
            _rule(
                "draft",
                1,
                description="Answer support mail",
                actions=("draft", "star"),
                instructions="Keep it short",
            )
        ]
    )

    assert "  Description: Answer support mail" in compiled
    assert '  Condition: {"category": "newsletter"}' in compiled
    assert "  Actions: draft, star" in compiled
    assert "  Draft Instructions: Keep it short" in compiled


def test_no_rules_placeholder() -> None:
    assert compile_rules([]) == NO_RULES_TEXT


def test_prompt_contains_context_signals_rules_and_body() -> None:
    prompt = build_classification_prompt(
        "Body of the email",
        {
            "subject": "Sale",
            "sender": "shop@example.com",
            "list_unsubscribe": True,
            "auto_submitted": "no",
            "mailer": "Mailchimp",
        },
        "Rule 1 [ID: r1]",
        now=datetime(2025, 6, 1, tzinfo=UTC),
    )

    assert "- Current Date: 2025-06-01T00:00:00+00:00" in prompt
    assert "- Subject: Sale" in prompt
    assert "Contains Unsubscribe header" in prompt
    assert "Auto-Submitted" not in prompt
    assert "- Sent via: Mailchimp" in prompt
    assert prompt.index("Rule 1 [ID: r1]") < prompt.index("Body of the email")
    assert '"matched_rule_id"' in prompt


def test_prompt_placeholders_for_missing_values() -> None:
    prompt = build_classification_prompt("", {}, "")

    assert "(no subject)" in prompt
    assert NO_RULES_TEXT in prompt
    assert "[Empty email body]" in prompt
    assert "Metadata Signals:" not in prompt
