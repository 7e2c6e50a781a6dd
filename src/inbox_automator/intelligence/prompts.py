"""Prompt templates for rule-aware email classification."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import datetime
from textwrap import dedent
from typing import Any

from ..core.datetime_utils import EPOCH, ensure_utc, utcnow
from ..core.models import Rule

NO_RULES_TEXT = "(no automation rules configured)"

_INSTRUCTIONS = dedent(
    """
    You are an AI email assistant. Analyse the email below and respond strictly
    with a single JSON object using this schema:
    {
      "summary": string,
      "category": "spam" | "newsletter" | "promotional" | "transactional" |
                  "social" | "support" | "client" | "internal" | "personal" |
                  "other",
      "sentiment": "Positive" | "Neutral" | "Negative",
      "is_useless": boolean,
      "suggested_actions": ["none" | "delete" | "archive" | "reply" | "flag", ...],
      "priority": "High" | "Medium" | "Low",
      "matched_rule_id": string | null,
      "confidence": number between 0 and 1,
      "actions_to_execute": ["delete" | "archive" | "draft" | "read" | "star", ...],
      "draft_response": string | null,
      "key_points": [string, ...],
      "action_items": [string, ...]
    }

    Pick at most one rule from the automation rules whose condition fits the
    email and return its ID in "matched_rule_id", with "confidence" describing
    how sure you are. If no rule fits, return null and a confidence of 0.
    When the matched rule drafts a reply, write it in "draft_response" and
    follow the rule's draft instructions.
    Do not include greetings, commentary or special tokens outside the JSON.
    """
).strip()


def compile_rules(rules: Sequence[Rule]) -> str:
    """Render enabled rules as numbered text blocks, highest priority first."""
    enabled = [rule for rule in rules if rule.is_enabled]
    if not enabled:
        return NO_RULES_TEXT
    ordered = sorted(
        enabled,
        key=lambda rule: (-rule.priority, ensure_utc(rule.created_at) or EPOCH),
    )
    blocks: list[str] = []
    for index, rule in enumerate(ordered, start=1):
        lines = [
            f"Rule {index} [ID: {rule.id}]",
            f"  Name: {rule.name}",
        ]
        if rule.description:
            lines.append(f"  Description: {rule.description}")
        lines.append(f"  Condition: {json.dumps(rule.condition, sort_keys=True)}")
        lines.append(f"  Actions: {', '.join(rule.actions) or 'none'}")
        if rule.instructions:
            lines.append(f"  Draft Instructions: {rule.instructions}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _signal_lines(context: Mapping[str, Any]) -> list[str]:
    signals: list[str] = []
    if context.get("list_unsubscribe"):
        signals.append(
            "- Contains Unsubscribe header (strong signal for newsletter/promotional)"
        )
    auto_submitted = context.get("auto_submitted")
    if auto_submitted and str(auto_submitted).lower() != "no":
        signals.append(f"- Auto-Submitted: {auto_submitted}")
    if context.get("importance"):
        signals.append(f"- Sender Priority/Importance: {context['importance']}")
    if context.get("mailer"):
        signals.append(f"- Sent via: {context['mailer']}")
    return signals


def build_classification_prompt(
    clean_text: str,
    context: Mapping[str, Any],
    compiled_rules: str,
    *,
    now: datetime | None = None,
) -> str:
    """Compose the JSON-only classification prompt."""
    current = (now or utcnow()).isoformat()
    sections = [
        _INSTRUCTIONS,
        "Context:",
        f"- Current Date: {current}",
        f"- Subject: {context.get('subject') or '(no subject)'}",
        f"- From: {context.get('sender') or '(unknown sender)'}",
        f"- Date: {context.get('date') or '(unknown)'}",
    ]
    signals = _signal_lines(context)
    if signals:
        sections.append("Metadata Signals:")
        sections.extend(signals)
    sections.extend(
        [
            "",
            "Automation rules:",
            compiled_rules or NO_RULES_TEXT,
            "",
            "Email body:",
            clean_text or "[Empty email body]",
        ]
    )
    return "\n".join(sections)


__all__ = ["NO_RULES_TEXT", "build_classification_prompt", "compile_rules"]
