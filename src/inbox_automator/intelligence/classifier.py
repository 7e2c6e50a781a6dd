"""LLM-backed classification service returning typed results."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.interfaces import ClassificationService
from ..core.models import Classification
from .llm import LLMClient, LLMError
from .prompts import build_classification_prompt

LOGGER = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

Category = Literal[
    "spam",
    "newsletter",
    "promotional",
    "transactional",
    "social",
    "support",
    "client",
    "internal",
    "personal",
    "other",
]
SuggestedAction = Literal["none", "delete", "archive", "reply", "flag"]
RuleAction = Literal["delete", "archive", "draft", "read", "star"]


class ClassificationPayload(BaseModel):
    """Schema the model output must satisfy."""

    summary: str = Field(default="", description="Brief summary of the email")
    category: Category = Field(description="Category of the email")
    sentiment: Literal["Positive", "Neutral", "Negative"] = Field(
        default="Neutral", description="Emotional tone of the email"
    )
    is_useless: bool = Field(
        default=False, description="Whether the email carries no value"
    )
    suggested_actions: list[SuggestedAction] = Field(
        default_factory=list, description="Recommended next actions"
    )
    priority: Literal["High", "Medium", "Low"] = Field(
        default="Medium", description="Urgency of the email"
    )
    matched_rule_id: str | None = Field(
        default=None, description="Identifier of the matching automation rule"
    )
    confidence: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Confidence in the matched rule"
    )
    actions_to_execute: list[RuleAction] = Field(default_factory=list)
    draft_response: str | None = Field(
        default=None, description="Draft reply when the matched rule drafts"
    )
    key_points: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)

    @field_validator("matched_rule_id", mode="before")
    @classmethod
    def _blank_rule_id(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in {"", "null", "none"}:
            return None
        return value

    def to_classification(self) -> Classification:
        """Convert the validated payload into the domain model."""
        return Classification(
            category=self.category,
            summary=self.summary,
            sentiment=self.sentiment,
            priority=self.priority,
            is_useless=self.is_useless,
            suggested_actions=tuple(self.suggested_actions),
            matched_rule_id=self.matched_rule_id,
            confidence=self.confidence,
            actions_to_execute=tuple(self.actions_to_execute),
            draft_content=self.draft_response or None,
            key_points=tuple(self.key_points),
            action_items=tuple(self.action_items),
            raw=self.model_dump(),
        )


class LlmClassificationService(ClassificationService):
    """Classify emails with a single JSON-mode completion."""

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    @property
    def provider_id(self) -> str:
        """Identifier of the backing model."""
        return self._client.provider_id

    def classify(
        self,
        clean_text: str,
        context: Mapping[str, Any],
        compiled_rules: str,
    ) -> Classification | None:
        """Return a classification or ``None`` when the model output is unusable."""
        prompt = build_classification_prompt(clean_text, context, compiled_rules)
        try:
            response = self._client.generate(prompt, json_mode=True)
        except LLMError as exc:
            LOGGER.warning("Classification request failed: %s", exc)
            return None

        payload = _extract_json(response)
        if payload is None:
            LOGGER.warning("Classifier returned non-JSON output")
            return None
        try:
            parsed = ClassificationPayload.model_validate(payload)
        except ValidationError as exc:
            LOGGER.warning("Classifier output failed validation: %s", exc)
            return None

        classification = parsed.to_classification()
        LOGGER.debug(
            "Classified '%s' as %s (rule %s, confidence %.2f)",
            context.get("subject"),
            classification.category,
            classification.matched_rule_id,
            classification.confidence,
        )
        return classification


def _extract_json(response: str) -> dict[str, Any] | None:
    text = response.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if match is None:
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


__all__ = ["ClassificationPayload", "LlmClassificationService"]
