"""LLM-powered classification services."""

from .classifier import ClassificationPayload, LlmClassificationService
from .content import clean_email_body, prepare_for_classification
from .llm import LLMClient, LLMError, OllamaClient
from .prompts import build_classification_prompt, compile_rules

__all__ = [
    "ClassificationPayload",
    "LLMClient",
    "LLMError",
    "LlmClassificationService",
    "OllamaClient",
    "build_classification_prompt",
    "clean_email_body",
    "compile_rules",
    "prepare_for_classification",
]
