"""LLM client abstractions used by the classifier."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urljoin

import httpx

from ..core.config import LlmSettings

LOGGER = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def generate(self, prompt: str, *, json_mode: bool = False) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Thin synchronous client for the Ollama HTTP API."""

    settings: LlmSettings
    client: httpx.Client | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def generate(self, prompt: str, *, json_mode: bool = False) -> str:
        """Send a completion request to the Ollama server."""
        endpoint = _resolve_endpoint(self.settings.base_url)
        options: dict[str, Any] = {"temperature": self.settings.temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        payload: dict[str, Any] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }
        if json_mode:
            payload["format"] = "json"

        data: dict[str, Any] | None = None
        last_error: Exception | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = self._post(endpoint, payload)
                response.raise_for_status()
                data = response.json()
                break
            except httpx.HTTPError as exc:
                LOGGER.warning(
                    "LLM request attempt %d/%d failed: %s", attempt, MAX_ATTEMPTS, exc
                )
                last_error = exc
            except json.JSONDecodeError as exc:
                raise LLMError("LLM returned invalid JSON") from exc

            if attempt < MAX_ATTEMPTS:
                self.sleep(min(2**attempt, 8))

        if data is None:
            raise LLMError("LLM request failed after retries") from last_error

        result = data.get("response")
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"

    def _post(self, endpoint: str, payload: dict[str, Any]) -> httpx.Response:
        if self.client is not None:
            return self.client.post(
                endpoint, json=payload, timeout=self.settings.timeout_seconds
            )
        return httpx.post(endpoint, json=payload, timeout=self.settings.timeout_seconds)


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = ["LLMClient", "LLMError", "OllamaClient"]
