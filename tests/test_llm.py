"""Tests for the Ollama HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from inbox_automator.core.config import LlmSettings
from inbox_automator.intelligence import LLMError, OllamaClient


def _client(handler, sleeps: list[float]) -> OllamaClient:
    transport = httpx.MockTransport(handler)
    return OllamaClient(
        LlmSettings(base_url="http://ollama.test", model="demo"),
        client=httpx.Client(transport=transport),
        sleep=sleeps.append,
    )


def test_generate_posts_json_mode_request() -> None:
    captured: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == httpx.URL("http://ollama.test/api/generate")
        captured.append(json.loads(request.content))
        return httpx.Response(200, json={"response": '{"category": "other"}'})

    sleeps: list[float] = []
    result = _client(handler, sleeps).generate("Classify this", json_mode=True)

    assert result == '{"category": "other"}'
    assert captured[0]["model"] == "demo"
    assert captured[0]["format"] == "json"
    assert captured[0]["stream"] is False
    assert captured[0]["options"]["num_predict"] == 1024
    assert sleeps == []


def test_generate_retries_with_backoff_then_succeeds() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"response": "ok"})

    sleeps: list[float] = []
    assert _client(handler, sleeps).generate("hi") == "ok"
    assert sleeps == [2, 4]


def test_generate_raises_after_exhausting_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    sleeps: list[float] = []
    with pytest.raises(LLMError):
        _client(handler, sleeps).generate("hi")
    assert len(sleeps) == 2


def test_generate_rejects_missing_response_field() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"done": True})

    with pytest.raises(LLMError):
        _client(handler, []).generate("hi")


def test_provider_id_names_model() -> None:
    client = OllamaClient(LlmSettings(model="llama3"))
    assert client.provider_id == "ollama:llama3"
