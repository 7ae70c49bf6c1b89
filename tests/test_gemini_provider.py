# tests/test_gemini_provider.py
import json

import pytest
import requests

import gemini_provider
from analysis_normalizer import ProviderError, analyze
from gemini_provider import GeminiProvider, clean_prompt, normalize_model, redact_url


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body


def _ok(text):
    return FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


@pytest.fixture(autouse=True)
def _fresh_cache():
    gemini_provider.clear_cache()
    yield
    gemini_provider.clear_cache()


@pytest.fixture
def calls(monkeypatch):
    """Queue of responses for requests.post; records every call."""
    state = {"responses": [], "calls": []}

    def fake_post(url, headers=None, data=None, timeout=None):
        state["calls"].append({"url": url, "payload": json.loads(data), "timeout": timeout})
        item = state["responses"].pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(gemini_provider.requests, "post", fake_post)
    monkeypatch.setattr(gemini_provider.time, "sleep", lambda s: None)
    return state


def test_generate_returns_first_text_part(calls):
    calls["responses"].append(_ok("hello"))
    provider = GeminiProvider(api_key="secret", model="flash", timeout_s=30)

    assert provider.generate("Say hello") == "hello"

    call = calls["calls"][0]
    assert "/v1/models/gemini-2.5-flash:generateContent" in call["url"]
    assert call["payload"]["contents"][0]["parts"][0]["text"] == "Say hello"
    assert call["payload"]["generationConfig"]["maxOutputTokens"] == 4096
    assert call["timeout"] == 30


def test_caller_timeout_overrides_default(calls):
    calls["responses"].append(_ok("ok"))
    GeminiProvider(api_key="secret", timeout_s=30).generate("x", timeout=2.5)
    assert calls["calls"][0]["timeout"] == 2.5


def test_missing_key_raises_provider_error(calls):
    with pytest.raises(ProviderError):
        GeminiProvider(api_key=None).generate("x")
    assert calls["calls"] == []


def test_error_status_raises_with_redacted_key(calls):
    calls["responses"].append(FakeResponse(400, {"error": {"message": "bad request"}}))
    with pytest.raises(ProviderError) as exc:
        GeminiProvider(api_key="topsecret").generate("x")
    assert "topsecret" not in str(exc.value)
    assert "Gemini 400" in str(exc.value)


def test_single_attempt_by_default(calls):
    calls["responses"].extend([FakeResponse(503, {}), _ok("late")])
    with pytest.raises(ProviderError):
        GeminiProvider(api_key="k").generate("x")
    assert len(calls["calls"]) == 1


def test_retries_on_overload_when_configured(calls):
    calls["responses"].extend([FakeResponse(429, {}), FakeResponse(503, {}), _ok("third time")])
    assert GeminiProvider(api_key="k", max_retries=3).generate("x") == "third time"
    assert len(calls["calls"]) == 3


def test_transport_error_becomes_provider_error(calls):
    calls["responses"].append(requests.Timeout("read timed out"))
    with pytest.raises(ProviderError):
        GeminiProvider(api_key="k").generate("x")


def test_empty_candidates_return_empty_string(calls):
    calls["responses"].append(FakeResponse(200, {"candidates": []}))
    assert GeminiProvider(api_key="k").generate("x") == ""


def test_successful_answers_are_cached(calls):
    calls["responses"].append(_ok("cached answer"))
    provider = GeminiProvider(api_key="k")
    assert provider.generate("same prompt") == "cached answer"
    assert provider.generate("same prompt") == "cached answer"
    assert len(calls["calls"]) == 1


def test_timeout_during_analysis_falls_back(calls):
    calls["responses"].append(requests.Timeout("read timed out"))
    result = analyze([{"revenue": 100}], GeminiProvider(api_key="k"), timeout=1)
    assert result["summary"] == "This is an automated analysis of the provided data."
    assert calls["calls"][0]["timeout"] == 1


def test_helpers():
    assert normalize_model("") == "gemini-2.0-flash"
    assert normalize_model("PRO") == "gemini-2.5-pro"
    assert normalize_model("gemini-1.5-flash-8b") == "gemini-1.5-flash-8b"
    assert redact_url("https://x/y?key=abc&alt=json") == "https://x/y?key=REDACTED&alt=json"
    assert clean_prompt("abc  ", max_len=2) == "ab"
    assert clean_prompt(None) == ""


def test_cache_stays_bounded_under_concurrent_writes():
    from concurrent.futures import ThreadPoolExecutor

    def fill(worker):
        for i in range(200):
            gemini_provider._ai_cache_put(f"{worker}-{i}", "v")
            gemini_provider._ai_cache_get(f"{worker}-{i - 1}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(fill, range(8)))

    assert len(gemini_provider._AI_CACHE) <= gemini_provider._AI_CACHE_MAX
