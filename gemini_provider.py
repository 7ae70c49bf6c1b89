# gemini_provider.py
from __future__ import annotations

import hashlib
import json
import logging
import random
import re
import threading
import time

import requests

from analysis_normalizer import ProviderError

logger = logging.getLogger(__name__)

GEMINI_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-2.0-flash"

_MODEL_ALIASES = {
    "": DEFAULT_MODEL,
    "flash": "gemini-2.5-flash",
    "gemini-flash-latest": "gemini-2.5-flash",
    "pro": "gemini-2.5-pro",
    "gemini-pro-latest": "gemini-2.5-pro",
}


def normalize_model(name: str | None) -> str:
    """Map short aliases people might set to a concrete model id."""
    raw = (name or "").strip()
    return _MODEL_ALIASES.get(raw.lower(), raw)


# --- ultra-light LRU-ish cache (per-process, expires ~1 hour) ----------
_AI_CACHE: dict[str, tuple[float, str]] = {}
_AI_CACHE_TTL = 3600.0  # seconds
_AI_CACHE_MAX = 50
# Flask serves requests on several threads
_AI_CACHE_LOCK = threading.Lock()


def _ai_cache_get(key: str) -> str | None:
    with _AI_CACHE_LOCK:
        t_v = _AI_CACHE.get(key)
        if not t_v:
            return None
        ts, val = t_v
        if (time.time() - ts) > _AI_CACHE_TTL:
            _AI_CACHE.pop(key, None)
            return None
        return val


def _ai_cache_put(key: str, val: str) -> None:
    with _AI_CACHE_LOCK:
        # drop oldest if over capacity
        if len(_AI_CACHE) >= _AI_CACHE_MAX and key not in _AI_CACHE:
            _AI_CACHE.pop(next(iter(_AI_CACHE)))
        _AI_CACHE[key] = (time.time(), val)


def clear_cache() -> None:
    with _AI_CACHE_LOCK:
        _AI_CACHE.clear()


def redact_url(s: str) -> str:
    """Scrub any '?key=' or '&key=' query value from a URL string."""
    return re.sub(r"([?&]key=)[^&]+", r"\1REDACTED", s or "")


def clean_prompt(text: str | None, max_len: int = 120_000) -> str:
    """UTF-8 clean + hard truncate to keep requests within safe token limits."""
    if not text:
        return ""
    return text.encode("utf-8", "ignore").decode("utf-8")[:max_len].strip()


def _first_text(body: dict) -> str:
    cands = body.get("candidates") or []
    if not cands:
        return ""
    for p in cands[0].get("content", {}).get("parts", []):
        if "text" in p:
            return p["text"]
    return ""


class GeminiProvider:
    """
    Minimal v1 `generateContent` client; satisfies AnalysisProvider.

    One attempt per call unless `max_retries` is raised, in which case
    429/503 answers are retried with exponential backoff and jitter.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        api_version: str = "v1",
        timeout_s: float = 60,
        max_retries: int = 1,
        temperature: float = 0.2,
        top_p: float = 0.85,
        top_k: int = 32,
        max_tokens: int = 4096,
        use_cache: bool = True,
    ):
        self.api_key = api_key
        self.model = normalize_model(model)
        self.api_version = (api_version or "v1").strip()
        self.timeout_s = timeout_s
        self.max_retries = max(1, int(max_retries))
        self.temperature = temperature
        self.top_p = top_p
        self.top_k = top_k
        self.max_tokens = max_tokens
        self.use_cache = use_cache

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _payload(self, prompt_text: str) -> dict:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt_text}]}],
            "generationConfig": {
                "temperature": float(self.temperature),
                "topP": float(self.top_p),
                "topK": int(self.top_k),
                "maxOutputTokens": int(self.max_tokens),
            },
        }

    def _once(self, payload: dict, timeout: float):
        url = f"{GEMINI_BASE}/{self.api_version}/models/{self.model}:generateContent?key={self.api_key}"
        try:
            r = requests.post(
                url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(payload),
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Gemini request failed: {redact_url(str(e))}") from e
        try:
            body = r.json()
        except ValueError:
            body = {"_non_json_body": r.text}
        return r.status_code, body, url

    def generate(self, prompt_text: str, timeout: float | None = None) -> str:
        """Send one prompt; returns the first text part or ""."""
        if not self.api_key:
            raise ProviderError("GEMINI_API_KEY is not set")

        safe_prompt = clean_prompt(prompt_text)
        cache_key = hashlib.sha1((self.model + "|" + safe_prompt).encode("utf-8")).hexdigest()
        if self.use_cache:
            cached = _ai_cache_get(cache_key)
            if cached:
                logger.info("Gemini cache hit (model=%s)", self.model)
                return cached

        payload = self._payload(safe_prompt)
        wait = timeout if timeout is not None else self.timeout_s

        backoff = 1.5
        status, body, url = None, None, None
        for i in range(self.max_retries):
            status, body, url = self._once(payload, wait)
            if status == 200 or status not in (429, 503):
                break
            if i + 1 < self.max_retries:
                # sleep with jitter; cap at ~20s per try
                time.sleep(min(20.0, backoff * (1.0 + random.random())))
                backoff *= 2.0

        if status != 200:
            raise ProviderError(f"Gemini {status} at {redact_url(url)}: {json.dumps(body)[:2000]}")

        text = _first_text(body)
        logger.info("Gemini returned length=%s (model=%s)", len(text), self.model)
        if text and self.use_cache:
            _ai_cache_put(cache_key, text)
        return text
