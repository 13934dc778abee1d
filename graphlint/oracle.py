"""Oracle adapters: the single-method boundary to text generation services.

Every adapter implements ``complete(request) -> str``.  Transport and
protocol failures raise :class:`~graphlint.errors.OracleError`; there is no
retry or fallback here, the scheduler treats any failure as fatal.
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigError, OracleError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120


@dataclass
class OracleRequest:
    """Prompt plus model parameters for one oracle call."""
    prompt: str
    model: str
    max_tokens: int = 4096
    temperature: float = 0.0
    response_schema: Optional[Dict[str, Any]] = None


class Oracle:
    """Base class for oracle backends."""

    def complete(self, request: OracleRequest) -> str:
        """Return the raw text produced for *request*."""
        raise NotImplementedError


def _post_json(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: int) -> Dict[str, Any]:
    logger.debug("Oracle request to %s", url)
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise OracleError(
            f"oracle API error: status {exc.code}: {detail}",
            details={"url": url, "status": exc.code},
        ) from exc
    except (urllib.error.URLError, TimeoutError) as exc:
        raise OracleError(f"oracle request failed: {exc}", details={"url": url}) from exc

    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise OracleError(
            f"oracle returned a non-JSON body: {exc}", details={"url": url, "body": body[:500]},
        ) from exc


class OpenAICompatibleOracle(Oracle):
    """OpenAI chat completions API (also OpenRouter, Groq and local servers)."""

    def __init__(self, api_key: str = "", base_url: str = "https://api.openai.com/v1", timeout: int = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.endpoint = base_url.rstrip("/") + "/chat/completions"
        self.timeout = timeout

    def complete(self, request: OracleRequest) -> str:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.response_schema:
            payload["response_format"] = {"type": "json_schema", "json_schema": request.response_schema}

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        parsed = _post_json(self.endpoint, payload, headers, self.timeout)
        if parsed.get("error"):
            raise OracleError(f"oracle API error: {parsed['error']}")
        try:
            return parsed["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleError("no choices in oracle response", details={"response": parsed}) from exc


class OllamaOracle(Oracle):
    """Ollama local generate API."""

    def __init__(self, base_url: str = "http://127.0.0.1:11434", timeout: int = DEFAULT_TIMEOUT):
        self.endpoint = base_url.rstrip("/")
        if not self.endpoint.endswith("/api/generate"):
            self.endpoint += "/api/generate"
        self.timeout = timeout

    def complete(self, request: OracleRequest) -> str:
        payload: Dict[str, Any] = {
            "model": request.model,
            "prompt": request.prompt,
            "stream": False,
            "options": {"temperature": request.temperature, "num_predict": request.max_tokens},
        }
        if request.response_schema:
            payload["format"] = request.response_schema["schema"]

        parsed = _post_json(self.endpoint, payload, {}, self.timeout)
        if "response" not in parsed:
            raise OracleError("ollama response has no 'response' field", details={"response": parsed})
        return parsed["response"]


class AnthropicOracle(Oracle):
    """Anthropic messages API."""

    def __init__(self, api_key: str, base_url: str = "https://api.anthropic.com/v1", timeout: int = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.endpoint = base_url.rstrip("/") + "/messages"
        self.timeout = timeout

    def complete(self, request: OracleRequest) -> str:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

        parsed = _post_json(
            self.endpoint,
            payload,
            {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            self.timeout,
        )
        try:
            return "".join(block.get("text", "") for block in parsed["content"])
        except (KeyError, TypeError) as exc:
            raise OracleError("no content in oracle response", details={"response": parsed}) from exc


class MockOracle(Oracle):
    """Returns canned responses in order and records every request.

    Once the canned responses run out it answers ``{"issues": []}``.
    """

    DEFAULT_RESPONSE = '{"issues": []}'

    def __init__(self, responses: Sequence[str] = ()):
        self._lock = threading.Lock()
        self._responses = list(responses)
        self._index = 0
        self.requests: List[OracleRequest] = []

    def complete(self, request: OracleRequest) -> str:
        with self._lock:
            self.requests.append(request)
            if self._index < len(self._responses):
                response = self._responses[self._index]
                self._index += 1
                return response
            return self.DEFAULT_RESPONSE

    def prompts(self) -> List[str]:
        with self._lock:
            return [r.prompt for r in self.requests]

    def reset(self) -> None:
        with self._lock:
            self.requests = []
            self._index = 0


def create_oracle(llm_config) -> Oracle:
    """Create the adapter selected by ``llm_config.provider``."""
    provider = (llm_config.provider or "openai").lower()
    if provider == "ollama":
        return OllamaOracle(llm_config.base_url or "http://127.0.0.1:11434")
    if provider == "anthropic":
        return AnthropicOracle(llm_config.api_key, llm_config.base_url or "https://api.anthropic.com/v1")
    if provider in ("openai", "openrouter", "groq"):
        defaults = {
            "openai": "https://api.openai.com/v1",
            "openrouter": "https://openrouter.ai/api/v1",
            "groq": "https://api.groq.com/openai/v1",
        }
        return OpenAICompatibleOracle(llm_config.api_key, llm_config.base_url or defaults[provider])
    raise ConfigError(f"unknown oracle provider '{llm_config.provider}'")
