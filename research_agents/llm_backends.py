"""
Generation Backends

Thin httpx adapters for text generation providers. Each backend exposes one
call, generate(prompt, options) -> LLMResponse, and classifies failures:

- missing key, HTTP 401/403 -> AuthOrConfigError (never retried)
- HTTP 429/5xx, other HTTP errors, network errors -> TransientBackendError

Providers:
- openai: Chat Completions
- groq: OpenAI-compatible Chat Completions
- anthropic: Messages API
- gemini: generateContent
- cohere: Chat API
- ollama: local /api/generate
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from core.exceptions import AuthOrConfigError, ErrorCode, TransientBackendError

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    """Per-request generation parameters."""
    model: Optional[str] = None
    max_tokens: int = 2000
    temperature: float = 0.7


@dataclass
class LLMResponse:
    """Response from a generation backend."""
    text: str
    provider: str
    model: str
    usage: Dict[str, int] = field(default_factory=lambda: {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
    })
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "usage": dict(self.usage),
            "latency_ms": round(self.latency_ms, 1),
        }


def _usage(prompt_tokens: int = 0, completion_tokens: int = 0) -> Dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens or 0,
        "completion_tokens": completion_tokens or 0,
        "total_tokens": (prompt_tokens or 0) + (completion_tokens or 0),
    }


class GenerationBackend:
    """Base class for HTTP generation backends."""

    name = "base"
    default_model = ""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def available(self) -> bool:
        """Whether the backend is configured well enough to be tried."""
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this backend created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _require_key(self):
        if not self.api_key:
            raise AuthOrConfigError(
                self.name, "API key not configured", code=ErrorCode.MISSING_API_KEY
            )

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise TransientBackendError(self.name, f"network error: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthOrConfigError(self.name, f"unauthorized (HTTP {status})", status_code=status)
        if status >= 400:
            raise TransientBackendError(
                self.name, f"HTTP {status}: {response.text[:200]}", status_code=status
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransientBackendError(self.name, "malformed JSON response") from e

    async def generate(self, prompt: str, options: Optional[GenerationOptions] = None) -> LLMResponse:
        """Generate a completion for prompt."""
        options = options or GenerationOptions()
        start = time.perf_counter()
        response = await self._generate(prompt, options)
        response.latency_ms = (time.perf_counter() - start) * 1000
        return response

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        raise NotImplementedError


class OpenAIBackend(GenerationBackend):
    name = "openai"
    default_model = "gpt-4o-mini"
    base_url = "https://api.openai.com/v1"

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        self._require_key()
        model = options.model or self.model
        data = await self._post_json(
            f"{self.base_url}/chat/completions",
            {
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        choices = data.get("choices") or [{}]
        usage = data.get("usage") or {}
        return LLMResponse(
            text=(choices[0].get("message") or {}).get("content") or "",
            provider=self.name,
            model=data.get("model", model),
            usage=_usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)),
        )


class GroqBackend(OpenAIBackend):
    name = "groq"
    default_model = "llama-3.1-8b-instant"
    base_url = "https://api.groq.com/openai/v1"


class AnthropicBackend(GenerationBackend):
    name = "anthropic"
    default_model = "claude-3-5-haiku-latest"
    base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        self._require_key()
        model = options.model or self.model
        data = await self._post_json(
            f"{self.base_url}/messages",
            {
                "model": model,
                "max_tokens": options.max_tokens,
                "temperature": options.temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
            headers={"x-api-key": self.api_key, "anthropic-version": self.api_version},
        )
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            provider=self.name,
            model=data.get("model", model),
            usage=_usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
        )


class GeminiBackend(GenerationBackend):
    name = "gemini"
    default_model = "gemini-1.5-flash"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        self._require_key()
        model = options.model or self.model
        data = await self._post_json(
            f"{self.base_url}/models/{model}:generateContent",
            {
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": options.temperature,
                    "maxOutputTokens": options.max_tokens,
                },
            },
            headers={"x-goog-api-key": self.api_key},
        )
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            text="".join(part.get("text", "") for part in parts),
            provider=self.name,
            model=model,
            usage=_usage(usage.get("promptTokenCount", 0), usage.get("candidatesTokenCount", 0)),
        )


class CohereBackend(GenerationBackend):
    name = "cohere"
    default_model = "command-r"
    base_url = "https://api.cohere.com/v1"

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        self._require_key()
        model = options.model or self.model
        data = await self._post_json(
            f"{self.base_url}/chat",
            {
                "model": model,
                "message": prompt,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        tokens = (data.get("meta") or {}).get("tokens") or {}
        return LLMResponse(
            text=data.get("text", ""),
            provider=self.name,
            model=model,
            usage=_usage(tokens.get("input_tokens", 0), tokens.get("output_tokens", 0)),
        )


class OllamaBackend(GenerationBackend):
    name = "ollama"
    default_model = "llama3.1:8b"

    def __init__(self, base_url: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url

    @property
    def available(self) -> bool:
        return bool(self.base_url)

    async def _generate(self, prompt: str, options: GenerationOptions) -> LLMResponse:
        if not self.base_url:
            raise AuthOrConfigError(
                self.name, "client not initialized (no host configured)",
                code=ErrorCode.CLIENT_NOT_INITIALIZED,
            )
        model = options.model or self.model
        data = await self._post_json(
            f"{self.base_url}/api/generate",
            {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": options.temperature,
                    "num_predict": options.max_tokens,
                },
            },
        )
        return LLMResponse(
            text=data.get("response", ""),
            provider=self.name,
            model=data.get("model", model),
            usage=_usage(data.get("prompt_eval_count", 0), data.get("eval_count", 0)),
        )


def build_backends(settings, client: Optional[httpx.AsyncClient] = None) -> Dict[str, GenerationBackend]:
    """Create every known backend from settings; unconfigured ones report unavailable."""
    timeout = settings.llm_request_timeout
    return {
        "openai": OpenAIBackend(settings.openai_api_key, settings.openai_model, client, timeout),
        "anthropic": AnthropicBackend(settings.anthropic_api_key, settings.anthropic_model, client, timeout),
        "cohere": CohereBackend(settings.cohere_api_key, settings.cohere_model, client, timeout),
        "gemini": GeminiBackend(settings.gemini_api_key, settings.gemini_model, client, timeout),
        "groq": GroqBackend(settings.groq_api_key, settings.groq_model, client, timeout),
        "ollama": OllamaBackend(
            settings.ollama_base_url, model=settings.ollama_model, client=client, timeout=timeout
        ),
    }
