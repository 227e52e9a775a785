"""
Embedding Generation with Deterministic Fallback

A pluggable provider chain turns text into vectors. Every provider call is
time-boxed; a provider error, timeout or malformed response moves on to the
next provider, and the chain always ends in a hashing embedder that cannot
fail. Indexing therefore never stalls on an embedding backend.

Providers:
- GeminiEmbeddingProvider: text-embedding-004 via generativelanguage REST
- OpenAIEmbeddingProvider: /v1/embeddings
- CohereEmbeddingProvider: /v1/embed
- OllamaEmbeddingProvider: /api/embeddings on a local Ollama server
- HashingEmbedder: bag-of-words feature hashing (fallback)
"""

import hashlib
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import httpx
import numpy as np

from core.exceptions import AuthOrConfigError, TransientBackendError
from .retry_strategy import race_timeout

logger = logging.getLogger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero-norm or mismatched vectors."""
    if vec1 is None or vec2 is None or len(vec1) == 0 or len(vec1) != len(vec2):
        return 0.0

    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


class HashingEmbedder:
    """
    Deterministic bag-of-words embedding.

    Each whitespace-separated lowercase token adds 1/sqrt(n) to the bucket
    chosen by a stable hash; the vector is then L2-normalized. Empty text
    maps to the zero vector.
    """

    name = "hash"

    def __init__(self, dimensions: int = 1536):
        self.dimensions = dimensions

    @staticmethod
    def _bucket(token: str, dimensions: int) -> int:
        digest = hashlib.md5(token.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % dimensions

    def embed_sync(self, text: str, dimensions: Optional[int] = None) -> List[float]:
        dims = dimensions or self.dimensions
        vector = np.zeros(dims, dtype=np.float64)
        tokens = (text or "").lower().split()
        if not tokens:
            return vector.tolist()

        weight = 1.0 / math.sqrt(len(tokens))
        for token in tokens:
            vector[self._bucket(token, dims)] += weight

        magnitude = np.linalg.norm(vector)
        if magnitude > 0:
            vector = vector / magnitude
        return vector.tolist()

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)


class EmbeddingProvider:
    """Base class for HTTP embedding backends."""

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
        self._client = client
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

        if response.status_code in (401, 403):
            raise AuthOrConfigError(self.name, f"unauthorized (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise TransientBackendError(
                self.name, f"HTTP {response.status_code}", status_code=response.status_code
            )
        return response.json()

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class GeminiEmbeddingProvider(EmbeddingProvider):
    name = "gemini"
    default_model = "text-embedding-004"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise AuthOrConfigError(self.name, "API key not configured")
        data = await self._post(
            f"{self.base_url}/models/{self.model}:embedContent?key={self.api_key}",
            {"content": {"parts": [{"text": text}]}},
        )
        return (data.get("embedding") or {}).get("values")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"
    default_model = "text-embedding-3-small"
    base_url = "https://api.openai.com/v1"

    async def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise AuthOrConfigError(self.name, "API key not configured")
        data = await self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        items = data.get("data") or []
        return items[0].get("embedding") if items else None


class CohereEmbeddingProvider(EmbeddingProvider):
    name = "cohere"
    default_model = "embed-english-v3.0"
    base_url = "https://api.cohere.com/v1"

    async def embed(self, text: str) -> List[float]:
        if not self.api_key:
            raise AuthOrConfigError(self.name, "API key not configured")
        data = await self._post(
            f"{self.base_url}/embed",
            {"model": self.model, "texts": [text], "input_type": "search_document"},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        embeddings = data.get("embeddings") or []
        return embeddings[0] if embeddings else None


class OllamaEmbeddingProvider(EmbeddingProvider):
    name = "ollama"
    default_model = "mxbai-embed-large"

    def __init__(self, base_url: Optional[str], **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url

    @property
    def available(self) -> bool:
        return bool(self.base_url)

    async def embed(self, text: str) -> List[float]:
        if not self.base_url:
            raise AuthOrConfigError(self.name, "client not initialized (no host configured)")
        data = await self._post(
            f"{self.base_url}/api/embeddings",
            {"model": self.model, "prompt": text[:1000]},
        )
        return data.get("embedding")


def _is_valid_vector(vector: Any) -> bool:
    if not isinstance(vector, (list, tuple)) or not vector:
        return False
    try:
        return all(math.isfinite(float(v)) for v in vector)
    except (TypeError, ValueError):
        return False


class EmbeddingService:
    """
    Provider chain with a time box per call and a hashing fallback.

    embed() never raises: empty text yields a zero vector, and any provider
    problem degrades to the hashing embedder.
    """

    def __init__(
        self,
        providers: Optional[List[EmbeddingProvider]] = None,
        dimensions: int = 1536,
        timeout: float = 30.0
    ):
        self.providers = [p for p in (providers or []) if p.available]
        self.dimensions = dimensions
        self.timeout = timeout
        self.fallback = HashingEmbedder(dimensions)
        self._stats = {"provider_calls": 0, "provider_failures": 0, "fallbacks": 0}

    async def embed(self, text: str) -> List[float]:
        """Embed text, falling back to the hashing embedder on any failure."""
        if not text or not text.strip():
            return [0.0] * self.dimensions

        for provider in self.providers:
            self._stats["provider_calls"] += 1
            try:
                vector = await race_timeout(
                    provider.embed(text), self.timeout, f"{provider.name} embedding"
                )
            except Exception as e:
                self._stats["provider_failures"] += 1
                logger.warning(f"Embedding provider '{provider.name}' failed: {e}")
                continue

            if not _is_valid_vector(vector):
                self._stats["provider_failures"] += 1
                logger.warning(f"Invalid embedding response from '{provider.name}'")
                continue

            if len(vector) != self.dimensions:
                logger.info(
                    f"Embedding dimensions updated {self.dimensions} -> {len(vector)} "
                    f"from '{provider.name}'"
                )
                self.dimensions = len(vector)
            return [float(v) for v in vector]

        self._stats["fallbacks"] += 1
        return self.fallback.embed_sync(text, self.dimensions)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "providers": [p.name for p in self.providers],
            "dimensions": self.dimensions,
            **self._stats,
        }


def build_embedding_service(settings, client: Optional[httpx.AsyncClient] = None) -> EmbeddingService:
    """Create the embedding chain selected by settings.embedding_provider."""
    preferred = settings.embedding_provider
    timeout = settings.embedding_timeout
    model = settings.embedding_model

    candidates: Dict[str, EmbeddingProvider] = {
        "gemini": GeminiEmbeddingProvider(
            api_key=settings.gemini_api_key, model=model if preferred == "gemini" else None,
            client=client, timeout=timeout,
        ),
        "openai": OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key, model=model if preferred == "openai" else None,
            client=client, timeout=timeout,
        ),
        "cohere": CohereEmbeddingProvider(
            api_key=settings.cohere_api_key, model=model if preferred == "cohere" else None,
            client=client, timeout=timeout,
        ),
        "ollama": OllamaEmbeddingProvider(
            base_url=settings.ollama_base_url, model=model if preferred == "ollama" else None,
            client=client, timeout=timeout,
        ),
    }

    providers = [candidates[preferred]] if preferred in candidates else []
    return EmbeddingService(
        providers=providers,
        dimensions=settings.embedding_dimensions,
        timeout=timeout,
    )
