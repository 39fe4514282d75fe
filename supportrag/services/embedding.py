"""Embedding service.

Texts are embedded by a configured provider (OpenAI or Gemini) behind a
content-hash cache in Redis, shared by the API and every worker. When no
provider key is configured, in test mode, or when a provider call fails, times
out or returns vectors of the wrong size, vectors come from a deterministic
hash-based generator so ingestion and retrieval keep working offline.
"""

import asyncio
import enum
import hashlib
import json
import logging
import math
from abc import ABC, abstractmethod

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from supportrag.config import settings

logger = logging.getLogger(__name__)


class EmbeddingTask(str, enum.Enum):
    RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
    RETRIEVAL_QUERY = "RETRIEVAL_QUERY"
    SEMANTIC_SIMILARITY = "SEMANTIC_SIMILARITY"


class EmbeddingProviderError(Exception):
    """A remote embedding call failed or returned an unusable response."""


def normalize_vector(vector: list[float]) -> list[float]:
    """Scale a vector to unit length; the zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


# ============================================================================
# Providers
# ============================================================================


class EmbeddingProvider(ABC):
    """A strategy that turns a batch of texts into vectors."""

    name: str
    batch_size: int = 64
    # Whether vectors go through the shared cache
    cacheable: bool = True

    def __init__(self, model: str, dim: int):
        self.model = model
        self.dim = dim

    @abstractmethod
    async def embed(self, texts: list[str], task: EmbeddingTask) -> list[list[float]]:
        """Embed one provider-sized batch."""


class DeterministicEmbeddingProvider(EmbeddingProvider):
    """Offline provider: vectors derived from the SHA-256 of the text."""

    name = "mock"
    batch_size = 1000
    cacheable = False

    def __init__(self, model: str = "deterministic-sha256", dim: int | None = None):
        super().__init__(model, dim or settings.embedding_dim)

    def embed_one(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vector = [(digest[i % len(digest)] / 255) * 2 - 1 for i in range(self.dim)]
        return normalize_vector(vector)

    async def embed(self, texts: list[str], task: EmbeddingTask) -> list[list[float]]:
        return [self.embed_one(text) for text in texts]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    name = "openai"
    batch_size = 64

    def __init__(self, model: str, dim: int, api_key: str):
        super().__init__(model, dim)
        self.api_key = api_key
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def embed(self, texts: list[str], task: EmbeddingTask) -> list[list[float]]:
        client = self._get_client()
        kwargs = {"dimensions": self.dim} if self.model.startswith("text-embedding-3") else {}
        response = await client.embeddings.create(model=self.model, input=texts, **kwargs)
        vectors = [normalize_vector(item.embedding) for item in response.data]
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"OpenAI returned {len(vectors)} embeddings for {len(texts)} texts"
            )
        return vectors


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Gemini embeddings over the Generative Language REST API."""

    name = "gemini"
    batch_size = 100

    def __init__(self, model: str, dim: int, api_key: str, base_url: str):
        super().__init__(model, dim)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def embed(self, texts: list[str], task: EmbeddingTask) -> list[list[float]]:
        model_path = self.model if self.model.startswith("models/") else f"models/{self.model}"
        payload = {
            "requests": [
                {
                    "model": model_path,
                    "content": {"parts": [{"text": text}]},
                    "taskType": task.value,
                    "outputDimensionality": self.dim,
                }
                for text in texts
            ]
        }

        async with httpx.AsyncClient(timeout=settings.embedding_timeout_seconds) as client:
            response = await client.post(
                f"{self.base_url}/{model_path}:batchEmbedContents",
                params={"key": self.api_key},
                json=payload,
            )
            response.raise_for_status()
            data = response.json()

        embeddings = data.get("embeddings") or []
        if len(embeddings) != len(texts):
            raise EmbeddingProviderError(
                f"Gemini returned {len(embeddings)} embeddings for {len(texts)} texts"
            )
        # Reduced output dimensionality is not unit length
        return [normalize_vector(e.get("values") or []) for e in embeddings]


def build_provider() -> EmbeddingProvider:
    """Select the embedding provider from configuration."""
    provider = settings.resolve_embedding_provider()
    model = settings.resolve_embedding_model()

    if provider == "openai":
        return OpenAIEmbeddingProvider(model, settings.embedding_dim, settings.openai_api_key)
    if provider == "gemini":
        return GeminiEmbeddingProvider(
            model,
            settings.embedding_dim,
            settings.google_api_key,
            settings.gemini_api_base_url,
        )
    return DeterministicEmbeddingProvider(dim=settings.embedding_dim)


# ============================================================================
# Cache
# ============================================================================


class EmbeddingCache:
    """
    Redis-backed embedding cache keyed by model and text hash.

    Entries expire after the configured TTL. A Redis outage degrades to cache
    misses; embedding itself never fails because of the cache.
    """

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.embedding_cache_ttl_seconds

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
        return self._client

    @staticmethod
    def make_key(model: str, text: str) -> str:
        digest = hashlib.sha256(f"{model}:{text}".encode("utf-8")).hexdigest()
        return f"rag-embed:{digest}"

    async def get(self, key: str) -> list[float] | None:
        try:
            value = await self._get_client().get(key)
        except RedisError as e:
            logger.warning(f"Embedding cache get failed: {e}")
            return None
        if value is None:
            return None
        return json.loads(value)

    async def set(self, key: str, vector: list[float]) -> None:
        try:
            await self._get_client().setex(key, self.ttl_seconds, json.dumps(vector))
        except RedisError as e:
            logger.warning(f"Embedding cache set failed: {e}")


# ============================================================================
# Service
# ============================================================================


class EmbeddingService:
    """Cache-first batched embedding with per-call timeout and offline fallback."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        timeout_seconds: float | None = None,
        parallel_batches: int | None = None,
    ):
        self.provider = provider
        self.cache = cache or EmbeddingCache()
        self.timeout_seconds = timeout_seconds or settings.embedding_timeout_seconds
        self.parallel_batches = parallel_batches or settings.embedding_parallel_batches
        self.fallback = DeterministicEmbeddingProvider(dim=provider.dim)
        self.fallback_count = 0

    async def embed(
        self,
        texts: list[str],
        task: EmbeddingTask = EmbeddingTask.RETRIEVAL_DOCUMENT,
    ) -> list[list[float]]:
        """Embed texts, returning one vector per input in input order."""
        if not texts:
            return []

        if not self.provider.cacheable:
            return await self.provider.embed(texts, task)

        keys = [EmbeddingCache.make_key(self.provider.model, text) for text in texts]
        cached = await asyncio.gather(*(self.cache.get(key) for key in keys))

        results: list[list[float] | None] = list(cached)
        missing = [i for i, vector in enumerate(results) if vector is None]
        if not missing:
            return results

        batches = [
            missing[i : i + self.provider.batch_size]
            for i in range(0, len(missing), self.provider.batch_size)
        ]
        semaphore = asyncio.Semaphore(self.parallel_batches)

        async def run_batch(indices: list[int]) -> None:
            batch_texts = [texts[i] for i in indices]
            async with semaphore:
                vectors, from_provider = await self._embed_batch(batch_texts, task)
            for index, vector in zip(indices, vectors):
                results[index] = vector
                if from_provider:
                    await self.cache.set(keys[index], vector)

        await asyncio.gather(*(run_batch(indices) for indices in batches))
        return results

    async def _embed_batch(
        self, texts: list[str], task: EmbeddingTask
    ) -> tuple[list[list[float]], bool]:
        try:
            vectors = await asyncio.wait_for(
                self.provider.embed(texts, task), timeout=self.timeout_seconds
            )
            self._check_dimensions(vectors)
            return vectors, True
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.provider.name} embedding timed out after {self.timeout_seconds}s "
                f"for {len(texts)} texts, using deterministic fallback"
            )
        except Exception as e:
            logger.warning(
                f"{self.provider.name} embedding failed for {len(texts)} texts, "
                f"using deterministic fallback: {e}"
            )
        self.fallback_count += len(texts)
        return await self.fallback.embed(texts, task), False

    def _check_dimensions(self, vectors: list[list[float]]) -> None:
        # rag_chunks.embedding is a fixed-size vector column
        for vector in vectors:
            if len(vector) != self.provider.dim:
                raise EmbeddingProviderError(
                    f"{self.provider.name} returned a {len(vector)}-dimension vector, "
                    f"expected {self.provider.dim}"
                )


_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    global _service
    if _service is None:
        _service = EmbeddingService(build_provider())
        logger.info(
            f"Embedding provider: {_service.provider.name} (model={_service.provider.model})"
        )
    return _service


async def embed_texts(
    texts: list[str], task: EmbeddingTask = EmbeddingTask.RETRIEVAL_DOCUMENT
) -> list[list[float]]:
    return await get_embedding_service().embed(texts, task)


async def embed_query(text: str) -> list[float]:
    [vector] = await embed_texts([text], EmbeddingTask.RETRIEVAL_QUERY)
    return vector
