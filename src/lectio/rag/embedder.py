"""Text embedder for RAG system.

Wraps a pluggable embedding model, consults an optional embedding cache,
and converts text into fixed-dimension vectors.
"""

import asyncio
import hashlib
import re
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import numpy as np
import tiktoken
from openai import AsyncOpenAI

from lectio.config import get_settings
from lectio.logging import get_logger, log_failure
from lectio.models.rag import BatchEmbeddingResult, EmbeddingVector
from lectio.rag.exceptions import (
    EmbeddingGenerationError,
    InvalidInputError,
    ModelNotAvailableError,
)
from lectio.utils import RateLimiter, process_batch_concurrent, retry_with_exponential_backoff

if TYPE_CHECKING:
    from lectio.rag.cache import TieredEmbeddingCache

logger = get_logger("embedder")

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class EmbeddingModel(ABC):
    """Boundary to a text-embedding model."""

    @property
    @abstractmethod
    def model_version(self) -> str:
        """Identifier that changes whenever vectors stop being comparable."""

    @property
    @abstractmethod
    def dimensions(self) -> Optional[int]:
        """Vector dimension, or None until the model reports it."""

    @abstractmethod
    async def load(self) -> None:
        """Load weights or open clients. Called once."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, returning one vector per text in order."""

    async def close(self) -> None:
        """Release model resources."""


class HashingEmbeddingModel(EmbeddingModel):
    """Deterministic offline model using signed feature hashing.

    Each lowercased word token is hashed to a bucket and a sign; the bag of
    hashed tokens is L2-normalised. Texts sharing vocabulary score high;
    empty text maps to the zero vector.
    """

    def __init__(self, dimensions: int = 384):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions

    @property
    def model_version(self) -> str:
        return f"hashing-v1-{self._dimensions}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def load(self) -> None:
        return None

    def _embed_one(self, text: str) -> list[float]:
        vector = np.zeros(self._dimensions, dtype=np.float64)
        for token in _TOKEN_PATTERN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(text) for text in texts]


class OpenAIEmbeddingModel(EmbeddingModel):
    """Generates embeddings with OpenAI's text-embedding models."""

    # USD per 1K tokens
    PRICING = {
        "text-embedding-3-small": 0.00002,
        "text-embedding-3-large": 0.00013,
        "text-embedding-ada-002": 0.0001,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """Initialize the model wrapper.

        Args:
            model: OpenAI embedding model to use
            api_key: API key (defaults to settings)
            rate_limiter: Limiter applied before each API call
        """
        settings = get_settings()
        self.model = model
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.rate_limiter = rate_limiter or RateLimiter(settings.openai_requests_per_minute)
        self.client: Optional[AsyncOpenAI] = None
        self._dimensions: Optional[int] = None
        self._encoding = None

    @property
    def model_version(self) -> str:
        return self.model

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    async def load(self) -> None:
        if not self.api_key:
            raise ModelNotAvailableError(
                "OpenAI API key not configured. Set OPENAI_API_KEY in your environment."
            )
        self.client = AsyncOpenAI(api_key=self.api_key)

    @retry_with_exponential_backoff(max_retries=5, initial_delay=1.0, max_delay=30.0)
    async def _create(self, texts: list[str]) -> list[list[float]]:
        await self.rate_limiter.wait()
        response = await self.client.embeddings.create(input=texts, model=self.model)
        return [item.embedding for item in response.data]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if self.client is None:
            raise ModelNotAvailableError("OpenAI client not loaded")

        # The API rejects empty strings; embed them as a single space
        vectors = await self._create([text if text else " " for text in texts])
        if vectors and self._dimensions is None:
            self._dimensions = len(vectors[0])
        return vectors

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None

    def count_tokens(self, text: str) -> int:
        """Count tokens in text."""
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding("cl100k_base")
        return len(self._encoding.encode(text))

    def estimate_cost(self, token_count: int) -> float:
        """Estimate cost in USD for embedding ``token_count`` tokens."""
        price = self.PRICING.get(self.model, self.PRICING["text-embedding-3-small"])
        return (token_count / 1000) * price


class EmbeddingGenerator:
    """Converts text to embedding vectors through an optional cache."""

    def __init__(
        self,
        model: EmbeddingModel,
        cache: Optional["TieredEmbeddingCache"] = None,
        batch_size: Optional[int] = None,
    ):
        """Initialize the generator.

        Args:
            model: Embedding model to wrap
            cache: Cache consulted before and populated after inference
            batch_size: Texts per model call and concurrent cache lookups
        """
        self.model = model
        self.cache = cache
        self.batch_size = batch_size or get_settings().embedding_batch_size
        self._ready = False
        self._init_task: Optional[asyncio.Task] = None

    @property
    def model_version(self) -> str:
        return self.model.model_version

    @property
    def dimensions(self) -> Optional[int]:
        return self.model.dimensions

    def is_ready(self) -> bool:
        """Whether the model has been loaded."""
        return self._ready

    async def _load(self) -> None:
        try:
            await self.model.load()
        except ModelNotAvailableError:
            raise
        except Exception as e:
            raise ModelNotAvailableError(f"Failed to load embedding model: {e}") from e

        if self.cache is not None:
            await self.cache.initialize()

        self._ready = True
        logger.info(f"Embedding model ready: {self.model_version}")

    async def initialize(self) -> None:
        """Load the model once; concurrent callers share one in-flight load."""
        if self._ready:
            return

        if self._init_task is None:
            self._init_task = asyncio.create_task(self._load())
        task = self._init_task

        try:
            await task
        except Exception as e:
            # Allow a later call to retry
            if self._init_task is task:
                self._init_task = None
            log_failure(logger, "Model initialization", e, {"model": self.model_version})
            raise

    async def _infer(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await self.model.embed(texts)
        except EmbeddingGenerationError:
            raise
        except Exception as e:
            raise EmbeddingGenerationError(
                f"Embedding inference failed: {e}", {"model": self.model_version}
            ) from e

        if len(vectors) != len(texts):
            raise EmbeddingGenerationError(
                f"Model returned {len(vectors)} vectors for {len(texts)} texts",
                {"model": self.model_version},
            )
        return vectors

    async def embed(self, text: str) -> EmbeddingVector:
        """Generate an embedding for a single text.

        Raises:
            InvalidInputError: If text is not a string
            EmbeddingGenerationError: If the model is unavailable or inference fails
        """
        if not isinstance(text, str):
            raise InvalidInputError("Text to embed must be a string")

        if not self._ready:
            await self.initialize()

        if self.cache is not None:
            cached = await self.cache.get(text, self.model_version)
            if cached is not None:
                return cached

        start_time = time.perf_counter()
        vector = (await self._infer([text]))[0]
        logger.debug(f"Generated embedding in {(time.perf_counter() - start_time) * 1000:.2f}ms")

        result = EmbeddingVector(text=text, vector=list(vector), model_version=self.model_version)

        if self.cache is not None:
            await self.cache.set(text, result)

        return result

    async def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """Generate embeddings for many texts, preserving input order.

        Cache lookups and model calls are chunked by ``batch_size``.
        """
        if any(not isinstance(text, str) for text in texts):
            raise InvalidInputError("Texts to embed must be strings")

        if not self._ready:
            await self.initialize()

        start_time = time.perf_counter()
        results: list[Optional[EmbeddingVector]] = [None] * len(texts)

        if self.cache is not None:
            cached_results = await process_batch_concurrent(
                texts,
                lambda text: self.cache.get(text, self.model_version),
                batch_size=self.batch_size,
            )
            for index, cached in enumerate(cached_results):
                results[index] = cached

        uncached_indices = [i for i, result in enumerate(results) if result is None]
        cached_count = len(texts) - len(uncached_indices)

        for batch_start in range(0, len(uncached_indices), self.batch_size):
            batch_indices = uncached_indices[batch_start : batch_start + self.batch_size]
            vectors = await self._infer([texts[i] for i in batch_indices])

            fresh = []
            for index, vector in zip(batch_indices, vectors):
                embedding = EmbeddingVector(
                    text=texts[index], vector=list(vector), model_version=self.model_version
                )
                results[index] = embedding
                fresh.append(embedding)

            if self.cache is not None:
                await process_batch_concurrent(
                    fresh,
                    lambda emb: self.cache.set(emb.text, emb),
                    batch_size=self.batch_size,
                )

        duration = time.perf_counter() - start_time
        logger.debug(
            f"Batch complete: {cached_count} cached, {len(uncached_indices)} computed "
            f"in {duration * 1000:.2f}ms"
        )

        return BatchEmbeddingResult(
            embeddings=[r for r in results if r is not None],
            computed=len(uncached_indices),
            cached=cached_count,
            duration=duration,
        )

    async def clear_cache(self) -> None:
        """Clear all cached embeddings."""
        if self.cache is not None:
            await self.cache.clear()

    async def get_cache_stats(self):
        """Get cache statistics (None when no cache is attached)."""
        if self.cache is None:
            return None
        return await self.cache.get_stats()

    async def dispose(self) -> None:
        """Release the model; repeated calls are no-ops."""
        if not self._ready and self._init_task is None:
            return

        task = self._init_task
        self._init_task = None
        self._ready = False

        if task is not None and not task.done():
            task.cancel()

        await self.model.close()
        logger.info(f"Embedding model disposed: {self.model_version}")
