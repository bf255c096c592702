"""Shared fixtures for retrieval engine tests."""

import asyncio
import fnmatch
from typing import Optional

import pytest

from lectio.rag.cache import MemoryCacheTier, PersistentCacheTier, TieredEmbeddingCache
from lectio.rag.embedder import EmbeddingGenerator, HashingEmbeddingModel
from lectio.rag.storage import PersistentStore
from lectio.rag.vector_store import VectorStore


class ScriptedEmbeddingModel(HashingEmbeddingModel):
    """Hashing model with fixed vectors for chosen texts and call tracking."""

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        dimensions: int = 3,
        fail_on: Optional[set[str]] = None,
        load_delay: float = 0.0,
        fail_loads: int = 0,
    ):
        super().__init__(dimensions=dimensions)
        self.vectors = vectors or {}
        self.fail_on = fail_on or set()
        self.load_delay = load_delay
        self.fail_loads = fail_loads
        self.load_count = 0
        self.close_count = 0
        self.embed_calls: list[list[str]] = []

    @property
    def model_version(self) -> str:
        return f"scripted-{self._dimensions}"

    async def load(self) -> None:
        self.load_count += 1
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise RuntimeError("model weights missing")

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embed_calls.append(list(texts))
        for text in texts:
            if text in self.fail_on:
                raise RuntimeError(f"cannot embed {text!r}")
        return [
            list(self.vectors[text]) if text in self.vectors else self._embed_one(text)
            for text in texts
        ]

    async def close(self) -> None:
        self.close_count += 1


class FakeRedis:
    """In-memory stand-in for the ``redis.asyncio`` client methods the cache uses."""

    def __init__(self, fail: bool = False):
        self.data: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.fail = fail
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unreachable")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


@pytest.fixture
def scripted_model():
    """Model with hand-picked vectors for an animal/office vocabulary."""
    return ScriptedEmbeddingModel(
        vectors={
            "cat": [1.0, 0.0, 0.0],
            "dog": [0.85, 0.5268, 0.0],
            "spreadsheet": [0.05, 0.0, 0.99875],
        }
    )


@pytest.fixture
def embedding_cache(tmp_path):
    """Memory + SQLite cache rooted in a temporary directory."""
    return TieredEmbeddingCache(
        [
            MemoryCacheTier(max_items=100),
            PersistentCacheTier(PersistentStore(tmp_path / "embeddings.db", "embeddings")),
        ],
        ttl_seconds=7 * 24 * 3600,
    )


@pytest.fixture
def vector_store(tmp_path):
    """Vector store backed by a temporary SQLite file."""
    return VectorStore(
        records=PersistentStore(tmp_path / "vectors.db", "vectors"),
        cache_max_items=100,
    )


@pytest.fixture
def generator(scripted_model, embedding_cache):
    return EmbeddingGenerator(scripted_model, cache=embedding_cache, batch_size=4)
