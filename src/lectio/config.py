"""Configuration management for Lectio."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Context windows of the language models that consume assembled context.
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "claude-sonnet-4-20250514": 200_000,
    "claude-sonnet-4.5-20250929": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    "claude-3-opus": 200_000,
    "claude-3-sonnet": 200_000,
    "claude-3-haiku": 200_000,
}

DEFAULT_MODEL_CONTEXT_LIMIT = 200_000


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Embedding model
    embedding_backend: str = "hashing"  # "hashing" (offline) or "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 384  # Only used by the hashing backend
    embedding_batch_size: int = 100  # Texts per model call (OpenAI supports up to 2048)

    # OpenAI
    openai_api_key: str = ""
    openai_requests_per_minute: int = 500

    # Embedding cache
    cache_dir: str = ".lectio_cache"
    cache_ttl_days: float = 7.0
    memory_cache_max_items: int = 1000

    # Remote shared cache (empty URL disables the tier)
    redis_url: str = ""
    remote_cache_timeout: float = 2.0

    # Vector store
    vector_cache_max_items: int = 10_000
    default_similarity_threshold: float = 0.3
    default_top_k: int = 10

    # RAG defaults
    chunk_size: int = 512  # Words per chunk
    chunk_overlap: int = 50  # Words shared between consecutive chunks
    rag_top_k: int = 5
    rag_min_relevance: float = 0.7
    rerank_candidates: int = 20
    rerank_threshold: float = 0.5
    context_token_budget: int = 8000
    batch_size_indexing: int = 5  # Documents indexed concurrently

    # Reranker (empty URL disables reranking)
    reranker_url: str = ""
    reranker_api_key: str = ""
    reranker_model: str = "cross-encoder"
    reranker_timeout: float = 30.0

    # Logging
    log_level: str = "WARNING"
    debug: bool = False

    @property
    def cache_ttl_seconds(self) -> float:
        """TTL for cached embeddings in seconds."""
        return self.cache_ttl_days * 24 * 60 * 60

    @property
    def cache_db_path(self) -> Path:
        """SQLite file backing the persistent cache tier."""
        return Path(self.cache_dir) / "embeddings.db"

    @property
    def vector_db_path(self) -> Path:
        """SQLite file backing the vector store."""
        return Path(self.cache_dir) / "vectors.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_model_context_limit(model_name: str) -> int:
    """Return the context window for a model, defaulting conservatively."""
    return MODEL_CONTEXT_LIMITS.get(model_name, DEFAULT_MODEL_CONTEXT_LIMIT)
