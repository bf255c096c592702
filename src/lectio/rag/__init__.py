"""Retrieval engine: embeddings, caching, vector search, and RAG context.

Text is embedded through a tiered cache, stored as vectors, scored by
cosine similarity, and packed into citation-annotated prompt context.
"""

from lectio.rag.assembler import RAGContextAssembler
from lectio.rag.cache import (
    MemoryCacheTier,
    PersistentCacheTier,
    RedisCacheTier,
    TieredEmbeddingCache,
)
from lectio.rag.embedder import (
    EmbeddingGenerator,
    EmbeddingModel,
    HashingEmbeddingModel,
    OpenAIEmbeddingModel,
)
from lectio.rag.reranker import HttpReranker, Reranker
from lectio.rag.search import SemanticSearchService
from lectio.rag.vector_store import VectorStore

__all__ = [
    "EmbeddingGenerator",
    "EmbeddingModel",
    "HashingEmbeddingModel",
    "OpenAIEmbeddingModel",
    "TieredEmbeddingCache",
    "MemoryCacheTier",
    "PersistentCacheTier",
    "RedisCacheTier",
    "VectorStore",
    "Reranker",
    "HttpReranker",
    "RAGContextAssembler",
    "SemanticSearchService",
]
