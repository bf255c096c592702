"""Models package."""

from lectio.models.rag import (
    BatchEmbeddingResult,
    BatchItemError,
    BatchOperationResult,
    CacheEntry,
    CacheExpired,
    CacheHit,
    CacheLookupResult,
    CacheMiss,
    CacheStats,
    Cluster,
    DocumentChunk,
    EmbeddingVector,
    HealthStatus,
    IndexingProgress,
    IndexStats,
    PreparedPrompt,
    RAGChunk,
    RAGContext,
    RAGDocument,
    RerankScore,
    SearchResult,
    SimilarityResult,
    SimilarityStats,
    SimilarPassage,
    StoredVector,
    TierStats,
    VectorMatch,
    VectorStoreStats,
)

__all__ = [
    "BatchEmbeddingResult",
    "BatchItemError",
    "BatchOperationResult",
    "CacheEntry",
    "CacheExpired",
    "CacheHit",
    "CacheLookupResult",
    "CacheMiss",
    "CacheStats",
    "Cluster",
    "DocumentChunk",
    "EmbeddingVector",
    "HealthStatus",
    "IndexingProgress",
    "IndexStats",
    "PreparedPrompt",
    "RAGChunk",
    "RAGContext",
    "RAGDocument",
    "RerankScore",
    "SearchResult",
    "SimilarityResult",
    "SimilarityStats",
    "SimilarPassage",
    "StoredVector",
    "TierStats",
    "VectorMatch",
    "VectorStoreStats",
]
