"""RAG (Retrieval-Augmented Generation) data models.

Data structures for embeddings, cache entries, stored vectors, similarity
results, clusters, and assembled context.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union


@dataclass(frozen=True)
class EmbeddingVector:
    """Vector embedding of a piece of text."""

    text: str
    vector: list[float]
    model_version: str  # e.g., "hashing-v1-384" or "text-embedding-3-small"
    timestamp: float = field(default_factory=time.time)

    @property
    def dimensions(self) -> int:
        """Size of the embedding vector."""
        return len(self.vector)

    def age(self, now: Optional[float] = None) -> float:
        """Seconds elapsed since the embedding was produced."""
        return (now if now is not None else time.time()) - self.timestamp


@dataclass
class BatchEmbeddingResult:
    """Result of embedding a list of texts."""

    embeddings: list[EmbeddingVector]
    computed: int  # Freshly generated by the model
    cached: int  # Served from the cache
    duration: float  # Seconds


@dataclass
class CacheEntry:
    """Embedding wrapped with cache bookkeeping."""

    key: str
    embedding: EmbeddingVector
    access_count: int = 1
    last_accessed: float = field(default_factory=time.time)

    def is_expired(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        """Whether the wrapped embedding is older than the TTL."""
        return self.embedding.age(now) > ttl_seconds

    def touch(self, now: Optional[float] = None) -> None:
        """Record an access."""
        self.access_count += 1
        self.last_accessed = now if now is not None else time.time()


@dataclass(frozen=True)
class CacheHit:
    """Lookup found a live entry."""

    embedding: EmbeddingVector
    tier: str


@dataclass(frozen=True)
class CacheMiss:
    """Lookup found nothing in any tier."""


@dataclass(frozen=True)
class CacheExpired:
    """Lookup found only entries older than the TTL."""

    tier: str


CacheLookupResult = Union[CacheHit, CacheMiss, CacheExpired]


@dataclass
class TierStats:
    """Per-tier cache statistics."""

    name: str
    size: int
    hits: int = 0
    read_errors: int = 0
    write_errors: int = 0


@dataclass
class CacheStats:
    """Statistics for the tiered embedding cache."""

    total_requests: int
    total_hits: int
    misses: int
    expired: int
    tiers: list[TierStats] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from any tier (0 before any request)."""
        if self.total_requests == 0:
            return 0.0
        return self.total_hits / self.total_requests

    def tier(self, name: str) -> Optional[TierStats]:
        """Get statistics for one tier by name."""
        for tier_stats in self.tiers:
            if tier_stats.name == name:
                return tier_stats
        return None


@dataclass
class StoredVector:
    """A vector record owned by the vector store."""

    id: str
    document_id: str
    text: str
    vector: list[float]
    paragraph_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "paragraph_id": self.paragraph_id,
            "text": self.text,
            "vector": self.vector,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredVector":
        return cls(
            id=data["id"],
            document_id=data["document_id"],
            paragraph_id=data.get("paragraph_id"),
            text=data["text"],
            vector=list(data["vector"]),
            metadata=data.get("metadata") or {},
            timestamp=data.get("timestamp", time.time()),
        )


@dataclass
class VectorMatch:
    """A stored vector scored against a query."""

    id: str
    document_id: str
    text: str
    similarity: float
    paragraph_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorStoreStats:
    """Statistics about the vector store."""

    total_vectors: int
    cache_size: int
    cache_hit_rate: float
    total_searches: int
    average_search_time_ms: float


@dataclass
class SimilarityResult:
    """A scored, ranked candidate (rank 1 = most similar)."""

    paragraph_id: str
    text: str
    score: float
    rank: int


@dataclass
class Cluster:
    """A group of mutually similar embeddings."""

    id: int
    members: list[str]
    centroid: list[float]
    avg_similarity: float


@dataclass
class SimilarityStats:
    """Descriptive statistics over similarity scores."""

    mean: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    std_dev: float = 0.0


@dataclass
class DocumentChunk:
    """A pre-chunked window of a document."""

    id: str
    text: str
    position: int


@dataclass
class RAGDocument:
    """A document to index for retrieval."""

    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    chunks: Optional[list[DocumentChunk]] = None  # Takes precedence over text chunking


@dataclass
class RAGChunk:
    """A retrieved chunk of context."""

    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("document_id")

    @property
    def position(self) -> Optional[int]:
        return self.metadata.get("position")


@dataclass
class RAGContext:
    """Context assembled for a downstream prompt."""

    chunks: list[RAGChunk] = field(default_factory=list)
    document_ids: list[str] = field(default_factory=list)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @classmethod
    def from_chunks(cls, chunks: list[RAGChunk]) -> "RAGContext":
        """Build a context, collecting unique document ids in chunk order."""
        document_ids = list(
            dict.fromkeys(chunk.document_id for chunk in chunks if chunk.document_id)
        )
        return cls(chunks=chunks, document_ids=document_ids)


@dataclass
class BatchItemError:
    """Failure detail for one item of a batch."""

    index: int
    error: str


@dataclass
class BatchOperationResult:
    """Outcome of a batch operation that isolates per-item failures."""

    total: int
    succeeded: int = 0
    failed: int = 0
    errors: list[BatchItemError] = field(default_factory=list)


@dataclass(frozen=True)
class RerankScore:
    """Reranker score for one submitted document."""

    index: int
    score: float


@dataclass
class PreparedPrompt:
    """Prompt pieces ready for a language-model call."""

    system_prompt: str
    user_prompt: str
    context: RAGContext


@dataclass
class SearchResult:
    """A semantic search hit with a display snippet."""

    id: str
    document_id: str
    text: str
    similarity: float
    rank: int
    snippet: str
    paragraph_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SimilarPassage:
    """A suggested link between two similar passages."""

    source_id: str
    target_id: str
    source_text: str
    target_text: str
    similarity: float
    reason: str
    source_paragraph_id: Optional[str] = None
    target_paragraph_id: Optional[str] = None


@dataclass
class IndexingProgress:
    """Progress of indexing one document's paragraphs."""

    document_id: str
    total_paragraphs: int
    indexed_paragraphs: int = 0
    status: Literal["idle", "indexing", "completed", "error"] = "idle"
    error: Optional[str] = None

    @property
    def progress(self) -> float:
        """Percent complete."""
        if self.total_paragraphs == 0:
            return 100.0 if self.status == "completed" else 0.0
        return 100.0 * self.indexed_paragraphs / self.total_paragraphs


@dataclass
class HealthStatus:
    """Health of the retrieval pipeline."""

    status: Literal["healthy", "degraded", "unhealthy"]
    latency_ms: float
    error: Optional[str] = None


@dataclass
class IndexStats:
    """Counts of indexed documents and chunks."""

    total_documents: int
    total_chunks: int

    @property
    def avg_chunks_per_document(self) -> float:
        if self.total_documents == 0:
            return 0.0
        return self.total_chunks / self.total_documents
