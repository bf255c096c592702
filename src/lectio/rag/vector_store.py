"""Vector store for embeddings.

Persists vector records in SQLite, indexed by document, and answers
similarity queries with an exact cosine scan over the candidate set.
Hot records are kept in a bounded LRU read cache.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Iterable, Optional

import numpy as np

from lectio.config import get_settings
from lectio.logging import get_logger, log_failure, log_warning
from lectio.models.rag import StoredVector, VectorMatch, VectorStoreStats
from lectio.rag.exceptions import DimensionMismatchError, InvalidInputError, VectorStoreError
from lectio.rag.similarity import cosine_similarities
from lectio.rag.storage import PersistentStore

logger = get_logger("vector_store")

# Searches slower than this are logged as warnings
SLOW_SEARCH_MS = 50.0


class VectorStore:
    """Durable vector store with brute-force similarity search."""

    def __init__(
        self,
        records: Optional[PersistentStore] = None,
        metadata_store: Optional[PersistentStore] = None,
        cache_max_items: Optional[int] = None,
    ):
        """Initialize the vector store.

        Args:
            records: Backing collection for vector records
            metadata_store: Backing collection for key/value bookkeeping
            cache_max_items: Capacity of the LRU read cache
        """
        settings = get_settings()
        self.records = records or PersistentStore(settings.vector_db_path, "vectors")
        self.metadata_store = metadata_store or PersistentStore(self.records.db_path, "metadata")
        self.cache_max_items = (
            settings.vector_cache_max_items if cache_max_items is None else cache_max_items
        )

        self._cache: OrderedDict[str, StoredVector] = OrderedDict()
        self._ready = False
        self._init_task: Optional[asyncio.Task] = None

        self.total_searches = 0
        self.total_search_time_ms = 0.0
        self.cache_hits = 0
        self.cache_misses = 0

    async def _open(self) -> None:
        try:
            await self.records.initialize()
            await self.metadata_store.initialize()
        except Exception as e:
            raise VectorStoreError(f"Failed to open vector store: {e}") from e
        self._ready = True
        logger.info(f"Vector store opened at {self.records.db_path}")

    async def initialize(self) -> None:
        """Open the backing store once; concurrent callers share the work."""
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._open())
        task = self._init_task
        try:
            await task
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    # Read cache

    def _cache_put(self, vector: StoredVector) -> None:
        self._cache[vector.id] = vector
        self._cache.move_to_end(vector.id)
        while len(self._cache) > self.cache_max_items:
            self._cache.popitem(last=False)

    def _cache_get(self, vector_id: str) -> Optional[StoredVector]:
        vector = self._cache.get(vector_id)
        if vector is not None:
            self._cache.move_to_end(vector_id)
        return vector

    # Writes

    @staticmethod
    def _validate(vector: StoredVector) -> None:
        if not vector.id:
            raise InvalidInputError("Stored vector must have an id")
        if not vector.document_id:
            raise InvalidInputError(f"Stored vector {vector.id} must have a document_id")
        if not vector.vector:
            raise InvalidInputError(f"Stored vector {vector.id} has an empty vector")

    async def store(self, vector: StoredVector) -> None:
        """Store a single vector, replacing any record with the same id."""
        await self.store_batch([vector])

    async def store_batch(self, vectors: list[StoredVector]) -> None:
        """Store vectors in one transaction (upsert by id)."""
        for vector in vectors:
            self._validate(vector)

        await self.initialize()
        try:
            await self.records.put_many(
                [(v.id, v.to_dict(), v.document_id, v.timestamp) for v in vectors]
            )
        except Exception as e:
            log_failure(logger, "Storing vectors", e, {"count": len(vectors)})
            raise VectorStoreError(f"Failed to store {len(vectors)} vectors: {e}") from e

        for vector in vectors:
            self._cache_put(vector)

        logger.debug(f"Stored {len(vectors)} vectors")

    async def get(self, vector_id: str) -> Optional[StoredVector]:
        """Get a vector by id, or None."""
        await self.initialize()

        cached = self._cache_get(vector_id)
        if cached is not None:
            self.cache_hits += 1
            return cached
        self.cache_misses += 1

        try:
            data = await self.records.get(vector_id)
        except Exception as e:
            raise VectorStoreError(f"Failed to get vector {vector_id}: {e}") from e

        if data is None:
            return None
        vector = StoredVector.from_dict(data)
        self._cache_put(vector)
        return vector

    async def get_by_document(self, document_id: str) -> list[StoredVector]:
        """All vectors belonging to a document, in insertion order."""
        await self.initialize()
        try:
            rows = await self.records.get_by_index(document_id)
        except Exception as e:
            raise VectorStoreError(f"Failed to get vectors for {document_id}: {e}") from e
        return [StoredVector.from_dict(row) for row in rows]

    async def _all_vectors(self) -> list[StoredVector]:
        try:
            rows = await self.records.all()
        except Exception as e:
            raise VectorStoreError(f"Failed to scan vectors: {e}") from e
        return [StoredVector.from_dict(row) for row in rows]

    async def find_similar(
        self,
        query_vector: list[float],
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        document_id: Optional[str] = None,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> list[VectorMatch]:
        """Find stored vectors by cosine similarity to a query vector.

        Args:
            query_vector: Query embedding
            threshold: Minimum similarity to include
            top_k: Maximum number of results
            document_id: Restrict candidates to one document
            exclude_ids: Vector ids to skip

        Returns:
            Matches sorted by descending similarity

        Raises:
            InvalidInputError: If the query vector is empty
            DimensionMismatchError: If stored vectors differ in length from the query
        """
        if query_vector is None or len(query_vector) == 0:
            raise InvalidInputError("Query vector must not be empty")

        settings = get_settings()
        threshold = settings.default_similarity_threshold if threshold is None else threshold
        top_k = settings.default_top_k if top_k is None else top_k
        excluded = set(exclude_ids or ())

        await self.initialize()
        start_time = time.perf_counter()

        if document_id is not None:
            vectors = await self.get_by_document(document_id)
        else:
            vectors = await self._all_vectors()
        candidates = [v for v in vectors if v.id not in excluded]

        for candidate in candidates:
            if len(candidate.vector) != len(query_vector):
                raise DimensionMismatchError(len(query_vector), len(candidate.vector))

        matches: list[VectorMatch] = []
        if candidates and top_k > 0:
            matrix = np.asarray([c.vector for c in candidates], dtype=np.float64)
            scores = cosine_similarities(query_vector, matrix)

            for candidate, score in zip(candidates, scores.tolist()):
                if score >= threshold:
                    matches.append(
                        VectorMatch(
                            id=candidate.id,
                            document_id=candidate.document_id,
                            paragraph_id=candidate.paragraph_id,
                            text=candidate.text,
                            similarity=score,
                            metadata=candidate.metadata,
                        )
                    )

            matches.sort(key=lambda m: m.similarity, reverse=True)
            matches = matches[:top_k]

        duration_ms = (time.perf_counter() - start_time) * 1000
        self.total_searches += 1
        self.total_search_time_ms += duration_ms

        if duration_ms > SLOW_SEARCH_MS:
            log_warning(
                logger,
                "Similarity search",
                f"took {duration_ms:.2f}ms (target: <{SLOW_SEARCH_MS:.0f}ms)",
                {"vectors": len(candidates), "top_k": top_k},
            )
        logger.debug(f"Found {len(matches)} similar vectors in {duration_ms:.2f}ms")

        return matches

    async def delete(self, vector_id: str) -> bool:
        """Delete a vector by id; returns whether it existed."""
        await self.initialize()
        try:
            existed = await self.records.delete(vector_id)
        except Exception as e:
            raise VectorStoreError(f"Failed to delete vector {vector_id}: {e}") from e
        self._cache.pop(vector_id, None)
        return existed

    async def delete_by_document(self, document_id: str) -> int:
        """Delete every vector of a document; returns the number removed."""
        await self.initialize()
        try:
            ids = await self.records.keys_by_index(document_id)
            removed = await self.records.delete_many(ids)
        except Exception as e:
            raise VectorStoreError(f"Failed to delete vectors for {document_id}: {e}") from e

        for vector_id in ids:
            self._cache.pop(vector_id, None)

        logger.info(f"Deleted {removed} vectors for document: {document_id}")
        return removed

    async def replace_document(self, document_id: str, vectors: list[StoredVector]) -> int:
        """Make ``vectors`` the complete set of records for a document.

        New records are written before stale ones are removed, so a failed
        write leaves the previously stored records in place.

        Returns:
            Number of stale records removed
        """
        for vector in vectors:
            if vector.document_id != document_id:
                raise InvalidInputError(
                    f"Stored vector {vector.id} belongs to {vector.document_id}, not {document_id}"
                )

        await self.store_batch(vectors)

        keep = {vector.id for vector in vectors}
        try:
            stale = [
                key for key in await self.records.keys_by_index(document_id) if key not in keep
            ]
            removed = await self.records.delete_many(stale)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to remove stale vectors for {document_id}: {e}"
            ) from e

        for vector_id in stale:
            self._cache.pop(vector_id, None)

        logger.debug(f"Replaced vectors for {document_id}: {len(keep)} kept, {removed} removed")
        return removed

    async def clear(self) -> None:
        """Delete all vectors."""
        await self.initialize()
        try:
            await self.records.clear()
        except Exception as e:
            raise VectorStoreError(f"Failed to clear vectors: {e}") from e
        self._cache.clear()
        logger.info("Cleared all vectors")

    async def count(self) -> int:
        """Number of stored vectors."""
        await self.initialize()
        return await self.records.count()

    async def count_documents(self) -> int:
        """Number of distinct documents with stored vectors."""
        await self.initialize()
        return await self.records.count_distinct_index()

    async def get_stats(self) -> VectorStoreStats:
        """Get statistics about the vector store."""
        lookups = self.cache_hits + self.cache_misses
        return VectorStoreStats(
            total_vectors=await self.count(),
            cache_size=len(self._cache),
            cache_hit_rate=self.cache_hits / lookups if lookups else 0.0,
            total_searches=self.total_searches,
            average_search_time_ms=(
                self.total_search_time_ms / self.total_searches if self.total_searches else 0.0
            ),
        )

    # Metadata

    async def get_metadata(self, key: str) -> Any:
        """Get a bookkeeping value, or None."""
        await self.initialize()
        record = await self.metadata_store.get(key)
        return record["value"] if record else None

    async def set_metadata(self, key: str, value: Any) -> None:
        """Set a JSON-serialisable bookkeeping value."""
        await self.initialize()
        try:
            await self.metadata_store.put(key, {"key": key, "value": value})
        except Exception as e:
            raise VectorStoreError(f"Failed to set metadata {key}: {e}") from e

    async def dispose(self) -> None:
        """Drop cached state; the store reopens on next use."""
        self._cache.clear()
        self._ready = False
        self._init_task = None
