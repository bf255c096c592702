"""Tests for the vector store."""

import pytest

from lectio.models.rag import StoredVector
from lectio.rag.exceptions import DimensionMismatchError, InvalidInputError, VectorStoreError
from lectio.rag.storage import PersistentStore
from lectio.rag.vector_store import VectorStore


def _vector(vector_id, document_id, vector, text=None, **metadata):
    return StoredVector(
        id=vector_id,
        document_id=document_id,
        paragraph_id=vector_id,
        text=text or f"text of {vector_id}",
        vector=vector,
        metadata=metadata,
    )


@pytest.fixture
def corpus():
    return [
        _vector("a1", "A", [1.0, 0.0, 0.0]),
        _vector("a2", "A", [0.9, 0.3, 0.0]),
        _vector("b1", "B", [0.5, 0.5, 0.5]),
        _vector("b2", "B", [0.0, 1.0, 0.0]),
        _vector("c1", "C", [-1.0, 0.0, 0.0]),
    ]


class TestVectorStoreWrites:
    """Tests for storing, reading and deleting vectors."""

    @pytest.mark.asyncio
    async def test_store_and_get(self, vector_store):
        """Test storing and reading one vector."""
        record = _vector("v1", "doc", [0.1, 0.2], position=3)
        await vector_store.store(record)

        fetched = await vector_store.get("v1")
        assert fetched.id == "v1"
        assert fetched.vector == [0.1, 0.2]
        assert fetched.metadata == {"position": 3}
        assert await vector_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_store_is_upsert(self, vector_store):
        """Test storing an existing id replaces it."""
        await vector_store.store(_vector("v1", "doc", [1.0, 0.0], text="old"))
        await vector_store.store(_vector("v1", "doc", [0.0, 1.0], text="new"))

        assert await vector_store.count() == 1
        assert (await vector_store.get("v1")).text == "new"

    @pytest.mark.asyncio
    async def test_get_reads_from_disk_for_new_instance(self, tmp_path, corpus):
        """Test a fresh store reads records written earlier."""
        path = tmp_path / "vectors.db"
        await VectorStore(records=PersistentStore(path, "vectors")).store_batch(corpus)

        reopened = VectorStore(records=PersistentStore(path, "vectors"))
        assert (await reopened.get("b1")).document_id == "B"
        assert await reopened.count() == 5

    @pytest.mark.asyncio
    async def test_get_by_document(self, vector_store, corpus):
        """Test listing a document's vectors."""
        await vector_store.store_batch(corpus)

        records = await vector_store.get_by_document("A")

        assert [r.id for r in records] == ["a1", "a2"]
        assert await vector_store.get_by_document("Z") == []

    @pytest.mark.asyncio
    async def test_delete_by_document_cascades_exactly(self, vector_store, corpus):
        """Test deleting a document removes exactly its vectors."""
        await vector_store.store_batch(corpus)

        removed = await vector_store.delete_by_document("A")

        assert removed == 2
        assert await vector_store.get("a1") is None
        assert await vector_store.get("a2") is None
        assert await vector_store.count() == 3
        assert await vector_store.get_by_document("B") != []
        assert await vector_store.delete_by_document("A") == 0

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, vector_store, corpus):
        """Test deleting one vector and clearing the store."""
        await vector_store.store_batch(corpus)

        assert await vector_store.delete("c1") is True
        assert await vector_store.delete("c1") is False
        assert await vector_store.get("c1") is None

        await vector_store.clear()
        assert await vector_store.count() == 0
        assert await vector_store.get("a1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [
            StoredVector(id="", document_id="d", text="t", vector=[1.0]),
            StoredVector(id="v", document_id="", text="t", vector=[1.0]),
            StoredVector(id="v", document_id="d", text="t", vector=[]),
        ],
    )
    async def test_invalid_records_rejected(self, vector_store, record):
        """Test records without id, document or vector are rejected."""
        with pytest.raises(InvalidInputError):
            await vector_store.store(record)

    @pytest.mark.asyncio
    async def test_backing_store_failure_raises(self, vector_store, corpus):
        """Test a backing write failure raises VectorStoreError."""
        async def broken(records):
            raise OSError("disk full")

        vector_store.records.put_many = broken

        with pytest.raises(VectorStoreError):
            await vector_store.store_batch(corpus)

    @pytest.mark.asyncio
    async def test_replace_document_removes_stale_records(self, vector_store, corpus):
        """Test replacing a document keeps new records and drops the rest."""
        await vector_store.store_batch(corpus)

        removed = await vector_store.replace_document(
            "A", [_vector("a2", "A", [0.0, 0.0, 1.0], text="rewritten")]
        )

        assert removed == 1
        assert await vector_store.get("a1") is None
        assert [r.text for r in await vector_store.get_by_document("A")] == ["rewritten"]
        assert await vector_store.count() == 4

    @pytest.mark.asyncio
    async def test_failed_replace_keeps_previous_records(self, vector_store, corpus):
        """Test a failed write during replacement leaves the old records intact."""
        await vector_store.store_batch(corpus)

        async def broken(records):
            raise OSError("disk full")

        vector_store.records.put_many = broken

        with pytest.raises(VectorStoreError):
            await vector_store.replace_document("A", [_vector("a3", "A", [1.0, 1.0, 0.0])])

        assert [r.id for r in await vector_store.get_by_document("A")] == ["a1", "a2"]
        assert await vector_store.count() == 5

    @pytest.mark.asyncio
    async def test_replace_rejects_foreign_records(self, vector_store):
        """Test replacement refuses records that belong to another document."""
        with pytest.raises(InvalidInputError):
            await vector_store.replace_document("A", [_vector("b9", "B", [1.0])])
        assert await vector_store.count() == 0


class TestFindSimilar:
    """Tests for similarity queries."""

    @pytest.mark.asyncio
    async def test_sorted_and_thresholded(self, vector_store, corpus):
        """Test matches are sorted and meet the threshold."""
        await vector_store.store_batch(corpus)

        matches = await vector_store.find_similar([1.0, 0.0, 0.0], threshold=0.5, top_k=10)

        assert [m.id for m in matches] == ["a1", "a2", "b1"]
        scores = [m.similarity for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0.5 for score in scores)

    @pytest.mark.asyncio
    async def test_higher_threshold_returns_subset(self, vector_store, corpus):
        """Test a higher threshold returns a subset."""
        await vector_store.store_batch(corpus)
        query = [0.8, 0.4, 0.1]

        strict = await vector_store.find_similar(query, threshold=0.9, top_k=10)
        loose = await vector_store.find_similar(query, threshold=0.1, top_k=10)

        assert len(strict) <= len(loose)
        assert {m.id for m in strict} <= {m.id for m in loose}
        assert all(m.similarity >= 0.9 for m in strict)
        assert all(m.similarity >= 0.1 for m in loose)

    @pytest.mark.asyncio
    async def test_top_k_document_and_exclusions(self, vector_store, corpus):
        """Test top_k, document filter and excluded ids."""
        await vector_store.store_batch(corpus)
        query = [1.0, 0.0, 0.0]

        top_one = await vector_store.find_similar(query, threshold=-1.0, top_k=1)
        in_b = await vector_store.find_similar(query, threshold=-1.0, top_k=10, document_id="B")
        excluded = await vector_store.find_similar(
            query, threshold=-1.0, top_k=10, exclude_ids=["a1", "a2"]
        )

        assert [m.id for m in top_one] == ["a1"]
        assert {m.id for m in in_b} == {"b1", "b2"}
        assert "a1" not in {m.id for m in excluded}
        assert len(excluded) == 3

    @pytest.mark.asyncio
    async def test_nothing_meets_threshold(self, vector_store, corpus):
        """Test an unreachable threshold returns nothing."""
        await vector_store.store_batch(corpus)
        assert await vector_store.find_similar([0.0, 0.0, 1.0], threshold=0.99) == []

    @pytest.mark.asyncio
    async def test_empty_store(self, vector_store):
        """Test searching an empty store."""
        assert await vector_store.find_similar([1.0, 0.0]) == []

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, vector_store):
        """Test an empty query vector is rejected."""
        with pytest.raises(InvalidInputError):
            await vector_store.find_similar([])

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, vector_store, corpus):
        """Test a query of the wrong length is rejected."""
        await vector_store.store_batch(corpus)
        with pytest.raises(DimensionMismatchError):
            await vector_store.find_similar([1.0, 0.0])

    @pytest.mark.asyncio
    async def test_match_carries_metadata(self, vector_store):
        """Test matches carry the stored metadata."""
        await vector_store.store(_vector("v1", "doc", [1.0, 0.0], position=4))

        (match,) = await vector_store.find_similar([1.0, 0.0], threshold=0.0)

        assert match.document_id == "doc"
        assert match.paragraph_id == "v1"
        assert match.metadata == {"position": 4}
        assert match.similarity == pytest.approx(1.0)


class TestVectorStoreStats:
    """Tests for read cache, stats and metadata."""

    @pytest.mark.asyncio
    async def test_read_cache_is_bounded_lru(self, tmp_path, corpus):
        """Test the read cache is a bounded LRU."""
        store = VectorStore(
            records=PersistentStore(tmp_path / "vectors.db", "vectors"), cache_max_items=2
        )
        await store.store_batch(corpus)

        stats = await store.get_stats()
        assert stats.cache_size == 2

        await store.get("c1")
        await store.get("a1")
        stats = await store.get_stats()
        assert stats.cache_hit_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_zero_capacity_disables_read_cache(self, tmp_path, corpus):
        """Test an explicit zero cache capacity is honored."""
        store = VectorStore(
            records=PersistentStore(tmp_path / "vectors.db", "vectors"), cache_max_items=0
        )
        await store.store_batch(corpus)

        assert (await store.get("a1")).document_id == "A"
        stats = await store.get_stats()
        assert stats.cache_size == 0
        assert stats.cache_hit_rate == 0.0

    @pytest.mark.asyncio
    async def test_stats(self, vector_store, corpus):
        """Test search and cache statistics."""
        stats = await vector_store.get_stats()
        assert stats.total_vectors == 0
        assert stats.cache_hit_rate == 0
        assert stats.total_searches == 0

        await vector_store.store_batch(corpus)
        await vector_store.find_similar([1.0, 0.0, 0.0])
        await vector_store.find_similar([0.0, 1.0, 0.0])

        stats = await vector_store.get_stats()
        assert stats.total_vectors == 5
        assert stats.total_searches == 2
        assert stats.average_search_time_ms >= 0
        assert await vector_store.count_documents() == 3

    @pytest.mark.asyncio
    async def test_metadata_is_independent_of_vectors(self, vector_store, corpus):
        """Test metadata survives clearing vectors."""
        await vector_store.set_metadata("progress:A", {"indexed": 2, "status": "completed"})
        await vector_store.store_batch(corpus)
        await vector_store.clear()

        assert await vector_store.get_metadata("progress:A") == {
            "indexed": 2,
            "status": "completed",
        }
        assert await vector_store.get_metadata("unknown") is None

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, vector_store):
        """Test repeated initialization and dispose leave the store usable."""
        await vector_store.initialize()
        await vector_store.initialize()
        await vector_store.dispose()
        assert await vector_store.count() == 0
