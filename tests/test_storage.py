"""Tests for the SQLite persistent store."""

import pytest

from lectio.rag.storage import PersistentStore


@pytest.fixture
def store(tmp_path):
    return PersistentStore(tmp_path / "store.db", "records")


class TestPersistentStore:
    """Tests for the key-value collection."""

    def test_rejects_unsafe_collection_name(self, tmp_path):
        """Test collection names must be identifiers."""
        with pytest.raises(ValueError):
            PersistentStore(tmp_path / "x.db", "records; DROP TABLE x")

    @pytest.mark.asyncio
    async def test_initialize_creates_file(self, tmp_path):
        """Test initialization creates nested directories and can repeat."""
        store = PersistentStore(tmp_path / "nested" / "store.db", "records")
        await store.initialize()
        await store.initialize()
        assert store.db_path.exists()

    @pytest.mark.asyncio
    async def test_put_get_and_upsert(self, store):
        """Test put, get and replace by key."""
        await store.put("k1", {"value": 1}, index_key="doc")
        assert await store.get("k1") == {"value": 1}

        await store.put("k1", {"value": 2}, index_key="doc")
        assert await store.get("k1") == {"value": 2}
        assert await store.count() == 1
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_secondary_index(self, store):
        """Test lookups by secondary index key."""
        await store.put_many(
            [
                ("a1", {"n": 1}, "A", None),
                ("b1", {"n": 2}, "B", None),
                ("a2", {"n": 3}, "A", None),
            ]
        )

        assert await store.get_by_index("A") == [{"n": 1}, {"n": 3}]
        assert sorted(await store.keys_by_index("A")) == ["a1", "a2"]
        assert await store.count_distinct_index() == 2

    @pytest.mark.asyncio
    async def test_deletes(self, store):
        """Test deleting by key and by index key."""
        await store.put_many(
            [("a1", {}, "A", None), ("a2", {}, "A", None), ("b1", {}, "B", None)]
        )

        assert await store.delete("b1") is True
        assert await store.delete("b1") is False
        assert await store.delete_by_index("A") == 2
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_delete_many_and_clear(self, store):
        """Test bulk deletion and clearing."""
        await store.put_many([(f"k{i}", {}, None, None) for i in range(4)])

        assert await store.delete_many(["k0", "k1", "missing"]) == 2
        assert await store.delete_many([]) == 0

        await store.clear()
        assert await store.all() == []

    @pytest.mark.asyncio
    async def test_delete_older_than(self, store):
        """Test purging records older than a cutoff."""
        await store.put("old", {}, timestamp=100.0)
        await store.put("new", {}, timestamp=200.0)

        assert await store.delete_older_than(150.0) == 1
        assert await store.get("old") is None
        assert await store.get("new") == {}

    @pytest.mark.asyncio
    async def test_data_survives_new_instance(self, tmp_path):
        """Test records persist across store instances."""
        path = tmp_path / "store.db"
        await PersistentStore(path, "records").put("k", {"kept": True})

        assert await PersistentStore(path, "records").get("k") == {"kept": True}
