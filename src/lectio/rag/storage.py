"""SQLite-backed persistent key-value store.

Each collection is one table of JSON records keyed by a primary key, with an
optional secondary index key (e.g. document id) and a timestamp. Queries run
in a worker thread so callers on the event loop suspend instead of blocking.
"""

import asyncio
import json
import re
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Union

_COLLECTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Record = tuple[str, dict[str, Any], Optional[str], Optional[float]]


class PersistentStore:
    """Durable key-value collection with a secondary index."""

    def __init__(self, db_path: Union[Path, str], collection: str):
        """Initialize the store.

        Args:
            db_path: SQLite database file
            collection: Table name for this collection
        """
        if not _COLLECTION_NAME.match(collection):
            raise ValueError(f"Invalid collection name: {collection!r}")
        self.db_path = Path(db_path)
        self.collection = collection
        self._initialized = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create the table and indexes."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.collection} (
                    key TEXT PRIMARY KEY,
                    index_key TEXT,
                    value TEXT NOT NULL,
                    timestamp REAL NOT NULL
                )
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS idx_{self.collection}_index_key
                ON {self.collection}(index_key)
                """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS idx_{self.collection}_timestamp
                ON {self.collection}(timestamp)
                """
            )

    async def initialize(self) -> None:
        """Create the backing table if needed (idempotent)."""
        if self._initialized:
            return
        await asyncio.to_thread(self._init_db)
        self._initialized = True

    async def _run(self, func, *args):
        if not self._initialized:
            await self.initialize()
        return await asyncio.to_thread(func, *args)

    # Reads

    def _get(self, key: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT value FROM {self.collection} WHERE key = ?", (key,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Get a record by key, or None."""
        return await self._run(self._get, key)

    def _get_by_index(self, index_key: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT value FROM {self.collection} WHERE index_key = ? ORDER BY rowid",
                (index_key,),
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    async def get_by_index(self, index_key: str) -> list[dict[str, Any]]:
        """Get all records sharing a secondary index key."""
        return await self._run(self._get_by_index, index_key)

    def _all(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT value FROM {self.collection} ORDER BY rowid").fetchall()
        return [json.loads(row[0]) for row in rows]

    async def all(self) -> list[dict[str, Any]]:
        """Get every record in the collection."""
        return await self._run(self._all)

    def _keys_by_index(self, index_key: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT key FROM {self.collection} WHERE index_key = ?", (index_key,)
            ).fetchall()
        return [row[0] for row in rows]

    async def keys_by_index(self, index_key: str) -> list[str]:
        """Get the primary keys of records sharing a secondary index key."""
        return await self._run(self._keys_by_index, index_key)

    def _count(self) -> int:
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self.collection}").fetchone()[0]

    async def count(self) -> int:
        """Number of records in the collection."""
        return await self._run(self._count)

    def _count_distinct_index(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                f"SELECT COUNT(DISTINCT index_key) FROM {self.collection} "
                "WHERE index_key IS NOT NULL"
            ).fetchone()[0]

    async def count_distinct_index(self) -> int:
        """Number of distinct secondary index keys."""
        return await self._run(self._count_distinct_index)

    # Writes

    def _put_many(self, records: list[Record]) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.executemany(
                f"""
                INSERT OR REPLACE INTO {self.collection} (key, index_key, value, timestamp)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (key, index_key, json.dumps(value), timestamp if timestamp is not None else now)
                    for key, value, index_key, timestamp in records
                ],
            )

    async def put(
        self,
        key: str,
        value: dict[str, Any],
        index_key: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> None:
        """Insert or replace a record."""
        await self._run(self._put_many, [(key, value, index_key, timestamp)])

    async def put_many(self, records: list[Record]) -> None:
        """Insert or replace several records in one transaction."""
        if records:
            await self._run(self._put_many, records)

    def _delete_many(self, keys: list[str]) -> int:
        with self._connect() as conn:
            cursor = conn.executemany(
                f"DELETE FROM {self.collection} WHERE key = ?", [(key,) for key in keys]
            )
            return cursor.rowcount

    async def delete(self, key: str) -> bool:
        """Delete a record; returns whether it existed."""
        return await self._run(self._delete_many, [key]) > 0

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several records in one transaction."""
        if not keys:
            return 0
        return await self._run(self._delete_many, keys)

    def _delete_by_index(self, index_key: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.collection} WHERE index_key = ?", (index_key,)
            )
            return cursor.rowcount

    async def delete_by_index(self, index_key: str) -> int:
        """Delete all records sharing a secondary index key."""
        return await self._run(self._delete_by_index, index_key)

    def _delete_older_than(self, cutoff: float) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.collection} WHERE timestamp < ?", (cutoff,)
            )
            return cursor.rowcount

    async def delete_older_than(self, cutoff: float) -> int:
        """Delete records whose timestamp is before ``cutoff``."""
        return await self._run(self._delete_older_than, cutoff)

    def _clear(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self.collection}")

    async def clear(self) -> None:
        """Delete every record in the collection."""
        await self._run(self._clear)
