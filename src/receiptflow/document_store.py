"""
Hierarchical document store used as the durable mirror of the receipt log.

Documents live at ``/``-joined paths alternating collection and document ids
(``users/{uid}/receipts_by_date/{dayId}``). A collection is enumerated by its
path; sub-collections exist independently of their parent document. Writes
can be grouped into atomic batches, which the store caps at a fixed number of
operations.

Two implementations are provided: an in-memory store (tests, local runs and
anonymous demos) and a PostgreSQL store keeping every document in one JSONB
table behind an asyncpg pool.
"""

import os
import json
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from .errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_OPERATIONS = 500


def doc_path(*segments: str) -> str:
    """Join path segments, rejecting empty segments and embedded slashes."""
    for segment in segments:
        if not segment or "/" in str(segment):
            raise ValueError(f"Invalid path segment: {segment!r}")
    return "/".join(str(s) for s in segments)


def split_path(path: str) -> Tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    parent, _, doc_id = path.rpartition("/")
    if not parent or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return parent, doc_id


@dataclass
class DocumentSnapshot:
    """A document read from a collection listing."""
    id: str
    path: str
    data: Dict[str, Any]


# (kind, path, data, merge)
BatchOperation = Tuple[str, str, Optional[Dict[str, Any]], bool]


class WriteBatch:
    """Accumulates set/delete operations and commits them atomically."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._operations: List[BatchOperation] = []
        self._committed = False

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._operations.append(("set", path, data, merge))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self._operations.append(("delete", path, None, False))
        return self

    def __len__(self) -> int:
        return len(self._operations)

    async def commit(self) -> None:
        if self._committed:
            raise StorageError("Batch already committed")
        if len(self._operations) > self._store.max_batch_operations:
            raise StorageError(
                f"Batch of {len(self._operations)} operations exceeds the store limit "
                f"of {self._store.max_batch_operations}"
            )
        await self._store._commit_batch(list(self._operations))
        self._committed = True


class DocumentStore(ABC):
    """Async interface to a hierarchical document store."""

    max_batch_operations: int = DEFAULT_MAX_BATCH_OPERATIONS

    async def initialize(self) -> None:
        """Prepare connections/schema. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the document at ``path`` or None if it does not exist."""

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Create or replace a document; ``merge`` updates top-level fields only."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""

    @abstractmethod
    async def list_documents(self, collection_path: str) -> List[DocumentSnapshot]:
        """List the documents directly inside a collection, ordered by id."""

    @abstractmethod
    async def _commit_batch(self, operations: List[BatchOperation]) -> None:
        """Apply all operations atomically."""

    def batch(self) -> WriteBatch:
        return WriteBatch(self)


class InMemoryDocumentStore(DocumentStore):
    """Process-local document store with the same batch ceiling as the remote one."""

    def __init__(self, max_batch_operations: int = DEFAULT_MAX_BATCH_OPERATIONS):
        self.max_batch_operations = max_batch_operations
        # collection path -> {doc id -> data}
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.stats = {
            "reads": 0,
            "writes": 0,
            "deletes": 0,
            "batches_committed": 0,
        }

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        parent, doc_id = split_path(path)
        self.stats["reads"] += 1
        data = self._collections.get(parent, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._apply_set(path, data, merge)

    async def delete(self, path: str) -> None:
        self._apply_delete(path)

    async def list_documents(self, collection_path: str) -> List[DocumentSnapshot]:
        self.stats["reads"] += 1
        docs = self._collections.get(collection_path, {})
        return [
            DocumentSnapshot(id=doc_id, path=f"{collection_path}/{doc_id}", data=copy.deepcopy(data))
            for doc_id, data in sorted(docs.items())
        ]

    async def _commit_batch(self, operations: List[BatchOperation]) -> None:
        # Validate every path before touching state so a bad batch applies nothing
        for _, path, _, _ in operations:
            split_path(path)
        for kind, path, data, merge in operations:
            if kind == "set":
                self._apply_set(path, data, merge)
            else:
                self._apply_delete(path)
        self.stats["batches_committed"] += 1

    def _apply_set(self, path: str, data: Dict[str, Any], merge: bool) -> None:
        parent, doc_id = split_path(path)
        collection = self._collections.setdefault(parent, {})
        if merge and doc_id in collection:
            collection[doc_id].update(copy.deepcopy(data))
        else:
            collection[doc_id] = copy.deepcopy(data)
        self.stats["writes"] += 1

    def _apply_delete(self, path: str) -> None:
        parent, doc_id = split_path(path)
        collection = self._collections.get(parent)
        if collection is not None:
            collection.pop(doc_id, None)
            if not collection:
                del self._collections[parent]
        self.stats["deletes"] += 1

    def document_count(self) -> int:
        """Total number of stored documents (useful for testing)."""
        return sum(len(docs) for docs in self._collections.values())


class PostgresDocumentStore(DocumentStore):
    """PostgreSQL-backed document store (one JSONB row per document)."""

    def __init__(
        self,
        database_url: str = None,
        pool_size: int = 10,
        max_batch_operations: int = DEFAULT_MAX_BATCH_OPERATIONS,
    ):
        """Initialize store settings; the pool is created lazily."""
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self.pool_size = pool_size
        self.max_batch_operations = max_batch_operations
        self._pool = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Initialize database connection pool and schema."""
        async with self._init_lock:
            if self._initialized:
                return

            if not self.database_url:
                raise ValueError("DATABASE_URL environment variable is required")

            try:
                self._pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=20,
                    statement_cache_size=0,  # Required for pgbouncer compatibility
                    server_settings={
                        'application_name': 'receiptflow',
                        'timezone': 'UTC'
                    }
                )

                async with self._pool.acquire() as conn:
                    await self._ensure_schema(conn)

                logger.info(f"PostgreSQL document store initialized with pool size {self.pool_size}")
                self._initialized = True

            except (asyncpg.PostgresError, OSError) as e:
                logger.error(f"Failed to initialize PostgreSQL document store: {e}")
                raise StorageError(f"Failed to initialize document store: {e}") from e

    async def _ensure_schema(self, conn):
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                parent TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data JSONB NOT NULL DEFAULT '{}'::jsonb,
                updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents (parent, doc_id)"
        )

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("PostgreSQL document store pool closed")

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self._initialized:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.get_connection() as conn:
                raw = await conn.fetchval("SELECT data FROM documents WHERE path = $1", path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to read {path}: {e}", path=path) from e
        return self._decode(raw)

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        try:
            async with self.get_connection() as conn:
                await self._execute_set(conn, path, data, merge)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to write {path}: {e}", path=path) from e

    async def delete(self, path: str) -> None:
        try:
            async with self.get_connection() as conn:
                await conn.execute("DELETE FROM documents WHERE path = $1", path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to delete {path}: {e}", path=path) from e

    async def list_documents(self, collection_path: str) -> List[DocumentSnapshot]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch('''
                    SELECT doc_id, path, data FROM documents
                    WHERE parent = $1
                    ORDER BY doc_id
                ''', collection_path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to list {collection_path}: {e}", path=collection_path) from e
        return [
            DocumentSnapshot(id=row["doc_id"], path=row["path"], data=self._decode(row["data"]))
            for row in rows
        ]

    async def _commit_batch(self, operations: List[BatchOperation]) -> None:
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    for kind, path, data, merge in operations:
                        if kind == "set":
                            await self._execute_set(conn, path, data, merge)
                        else:
                            await conn.execute("DELETE FROM documents WHERE path = $1", path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Failed to commit batch of {len(operations)} operations: {e}") from e

    async def _execute_set(self, conn, path: str, data: Dict[str, Any], merge: bool) -> None:
        parent, doc_id = split_path(path)
        if merge:
            conflict = "data = documents.data || EXCLUDED.data"
        else:
            conflict = "data = EXCLUDED.data"
        await conn.execute(f'''
            INSERT INTO documents (path, parent, doc_id, data, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, CURRENT_TIMESTAMP)
            ON CONFLICT (path) DO UPDATE SET {conflict}, updated_at = CURRENT_TIMESTAMP
        ''', path, parent, doc_id, json.dumps(data))

    @staticmethod
    def _decode(raw) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        if isinstance(raw, str):
            return json.loads(raw)
        return dict(raw)
