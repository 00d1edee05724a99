"""
Per-user, per-day sharded persistence of the receipt log.

Layout under ``users/{uid}``::

    receipts_by_date/{dayId}               {date, itemCount, lastUpdated}
    receipts_by_date/{dayId}/items/{pos}   one receipt, positions start at 0
    metadata/settings                      tagged and untagged bounties

New receipts are appended after the positions already occupied for their
day, so stored items are never overwritten. Writes go through
``ChunkedBatchWriter``, which commits before a batch reaches the store's
per-commit ceiling and pauses between commits to stay under write-rate
limits.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from .date_keys import normalize_date_to_day, date_key_to_doc_id, has_timestamp, require_timestamp
from .document_store import DocumentStore, DocumentSnapshot, doc_path
from .errors import StorageError, ValidationError
from .models import Receipt, MetadataDocument, UserProfile
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

USERS = "users"
RECEIPTS_BY_DATE = "receipts_by_date"
ITEMS = "items"
METADATA = "metadata"
SETTINGS = "settings"

DEFAULT_BATCH_SIZE = 450  # headroom under the 500-operation commit ceiling
DEFAULT_DELETE_BATCH_SIZE = 499
DEFAULT_PAUSE_SECONDS = 0.1
DEFAULT_PARALLEL_CHUNK_SIZE = 10


@dataclass
class PersistResult:
    """What a persist call wrote."""
    written: int = 0
    skipped_missing_date: int = 0
    buckets_touched: int = 0
    batches_committed: int = 0


class ChunkedBatchWriter:
    """Splits a stream of writes into batches no larger than ``batch_size``."""

    def __init__(self, store: DocumentStore, batch_size: int, pause_seconds: float = 0.0):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = min(batch_size, store.max_batch_operations)
        self.pause_seconds = pause_seconds
        self.batches_committed = 0
        self._batch = store.batch()

    async def set(self, path: str, data: Dict, merge: bool = False) -> None:
        self._batch.set(path, data, merge=merge)
        await self._commit_if_full()

    async def delete(self, path: str) -> None:
        self._batch.delete(path)
        await self._commit_if_full()

    async def flush(self) -> None:
        """Commit whatever is pending."""
        if len(self._batch) > 0:
            await self._commit()

    async def _commit_if_full(self) -> None:
        if len(self._batch) >= self.batch_size:
            await self._commit()
            if self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)

    async def _commit(self) -> None:
        operations = len(self._batch)
        await self._batch.commit()
        self.batches_committed += 1
        logger.debug(f"Committed batch {self.batches_committed} with {operations} operations")
        self._batch = self.store.batch()


class ShardedReceiptStore:
    """Maps one user's receipt log onto day-bucket shards."""

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delete_batch_size: int = DEFAULT_DELETE_BATCH_SIZE,
        pause_seconds: float = DEFAULT_PAUSE_SECONDS,
        parallel_chunk_size: int = DEFAULT_PARALLEL_CHUNK_SIZE,
    ):
        if not user_id:
            raise ValueError("user_id is required")
        if parallel_chunk_size <= 0:
            raise ValueError("parallel_chunk_size must be positive")
        self.store = store
        self.user_id = user_id
        self.batch_size = batch_size
        self.delete_batch_size = delete_batch_size
        self.pause_seconds = pause_seconds
        self.parallel_chunk_size = parallel_chunk_size

    # Paths

    @property
    def profile_path(self) -> str:
        return doc_path(USERS, self.user_id)

    @property
    def buckets_collection(self) -> str:
        return doc_path(USERS, self.user_id, RECEIPTS_BY_DATE)

    @property
    def metadata_path(self) -> str:
        return doc_path(USERS, self.user_id, METADATA, SETTINGS)

    def bucket_path(self, day_id: str) -> str:
        return doc_path(USERS, self.user_id, RECEIPTS_BY_DATE, day_id)

    def items_collection(self, day_id: str) -> str:
        return doc_path(USERS, self.user_id, RECEIPTS_BY_DATE, day_id, ITEMS)

    def item_path(self, day_id: str, position: int) -> str:
        return doc_path(USERS, self.user_id, RECEIPTS_BY_DATE, day_id, ITEMS, str(position))

    # Writes

    async def persist_new(
        self,
        new_receipts: Sequence[Receipt],
        existing_before_add: Sequence[Receipt],
        metadata: Optional[MetadataDocument] = None,
    ) -> PersistResult:
        """Append newly added receipts to their day buckets.

        Args:
            new_receipts: Receipts just added to the log, in log order
            existing_before_add: The log as it was before they were added
            metadata: Bounty metadata to write in the final batch, if any

        Raises:
            StorageError: If any commit fails
        """
        result = PersistResult()
        base_index = len(existing_before_add)

        groups: Dict[str, List[Tuple[Receipt, int]]] = {}
        for index, receipt in enumerate(new_receipts):
            try:
                date_key = normalize_date_to_day(require_timestamp(receipt.timestamp))
            except ValidationError:
                logger.error(f"Skipping receipt with missing date during save: {receipt!r}")
                result.skipped_missing_date += 1
                continue
            groups.setdefault(date_key, []).append((receipt, base_index + index))

        if result.skipped_missing_date:
            logger.warning(f"Skipped {result.skipped_missing_date} receipts with missing dates")

        existing_counts = Counter(
            normalize_date_to_day(r.timestamp)
            for r in existing_before_add
            if has_timestamp(r.timestamp)
        )

        writer = ChunkedBatchWriter(self.store, self.batch_size, self.pause_seconds)
        now_iso = datetime.now().isoformat()

        try:
            for date_key, group in groups.items():
                day_id = date_key_to_doc_id(date_key)
                existing_for_date = existing_counts.get(date_key, 0)

                await writer.set(self.bucket_path(day_id), {
                    "date": date_key,
                    "itemCount": existing_for_date + len(group),
                    "lastUpdated": now_iso,
                }, merge=True)

                for offset, (receipt, original_index) in enumerate(group):
                    document = receipt.to_document()
                    document["originalIndex"] = original_index
                    await writer.set(self.item_path(day_id, existing_for_date + offset), document)
                    result.written += 1

            if metadata is not None:
                await writer.set(self.metadata_path, metadata.to_document(), merge=True)

            await writer.flush()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to persist receipts for user {self.user_id}: {e}") from e

        result.buckets_touched = len(groups)
        result.batches_committed = writer.batches_committed
        logger.info(
            f"Persisted {result.written} receipts into {result.buckets_touched} day buckets "
            f"({result.batches_committed} batches)"
        )
        return result

    async def save_metadata(self, metadata: MetadataDocument) -> None:
        try:
            await self.store.set(self.metadata_path, metadata.to_document(), merge=True)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save metadata: {e}", path=self.metadata_path) from e

    # Reads

    async def has_buckets(self) -> bool:
        return bool(await self._list(self.buckets_collection))

    async def load_all(self) -> List[Receipt]:
        """Load every stored receipt.

        Buckets are fetched concurrently. Within a bucket receipts come back in
        position order; the order of buckets relative to each other is not
        meaningful.
        """
        buckets = await self._list(self.buckets_collection)
        logger.info(f"Found {len(buckets)} day buckets for user {self.user_id}")

        per_bucket = await asyncio.gather(*(self._load_bucket(b.id) for b in buckets))
        receipts = [receipt for bucket in per_bucket for receipt in bucket]

        logger.info(f"Total receipts loaded: {len(receipts)}")
        return receipts

    async def _load_bucket(self, day_id: str) -> List[Receipt]:
        items = await self._list(self.items_collection(day_id))
        items.sort(key=_position_key)

        receipts = []
        for item in items:
            try:
                receipts.append(Receipt.model_validate(item.data))
            except PydanticValidationError as e:
                logger.warning(f"Skipping unreadable receipt {item.path}: {e}")
        logger.debug(f"Loaded {len(receipts)} items from {day_id}")
        return receipts

    async def load_metadata(self) -> MetadataDocument:
        data = await self._get(self.metadata_path)
        if data is None:
            return MetadataDocument()
        return MetadataDocument.model_validate(data)

    async def load_profile(self) -> Optional[UserProfile]:
        data = await self._get(self.profile_path)
        if data is None:
            return None
        return UserProfile(id=self.user_id, username=data.get("username", ""), email=data.get("email"))

    # Bulk delete

    async def clear_all(self, progress: Optional[ProgressTracker] = None) -> int:
        """Delete every day bucket and reset the metadata document.

        Buckets are processed in groups of ``parallel_chunk_size``: groups run
        one after another, buckets within a group run concurrently. Each
        bucket's items are deleted before the bucket document itself.

        Returns:
            Number of buckets deleted

        Raises:
            StorageError: If any enumeration or delete fails
        """
        progress = progress or ProgressTracker()
        buckets = await self._list(self.buckets_collection)
        total = len(buckets)
        progress.start(total)
        logger.info(f"Clearing {total} day buckets for user {self.user_id}")

        chunks = [
            buckets[i:i + self.parallel_chunk_size]
            for i in range(0, total, self.parallel_chunk_size)
        ]

        for chunk_index, chunk in enumerate(chunks):
            logger.debug(f"Chunk {chunk_index + 1}/{len(chunks)}: {len(chunk)} dates")
            results = await asyncio.gather(
                *(self._delete_bucket(bucket, progress) for bucket in chunk),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                error = failures[0]
                if isinstance(error, StorageError):
                    raise error
                raise StorageError(f"Failed to clear day buckets: {error}") from error

        try:
            await self.store.set(self.metadata_path, MetadataDocument().to_document())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to reset metadata: {e}", path=self.metadata_path) from e

        progress.finish()
        logger.info(f"Cleared {total} day buckets for user {self.user_id}")
        return total

    async def _delete_bucket(self, bucket: DocumentSnapshot, progress: ProgressTracker) -> None:
        items = await self._list(self.items_collection(bucket.id))
        writer = ChunkedBatchWriter(self.store, self.delete_batch_size)
        try:
            for item in items:
                await writer.delete(item.path)
            await writer.delete(bucket.path)
            await writer.flush()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete bucket {bucket.id}: {e}", path=bucket.path) from e

        progress.advance()
        logger.debug(f"Deleted {bucket.id} ({progress.current}/{progress.total})")

    # Store access with uniform error wrapping

    async def _list(self, collection_path: str) -> List[DocumentSnapshot]:
        try:
            return await self.store.list_documents(collection_path)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list {collection_path}: {e}", path=collection_path) from e

    async def _get(self, path: str) -> Optional[Dict]:
        try:
            return await self.store.get(path)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read {path}: {e}", path=path) from e


def _position_key(item: DocumentSnapshot):
    return (0, int(item.id), "") if item.id.isdigit() else (1, 0, item.id)
