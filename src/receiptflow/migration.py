"""
Storage-shape detection and one-time migration into day-bucket shards.

Earlier revisions stored a user's receipts in other shapes. On every session
start the current shape is detected and, if needed, the data is rewritten
into the sharded layout exactly once:

    CURRENT      users/{uid}/receipts_by_date/* exists      nothing to do
    LEGACY_FLAT  users/{uid}/receipts/* (one doc per event)  convert, delete docs
    LEGACY_BLOB  userData/{uid} (whole log inline)           convert, delete doc
    LOCAL_ONLY   local cache from an anonymous session       convert, clear cache
    EMPTY        none of the above                           nothing to do

A migration records its progress in ``metadata/settings``:

    migrationSource    shape being converted, written before the first bucket
    migrationComplete  false until the final conversion batch sets it

Buckets with an incomplete marker are the remains of an interrupted
conversion, which is re-run from the untouched source (conversion is
deterministic, so items land on the same positions). A complete marker
with the source still present means only the removal was interrupted.
The marker is cleared once the source is gone.

The converted data is always written before the source is removed, and
only entries that were converted are removed. Entries that cannot be read
stay in the legacy location.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .document_store import DocumentStore, doc_path
from .errors import StorageError
from .local_cache import LocalCache
from .models import Receipt, MetadataDocument, MigrationOutcome
from .receipt_store import ShardedReceiptStore, ChunkedBatchWriter, USERS

logger = logging.getLogger(__name__)

LEGACY_RECEIPTS = "receipts"
LEGACY_USER_DATA = "userData"


class StorageShape(str, Enum):
    CURRENT = "current"
    LEGACY_FLAT = "legacy_flat"
    LEGACY_BLOB = "legacy_blob"
    LOCAL_ONLY = "local_only"
    EMPTY = "empty"


MIGRATABLE_SHAPES = (StorageShape.LEGACY_FLAT, StorageShape.LEGACY_BLOB, StorageShape.LOCAL_ONLY)


def _migratable(value: Optional[str]) -> Optional[StorageShape]:
    for shape in MIGRATABLE_SHAPES:
        if shape.value == value:
            return shape
    return None


@dataclass(frozen=True)
class StorageFacts:
    """Observed storage facts for one user.

    Inspection stops at the first shape found, so fields for later shapes are
    left at their defaults once an earlier one matched.
    """
    has_buckets: bool = False
    legacy_flat_count: int = 0
    has_legacy_blob: bool = False
    has_local_cache: bool = False
    migration_source: Optional[str] = None
    migration_complete: bool = False


def detect_shape(facts: StorageFacts) -> StorageShape:
    """Pick the storage shape; first match wins.

    Buckets left by an unfinished conversion report the shape being
    converted, so the conversion is resumed.
    """
    if facts.has_buckets:
        interrupted = _migratable(facts.migration_source)
        if interrupted is not None and not facts.migration_complete:
            return interrupted
        return StorageShape.CURRENT
    if facts.legacy_flat_count > 0:
        return StorageShape.LEGACY_FLAT
    if facts.has_legacy_blob:
        return StorageShape.LEGACY_BLOB
    if facts.has_local_cache:
        return StorageShape.LOCAL_ONLY
    return StorageShape.EMPTY


@dataclass
class LegacySource:
    """Everything read from one legacy shape."""
    receipts: List[Receipt] = field(default_factory=list)
    metadata: MetadataDocument = field(default_factory=MetadataDocument)
    converted_paths: List[str] = field(default_factory=list)
    unreadable: List[Any] = field(default_factory=list)


class MigrationEngine:
    """Brings a user's stored data into the current sharded shape."""

    def __init__(
        self,
        document_store: DocumentStore,
        local_cache: Optional[LocalCache] = None,
        **store_options,
    ):
        """
        Args:
            document_store: Remote store holding every shape
            local_cache: Cache of a prior anonymous session, if any
            store_options: Batch/pacing options for ShardedReceiptStore
        """
        self.document_store = document_store
        self.local_cache = local_cache
        self.store_options = store_options

    def _receipt_store(self, user_id: str) -> ShardedReceiptStore:
        return ShardedReceiptStore(self.document_store, user_id, **self.store_options)

    def _legacy_flat_collection(self, user_id: str) -> str:
        return doc_path(USERS, user_id, LEGACY_RECEIPTS)

    def _legacy_blob_path(self, user_id: str) -> str:
        return doc_path(LEGACY_USER_DATA, user_id)

    async def inspect(self, user_id: str) -> StorageFacts:
        receipt_store = self._receipt_store(user_id)
        try:
            if await receipt_store.has_buckets():
                metadata = await receipt_store.load_metadata()
                return StorageFacts(
                    has_buckets=True,
                    migration_source=metadata.migration_source,
                    migration_complete=bool(metadata.migration_complete),
                )

            flat_docs = await self.document_store.list_documents(self._legacy_flat_collection(user_id))
            if flat_docs:
                return StorageFacts(legacy_flat_count=len(flat_docs))

            if await self.document_store.get(self._legacy_blob_path(user_id)) is not None:
                return StorageFacts(has_legacy_blob=True)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to inspect storage shape for user {user_id}: {e}") from e

        has_local = self.local_cache is not None and self.local_cache.exists()
        return StorageFacts(has_local_cache=has_local)

    async def ensure_current_shape(self, user_id: str) -> MigrationOutcome:
        """Detect the user's storage shape and migrate it if needed.

        Raises:
            StorageError: If inspecting, writing or removing the source fails.
                The source is only touched after the conversion completed,
                and the next call picks up where this one stopped.
        """
        facts = await self.inspect(user_id)
        shape = detect_shape(facts)
        logger.info(f"Storage shape for user {user_id}: {shape.value}")

        if shape in MIGRATABLE_SHAPES:
            if facts.has_buckets:
                logger.warning(f"Resuming interrupted migration from {shape.value} for user {user_id}")
            return await self._migrate(user_id, shape)

        converted_from = _migratable(facts.migration_source)
        if shape == StorageShape.CURRENT and converted_from is not None:
            logger.warning(f"Finishing removal of {converted_from.value} source for user {user_id}")
            source = await self._read_source(user_id, converted_from)
            removed = await self._remove_source(user_id, converted_from, source)
            await self._clear_marker(user_id)
            return MigrationOutcome(
                migrated=False,
                event_count=0,
                source_shape=converted_from.value,
                source_removed=removed,
                unreadable=len(source.unreadable),
            )

        return MigrationOutcome(migrated=False, event_count=0, source_shape=shape.value)

    async def _migrate(self, user_id: str, shape: StorageShape) -> MigrationOutcome:
        logger.info(f"Migrating from {shape.value}...")
        receipt_store = self._receipt_store(user_id)
        source = await self._read_source(user_id, shape)

        await self._write_marker(user_id, shape, complete=False)

        # The completion marker rides in the final conversion batch
        metadata = source.metadata.model_copy(update={
            "migration_source": shape.value,
            "migration_complete": True,
        })
        result = await receipt_store.persist_new(source.receipts, [], metadata=metadata)

        removed = await self._remove_source(user_id, shape, source)
        await self._clear_marker(user_id)

        logger.info(f"Migrated {result.written} receipts from {shape.value}")
        return MigrationOutcome(
            migrated=True,
            event_count=result.written,
            source_shape=shape.value,
            skipped_missing_date=result.skipped_missing_date,
            source_removed=removed,
            unreadable=len(source.unreadable),
        )

    # Sources

    async def _read_source(self, user_id: str, shape: StorageShape) -> LegacySource:
        try:
            if shape == StorageShape.LEGACY_FLAT:
                return await self._read_legacy_flat(user_id)
            if shape == StorageShape.LEGACY_BLOB:
                return await self._read_legacy_blob(user_id)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read {shape.value} data for user {user_id}: {e}") from e

        if self.local_cache is None:
            return LegacySource()
        snapshot = self.local_cache.load()
        return LegacySource(receipts=list(snapshot.receipts), metadata=snapshot.metadata())

    async def _read_legacy_flat(self, user_id: str) -> LegacySource:
        flat_docs = await self.document_store.list_documents(self._legacy_flat_collection(user_id))
        source = LegacySource(metadata=await self._receipt_store(user_id).load_metadata())
        for doc in flat_docs:
            receipt = _decode_receipt(doc.data)
            if receipt is None:
                source.unreadable.append(doc.path)
                continue
            source.receipts.append(receipt)
            source.converted_paths.append(doc.path)
        return source

    async def _read_legacy_blob(self, user_id: str) -> LegacySource:
        data = await self.document_store.get(self._legacy_blob_path(user_id)) or {}
        receipts, unreadable = _decode_receipts(data.get("receipts") or [])
        return LegacySource(receipts=receipts, metadata=_decode_metadata(data), unreadable=unreadable)

    async def _remove_source(self, user_id: str, shape: StorageShape, source: LegacySource) -> bool:
        """Remove what was converted; returns False when unreadable entries were kept."""
        if source.unreadable:
            logger.warning(
                f"Keeping {len(source.unreadable)} unreadable {shape.value} entries for user {user_id}"
            )

        if shape == StorageShape.LOCAL_ONLY:
            if self.local_cache is not None:
                self.local_cache.clear()
            return True

        receipt_store = self._receipt_store(user_id)
        try:
            if shape == StorageShape.LEGACY_FLAT:
                writer = ChunkedBatchWriter(
                    self.document_store, receipt_store.delete_batch_size, receipt_store.pause_seconds
                )
                for path in source.converted_paths:
                    await writer.delete(path)
                await writer.flush()
            elif source.unreadable:
                # Only what could not be converted stays in the legacy document
                await self.document_store.set(self._legacy_blob_path(user_id), {"receipts": source.unreadable})
            else:
                await self.document_store.delete(self._legacy_blob_path(user_id))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Migrated data written but {shape.value} source not removed: {e}") from e

        return not source.unreadable

    # Marker

    async def _write_marker(self, user_id: str, shape: StorageShape, complete: bool) -> None:
        await self._set_metadata_fields(user_id, {
            "migrationSource": shape.value,
            "migrationComplete": complete,
        })

    async def _clear_marker(self, user_id: str) -> None:
        await self._set_metadata_fields(user_id, {"migrationSource": None, "migrationComplete": None})

    async def _set_metadata_fields(self, user_id: str, fields: Dict[str, Any]) -> None:
        path = self._receipt_store(user_id).metadata_path
        try:
            await self.document_store.set(path, fields, merge=True)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to record migration state: {e}", path=path) from e


def _decode_receipt(item: Any) -> Optional[Receipt]:
    if not isinstance(item, dict):
        logger.warning(f"Skipping legacy receipt that is not an object: {item!r}")
        return None
    try:
        return Receipt.model_validate(item)
    except PydanticValidationError as e:
        logger.warning(f"Skipping unreadable legacy receipt: {e}")
        return None


def _decode_receipts(items: Iterable[Any]) -> Tuple[List[Receipt], List[Any]]:
    receipts, unreadable = [], []
    for item in items:
        receipt = _decode_receipt(item)
        if receipt is None:
            unreadable.append(item)
        else:
            receipts.append(receipt)
    return receipts, unreadable


def _decode_metadata(data: Dict[str, Any]) -> MetadataDocument:
    try:
        return MetadataDocument.model_validate({
            "bounties": data.get("bounties") or {},
            "untaggedBounties": data.get("untaggedBounties") or [],
        })
    except PydanticValidationError as e:
        logger.warning(f"Ignoring unreadable legacy bounties: {e}")
        return MetadataDocument()
