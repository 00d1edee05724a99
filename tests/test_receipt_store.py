"""
Unit tests for the sharded per-day receipt store.

Tests cover:
- Appending new receipts after existing bucket positions
- Chunked batch commits under the store ceiling
- Hydration order and unreadable items
- Bulk delete with progress and failure propagation
"""

import pytest
from unittest.mock import patch, AsyncMock

from receiptflow.errors import StorageError
from receiptflow.models import Bounty, MetadataDocument
from receiptflow.progress import ProgressTracker
from receiptflow.receipt_store import ShardedReceiptStore, ChunkedBatchWriter

from conftest import make_receipt


def sharded(store, **options):
    options.setdefault("pause_seconds", 0)
    return ShardedReceiptStore(store, "u1", **options)


class TestChunkedBatchWriter:

    @pytest.mark.asyncio
    async def test_commits_when_batch_full(self, store):
        writer = ChunkedBatchWriter(store, batch_size=3)
        for i in range(7):
            await writer.set(f"c/{i}", {"n": i})
        assert writer.batches_committed == 2

        await writer.flush()
        assert writer.batches_committed == 3
        assert store.document_count() == 7

    @pytest.mark.asyncio
    async def test_batch_size_capped_at_store_ceiling(self, small_batch_store):
        writer = ChunkedBatchWriter(small_batch_store, batch_size=450)
        assert writer.batch_size == 5

    @pytest.mark.asyncio
    async def test_pauses_between_commits(self, store):
        writer = ChunkedBatchWriter(store, batch_size=2, pause_seconds=0.1)
        with patch("receiptflow.receipt_store.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            for i in range(4):
                await writer.set(f"c/{i}", {})
        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.1)

    def test_rejects_non_positive_batch_size(self, store):
        with pytest.raises(ValueError):
            ChunkedBatchWriter(store, batch_size=0)


class TestPersistNew:
    """Test incremental persistence of newly added receipts."""

    @pytest.mark.asyncio
    async def test_first_save_writes_positions_from_zero(self, store):
        receipt_store = sharded(store)
        receipts = [make_receipt("Oct 18 1:15 PM"), make_receipt("Oct 18 2:00 PM"), make_receipt("Oct 19 9:00 AM")]

        result = await receipt_store.persist_new(receipts, [])

        assert result.written == 3
        assert result.buckets_touched == 2
        bucket = await store.get("users/u1/receipts_by_date/Oct_18")
        assert bucket["date"] == "Oct 18"
        assert bucket["itemCount"] == 2
        assert bucket["lastUpdated"]
        item = await store.get("users/u1/receipts_by_date/Oct_18/items/1")
        assert item["date"] == "Oct 18 2:00 PM"
        assert item["originalIndex"] == 1
        assert (await store.get("users/u1/receipts_by_date/Oct_19/items/0"))["originalIndex"] == 2

    @pytest.mark.asyncio
    async def test_appends_after_existing_positions(self, store):
        """Stored items are never overwritten by a later save."""
        receipt_store = sharded(store)
        existing = [make_receipt("Oct 18 1:15 PM", user="a"), make_receipt("Oct 18 2:00 PM", user="b")]
        await receipt_store.persist_new(existing, [])

        new = [make_receipt("Oct 18 3:00 PM", user="c")]
        await receipt_store.persist_new(new, existing)

        bucket = await store.get("users/u1/receipts_by_date/Oct_18")
        assert bucket["itemCount"] == 3
        items = await store.list_documents("users/u1/receipts_by_date/Oct_18/items")
        assert [i.data["user"] for i in items] == ["a", "b", "c"]
        assert items[2].data["originalIndex"] == 2

    @pytest.mark.asyncio
    async def test_missing_timestamps_skipped(self, store):
        result = await sharded(store).persist_new([make_receipt(""), make_receipt("Oct 18 1:15 PM")], [])
        assert result.written == 1
        assert result.skipped_missing_date == 1

    @pytest.mark.asyncio
    async def test_metadata_written_with_receipts(self, store):
        metadata = MetadataDocument(bounties={"cats": [Bounty(amount=10, timestamp="Oct 18 9:00 AM")]})
        await sharded(store).persist_new([make_receipt()], [], metadata=metadata)

        stored = await store.get("users/u1/metadata/settings")
        assert stored["bounties"] == {"cats": [{"amount": 10, "date": "Oct 18 9:00 AM"}]}
        assert stored["untaggedBounties"] == []

    @pytest.mark.asyncio
    async def test_large_save_split_under_ceiling(self, small_batch_store):
        """Twelve receipts on one day need several commits under a ceiling of five."""
        receipts = [make_receipt(f"Oct 18 1:{m:02d} PM") for m in range(12)]
        result = await sharded(small_batch_store, batch_size=450).persist_new(receipts, [])

        assert result.written == 12
        assert result.batches_committed == 3
        items = await small_batch_store.list_documents("users/u1/receipts_by_date/Oct_18/items")
        assert len(items) == 12

    @pytest.mark.asyncio
    async def test_commit_failure_raises_storage_error(self, store):
        with patch.object(store, "_commit_batch", new_callable=AsyncMock) as mock_commit:
            mock_commit.side_effect = RuntimeError("quota exceeded")
            with pytest.raises(StorageError):
                await sharded(store).persist_new([make_receipt()], [])


class TestLoad:
    """Test hydration from day buckets."""

    @pytest.mark.asyncio
    async def test_load_all_orders_items_by_numeric_position(self, store):
        receipt_store = sharded(store)
        receipts = [make_receipt(f"Oct 18 1:{m:02d} PM", user=str(m)) for m in range(12)]
        await receipt_store.persist_new(receipts, [])

        loaded = await receipt_store.load_all()
        # Ids sort as "0", "1", "10", "11", "2"...; positions must be numeric
        assert [r.user for r in loaded] == [str(m) for m in range(12)]

    @pytest.mark.asyncio
    async def test_load_all_skips_unreadable_items(self, store):
        receipt_store = sharded(store)
        await receipt_store.persist_new([make_receipt()], [])
        await store.set("users/u1/receipts_by_date/Oct_18/items/1", {"clout": "not a number"})

        assert len(await receipt_store.load_all()) == 1

    @pytest.mark.asyncio
    async def test_has_buckets(self, store):
        receipt_store = sharded(store)
        assert not await receipt_store.has_buckets()
        await receipt_store.persist_new([make_receipt()], [])
        assert await receipt_store.has_buckets()

    @pytest.mark.asyncio
    async def test_metadata_round_trip(self, store):
        receipt_store = sharded(store)
        assert (await receipt_store.load_metadata()).bounties == {}

        await receipt_store.save_metadata(MetadataDocument(
            untagged_bounties=[Bounty(amount=5, timestamp="Oct 18 9:00 AM")],
        ))
        metadata = await receipt_store.load_metadata()
        assert metadata.untagged_bounties[0].amount == 5

    @pytest.mark.asyncio
    async def test_load_profile(self, store):
        receipt_store = sharded(store)
        assert await receipt_store.load_profile() is None

        await store.set("users/u1", {"username": "alice", "email": "a@example.com"})
        profile = await receipt_store.load_profile()
        assert profile.username == "alice"
        assert profile.id == "u1"

    @pytest.mark.asyncio
    async def test_read_failure_wrapped(self, store):
        with patch.object(store, "list_documents", new_callable=AsyncMock) as mock_list:
            mock_list.side_effect = RuntimeError("unavailable")
            with pytest.raises(StorageError):
                await sharded(store).load_all()

    def test_requires_user_id(self, store):
        with pytest.raises(ValueError):
            ShardedReceiptStore(store, "")


class TestClearAll:
    """Test bulk delete of every bucket."""

    async def _populate(self, store, days=25):
        receipts = []
        for day in range(1, days + 1):
            receipts.append(make_receipt(f"Sep {day} 1:00 PM"))
            receipts.append(make_receipt(f"Sep {day} 2:00 PM"))
        await sharded(store).persist_new(receipts, [])

    @pytest.mark.asyncio
    async def test_clear_all_deletes_everything_and_resets_metadata(self, store):
        await self._populate(store)
        receipt_store = sharded(store)
        await receipt_store.save_metadata(MetadataDocument(
            bounties={"cats": [Bounty(amount=1, timestamp="Sep 1 1:00 PM")]},
        ))

        deleted = await receipt_store.clear_all()

        assert deleted == 25
        assert not await receipt_store.has_buckets()
        assert await receipt_store.load_all() == []
        metadata = await store.get("users/u1/metadata/settings")
        assert metadata["bounties"] == {}
        assert metadata["untaggedBounties"] == []

    @pytest.mark.asyncio
    async def test_progress_reaches_total(self, store):
        await self._populate(store)
        seen = []
        progress = ProgressTracker()
        progress.subscribe(seen.append)

        await sharded(store, parallel_chunk_size=10).clear_all(progress)

        assert seen[-1].current == 25
        assert seen[-1].total == 25
        assert seen[-1].done
        currents = [s.current for s in seen]
        assert currents == sorted(currents)

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        progress = ProgressTracker()
        assert await sharded(store).clear_all(progress) == 0
        assert progress.done

    @pytest.mark.asyncio
    async def test_failure_propagates_and_leaves_bucket_retryable(self, store):
        await self._populate(store, days=3)
        receipt_store = sharded(store)

        original_commit = store._commit_batch
        calls = {"n": 0}

        async def flaky_commit(operations):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("deadline exceeded")
            await original_commit(operations)

        with patch.object(store, "_commit_batch", side_effect=flaky_commit):
            with pytest.raises(StorageError):
                await receipt_store.clear_all()

        # The failed bucket still has its header document, so a retry finds it
        assert await receipt_store.has_buckets()
        await receipt_store.clear_all()
        assert not await receipt_store.has_buckets()
