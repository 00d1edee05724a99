"""
Sync orchestrator: owns the in-memory receipt log for one session.

The in-memory log is the source of truth for reads. Every mutation updates
it first and then mirrors the change to durable storage in a background
task: the user's sharded store when signed in, the local cache otherwise.
Identity changes (sign-in, sign-out) are observed through the identity
provider's subscription and trigger migration plus hydration.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .analytics_service import ReceiptAnalyticsService
from .config import ReceiptflowConfig, get_config
from .document_store import DocumentStore
from .duplicate_detector import ReceiptDuplicateDetector
from .errors import OperationInProgressError, StorageError
from .identity import Identity, IdentityProvider
from .ingestion import parse_paste
from .local_cache import LocalCache
from .migration import MigrationEngine
from .models import (
    Receipt, Bounty, MetadataDocument, PasteResult, ClearOutcome,
    MigrationOutcome, DashboardStats,
)
from .progress import ProgressTracker, ProgressCallback
from .receipt_store import ShardedReceiptStore
from .statistics import TimeFilter

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Coordinates ingestion, persistence, migration and bulk delete."""

    def __init__(
        self,
        document_store: DocumentStore,
        identity_provider: IdentityProvider,
        local_cache: LocalCache,
        analytics_service: Optional[ReceiptAnalyticsService] = None,
        config: Optional[ReceiptflowConfig] = None,
    ):
        self.document_store = document_store
        self.identity_provider = identity_provider
        self.local_cache = local_cache
        self.analytics_service = analytics_service or ReceiptAnalyticsService()
        self.config = config or get_config()

        self.detector = ReceiptDuplicateDetector()
        self.migration_engine = MigrationEngine(
            document_store, local_cache, **self.config.store_options()
        )

        # Session state
        self.identity: Optional[Identity] = None
        self.username: str = ""
        self.receipts: List[Receipt] = []
        self.bounties: Dict[str, List[Bounty]] = {}
        self.untagged_bounties: List[Bounty] = []
        self.log_version = 0
        self.last_migration: Optional[MigrationOutcome] = None

        # Blocking alerts are shown to the user; error_log collects
        # non-blocking background failures
        self.alerts: List[str] = []
        self.error_log: List[str] = []

        self.delete_progress: Optional[ProgressTracker] = None
        self._delete_task: Optional[asyncio.Task] = None
        self._progress_listeners: List[ProgressCallback] = []
        self._background_tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

        # The log mirrors storage only once a load has succeeded; writes
        # before that would be reconciled against an empty log
        self._loads_in_flight = 0
        self._loaded = False

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to identity changes; the current identity is handled immediately."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = await self.identity_provider.subscribe(self.handle_identity_change)
        logger.info("Sync orchestrator started")

    async def stop(self) -> None:
        """Unsubscribe and wait for in-flight saves and deletes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self._background_tasks:
            logger.info(f"Waiting for {len(self._background_tasks)} background tasks")
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        logger.info("Sync orchestrator stopped")

    async def wait_for_background_tasks(self) -> None:
        """Wait until every scheduled save or delete has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # Identity

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    async def handle_identity_change(self, identity: Optional[Identity]) -> None:
        """Rebuild session state for a new identity (None when signed out)."""
        if identity is not None and self.identity is not None and identity.user_id == self.identity.user_id:
            return

        self._reset_state()
        self.identity = identity
        self._loaded = False

        if identity is None:
            self._load_anonymous_session()
            self._loaded = True
            return

        logger.info(f"Identity acquired for user {identity.user_id}")
        try:
            await self._load_user(identity.user_id)
        except StorageError as e:
            logger.error(f"Failed to load data for user {identity.user_id}: {e}")
            if self.user_id == identity.user_id:
                self._reset_state()
                self._raise_alert(f"failed to load your data: {e}")

    @property
    def is_loading(self) -> bool:
        return self._loads_in_flight > 0

    async def _load_user(self, user_id: str) -> None:
        """Migrate the user's storage if needed, then hydrate the log from it."""
        self._loads_in_flight += 1
        try:
            self.last_migration = await self.migration_engine.ensure_current_shape(user_id)
            await self._hydrate(user_id)
        finally:
            self._loads_in_flight -= 1

    async def sign_up(self, email: str, password: str, username: str) -> Identity:
        return await self.identity_provider.sign_up(email, password, username)

    async def log_in(self, email: str, password: str) -> Identity:
        return await self.identity_provider.log_in(email, password)

    async def log_out(self) -> None:
        await self.identity_provider.log_out()

    def _load_anonymous_session(self) -> None:
        if self.config.CLEAR_ANONYMOUS_ON_START:
            self.local_cache.clear()
            logger.info("Anonymous session started with an empty local cache")
            return

        snapshot = self.local_cache.load()
        self.receipts = list(snapshot.receipts)
        self.bounties = {name: list(items) for name, items in snapshot.bounties.items()}
        self.untagged_bounties = list(snapshot.untagged_bounties)
        self._bump_version()
        logger.info(f"Anonymous session loaded {len(self.receipts)} receipts from local cache")

    async def _hydrate(self, user_id: str) -> None:
        """Load the signed-in user's log, metadata and profile from the store."""
        receipt_store = self._receipt_store(user_id)

        receipts = await receipt_store.load_all()
        metadata = await receipt_store.load_metadata()
        try:
            profile = await receipt_store.load_profile()
        except StorageError as e:
            logger.error(f"Failed to load username: {e}")
            profile = None

        if self.user_id != user_id:
            logger.info(f"Identity changed while loading user {user_id}; discarding loaded data")
            return

        self.receipts = receipts
        self.bounties = {name: list(items) for name, items in metadata.bounties.items()}
        self.untagged_bounties = list(metadata.untagged_bounties)
        self.username = profile.username if profile else ""
        self._loaded = True
        self._bump_version()

        if receipts:
            self.local_cache.clear()

        logger.info(
            f"Hydrated {len(receipts)} receipts, {len(self.bounties)} tagged concepts, "
            f"{len(self.untagged_bounties)} untagged bounties"
        )

    async def refresh(self) -> None:
        """Reload the session state from durable storage.

        Also the way to recover after a failed load: an interrupted migration
        is resumed before hydrating.

        Raises:
            StorageError: If the signed-in user's data cannot be read
            OperationInProgressError: While a load or bulk delete is running
        """
        self._ensure_idle()
        if not self.is_authenticated:
            self._reset_state()
            self._load_anonymous_session()
            return
        await self._load_user(self.user_id)

    # Mutations

    def paste(self, text: str) -> PasteResult:
        """Merge pasted receipt data into the log.

        The log is updated before this returns; persistence runs in the
        background and its failures never roll the log back.

        Raises:
            ParseError: If the text is not a recognised payload (no state change)
            OperationInProgressError: While a load or bulk delete is running,
                or after the signed-in user's data failed to load
        """
        self._ensure_writable()
        payload = parse_paste(text)

        existing = list(self.receipts)
        receipt_result = self.detector.reconcile_receipts(existing, payload.receipts)
        new_receipts = receipt_result.to_add

        if payload.legacy:
            new_bounties = [Bounty.from_receipt(r) for r in new_receipts if r.action == "bounty"]
        else:
            new_bounties = self.detector.reconcile_bounties(self.untagged_bounties, payload.bounties).to_add

        skipped = receipt_result.skipped_missing_date
        skipped_note = f" ({skipped} skipped due to missing dates)" if skipped > 0 else ""

        if not new_receipts and not new_bounties:
            logger.info(f"Paste contained no new data{skipped_note}")
            return PasteResult(
                skipped_missing_date=skipped,
                message=f"no new data found - all receipts already loaded{skipped_note}",
            )

        self.receipts = existing + new_receipts
        self.untagged_bounties = self.untagged_bounties + new_bounties
        self._bump_version()

        self._schedule_save(new_receipts, existing)

        message = f"added {len(new_receipts)} new receipts{skipped_note}"
        if new_bounties:
            message += f". {len(new_bounties)} new bounties need tagging."
        logger.info(message)

        return PasteResult(
            added=len(new_receipts),
            added_bounties=len(new_bounties),
            skipped_missing_date=skipped,
            message=message,
        )

    async def tag_bounty(self, index: int, concept: str) -> None:
        """Move an untagged bounty onto a concept and persist the metadata.

        Raises:
            IndexError: If there is no untagged bounty at ``index``
            ValueError: If ``concept`` is empty
            StorageError: If the metadata cannot be saved (memory keeps the change)
        """
        self._ensure_writable()
        if not concept:
            raise ValueError("concept is required")
        if not 0 <= index < len(self.untagged_bounties):
            raise IndexError(f"No untagged bounty at index {index}")

        bounty = self.untagged_bounties[index]
        self.bounties = {**self.bounties, concept: [*self.bounties.get(concept, []), bounty]}
        self.untagged_bounties = [b for i, b in enumerate(self.untagged_bounties) if i != index]
        self._bump_version()
        logger.info(f"Tagged bounty of {bounty.amount} to {concept}")

        if self.is_authenticated:
            try:
                await self._receipt_store().save_metadata(self._metadata())
            except StorageError as e:
                logger.error(f"Failed to save bounty metadata: {e}")
                self.error_log.append(f"{datetime.now().isoformat()} failed to save bounties: {e}")
                raise
        else:
            self.local_cache.save(self.receipts, self.bounties, self.untagged_bounties)

    def clear(self) -> Optional[asyncio.Task]:
        """Empty the log and local cache now; delete stored data in the background.

        Returns:
            The background delete task (resolving to a ClearOutcome) when
            signed in, otherwise None

        Raises:
            OperationInProgressError: If a load or bulk delete is already running
        """
        self._ensure_idle()

        self._reset_state(keep_identity=True)
        self._loaded = True
        self.local_cache.clear()
        logger.info("Cleared in-memory log and local cache")

        if not self.is_authenticated:
            return None

        progress = ProgressTracker()
        for listener in self._progress_listeners:
            progress.subscribe(listener, min_interval=self.config.PROGRESS_INTERVAL_SECONDS)
        self.delete_progress = progress

        self._delete_task = self._spawn(self._clear_remote(self.user_id, progress))
        return self._delete_task

    @property
    def is_deleting(self) -> bool:
        return self._delete_task is not None and not self._delete_task.done()

    def add_progress_listener(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback for the progress of every future bulk delete.

        Returns:
            A callable that removes the listener
        """
        self._progress_listeners.append(callback)

        def remove():
            if callback in self._progress_listeners:
                self._progress_listeners.remove(callback)

        return remove

    async def _clear_remote(self, user_id: str, progress: ProgressTracker) -> ClearOutcome:
        store = self._receipt_store(user_id)
        try:
            deleted = await store.clear_all(progress)
            logger.info(f"Server data cleared for user {user_id}")
            return ClearOutcome(success=True, buckets_deleted=deleted, total_buckets=progress.total)
        except StorageError as e:
            logger.error(f"Failed to clear server data: {e}")
            self._raise_alert(f"failed to clear data from server: {e}")
            outcome = ClearOutcome(
                success=False,
                buckets_deleted=progress.current,
                total_buckets=progress.total,
                error=str(e),
            )
            progress.abort()
            return outcome

    # Reads

    def get_dashboard(self, time_filter: TimeFilter = "all", now: Optional[datetime] = None) -> DashboardStats:
        return self.analytics_service.get_dashboard(
            self.receipts,
            self.bounties,
            self.untagged_bounties,
            time_filter=time_filter,
            log_version=self.log_version,
            now=now,
        )

    def session_info(self) -> Dict[str, Any]:
        return {
            "authenticated": self.is_authenticated,
            "user_id": self.user_id,
            "email": self.identity.email if self.identity else None,
            "username": self.username,
            "receipt_count": len(self.receipts),
            "tagged_concepts": sorted(self.bounties),
            "untagged_bounties": [b.to_document() for b in self.untagged_bounties],
            "deleting": self.is_deleting,
            "loading": self.is_loading,
            "log_version": self.log_version,
            "alerts": list(self.alerts),
        }

    def pop_alerts(self) -> List[str]:
        alerts, self.alerts = self.alerts, []
        return alerts

    def get_stats(self) -> Dict[str, Any]:
        return {
            "duplicate_detector": self.detector.get_stats(),
            "analytics": self.analytics_service.get_stats(),
            "background_tasks": len(self._background_tasks),
            "save_errors": len(self.error_log),
        }

    # Internals

    def _receipt_store(self, user_id: Optional[str] = None) -> ShardedReceiptStore:
        return ShardedReceiptStore(
            self.document_store, user_id or self.user_id, **self.config.store_options()
        )

    def _metadata(self) -> MetadataDocument:
        return MetadataDocument(bounties=self.bounties, untagged_bounties=self.untagged_bounties)

    def _schedule_save(self, new_receipts: List[Receipt], existing_before_add: List[Receipt]) -> None:
        # Capture the state now; the session may change before the task runs
        user_id = self.user_id
        metadata = self._metadata()
        receipts = list(self.receipts)
        self._spawn(self._save(user_id, new_receipts, existing_before_add, metadata, receipts))

    async def _save(
        self,
        user_id: Optional[str],
        new_receipts: List[Receipt],
        existing_before_add: List[Receipt],
        metadata: MetadataDocument,
        receipts: List[Receipt],
    ) -> None:
        try:
            if user_id is not None:
                await self._receipt_store(user_id).persist_new(
                    new_receipts, existing_before_add, metadata=metadata
                )
            else:
                self.local_cache.save(receipts, metadata.bounties, metadata.untagged_bounties)
            logger.debug("Save complete")
        except (StorageError, OSError) as e:
            logger.error(f"Failed to save receipts: {e}")
            self.error_log.append(f"{datetime.now().isoformat()} failed to save receipts: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _ensure_idle(self) -> None:
        if self.is_deleting:
            raise OperationInProgressError("A bulk delete is in progress; try again when it finishes")
        if self.is_loading:
            raise OperationInProgressError("Your data is still loading; try again when it finishes")

    def _ensure_writable(self) -> None:
        self._ensure_idle()
        if self.is_authenticated and not self._loaded:
            raise OperationInProgressError("Your data did not load; refresh before making changes")

    def _reset_state(self, keep_identity: bool = False) -> None:
        self.receipts = []
        self.bounties = {}
        self.untagged_bounties = []
        if not keep_identity:
            self.username = ""
        self._bump_version()

    def _bump_version(self) -> None:
        self.log_version += 1

    def _raise_alert(self, message: str) -> None:
        self.alerts.append(message)
