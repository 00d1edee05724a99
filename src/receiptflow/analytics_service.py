"""
ReceiptAnalyticsService - cached dashboard statistics.

The statistics themselves are pure functions in ``statistics``; this service
memoizes their result per log version so repeated reads of an unchanged log
(polling clients, several panels of one page) do not recompute everything.

Cache key: (log version, receipt count, time filter, current minute for the
"24h" filter). The log version changes on every mutation, and the 24h window
moves with the clock, so a cache hit always equals a fresh computation at
minute resolution.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .models import Receipt, Bounty, DashboardStats
from .statistics import compute_dashboard, TimeFilter


logger = logging.getLogger(__name__)

MAX_CACHE_ENTRIES = 10


class ReceiptAnalyticsService:
    """Computes and caches dashboard statistics."""

    def __init__(self, max_cache_entries: int = MAX_CACHE_ENTRIES):
        self.max_cache_entries = max_cache_entries
        self._cache: Dict[Tuple, DashboardStats] = {}

        self.stats = {
            "computations": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "last_computed_at": None,
        }

    def get_dashboard(
        self,
        receipts: Sequence[Receipt],
        bounties: Mapping[str, Sequence[Bounty]],
        untagged_bounties: Sequence[Bounty] = (),
        time_filter: TimeFilter = "all",
        log_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DashboardStats:
        """Return dashboard statistics, from cache when the log is unchanged.

        Args:
            receipts: The in-memory log
            bounties: Tagged bounties by concept
            untagged_bounties: Bounties awaiting a concept
            time_filter: "all" or "24h"
            log_version: Caller's mutation counter; None disables caching
            now: Reference time (defaults to now)
        """
        now = now or datetime.now()

        cache_key = None
        if log_version is not None:
            cache_key = self._cache_key(log_version, len(receipts), time_filter, now)
            cached = self._cache.get(cache_key)
            if cached is not None:
                self.stats["cache_hits"] += 1
                return cached
            self.stats["cache_misses"] += 1

        result = compute_dashboard(receipts, bounties, untagged_bounties, time_filter, now)
        self.stats["computations"] += 1
        self.stats["last_computed_at"] = datetime.now()

        if cache_key is not None:
            self._store(cache_key, result)

        logger.debug(
            f"Computed {time_filter} dashboard: {result.summary.receipt_count} receipts, "
            f"{len(result.concepts)} concepts"
        )
        return result

    def invalidate(self) -> None:
        """Clear all cached dashboards."""
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["cache_hits"] + self.stats["cache_misses"]
        return {
            **self.stats,
            "cache_entries": len(self._cache),
            "cache_hit_rate": self.stats["cache_hits"] / lookups if lookups > 0 else 0.0,
        }

    @staticmethod
    def _cache_key(log_version: int, count: int, time_filter: str, now: datetime) -> Tuple:
        minute = now.replace(second=0, microsecond=0) if time_filter == "24h" else None
        return (log_version, count, time_filter, minute)

    def _store(self, cache_key: Tuple, result: DashboardStats) -> None:
        self._cache[cache_key] = result
        # Dicts keep insertion order; drop the oldest entry
        while len(self._cache) > self.max_cache_entries:
            del self._cache[next(iter(self._cache))]
