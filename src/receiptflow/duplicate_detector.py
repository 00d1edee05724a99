"""
Positional duplicate detection for pasted receipts.

Receipts carry no unique id, so identity is approximated by position: for
each exact timestamp string, the n-th incoming receipt with that timestamp is
treated as the same event as the n-th receipt already held. Re-pasting data
that was loaded before therefore adds nothing, while receipts appended after
the last paste are admitted.

Known limitation: two distinct events that share the exact same timestamp
string, pasted in a different order across sessions, are indistinguishable;
only the first unseen position is added.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, List, Sequence, TypeVar, Any

from .date_keys import has_timestamp
from .models import Receipt, Bounty


logger = logging.getLogger(__name__)

T = TypeVar("T", Receipt, Bounty)


@dataclass
class ReconcileResult(Generic[T]):
    """Items judged new, plus the count rejected for a missing timestamp."""
    to_add: List[T] = field(default_factory=list)
    skipped_missing_date: int = 0


def reconcile(
    existing: Sequence[T],
    incoming: Sequence[T],
    key: Callable[[T], str] = lambda item: item.timestamp,
) -> ReconcileResult[T]:
    """Determine which incoming items are genuinely new.

    Args:
        existing: Items already in the log
        incoming: Newly pasted batch, in paste order
        key: Grouping key; the raw timestamp string by default

    Returns:
        ReconcileResult with the new items in incoming order
    """
    existing_by_key: Dict[str, int] = {}
    for item in existing:
        k = key(item)
        existing_by_key[k] = existing_by_key.get(k, 0) + 1

    incoming_position_by_key: Dict[str, int] = {}
    result: ReconcileResult[T] = ReconcileResult()

    for item in incoming:
        k = key(item)
        if not has_timestamp(k):
            logger.warning(f"Skipping item with missing date: {item!r}")
            result.skipped_missing_date += 1
            continue

        position = incoming_position_by_key.get(k, 0)
        existing_count = existing_by_key.get(k, 0)

        if position >= existing_count:
            result.to_add.append(item)
            # Later copies within this same paste must not be re-added
            existing_by_key[k] = existing_count + 1

        incoming_position_by_key[k] = position + 1

    return result


class ReceiptDuplicateDetector:
    """Decides which pasted receipts and bounties are new.

    Wraps the positional ``reconcile`` algorithm behind one interface so a
    unique-id based scheme can replace it without touching callers, and keeps
    running statistics across pastes.
    """

    def __init__(self):
        self._stats = {
            "total_checks": 0,
            "added": 0,
            "duplicates_detected": 0,
            "skipped_missing_date": 0,
            "detection_rate": 0.0,
        }
        self.logger = logging.getLogger(__name__)

    def reconcile_receipts(
        self, existing: Sequence[Receipt], incoming: Sequence[Receipt]
    ) -> ReconcileResult[Receipt]:
        """Reconcile a pasted batch of receipts against the current log."""
        result = reconcile(existing, incoming)
        self._record(len(incoming), result)
        self.logger.debug(
            f"Reconciled {len(incoming)} receipts: {len(result.to_add)} new, "
            f"{result.skipped_missing_date} missing dates"
        )
        return result

    def reconcile_bounties(
        self, existing: Sequence[Bounty], incoming: Sequence[Bounty]
    ) -> ReconcileResult[Bounty]:
        """Reconcile pasted bounties against the current untagged list."""
        result = reconcile(existing, incoming)
        self._record(len(incoming), result)
        return result

    def _record(self, checked: int, result: ReconcileResult) -> None:
        added = len(result.to_add)
        self._stats["total_checks"] += checked
        self._stats["added"] += added
        self._stats["skipped_missing_date"] += result.skipped_missing_date
        self._stats["duplicates_detected"] += checked - added - result.skipped_missing_date
        self._update_detection_rate()

    def _update_detection_rate(self):
        """Update the duplicate detection rate statistic."""
        if self._stats["total_checks"] > 0:
            self._stats["detection_rate"] = (
                self._stats["duplicates_detected"] / self._stats["total_checks"]
            )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "detection_rate_percent": round(self._stats["detection_rate"] * 100, 2),
        }

    def reset_stats(self):
        """Reset statistics counters (useful for testing)."""
        for key in ("total_checks", "added", "duplicates_detected", "skipped_missing_date"):
            self._stats[key] = 0
        self._stats["detection_rate"] = 0.0

    def __repr__(self) -> str:
        return (
            f"ReceiptDuplicateDetector("
            f"added={self._stats['added']}, "
            f"duplicates={self._stats['duplicates_detected']}/{self._stats['total_checks']})"
        )
