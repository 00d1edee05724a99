"""
Shared progress counter for long-running bulk operations.

Workers advance the counter as each unit (a day bucket) completes; observers
are pushed snapshots. Each observer may ask for a minimum interval between
pushes, so the update rate seen by a client is decoupled from how quickly
individual buckets finish. The final snapshot is always delivered.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, List

from .models import ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]


@dataclass
class _Subscription:
    callback: ProgressCallback
    min_interval: float
    last_sent: float = 0.0


class ProgressTracker:
    """Counter of completed units out of a known total."""

    def __init__(self, total: int = 0, clock: Callable[[], float] = time.monotonic):
        self.total = total
        self.current = 0
        self.done = False
        self._clock = clock
        self._subscriptions: List[_Subscription] = []

    def subscribe(self, callback: ProgressCallback, min_interval: float = 0.0) -> Callable[[], None]:
        """Register an observer and push the current snapshot to it.

        Returns:
            A callable that removes the observer
        """
        subscription = _Subscription(callback=callback, min_interval=min_interval)
        self._subscriptions.append(subscription)
        self._deliver(subscription, self.snapshot(), force=True)

        def unsubscribe():
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(current=self.current, total=self.total, done=self.done)

    def start(self, total: int) -> None:
        self.total = total
        self.current = 0
        self.done = False
        self._notify(force=True)

    def advance(self, amount: int = 1) -> None:
        self.current += amount
        self._notify(force=False)

    def finish(self) -> None:
        self.done = True
        self._notify(force=True)

    def abort(self) -> None:
        """End a failed operation: counts reset to 0/0 and observers told it is over."""
        self.current = 0
        self.total = 0
        self.done = True
        self._notify(force=True)

    def _notify(self, force: bool) -> None:
        snapshot = self.snapshot()
        for subscription in list(self._subscriptions):
            self._deliver(subscription, snapshot, force)

    def _deliver(self, subscription: _Subscription, snapshot: ProgressSnapshot, force: bool) -> None:
        now = self._clock()
        if not force and now - subscription.last_sent < subscription.min_interval:
            return
        subscription.last_sent = now
        try:
            subscription.callback(snapshot)
        except Exception as e:
            # A broken observer must not abort the operation being observed
            logger.error(f"Progress observer failed: {e}")
