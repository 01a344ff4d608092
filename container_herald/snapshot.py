# snapshot.py
"""
Shared Snapshot.

The only state both loops touch. The Poller publishes complete workload
maps, the Reconciler reads copies and drains pending removals.

The lock guards dictionary and set operations only. Never await or call
out to Docker/Discord while holding it.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from .models import Workload


class SharedSnapshot:
    """
    Thread-safe holder for the current workload map and pending removals.
    """

    def __init__(self):
        self._workloads: Dict[str, Workload] = {}
        self._pending_removals: Set[str] = set()
        self._generation = 0
        self._published_at: Optional[datetime] = None
        self._lock = threading.Lock()

    # ============================================================
    # POLLER SIDE
    # ============================================================

    def publish(self, workloads: Dict[str, Workload]) -> Set[str]:
        """
        Installs a complete replacement workload map.

        Ids present before and missing now are added to the pending
        removals. Ids that came back before being drained are taken out
        again, so pending removals never name a live workload.

        Args:
            workloads: New map id -> Workload

        Returns:
            Ids newly marked for removal by this publish
        """
        new_map = dict(workloads)
        with self._lock:
            removed = set(self._workloads) - set(new_map)
            self._pending_removals |= removed
            self._pending_removals -= set(new_map)
            self._workloads = new_map
            self._generation += 1
            self._published_at = datetime.now(timezone.utc)
        return removed

    # ============================================================
    # RECONCILER SIDE
    # ============================================================

    def drain_removals(self) -> Set[str]:
        """Returns and clears the pending removals."""
        with self._lock:
            drained = self._pending_removals
            self._pending_removals = set()
            return drained

    def workloads(self) -> Dict[str, Workload]:
        """Point-in-time copy of the workload map."""
        with self._lock:
            return dict(self._workloads)

    def get(self, workload_id: str) -> Optional[Workload]:
        with self._lock:
            return self._workloads.get(workload_id)

    # ============================================================
    # INTROSPECTION
    # ============================================================

    @property
    def generation(self) -> int:
        """Number of publishes so far."""
        with self._lock:
            return self._generation

    @property
    def published_at(self) -> Optional[datetime]:
        with self._lock:
            return self._published_at

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending_removals)
