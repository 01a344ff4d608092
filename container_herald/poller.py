"""
Container Herald — Poller
═══════════════════════════════════════════════════
Background loop that asks the Workload Source for every container and
its log tail, then publishes a complete replacement snapshot.

Per cycle:
  1. list workloads            (failure aborts the cycle, snapshot untouched)
  2. fetch each log tail       (per-item failures never abort the cycle)
  3. publish the new map       (snapshot marks vanished ids for removal)

Log fetch policy:
  - WorkloadNotFound  → container vanished in between, left out of the map
  - other failures    → container kept with its previous log tail
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from .backoff import backoff_delay
from .errors import MalformedWorkload, SourceError, WorkloadNotFound
from .models import Workload
from .snapshot import SharedSnapshot

logger = logging.getLogger(__name__)


class WorkloadPoller:
    """
    Periodically rebuilds the workload map from the Workload Source.
    Only ever writes to the SharedSnapshot.
    """

    def __init__(
        self,
        source,
        snapshot: SharedSnapshot,
        interval: float = 30.0,
        log_tail: int = 40,
        call_timeout: float = 20.0,
        backoff_max: float = 0.0,
    ):
        self.source = source
        self.snapshot = snapshot
        self.interval = interval
        self.log_tail = log_tail
        self.call_timeout = call_timeout
        self.backoff_max = backoff_max

        self.cycles = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        self.last_success: Optional[datetime] = None

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking source call in a worker thread, bounded by the timeout."""
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.call_timeout)

    async def poll_once(self) -> Set[str]:
        """
        Run one poll cycle.

        Returns:
            Ids newly marked for removal

        Raises:
            SourceUnavailable / asyncio.TimeoutError when listing fails
        """
        records = await self._call(self.source.list_workloads)
        previous = self.snapshot.workloads()
        new_map: Dict[str, Workload] = {}

        for record in records:
            try:
                workload = Workload.from_record(record)
            except MalformedWorkload as e:
                logger.warning(f"[Poller] Skipping container with missing fields {e.missing}: {record}")
                continue

            if workload.id in new_map:
                logger.warning(f"[Poller] Duplicate id {workload.id[:12]} in listing, keeping first")
                continue

            try:
                logs = await self._call(self.source.fetch_log_tail, workload.id, self.log_tail)
            except WorkloadNotFound:
                logger.info(f"[Poller] {workload.name} ({workload.id[:12]}) vanished before log fetch")
                continue
            except (SourceError, asyncio.TimeoutError) as e:
                prev = previous.get(workload.id)
                logs = prev.log_tail if prev else []
                logger.warning(
                    f"[Poller] Log fetch failed for {workload.name}, keeping previous tail: "
                    f"{type(e).__name__}: {e}"
                )

            new_map[workload.id] = workload.with_logs(logs)

        removed = self.snapshot.publish(new_map)
        logger.info(
            f"[Poller] Published {len(new_map)} workloads "
            f"{sorted(w.name for w in new_map.values())}, {len(removed)} removed"
        )
        return removed

    async def run(self):
        """Poll forever. Errors are logged and the cycle retried after the sleep."""
        logger.info(f"[Poller] Started (interval={self.interval}s, tail={self.log_tail})")
        while True:
            try:
                await self.poll_once()
                self.failures = 0
                self.last_error = None
                self.last_success = datetime.now(timezone.utc)
            except Exception as e:
                self.failures += 1
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"[Poller] Cycle failed ({self.failures} in a row): {self.last_error}")
            self.cycles += 1
            await asyncio.sleep(backoff_delay(self.interval, self.failures, self.backoff_max))

    def status(self) -> Dict[str, Any]:
        return {
            "cycles": self.cycles,
            "consecutive_failures": self.failures,
            "last_error": self.last_error,
            "last_success": self.last_success.isoformat() if self.last_success else None,
        }
