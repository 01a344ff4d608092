"""
Container Herald — Reconciler
═══════════════════════════════════════════════════
Background loop that converges Discord onto the latest snapshot.

Per cycle, strictly in this order:
  1. Removals:   drain pending removals, delete each workload's channel,
                 drop its handle
  2. Copy:       point-in-time copy of the workload map (lock released
                 before any Discord call)
  3. Converge:   no handle      → create channel + initial message
                 handle, no msg → create message
                 handle + msg   → edit message in place

Handle map rules:
  - at most one ResourceHandle per workload id
  - mutated only after the matching Discord call succeeded
  - NotFound on a message update: repost into the same channel
  - NotFound on a message create: the channel is gone, drop the handle;
    the next cycle recreates the resource

Any other sink failure aborts the rest of the cycle. Removals that were
not processed are kept in a private deferred set and retried first in the
next cycle. Unauthorized halts the loop until an operator steps in.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .backoff import backoff_delay
from .errors import NotFound, RateLimited, Unauthorized
from .formatter import channel_name_for, format_workload
from .models import Channel, MessagePayload, ResourceHandle, Workload
from .snapshot import SharedSnapshot

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Owns the workload id -> ResourceHandle map. Single task, no locking
    needed for the map itself.
    """

    def __init__(
        self,
        sink,
        snapshot: SharedSnapshot,
        guild_id: str,
        category_id: str,
        interval: float = 30.0,
        warmup: float = 5.0,
        style: str = "embed",
        embed_limit: int = 3900,
        text_limit: int = 1800,
        adopt_existing: bool = True,
        backoff_max: float = 0.0,
        formatter: Callable[..., MessagePayload] = format_workload,
    ):
        self.sink = sink
        self.snapshot = snapshot
        self.guild_id = guild_id
        self.category_id = category_id
        self.interval = interval
        self.warmup = warmup
        self.style = style
        self.embed_limit = embed_limit
        self.text_limit = text_limit
        self.adopt_existing = adopt_existing
        self.backoff_max = backoff_max
        self.formatter = formatter

        self.handles: Dict[str, ResourceHandle] = {}
        self._deferred_removals: Set[str] = set()
        self._category_cache: Optional[List[Channel]] = None

        self.halted = False
        self.halt_reason: Optional[str] = None
        self.cycles = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        self.last_success: Optional[datetime] = None
        self.last_summary: Dict[str, int] = {}

    # ── Helpers ───────────────────────────────────────────

    def _payload(self, workload: Workload) -> MessagePayload:
        return self.formatter(
            workload,
            style=self.style,
            embed_limit=self.embed_limit,
            text_limit=self.text_limit,
        )

    def _claimed_channels(self) -> Set[str]:
        return {h.channel_id for h in self.handles.values()}

    async def _category_channels(self) -> List[Channel]:
        """Category listing, fetched at most once per cycle for adoption."""
        if self._category_cache is None:
            self._category_cache = await self.sink.list_channels_in_category(self.category_id)
        return self._category_cache

    # ── Step 1: Removals ──────────────────────────────────

    async def _delete_resource(self, handle: ResourceHandle) -> None:
        """Delete the handle's channel. A channel that is already gone counts as deleted."""
        channels = await self.sink.list_channels_in_category(self.category_id)
        match = next((c for c in channels if c.id == handle.channel_id), None)
        if match is None:
            claimed = self._claimed_channels() - {handle.channel_id}
            match = next(
                (c for c in channels if c.name == handle.channel_name and c.id not in claimed),
                None,
            )
        if match is None:
            logger.info(f"[Reconciler] Channel #{handle.channel_name} already gone")
            return

        logger.info(
            f"[Reconciler] Removing channel #{match.name} ({match.id}) "
            f"for workload {handle.workload_id[:12]}"
        )
        try:
            await self.sink.delete_channel(match.id)
        except NotFound:
            logger.info(f"[Reconciler] Channel {match.id} vanished before delete")

    async def process_removals(self) -> int:
        """
        Drain pending removals and delete their resources.

        Returns:
            Number of handles dropped
        """
        deferred = {wid for wid in self._deferred_removals if self.snapshot.get(wid) is None}
        pending = sorted(deferred | self.snapshot.drain_removals())
        self._deferred_removals = set()

        removed = 0
        for i, workload_id in enumerate(pending):
            handle = self.handles.get(workload_id)
            if handle is None:
                continue
            try:
                await self._delete_resource(handle)
            except Exception:
                self._deferred_removals.update(pending[i:])
                raise
            del self.handles[workload_id]
            removed += 1
        return removed

    # ── Step 3: Creates / Updates ─────────────────────────

    async def _adoptable_channel(self, name: str) -> Optional[str]:
        claimed = self._claimed_channels()
        for channel in await self._category_channels():
            if channel.name == name and channel.id not in claimed:
                return channel.id
        return None

    async def _create_resource(self, workload: Workload) -> ResourceHandle:
        name = channel_name_for(workload.name)
        channel_id = None
        if self.adopt_existing:
            channel_id = await self._adoptable_channel(name)
            if channel_id:
                logger.info(f"[Reconciler] Adopting existing channel #{name} ({channel_id})")

        if channel_id is None:
            logger.info(f"[Reconciler] Creating channel for container: {workload.name}")
            channel_id = await self.sink.create_channel(self.guild_id, self.category_id, name)

        handle = ResourceHandle(workload_id=workload.id, channel_id=channel_id, channel_name=name)
        self.handles[workload.id] = handle
        return handle

    async def _create_message(self, handle: ResourceHandle, workload: Workload) -> bool:
        try:
            message_id = await self.sink.create_message(handle.channel_id, self._payload(workload))
        except NotFound:
            logger.warning(f"[Reconciler] Channel #{handle.channel_name} vanished, dropping handle")
            del self.handles[workload.id]
            return False
        handle.message_id = message_id
        return True

    async def _update_message(self, handle: ResourceHandle, workload: Workload) -> str:
        """
        Edit the status message in place.

        Returns:
            "updated", or "created" / "dropped" when the message had vanished
        """
        try:
            await self.sink.update_message(handle.channel_id, handle.message_id, self._payload(workload))
        except NotFound:
            # Keep the handle so the channel stays owned; repost into it.
            # If the channel is gone too, _create_message drops the handle.
            logger.warning(f"[Reconciler] Message in #{handle.channel_name} vanished, reposting")
            handle.message_id = None
            return "created" if await self._create_message(handle, workload) else "dropped"
        return "updated"

    async def converge(self, workloads: Dict[str, Workload]) -> Dict[str, int]:
        summary = {"created": 0, "updated": 0, "dropped": 0}
        for workload_id, workload in workloads.items():
            handle = self.handles.get(workload_id)

            if handle is None:
                handle = await self._create_resource(workload)
                if await self._create_message(handle, workload):
                    summary["created"] += 1
                else:
                    summary["dropped"] += 1
            elif handle.message_id is None:
                if await self._create_message(handle, workload):
                    summary["created"] += 1
                else:
                    summary["dropped"] += 1
            else:
                logger.debug(f"[Reconciler] Updating message for container: {workload.name}")
                summary[await self._update_message(handle, workload)] += 1
        return summary

    # ── Cycle ─────────────────────────────────────────────

    async def reconcile_once(self) -> Dict[str, int]:
        """
        Run one reconciliation cycle. Sink errors propagate to the caller.

        Returns:
            Counts of removed / created / updated / dropped resources
        """
        self._category_cache = None
        removed = await self.process_removals()
        workloads = self.snapshot.workloads()
        summary = await self.converge(workloads)
        summary["removed"] = removed
        logger.info(
            f"[Reconciler] Cycle done: {summary['removed']} removed, {summary['created']} created, "
            f"{summary['updated']} updated, {summary['dropped']} dropped, {len(self.handles)} handles"
        )
        return summary

    async def run(self):
        """
        Reconcile forever after the warm-up delay.
        Returns only when the sink rejected our credentials.
        """
        logger.info(f"[Reconciler] Started (interval={self.interval}s, warmup={self.warmup}s)")
        await asyncio.sleep(self.warmup)
        while True:
            min_delay = 0.0
            try:
                self.last_summary = await self.reconcile_once()
                self.failures = 0
                self.last_error = None
                self.last_success = datetime.now(timezone.utc)
            except Unauthorized as e:
                self.halted = True
                self.halt_reason = str(e)
                logger.critical(f"[Reconciler] Discord rejected the bot token, halting: {e}")
                return
            except RateLimited as e:
                self.failures += 1
                self.last_error = f"RateLimited: {e}"
                min_delay = e.retry_after
                logger.warning(f"[Reconciler] Rate limited, retry after {e.retry_after}s")
            except Exception as e:
                self.failures += 1
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"[Reconciler] Cycle failed ({self.failures} in a row): {self.last_error}")
            self.cycles += 1
            delay = backoff_delay(self.interval, self.failures, self.backoff_max)
            await asyncio.sleep(max(delay, min_delay))

    def status(self) -> Dict[str, Any]:
        return {
            "cycles": self.cycles,
            "consecutive_failures": self.failures,
            "last_error": self.last_error,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_summary": self.last_summary,
            "handles": len(self.handles),
            "deferred_removals": len(self._deferred_removals),
            "halted": self.halted,
            "halt_reason": self.halt_reason,
        }
