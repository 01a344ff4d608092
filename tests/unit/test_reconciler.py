"""
tests/unit/test_reconciler.py — Reconciler
===============================================================================

Covers:
  1. {A, B} → create 2 channels + 2 messages; then {B} → delete A, update B
  2. Removal is idempotent (one delete, one handle drop)
  3. At most one handle per workload id across cycles
  4. Removals are issued strictly before creates in the same cycle
  5. A failed update aborts the cycle but leaves the handle map untouched
  6. A vanished message is reposted in the same channel; a vanished channel
     drops the stale handle and the next cycle recreates the resource
  7. A failed delete is retried next cycle, never silently lost
  8. Existing same-named channels are adopted instead of duplicated
  9. run(): Unauthorized halts, RateLimited honours retry_after, errors never escape
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from container_herald.errors import RateLimited, SinkError, SinkUnavailable, Unauthorized
from container_herald.reconciler import Reconciler
from tests.fakes import make_workload


def _reconciler(sink, snapshot, **kw):
    kw.setdefault("adopt_existing", False)
    return Reconciler(sink, snapshot, guild_id="100", category_id="900",
                      interval=30.0, warmup=0.0, **kw)


def _publish(snapshot, *ids, **names):
    snapshot.publish({i: make_workload(i, name=names.get(i)) for i in ids})


# ═════════════════════════════════════════════════════════════════════════════
# Scenario: {A, B} then {B}
# ═════════════════════════════════════════════════════════════════════════════

class TestBasicScenario:

    @pytest.mark.asyncio
    async def test_two_workloads_then_one(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)

        _publish(snapshot, "A", "B")
        summary = await rec.reconcile_once()

        assert summary == {"removed": 0, "created": 2, "updated": 0, "dropped": 0}
        assert fake_sink.call_names().count("create_channel") == 2
        assert fake_sink.call_names().count("create_message") == 2
        assert set(rec.handles) == {"A", "B"}
        assert all(h.message_id for h in rec.handles.values())

        channel_a = rec.handles["A"].channel_id
        fake_sink.calls.clear()

        _publish(snapshot, "B")
        summary = await rec.reconcile_once()

        assert summary["removed"] == 1
        assert summary["updated"] == 1
        assert ("delete_channel", channel_a) in fake_sink.calls
        assert ("update_message", rec.handles["B"].channel_id) in fake_sink.calls
        assert set(rec.handles) == {"B"}
        assert channel_a not in fake_sink.channels

    @pytest.mark.asyncio
    async def test_channel_named_after_workload(self, fake_sink, snapshot):
        _publish(snapshot, "A", A="My Web App")
        rec = _reconciler(fake_sink, snapshot)
        await rec.reconcile_once()

        handle = rec.handles["A"]
        assert handle.channel_name == "my-web-app"
        assert fake_sink.channels[handle.channel_id].parent_id == "900"

    @pytest.mark.asyncio
    async def test_update_replaces_message_content(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        snapshot.publish({"A": make_workload("A", status="Up 1 minute")})
        await rec.reconcile_once()

        snapshot.publish({"A": make_workload("A", status="Exited (137)")})
        await rec.reconcile_once()

        msg = fake_sink.messages[rec.handles["A"].message_id]
        assert msg["payload"].embed.title == "Exited (137)"
        assert len(fake_sink.messages) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Invariants
# ═════════════════════════════════════════════════════════════════════════════

class TestInvariants:

    @pytest.mark.asyncio
    async def test_removal_is_idempotent(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A")
        await rec.reconcile_once()

        _publish(snapshot)
        await rec.reconcile_once()
        first = fake_sink.call_names().count("delete_channel")

        # Same removal applied again: no handle left, so nothing to do
        rec._deferred_removals.add("A")
        await rec.reconcile_once()

        assert first == 1
        assert fake_sink.call_names().count("delete_channel") == 1
        assert rec.handles == {}

    @pytest.mark.asyncio
    async def test_at_most_one_handle_per_workload(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        sequence = [("A", "B"), ("A", "B"), ("B",), ("A", "B", "C"), ("C",), ("A", "C")]
        for ids in sequence:
            _publish(snapshot, *ids)
            await rec.reconcile_once()
            assert set(rec.handles) == set(ids)
            channel_ids = [h.channel_id for h in rec.handles.values()]
            assert len(channel_ids) == len(set(channel_ids))

        assert len(fake_sink.channels) == 2

    @pytest.mark.asyncio
    async def test_delete_issued_before_create_for_same_name(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "old-id", **{"old-id": "web"})
        await rec.reconcile_once()
        old_channel = rec.handles["old-id"].channel_id
        fake_sink.calls.clear()

        # Container recreated: same name, new id
        _publish(snapshot, "new-id", **{"new-id": "web"})
        await rec.reconcile_once()

        names = fake_sink.call_names()
        assert names.index("delete_channel") < names.index("create_channel")
        assert fake_sink.calls[names.index("delete_channel")] == ("delete_channel", old_channel)
        assert set(rec.handles) == {"new-id"}
        assert rec.handles["new-id"].channel_id != old_channel

    @pytest.mark.asyncio
    async def test_workload_without_handle_removed_is_noop(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A")
        _publish(snapshot)  # A disappears before the reconciler ever saw it

        summary = await rec.reconcile_once()

        assert summary["removed"] == 0
        assert "delete_channel" not in fake_sink.call_names()


# ═════════════════════════════════════════════════════════════════════════════
# Partial failures
# ═════════════════════════════════════════════════════════════════════════════

class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_failed_update_leaves_handle_map_unchanged(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "X", "Y")
        await rec.reconcile_once()
        before = {k: v.model_copy() for k, v in rec.handles.items()}

        fake_sink.failures[("update_message", rec.handles["X"].channel_id)] = SinkUnavailable("502")
        with pytest.raises(SinkUnavailable):
            await rec.reconcile_once()

        assert rec.handles == before

        # Next cycle converges again, including Y
        fake_sink.calls.clear()
        summary = await rec.reconcile_once()
        assert summary["updated"] == 2

    @pytest.mark.asyncio
    async def test_failed_channel_create_records_nothing(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", A="web")
        fake_sink.failures[("create_channel", "web")] = SinkUnavailable("timeout")

        with pytest.raises(SinkUnavailable):
            await rec.reconcile_once()
        assert rec.handles == {}

        await rec.reconcile_once()
        assert set(rec.handles) == {"A"}
        assert len(fake_sink.channels) == 1

    @pytest.mark.asyncio
    async def test_failed_initial_message_is_created_next_cycle(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", A="web")

        original = fake_sink.create_message
        calls = {"n": 0}

        async def flaky_create_message(channel_id, payload):
            calls["n"] += 1
            if calls["n"] == 1:
                raise SinkUnavailable("500")
            return await original(channel_id, payload)

        fake_sink.create_message = flaky_create_message
        with pytest.raises(SinkUnavailable):
            await rec.reconcile_once()

        handle = rec.handles["A"]
        assert handle.message_id is None

        await rec.reconcile_once()
        assert rec.handles["A"].message_id is not None
        assert rec.handles["A"].channel_id == handle.channel_id
        assert fake_sink.call_names().count("create_channel") == 1

    @pytest.mark.asyncio
    async def test_deleted_channel_drops_handle_then_recreates(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", "B")
        await rec.reconcile_once()

        # Someone deleted A's channel by hand
        gone = rec.handles["A"].channel_id
        del fake_sink.channels[gone]

        summary = await rec.reconcile_once()
        assert summary["dropped"] == 1
        assert summary["updated"] == 1
        assert set(rec.handles) == {"B"}

        await rec.reconcile_once()
        assert set(rec.handles) == {"A", "B"}
        assert rec.handles["A"].channel_id != gone

    @pytest.mark.asyncio
    async def test_deleted_message_is_reposted_in_same_channel(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot, adopt_existing=False)
        _publish(snapshot, "A", A="web")
        await rec.reconcile_once()
        channel = rec.handles["A"].channel_id
        old_message = rec.handles["A"].message_id

        # Someone deleted the status message but left the channel
        del fake_sink.messages[old_message]

        summary = await rec.reconcile_once()
        assert summary["created"] == 1
        assert summary["dropped"] == 0
        assert rec.handles["A"].channel_id == channel
        assert rec.handles["A"].message_id not in (None, old_message)
        assert fake_sink.messages[rec.handles["A"].message_id]["channel_id"] == channel

        await rec.reconcile_once()
        assert list(fake_sink.channels) == [channel]
        assert fake_sink.call_names().count("create_channel") == 1

        _publish(snapshot)
        await rec.reconcile_once()
        assert fake_sink.channels == {}
        assert rec.handles == {}

    @pytest.mark.asyncio
    async def test_failed_delete_is_retried_next_cycle(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", "B")
        await rec.reconcile_once()
        channel_a = rec.handles["A"].channel_id

        _publish(snapshot, "B")
        fake_sink.failures[("delete_channel", channel_a)] = SinkUnavailable("502")
        with pytest.raises(SinkUnavailable):
            await rec.reconcile_once()

        assert "A" in rec.handles
        assert snapshot.pending_count == 0

        await rec.reconcile_once()
        assert "A" not in rec.handles
        assert channel_a not in fake_sink.channels

    @pytest.mark.asyncio
    async def test_channel_already_gone_counts_as_deleted(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A")
        await rec.reconcile_once()
        del fake_sink.channels[rec.handles["A"].channel_id]

        _publish(snapshot)
        summary = await rec.reconcile_once()

        assert summary["removed"] == 1
        assert rec.handles == {}
        assert "delete_channel" not in fake_sink.call_names()


# ═════════════════════════════════════════════════════════════════════════════
# Adoption of existing channels (restart without duplicates)
# ═════════════════════════════════════════════════════════════════════════════

class TestAdoption:

    @pytest.mark.asyncio
    async def test_existing_channel_is_adopted(self, fake_sink, snapshot):
        existing = fake_sink.add_channel("web")
        rec = _reconciler(fake_sink, snapshot, adopt_existing=True)
        _publish(snapshot, "A", A="web")

        await rec.reconcile_once()

        assert rec.handles["A"].channel_id == existing
        assert "create_channel" not in fake_sink.call_names()
        assert len(fake_sink.channels) == 1

    @pytest.mark.asyncio
    async def test_claimed_channel_is_not_adopted_twice(self, fake_sink, snapshot):
        fake_sink.add_channel("web")
        rec = _reconciler(fake_sink, snapshot, adopt_existing=True)
        _publish(snapshot, "A", "B", A="web", B="web")

        await rec.reconcile_once()

        assert rec.handles["A"].channel_id != rec.handles["B"].channel_id
        assert fake_sink.call_names().count("create_channel") == 1

    @pytest.mark.asyncio
    async def test_adoption_disabled_creates_new_channel(self, fake_sink, snapshot):
        existing = fake_sink.add_channel("web")
        rec = _reconciler(fake_sink, snapshot, adopt_existing=False)
        _publish(snapshot, "A", A="web")

        await rec.reconcile_once()

        assert rec.handles["A"].channel_id != existing
        assert len(fake_sink.channels) == 2


# ═════════════════════════════════════════════════════════════════════════════
# run() loop
# ═════════════════════════════════════════════════════════════════════════════

def _stop_after(n, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)
        if len(sleeps) > n:
            raise asyncio.CancelledError()
    return AsyncMock(side_effect=fake_sleep)


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_unauthorized_halts_loop(self, snapshot):
        sink = AsyncMock()
        sink.list_channels_in_category.side_effect = Unauthorized("401", status=401)
        sink.create_channel.side_effect = Unauthorized("401", status=401)
        rec = _reconciler(sink, snapshot)
        _publish(snapshot, "A")

        sleeps = []
        with patch("container_herald.reconciler.asyncio.sleep", new=_stop_after(5, sleeps)):
            await rec.run()

        assert rec.halted is True
        assert "401" in rec.halt_reason
        assert sleeps == [0.0]  # only the warm-up
        assert rec.status()["halted"] is True

    @pytest.mark.asyncio
    async def test_missing_permission_fails_cycle_without_halting(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", A="web")
        fake_sink.failures[("create_channel", "web")] = SinkError("Missing Permissions", status=403)

        sleeps = []
        with patch("container_herald.reconciler.asyncio.sleep", new=_stop_after(2, sleeps)):
            with pytest.raises(asyncio.CancelledError):
                await rec.run()

        assert rec.halted is False
        assert rec.cycles == 2
        assert set(rec.handles) == {"A"}

    @pytest.mark.asyncio
    async def test_rate_limit_waits_at_least_retry_after(self, snapshot):
        sink = AsyncMock()
        sink.create_channel.side_effect = RateLimited("429", retry_after=120.0)
        rec = _reconciler(sink, snapshot, backoff_max=0)
        _publish(snapshot, "A")

        sleeps = []
        with patch("container_herald.reconciler.asyncio.sleep", new=_stop_after(1, sleeps)):
            with pytest.raises(asyncio.CancelledError):
                await rec.run()

        assert sleeps == [0.0, 120.0]
        assert rec.failures == 1

    @pytest.mark.asyncio
    async def test_errors_never_escape_the_loop(self, fake_sink, snapshot):
        rec = _reconciler(fake_sink, snapshot)
        _publish(snapshot, "A", A="web")
        fake_sink.failures[("create_channel", "web")] = SinkUnavailable("boom")

        sleeps = []
        with patch("container_herald.reconciler.asyncio.sleep", new=_stop_after(2, sleeps)):
            with pytest.raises(asyncio.CancelledError):
                await rec.run()

        assert rec.cycles == 2
        assert rec.failures == 0
        assert set(rec.handles) == {"A"}
        assert rec.last_summary["created"] == 1

