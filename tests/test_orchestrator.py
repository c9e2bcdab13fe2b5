"""
Tests for the sync orchestrator: modes, conflicts, scheduling and recovery.
"""

import threading
import time

import pytest

from hybrid_sync.engine.orchestrator import SyncOrchestrator, watermark_key
from hybrid_sync.engine.transforms import FieldMapper
from hybrid_sync.exceptions import (
    CacheUnavailable, ConfigurationError, PermanentSystemError, SyncError, TransientSystemError
)
from hybrid_sync.models.config import DirectionSettings, QueueSettings, SyncMode, SyncSettings
from hybrid_sync.models.sync import Direction, EntityRef, JobStatus, Side


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def make_orchestrator(system_a, system_b, store, clock, retry_policy):
    created = []

    def _make(**overrides):
        values = dict(
            entity_types=["customer"],
            a_to_b=DirectionSettings(concurrency=2),
            b_to_a=DirectionSettings(concurrency=2),
            queue=QueueSettings(poll_interval_seconds=0.01),
            min_trigger_gap_seconds=0,
            shutdown_grace_seconds=2,
        )
        values.update(overrides)
        publisher = values.pop("status_publisher", None)
        orchestrator = SyncOrchestrator(
            system_a,
            system_b,
            settings=SyncSettings(**values),
            store=store,
            clock=clock,
            retry_policy=retry_policy,
            status_publisher=publisher,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.shutdown(grace_seconds=1)


def seed_customer(system, record_id, **fields):
    values = dict(firstName="Ada", lastName="Lovelace", email="ada@example.com")
    values.update(fields)
    return system.seed("customer", record_id, **values)


class TestModes:
    """Which directions run in each mode."""

    def test_hybrid_runs_both_directions(self, make_orchestrator, system_a, system_b):
        seed_customer(system_a, "7")
        seed_customer(system_b, "g-1", email="byron@example.com", firstName="George")

        results = make_orchestrator().trigger_cycle()

        assert [r.direction for r in results] == [Direction.A_TO_B, Direction.B_TO_A]
        assert results[0].created == 1
        assert results[1].created == 1
        assert len(system_a.records["customer"]) == 2
        assert len(system_b.records["customer"]) == 2

    def test_a_led_only_pushes_a(self, make_orchestrator, system_a, system_b):
        seed_customer(system_a, "7")
        seed_customer(system_b, "g-1", email="byron@example.com")

        results = make_orchestrator(mode=SyncMode.A_LED).trigger_cycle()

        assert [r.direction for r in results] == [Direction.A_TO_B]
        assert system_a.writes == []
        assert len(system_b.writes) == 1

    def test_b_led_only_pushes_b(self, make_orchestrator, system_a, system_b):
        seed_customer(system_a, "7")
        seed_customer(system_b, "g-1", email="byron@example.com")

        results = make_orchestrator(mode=SyncMode.B_LED).trigger_cycle()

        assert [r.direction for r in results] == [Direction.B_TO_A]
        assert system_b.writes == []
        assert len(system_a.writes) == 1

    def test_mode_override_per_trigger(self, make_orchestrator, system_a):
        seed_customer(system_a, "7")

        results = make_orchestrator().trigger_cycle(SyncMode.A_LED)

        assert [r.direction for r in results] == [Direction.A_TO_B]

    def test_disabled_direction_is_skipped(self, make_orchestrator, system_b):
        seed_customer(system_b, "g-1")

        results = make_orchestrator(b_to_a=DirectionSettings(enabled=False)).trigger_cycle()

        assert [r.direction for r in results] == [Direction.A_TO_B]

    def test_missing_mapping_table_fails_fast(self, system_a, system_b):
        with pytest.raises(ConfigurationError):
            SyncOrchestrator(system_a, system_b, mapper=FieldMapper())


class TestConflicts:
    """Both systems edited between two cycles, newest-wins policy."""

    def _sync_once_then_edit_both(self, orchestrator, system_a, system_b, clock, a_first):
        seed_customer(system_a, "7")
        orchestrator.trigger_cycle()
        assert system_b.records["customer"]["42"]["lastName"] == "Lovelace"

        edits = [
            (system_a, "7", "King"),
            (system_b, "42", "Byron"),
        ]
        if not a_first:
            edits.reverse()
        for system, record_id, last_name in edits:
            clock.advance(60)
            system.edit("customer", record_id, lastName=last_name)
        clock.advance(60)

    def test_b_newer_wins(self, make_orchestrator, system_a, system_b, clock, cache):
        """B edited last: B's value is applied to A and the conflict is flagged."""
        orchestrator = make_orchestrator()
        self._sync_once_then_edit_both(orchestrator, system_a, system_b, clock, a_first=True)

        results = orchestrator.trigger_cycle()

        assert system_a.records["customer"]["7"]["lastName"] == "Byron"
        assert system_b.records["customer"]["42"]["lastName"] == "Byron"
        record = cache.get(EntityRef(entity_type="customer", source_system=Side.A, source_id="7"))
        assert record.conflict_flag is True
        by_direction = {r.direction: r for r in results}
        assert by_direction[Direction.B_TO_A].updated == 1
        assert by_direction[Direction.A_TO_B].updated == 0

    def test_a_newer_wins(self, make_orchestrator, system_a, system_b, clock, cache):
        orchestrator = make_orchestrator()
        self._sync_once_then_edit_both(orchestrator, system_a, system_b, clock, a_first=False)

        results = orchestrator.trigger_cycle()

        assert system_a.records["customer"]["7"]["lastName"] == "King"
        assert system_b.records["customer"]["42"]["lastName"] == "King"
        record = cache.get(EntityRef(entity_type="customer", source_system=Side.B, source_id="42"))
        assert record.conflict_flag is True
        by_direction = {r.direction: r for r in results}
        assert by_direction[Direction.B_TO_A].conflicts == 1

    def test_manual_review_holds_both_sides(self, make_orchestrator, system_a, system_b, clock, cache, queue):
        """Without a timestamp on B neither edit is written until the conflict is reviewed."""
        orchestrator = make_orchestrator()
        self._sync_once_then_edit_both(orchestrator, system_a, system_b, clock, a_first=True)
        del system_b.records["customer"]["42"]["updatedAt"]

        results = orchestrator.trigger_cycle()

        assert system_a.records["customer"]["7"]["lastName"] == "King"
        assert system_b.records["customer"]["42"]["lastName"] == "Byron"
        record = cache.get(EntityRef(entity_type="customer", source_system=Side.B, source_id="42"))
        assert record.conflict_flag is True
        assert record.conflict_resolution == "manual_review"
        by_direction = {r.direction: r for r in results}
        assert by_direction[Direction.B_TO_A].conflicts == 1
        assert by_direction[Direction.A_TO_B].updated == 0
        assert queue.depth() == 0

    def test_resolved_conflict_settles(self, make_orchestrator, system_a, system_b, clock):
        """After the winner is written, the next cycle writes nothing."""
        orchestrator = make_orchestrator()
        self._sync_once_then_edit_both(orchestrator, system_a, system_b, clock, a_first=True)
        orchestrator.trigger_cycle()
        writes = len(system_a.writes) + len(system_b.writes)

        clock.advance(60)
        results = orchestrator.trigger_cycle()

        assert len(system_a.writes) + len(system_b.writes) == writes
        assert sum(r.enqueued for r in results) == 0


class TestScheduling:
    """Triggers, gaps and coalescing."""

    def test_trigger_within_gap_is_deferred(self, make_orchestrator, clock):
        orchestrator = make_orchestrator(min_trigger_gap_seconds=300)

        assert orchestrator.trigger_cycle() != []
        assert orchestrator.trigger_cycle() == []
        assert orchestrator.get_status().pending_trigger is True

        clock.advance(301)
        assert orchestrator.trigger_cycle() != []
        assert orchestrator.get_status().pending_trigger is False

    def test_overlapping_cycles_are_coalesced(self, make_orchestrator, system_a, monkeypatch):
        """A trigger or tick while a cycle runs never starts a second cycle."""
        release = threading.Event()
        listing = threading.Event()
        original = system_a._list_changed

        def slow_list(entity_type, since):
            listing.set()
            release.wait(5)
            return original(entity_type, since)

        monkeypatch.setattr(system_a, "_list_changed", slow_list)
        orchestrator = make_orchestrator()

        manual = threading.Thread(target=orchestrator.trigger_cycle)
        manual.start()
        assert listing.wait(5)

        assert orchestrator.trigger_cycle() == []
        orchestrator.start(run_immediately=True)
        assert wait_for(lambda: orchestrator.get_status().coalesced_triggers == 1)

        status = orchestrator.get_status()
        assert status.running is True
        assert status.pending_trigger is True

        release.set()
        manual.join(5)
        assert orchestrator.get_status().running is False

    def test_scheduler_runs_cycles(self, make_orchestrator, system_a, system_b):
        seed_customer(system_a, "7")
        orchestrator = make_orchestrator()

        orchestrator.start(run_immediately=True)

        assert wait_for(lambda: orchestrator.get_status().last_cycle_at is not None)
        assert orchestrator.shutdown(grace_seconds=2) is True
        assert len(system_b.records["customer"]) == 1

    def test_shutdown_stops_triggers(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.start(run_immediately=False)

        assert orchestrator.shutdown(grace_seconds=1) is True
        with pytest.raises(SyncError):
            orchestrator.trigger_cycle()

    def _block_creates(self, system, monkeypatch):
        entered, release = threading.Event(), threading.Event()
        original = system._create

        def blocked_create(entity_type, record):
            entered.set()
            release.wait(5)
            return original(entity_type, record)

        monkeypatch.setattr(system, "_create", blocked_create)
        return entered, release

    def test_shutdown_lets_dequeued_job_finish(self, make_orchestrator, system_a, system_b, store, monkeypatch):
        """A write in progress when shutdown starts completes and is acked within the grace period."""
        entered, release = self._block_creates(system_b, monkeypatch)
        orchestrator = make_orchestrator(mode=SyncMode.A_LED)
        seed_customer(system_a, "7")

        cycle = threading.Thread(target=orchestrator.trigger_cycle)
        cycle.start()
        assert entered.wait(5)

        releaser = threading.Timer(0.2, release.set)
        releaser.start()
        assert orchestrator.shutdown(grace_seconds=5) is True
        cycle.join(5)
        releaser.join()

        assert system_b.records["customer"]["42"]["lastName"] == "Lovelace"
        assert [job.status for job in store.list_jobs()] == [JobStatus.DONE]

    def test_job_outliving_grace_is_redelivered(self, make_orchestrator, system_a, system_b, store, queue, clock,
                                                monkeypatch):
        """Shutdown gives up after the grace period; the leased job comes back after its visibility timeout."""
        entered, release = self._block_creates(system_b, monkeypatch)
        orchestrator = make_orchestrator(mode=SyncMode.A_LED)
        seed_customer(system_a, "7")

        cycle = threading.Thread(target=orchestrator.trigger_cycle)
        cycle.start()
        try:
            assert entered.wait(5)
            assert orchestrator.shutdown(grace_seconds=0.2) is False

            leased = store.list_jobs()
            assert [job.status for job in leased] == [JobStatus.IN_FLIGHT]
            assert queue.dequeue_batch(10) == []

            clock.advance(121)
            redelivered = queue.dequeue_batch(10)
            assert [job.id for job in redelivered] == [leased[0].id]
            assert redelivered[0].attempt == 2
        finally:
            release.set()
            cycle.join(5)


class TestStatusAndRecovery:
    """Status reporting, watermarks, dead letters and infrastructure failures."""

    def test_status_after_cycle(self, make_orchestrator, system_a, clock):
        seed_customer(system_a, "7")
        published = []
        orchestrator = make_orchestrator(status_publisher=published.append)
        cycle_start = clock()

        results = orchestrator.trigger_cycle()
        status = orchestrator.get_status()

        assert status.mode == "hybrid"
        assert status.running is False
        assert status.last_cycle_at == cycle_start
        assert len(status.last_results) == 2
        assert status.queue_depth == 0
        assert status.dead_letter_count == 0
        assert published == [results]
        assert len(orchestrator.store.recent_cycles()) == 2

    def test_watermark_advances_to_cycle_start(self, make_orchestrator, store, clock):
        orchestrator = make_orchestrator()
        cycle_start = clock()

        orchestrator.trigger_cycle()

        assert store.get_watermark(watermark_key(Direction.A_TO_B, "customer")) == cycle_start
        assert store.get_watermark(watermark_key(Direction.B_TO_A, "customer")) == cycle_start

    def test_listing_failure_keeps_watermark(self, make_orchestrator, system_a, store):
        system_a.fail_next["list"].append(TransientSystemError("HTTP 503", status_code=503))
        orchestrator = make_orchestrator()

        results = orchestrator.trigger_cycle()

        assert results[0].error is not None
        assert store.get_watermark(watermark_key(Direction.A_TO_B, "customer")) is None
        assert store.get_watermark(watermark_key(Direction.B_TO_A, "customer")) is not None
        assert orchestrator.get_status().last_error is not None

    def test_dead_letter_listing_and_retry(self, make_orchestrator, system_a, system_b, clock):
        seed_customer(system_a, "7")
        system_b.fail_next["create"].append(PermanentSystemError("HTTP 422", status_code=422))
        orchestrator = make_orchestrator()

        orchestrator.trigger_cycle()
        dead = orchestrator.list_dead_letters()
        assert len(dead) == 1
        assert orchestrator.get_status().dead_letter_count == 1

        orchestrator.retry_dead_letter(dead[0].id)
        clock.advance(1)
        orchestrator.trigger_cycle()

        assert orchestrator.list_dead_letters() == []
        assert len(system_b.records["customer"]) == 1

    def test_infrastructure_error_aborts_cycle(self, make_orchestrator, system_a, store, monkeypatch):
        """Store failures abort the cycle, surface in status and keep the watermark."""
        seed_customer(system_a, "7")
        orchestrator = make_orchestrator()

        def unavailable(*args, **kwargs):
            raise CacheUnavailable("store unreachable")

        monkeypatch.setattr(orchestrator.cache, "detect_change", unavailable)

        with pytest.raises(CacheUnavailable):
            orchestrator.trigger_cycle()

        assert "store unreachable" in orchestrator.get_status().last_error
        assert store.get_watermark(watermark_key(Direction.A_TO_B, "customer")) is None
        assert orchestrator.get_status().running is False
