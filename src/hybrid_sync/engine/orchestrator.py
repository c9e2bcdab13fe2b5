"""
Sync orchestrator: schedules cycles and wires the engine together.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..connectors.base import BaseConnector
from ..exceptions import ConfigurationError, InfrastructureError, MappingError, SyncError
from ..models.config import SyncMode, SyncSettings
from ..models.sync import Direction, Side, SyncCycleResult, SyncJob, SyncStatusReport
from ..services.store import MemoryStateStore, StateStore
from .cache import ChangeCache
from .conflicts import get_conflict_policy
from .queue import SyncQueue
from .retry import RetryPolicy
from .transforms import FieldMapper, default_mapper
from .worker import DirectionWorker

logger = logging.getLogger(__name__)

StatusPublisher = Callable[[List[SyncCycleResult]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def watermark_key(direction: Direction, entity_type: str) -> str:
    return f"{direction.value}:{entity_type}"


class SyncOrchestrator:
    """
    Runs sync cycles in the configured mode, on a timer or on demand.

    At most one cycle runs at a time. Scheduled ticks that arrive while a
    cycle runs are skipped and counted; on-demand triggers that arrive too
    early or while a cycle runs are folded into the next scheduled cycle.
    """

    def __init__(
        self,
        connector_a: BaseConnector,
        connector_b: BaseConnector,
        settings: Optional[SyncSettings] = None,
        store: Optional[StateStore] = None,
        mapper: Optional[FieldMapper] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        status_publisher: Optional[StatusPublisher] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            connector_a: Source A connector (RealGreen)
            connector_b: Source B connector (GoHighLevel)
            settings: Engine settings
            store: Backing store for the cache, the queue and cycle history
            mapper: Field mapper; the built-in tables when omitted
            clock: Returns the current UTC time
            retry_policy: Backoff policy for failed jobs
            status_publisher: Called with the results of every cycle

        Raises:
            ConfigurationError: A mapping table needed by the settings is missing
        """
        self.settings = settings or SyncSettings()
        self.store = store or MemoryStateStore()
        self.mapper = mapper or default_mapper()
        self.clock = clock or _utcnow
        self.status_publisher = status_publisher

        self.cache = ChangeCache(self.store, clock=self.clock)
        self.retry_policy = retry_policy or RetryPolicy(self.settings.retry)
        self.queue = SyncQueue(self.store, self.retry_policy, self.settings.queue, clock=self.clock)
        self.conflict_policy = get_conflict_policy(self.settings.conflict_policy)

        self.connectors: Dict[Side, BaseConnector] = {Side.A: connector_a, Side.B: connector_b}
        self.workers: Dict[Direction, DirectionWorker] = {
            direction: DirectionWorker(
                direction,
                source=self.connectors[direction.source],
                target=self.connectors[direction.target],
                mapper=self.mapper,
                cache=self.cache,
                queue=self.queue,
                policy=self.conflict_policy,
                settings=self.settings.for_direction(direction),
                poll_interval=self.settings.queue.poll_interval_seconds,
                clock=self.clock,
            )
            for direction in Direction
        }
        self._validate_mappings()

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._accepting = True
        self._timer_thread: Optional[threading.Thread] = None
        self._cycle_thread: Optional[threading.Thread] = None

        self._running = False
        self._pending_trigger = False
        self._coalesced = 0
        self._last_started_at: Optional[datetime] = None
        self._last_cycle_at: Optional[datetime] = None
        self._last_results: List[SyncCycleResult] = []
        self._last_error: Optional[str] = None

    def _validate_mappings(self) -> None:
        for direction in self.settings.active_directions():
            for entity_type in self.settings.entity_types:
                try:
                    self.mapper.get_table(entity_type, direction)
                except MappingError:
                    raise ConfigurationError(f"No mapping table for {entity_type} {direction.value}")

    # Scheduling

    def start(self, run_immediately: bool = True) -> None:
        """Start the scheduler thread."""
        if not self._accepting:
            raise SyncError("Orchestrator has been shut down")
        if self._timer_thread is not None and self._timer_thread.is_alive():
            logger.warning("Scheduler already running")
            return

        interval = self.settings.cycle_interval_seconds
        self._timer_thread = threading.Thread(
            target=self._timer_loop,
            args=(interval, run_immediately),
            name="sync-scheduler",
            daemon=True,
        )
        self._timer_thread.start()
        logger.info(f"Scheduler started: mode={self.settings.mode.value}, interval={interval}s")

    def _timer_loop(self, interval: float, run_immediately: bool) -> None:
        if run_immediately:
            self._tick()
        while not self._stop_event.wait(interval):
            self._tick()
        logger.info("Scheduler stopped")

    def _tick(self) -> None:
        if self._cycle_thread is not None and self._cycle_thread.is_alive():
            with self._state_lock:
                self._coalesced += 1
            logger.info("Previous cycle still running; skipping scheduled tick")
            return

        self._cycle_thread = threading.Thread(target=self._scheduled_cycle, name="sync-cycle", daemon=True)
        self._cycle_thread.start()

    def _scheduled_cycle(self) -> None:
        try:
            self._run_cycle(None, manual=False)
        except InfrastructureError as e:
            logger.error(f"Scheduled cycle aborted; next cycle resumes from the last watermark: {e}")
        except Exception as e:
            logger.exception(f"Scheduled cycle failed: {e}")

    def trigger_cycle(self, mode: Optional[SyncMode] = None) -> List[SyncCycleResult]:
        """
        Run a cycle now, in the calling thread.

        Returns:
            Results of the cycle, or [] when the trigger was deferred to the
            next scheduled cycle

        Raises:
            InfrastructureError: The queue or cache store failed
        """
        if not self._accepting:
            raise SyncError("Orchestrator is shutting down")
        if mode is not None:
            mode = SyncMode(mode)

        now = self.clock()
        with self._state_lock:
            gap = timedelta(seconds=self.settings.min_trigger_gap)
            too_soon = self._last_started_at is not None and now - self._last_started_at < gap
            if too_soon or self._running:
                self._pending_trigger = True
                logger.info("Trigger deferred to the next scheduled cycle")
                return []

        return self._run_cycle(mode, manual=True)

    # Cycles

    def _run_cycle(self, mode: Optional[SyncMode], manual: bool) -> List[SyncCycleResult]:
        if not self._cycle_lock.acquire(blocking=False):
            with self._state_lock:
                self._coalesced += 1
                if manual:
                    self._pending_trigger = True
            logger.info("A cycle is already running; coalescing")
            return []

        try:
            with self._state_lock:
                self._running = True
                self._pending_trigger = False
                self._last_started_at = self.clock()
            return self._execute_cycle(mode or self.settings.mode)
        finally:
            with self._state_lock:
                self._running = False
            self._cycle_lock.release()

    def _execute_cycle(self, mode: SyncMode) -> List[SyncCycleResult]:
        directions = self.settings.active_directions(mode)
        cycle_start = self.clock()
        results: List[SyncCycleResult] = []
        logger.info(f"Starting {mode.value} cycle: {[d.value for d in directions]}")

        try:
            for entity_type in self.settings.entity_types:
                if mode is SyncMode.HYBRID and len(directions) > 1:
                    results.extend(self._run_hybrid(entity_type, directions, cycle_start))
                else:
                    for direction in directions:
                        results.append(self._run_direction(direction, entity_type, cycle_start))
        except InfrastructureError as e:
            logger.error(f"Cycle aborted: {e}")
            with self._state_lock:
                self._last_error = str(e)
            raise

        with self._state_lock:
            self._last_cycle_at = cycle_start
            self._last_results = results
            self._last_error = next((r.error for r in results if r.error), None)

        self._publish(results)
        return results

    def _run_direction(self, direction: Direction, entity_type: str, cycle_start: datetime) -> SyncCycleResult:
        since = self._since(direction, entity_type, cycle_start)
        result = self.workers[direction].run_cycle(entity_type, since)
        self._advance_watermark(direction, entity_type, result, cycle_start)
        return result

    def _run_hybrid(self, entity_type: str, directions: List[Direction],
                    cycle_start: datetime) -> List[SyncCycleResult]:
        """
        Scan every direction in order, then drain them together.

        Scanning sequentially lets the later direction see what the earlier
        one observed, which is what conflict detection relies on.
        """
        started = time.monotonic()
        results = []
        for direction in directions:
            since = self._since(direction, entity_type, cycle_start)
            results.append(self.workers[direction].scan(entity_type, since))

        with ThreadPoolExecutor(max_workers=len(directions), thread_name_prefix="sync-drain") as executor:
            futures = [
                executor.submit(self.workers[direction].drain, entity_type, result)
                for direction, result in zip(directions, results)
            ]
            for future in futures:
                future.result()

        duration_ms = (time.monotonic() - started) * 1000
        for direction, result in zip(directions, results):
            result.duration_ms = duration_ms
            self._advance_watermark(direction, entity_type, result, cycle_start)
            logger.info(f"Hybrid {entity_type} {direction.value} finished: {result.get_summary()}")
        return results

    def _since(self, direction: Direction, entity_type: str, cycle_start: datetime) -> datetime:
        watermark = self.store.get_watermark(watermark_key(direction, entity_type))
        if watermark is None:
            return cycle_start - timedelta(hours=self.settings.initial_lookback_hours)
        return watermark - timedelta(seconds=self.settings.watermark_overlap_seconds)

    def _advance_watermark(self, direction: Direction, entity_type: str,
                           result: SyncCycleResult, cycle_start: datetime) -> None:
        if result.error:
            logger.warning(f"Watermark for {direction.value} {entity_type} not advanced: {result.error}")
            return
        self.store.set_watermark(watermark_key(direction, entity_type), cycle_start)

    def _publish(self, results: List[SyncCycleResult]) -> None:
        self.store.record_cycle(results)
        if self.status_publisher is None:
            return
        try:
            self.status_publisher(results)
        except Exception as e:
            logger.error(f"Status publisher failed: {e}")

    # Reporting and recovery

    def get_status(self) -> SyncStatusReport:
        with self._state_lock:
            report = SyncStatusReport(
                mode=self.settings.mode.value,
                running=self._running,
                last_cycle_at=self._last_cycle_at,
                last_results=list(self._last_results),
                pending_trigger=self._pending_trigger,
                coalesced_triggers=self._coalesced,
                last_error=self._last_error,
            )
        report.queue_depth = self.queue.depth()
        report.dead_letter_count = self.queue.dead_letter_count()
        return report

    def list_dead_letters(self, limit: Optional[int] = None) -> List[SyncJob]:
        return self.queue.list_dead_lettered(limit=limit)

    def retry_dead_letter(self, job_id: str) -> str:
        """Requeue a dead-lettered job; it is picked up by the next drain."""
        return self.queue.retry_dead_letter(job_id)

    def test_connections(self) -> Dict[str, bool]:
        return {connector.name: connector.test_connection() for connector in self.connectors.values()}

    # Shutdown

    def shutdown(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Stop scheduling, let the running cycle finish its in-flight jobs.

        Jobs still leased when the grace period ends are redelivered after
        their visibility timeout.

        Returns:
            True when everything stopped within the grace period
        """
        grace = self.settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + grace
        logger.info(f"Shutting down (grace {grace}s)")

        self._accepting = False
        self._stop_event.set()
        for worker in self.workers.values():
            worker.stop()

        for thread in (self._timer_thread, self._cycle_thread):
            if thread is not None:
                thread.join(timeout=max(0.0, deadline - time.monotonic()))

        # Covers cycles started by trigger_cycle in other threads
        idle = self._cycle_lock.acquire(timeout=max(0.0, deadline - time.monotonic()))
        if idle:
            self._cycle_lock.release()
        else:
            logger.warning("Cycle still running after the grace period")
        return idle
