"""
Direction worker: moves changes from one system to the other.

A cycle for one entity type is a scan (list, map, detect, enqueue) and a
drain (dequeue, write, ack). The two overlap: drain threads start claiming
jobs while the scan is still listing.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..connectors.base import BaseConnector
from ..exceptions import InfrastructureError, MappingError, PermanentSystemError, SyncError
from ..models.config import DirectionSettings
from ..models.sync import ChangeStatus, Direction, EntityRef, JobStatus, SyncCycleResult, SyncJob
from .cache import ChangeCache
from .conflicts import ConflictContext, ConflictPolicy, ConflictResolution
from .queue import SyncQueue
from .transforms import FieldMapper, content_hash

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_subset(expected: Dict[str, Any], actual: Dict[str, Any]) -> bool:
    """True when every field of ``expected`` already holds the same value in ``actual``."""
    for key, value in expected.items():
        if key not in actual:
            return False
        if isinstance(value, dict) and isinstance(actual[key], dict):
            if not is_subset(value, actual[key]):
                return False
        elif actual[key] != value:
            return False
    return True


def merge_records(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive merge of ``changes`` over ``base``, leaving both untouched."""
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_records(merged[key], value)
        else:
            merged[key] = value
    return merged


class DirectionWorker:
    """
    Runs the sync pipeline for one direction.

    The worker holds no state of its own between cycles; everything it needs
    to resume lives in the change cache and the sync queue.
    """

    def __init__(
        self,
        direction: Direction,
        source: BaseConnector,
        target: BaseConnector,
        mapper: FieldMapper,
        cache: ChangeCache,
        queue: SyncQueue,
        policy: ConflictPolicy,
        settings: Optional[DirectionSettings] = None,
        poll_interval: float = 0.5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.direction = direction
        self.source = source
        self.target = target
        self.mapper = mapper
        self.cache = cache
        self.queue = queue
        self.policy = policy
        self.settings = settings or DirectionSettings()
        self.poll_interval = poll_interval
        self.clock = clock or _utcnow

        self._stop_event = threading.Event()
        self._counts_lock = threading.Lock()

    @property
    def label(self) -> str:
        return f"{self.source.name}->{self.target.name}"

    def stop(self) -> None:
        """Stop claiming new batches. Jobs already dequeued still finish."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def new_result(self, entity_type: str, since: Optional[datetime] = None) -> SyncCycleResult:
        return SyncCycleResult(
            direction=self.direction,
            entity_type=entity_type,
            since=since,
            started_at=self.clock(),
        )

    def run_cycle(self, entity_type: str, since: datetime) -> SyncCycleResult:
        """
        Scan and drain one entity type, concurrently.

        Args:
            entity_type: Entity type to sync
            since: Only records modified at or after this are listed

        Returns:
            Counts for the cycle; ``error`` is set when listing failed

        Raises:
            InfrastructureError: The queue or cache store failed
        """
        result = self.new_result(entity_type, since)
        started = time.monotonic()
        listing_done = threading.Event()
        abort = threading.Event()

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"drain-{self.direction.value}") as executor:
            drain_future = executor.submit(self.drain, entity_type, result, listing_done, abort)
            try:
                self.scan(entity_type, since, result)
            except InfrastructureError:
                abort.set()
                raise
            finally:
                listing_done.set()
            drain_future.result()

        result.duration_ms = (time.monotonic() - started) * 1000
        logger.info(f"{self.label} {entity_type} cycle finished: {result.get_summary()}")
        return result

    # Scan

    def scan(self, entity_type: str, since: datetime, result: Optional[SyncCycleResult] = None) -> SyncCycleResult:
        """
        List records changed since ``since`` and enqueue one job per real change.

        A listing failure stops the scan and is recorded on the result.
        """
        result = result or self.new_result(entity_type, since)
        logger.info(f"Scanning {self.source.name} {entity_type} changed since {since.isoformat()}")

        try:
            for raw in self.source.list_changed(entity_type, since):
                if self.stopped:
                    result.error = "scan stopped before listing completed"
                    logger.warning(f"{self.label} {entity_type} scan stopped early")
                    break
                self._scan_record(entity_type, raw, result)
        except InfrastructureError:
            raise
        except SyncError as e:
            logger.error(f"Listing {self.source.name} {entity_type} failed: {e}")
            result.error = str(e)

        return result

    def _scan_record(self, entity_type: str, raw: Dict[str, Any], result: SyncCycleResult) -> None:
        self._count(result, scanned=1)

        try:
            source_id = self.source.record_id(entity_type, raw)
            mapped = self.mapper.map(entity_type, self.direction, raw)
        except MappingError as e:
            logger.warning(f"Skipping {self.source.name} {entity_type} {raw.get('id')}: {e}")
            self._count(result, failed=1)
            return

        ref = EntityRef(entity_type=entity_type, source_system=self.direction.source, source_id=source_id)
        digest = content_hash(mapped)
        modified_at = self.source.modified_at(entity_type, raw)

        status = self.cache.detect_change(ref, digest, self.direction)
        if status is ChangeStatus.UNCHANGED:
            self._count(result, skipped=1)
            return

        if status is ChangeStatus.CONFLICTING and not self._resolve_conflict(ref, digest, modified_at, result):
            return

        self.cache.observe(ref, digest, self.direction, modified_at)
        self.queue.enqueue(
            ref,
            self.direction,
            mapped,
            digest,
            source_modified_at=modified_at,
            max_attempts=self.settings.max_attempts,
        )
        self._count(result, enqueued=1)

    def _resolve_conflict(self, ref: EntityRef, digest: str, modified_at: Optional[datetime],
                          result: SyncCycleResult) -> bool:
        """Apply the conflict policy. Returns True when this change should still be synced."""
        record = self.cache.get(ref)
        target_side = self.direction.target
        context = ConflictContext(
            direction=self.direction,
            entity_ref=ref,
            source_modified_at=modified_at,
            target_modified_at=record.modified_at(target_side) if record else None,
        )
        resolution = self.policy.resolve(context)
        self.cache.flag_conflict(ref, resolution.value)
        logger.warning(f"Conflict on {ref.key} ({self.label}): {resolution.value}")

        if resolution is ConflictResolution.DROP:
            self.cache.observe(ref, digest, self.direction, modified_at)
            self._count(result, conflicts=1)
            return False

        # The other side's pending write must not overwrite a winner or an edit held for review
        counterpart_id = record.id_for(target_side) if record else None
        if counterpart_id:
            counterpart = EntityRef(entity_type=ref.entity_type, source_system=target_side, source_id=counterpart_id)
            self.queue.cancel(counterpart, self.direction.opposite)

        if resolution is ConflictResolution.MANUAL_REVIEW:
            self.cache.observe(ref, digest, self.direction, modified_at)
            self._count(result, conflicts=1)
            return False
        return True

    # Drain

    def drain(
        self,
        entity_type: str,
        result: SyncCycleResult,
        listing_done: Optional[threading.Event] = None,
        abort: Optional[threading.Event] = None,
    ) -> SyncCycleResult:
        """
        Apply queued jobs with ``concurrency`` threads until the queue is empty.

        Args:
            entity_type: Entity type whose jobs are claimed
            result: Result the outcomes are counted into
            listing_done: Set once no more jobs will be enqueued this cycle;
                None means the queue is already complete
            abort: Set by the caller to stop early

        Raises:
            InfrastructureError: The queue or cache store failed
        """
        abort = abort or threading.Event()
        workers = self.settings.concurrency

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"sync-{self.direction.value}") as executor:
            futures = [
                executor.submit(self._drain_loop, entity_type, result, listing_done, abort)
                for _ in range(workers)
            ]
            errors = [f.exception() for f in futures]

        for error in errors:
            if error is not None:
                raise error
        return result

    def _drain_loop(self, entity_type: str, result: SyncCycleResult,
                    listing_done: Optional[threading.Event], abort: threading.Event) -> None:
        try:
            while not self.stopped and not abort.is_set():
                # Read before dequeuing: an empty queue after listing finished means done
                finished = listing_done is None or listing_done.is_set()
                jobs = self.queue.dequeue_batch(self.settings.batch_size, self.direction, entity_type)
                if not jobs:
                    if finished:
                        break
                    self._stop_event.wait(self.poll_interval)
                    continue

                for job in jobs:
                    self._process(job, result)
        except InfrastructureError:
            abort.set()
            raise

    def _process(self, job: SyncJob, result: SyncCycleResult) -> None:
        try:
            outcome = self._apply(job)
        except InfrastructureError:
            raise
        except Exception as e:
            updated = self.queue.nack(job.id, e)
            if updated is not None and updated.status is JobStatus.DEAD_LETTERED:
                self._count(result, failed=1, dead_lettered=1)
            else:
                self._count(result, retried=1)
            return

        self.queue.ack(job.id, job.revision)
        self._count(result, **{outcome: 1})

    def _apply(self, job: SyncJob) -> str:
        """
        Perform the single target write for a job.

        Safe to repeat: an update whose values are already present is skipped.

        Returns:
            "created", "updated" or "skipped"
        """
        entity_type = job.entity_type
        record = self.cache.get(job.entity_ref)
        counterpart_id = record.id_for(self.direction.target) if record else None

        if counterpart_id is None:
            counterpart_id = self.target.find_existing(entity_type, job.payload)
            if counterpart_id:
                logger.info(f"Linking {job.entity_ref.key} to existing {self.target.name} {entity_type} {counterpart_id}")

        if counterpart_id is None:
            new_id = self.target.create(entity_type, job.payload)
            self.cache.put(
                job.entity_ref,
                job.content_hash,
                self.direction,
                counterpart_id=new_id,
                echo_hash=self._echo_hash(entity_type, job.payload),
            )
            return "created"

        current = self.target.get(entity_type, counterpart_id)
        if current is None:
            raise PermanentSystemError(
                f"{entity_type} {counterpart_id} no longer exists in {self.target.name}",
                status_code=404,
                system=self.target.name,
            )

        if is_subset(job.payload, current):
            outcome = "skipped"
        else:
            self.target.update(entity_type, counterpart_id, job.payload)
            outcome = "updated"

        self.cache.put(
            job.entity_ref,
            job.content_hash,
            self.direction,
            counterpart_id=counterpart_id,
            echo_hash=self._echo_hash(entity_type, merge_records(current, job.payload)),
        )
        return outcome

    def _echo_hash(self, entity_type: str, target_record: Dict[str, Any]) -> Optional[str]:
        """Digest the written target record will have when listed in the opposite direction."""
        opposite = self.direction.opposite
        if not self.mapper.has_table(entity_type, opposite):
            return None
        try:
            return content_hash(self.mapper.map(entity_type, opposite, target_record))
        except MappingError:
            return None

    def _count(self, result: SyncCycleResult, **deltas: int) -> None:
        with self._counts_lock:
            for name, delta in deltas.items():
                setattr(result, name, getattr(result, name) + delta)
