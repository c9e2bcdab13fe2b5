"""
Backing stores for the change cache, the sync queue and orchestrator state.

The engine only talks to the StateStore interface. MemoryStateStore keeps
everything in-process; FirestoreStateStore (services.firestore) shares state
between processes.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ..models.sync import (
    Direction, EntityRef, JobStatus, Side, SyncCycleResult, SyncJob, SyncRecord
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
RecordMutator = Callable[[Optional[SyncRecord]], Optional[SyncRecord]]


class JobTransaction(ABC):
    """
    Atomic view of the job collection.

    Implementations backed by a remote store require every read to happen
    before the first write within one transaction.
    """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[SyncJob]:
        pass

    @abstractmethod
    def get_open_job_id(self, open_key: str) -> Optional[str]:
        pass

    @abstractmethod
    def claimable_jobs(
        self,
        now: datetime,
        limit: int,
        direction: Optional[Direction] = None,
        entity_type: Optional[str] = None,
    ) -> List[SyncJob]:
        """Pending/failed jobs that are due, plus in-flight jobs whose lease expired."""
        pass

    @abstractmethod
    def put_job(self, job: SyncJob) -> None:
        pass

    @abstractmethod
    def set_open_job_id(self, open_key: str, job_id: Optional[str]) -> None:
        pass


class StateStore(ABC):
    """Abstract persistence for sync state."""

    # Jobs

    @abstractmethod
    def run_job_transaction(self, fn: Callable[[JobTransaction], T]) -> T:
        """Run ``fn`` atomically against the job collection."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[SyncJob]:
        pass

    @abstractmethod
    def list_jobs(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        direction: Optional[Direction] = None,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SyncJob]:
        pass

    def count_jobs(self, statuses: Iterable[JobStatus]) -> int:
        return len(self.list_jobs(statuses=statuses))

    # Sync records

    @abstractmethod
    def get_record(self, ref: EntityRef) -> Optional[SyncRecord]:
        """Find the record either side's id belongs to."""
        pass

    @abstractmethod
    def update_record(self, ref: EntityRef, mutator: RecordMutator) -> Optional[SyncRecord]:
        """
        Read-modify-write one record, serialized per record.

        Args:
            ref: Reference used to locate (or name) the record
            mutator: Receives the current record (or None) and returns the
                record to store, or None to leave it untouched

        Returns:
            The stored record, or the unchanged current one
        """
        pass

    @abstractmethod
    def delete_record(self, ref: EntityRef) -> bool:
        pass

    # Orchestrator state

    @abstractmethod
    def get_watermark(self, key: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def set_watermark(self, key: str, value: datetime) -> None:
        pass

    @abstractmethod
    def record_cycle(self, results: List[SyncCycleResult]) -> None:
        pass

    @abstractmethod
    def recent_cycles(self, limit: int = 20) -> List[SyncCycleResult]:
        pass


class KeyedLock:
    """One lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class _MemoryJobTransaction(JobTransaction):

    def __init__(self, store: "MemoryStateStore"):
        self.store = store

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        job = self.store._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def get_open_job_id(self, open_key: str) -> Optional[str]:
        return self.store._open_jobs.get(open_key)

    def claimable_jobs(self, now, limit, direction=None, entity_type=None) -> List[SyncJob]:
        due = []
        for job in self.store._jobs.values():
            if direction is not None and job.direction is not direction:
                continue
            if entity_type is not None and job.entity_type != entity_type:
                continue
            if job.status in (JobStatus.PENDING, JobStatus.FAILED) and job.available_at <= now:
                due.append(job)
            elif job.status is JobStatus.IN_FLIGHT and job.lease_expires_at and job.lease_expires_at <= now:
                due.append(job)
        due.sort(key=lambda j: (j.available_at, j.enqueued_at))
        return [job.model_copy(deep=True) for job in due[:limit]]

    def put_job(self, job: SyncJob) -> None:
        self.store._jobs[job.id] = job.model_copy(deep=True)

    def set_open_job_id(self, open_key: str, job_id: Optional[str]) -> None:
        if job_id is None:
            self.store._open_jobs.pop(open_key, None)
        else:
            self.store._open_jobs[open_key] = job_id


class MemoryStateStore(StateStore):
    """
    In-process store. Suitable for a single process and for tests.
    """

    def __init__(self, history_size: int = 100):
        self._jobs: Dict[str, SyncJob] = {}
        self._open_jobs: Dict[str, str] = {}
        self._jobs_lock = threading.RLock()

        self._records: Dict[str, SyncRecord] = {}
        self._index: Dict[Tuple[str, Side, str], str] = {}
        self._index_lock = threading.Lock()
        self._record_locks = KeyedLock()

        self._watermarks: Dict[str, datetime] = {}
        self._cycles: deque = deque(maxlen=history_size)
        self._state_lock = threading.Lock()

    # Jobs

    def run_job_transaction(self, fn: Callable[[JobTransaction], T]) -> T:
        with self._jobs_lock:
            return fn(_MemoryJobTransaction(self))

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        with self._jobs_lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, statuses=None, direction=None, entity_type=None, limit=None) -> List[SyncJob]:
        wanted = set(statuses) if statuses is not None else None
        with self._jobs_lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if (wanted is None or job.status in wanted)
                and (direction is None or job.direction is direction)
                and (entity_type is None or job.entity_type == entity_type)
            ]
        jobs.sort(key=lambda j: j.enqueued_at)
        return jobs[:limit] if limit else jobs

    # Sync records

    def _resolve(self, ref: EntityRef) -> str:
        with self._index_lock:
            return self._index.get((ref.entity_type, ref.source_system, ref.source_id), ref.key)

    def get_record(self, ref: EntityRef) -> Optional[SyncRecord]:
        record = self._records.get(self._resolve(ref))
        return record.model_copy(deep=True) if record else None

    def update_record(self, ref: EntityRef, mutator: RecordMutator) -> Optional[SyncRecord]:
        while True:
            record_id = self._resolve(ref)
            with self._record_locks.hold(record_id):
                # The ref may have been linked to another record meanwhile
                if self._resolve(ref) != record_id:
                    continue

                current = self._records.get(record_id)
                updated = mutator(current.model_copy(deep=True) if current else None)
                if updated is None:
                    return current.model_copy(deep=True) if current else None

                updated.record_id = record_id
                with self._index_lock:
                    if self._index.get((ref.entity_type, ref.source_system, ref.source_id), ref.key) != record_id:
                        continue
                    self._absorb_duplicates(updated)
                    self._records[record_id] = updated.model_copy(deep=True)
                    for side in Side:
                        external_id = updated.id_for(side)
                        if external_id:
                            self._index[(updated.entity_type, side, external_id)] = record_id
                return updated

    def _absorb_duplicates(self, updated: SyncRecord) -> None:
        """
        Resolve ids of ``updated`` that already belong to another record.

        A record that only knows the same side's id (created by listing that
        side before the link existed) is merged in and removed. One linked to
        a different counterpart keeps its id, which is dropped from
        ``updated``. Caller holds the index lock.
        """
        for side in Side:
            external_id = updated.id_for(side)
            other_id = self._index.get((updated.entity_type, side, external_id)) if external_id else None
            if other_id is None or other_id == updated.record_id:
                continue

            other = self._records.get(other_id)
            if other is None:
                continue

            if other.id_for(side.other) not in (None, updated.id_for(side.other)):
                logger.warning(
                    f"{updated.entity_type} {side.value}:{external_id} is already linked to "
                    f"{other.id_for(side.other)} in {other_id}; not linking it to {updated.record_id}"
                )
                setattr(updated, f"id_{side.value}", None)
                updated.canonical_key = None
                continue

            for field in ("last_hash", "observed_hash", "modified_at"):
                name = f"{field}_{side.value}"
                if getattr(updated, name) is None:
                    setattr(updated, name, getattr(other, name))
            if other.conflict_flag and not updated.conflict_flag:
                updated.conflict_flag = True
                updated.conflict_resolution = other.conflict_resolution

            del self._records[other_id]
            for key in [k for k, v in self._index.items() if v == other_id]:
                del self._index[key]
            logger.info(f"Merged sync record {other_id} into {updated.record_id}")

    def delete_record(self, ref: EntityRef) -> bool:
        record_id = self._resolve(ref)
        with self._record_locks.hold(record_id):
            record = self._records.pop(record_id, None)
            if record is None:
                return False
            with self._index_lock:
                for key in [k for k, v in self._index.items() if v == record_id]:
                    del self._index[key]
            return True

    # Orchestrator state

    def get_watermark(self, key: str) -> Optional[datetime]:
        with self._state_lock:
            return self._watermarks.get(key)

    def set_watermark(self, key: str, value: datetime) -> None:
        with self._state_lock:
            self._watermarks[key] = value

    def record_cycle(self, results: List[SyncCycleResult]) -> None:
        with self._state_lock:
            for result in results:
                self._cycles.append(result.model_copy(deep=True))

    def recent_cycles(self, limit: int = 20) -> List[SyncCycleResult]:
        with self._state_lock:
            return list(self._cycles)[-limit:][::-1]
