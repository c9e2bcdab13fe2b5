"""
Persistent sync queue with at-least-once delivery.

Job state changes are explicit transitions on the SyncJob status:

    pending -> in_flight -> done
                         -> failed -> in_flight ...   (transient error, backoff)
                         -> dead_lettered             (permanent or exhausted)
    in_flight (lease expired) -> in_flight            (redelivered)
    pending/failed -> cancelled                       (superseded by a conflict)
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import SyncError
from ..models.config import QueueSettings
from ..models.sync import (
    Direction, EntityRef, JobStatus, SyncJob, open_key_for
)
from ..services.store import JobTransaction, StateStore
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

OPEN_STATUSES = (JobStatus.PENDING, JobStatus.IN_FLIGHT, JobStatus.FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncQueue:
    """
    Work queue of sync jobs, one job per entity write.
    """

    def __init__(
        self,
        store: StateStore,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[QueueSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.settings = settings or QueueSettings()
        self.clock = clock or _utcnow

    def enqueue(
        self,
        ref: EntityRef,
        direction: Direction,
        payload: Dict[str, Any],
        content_hash: str,
        source_modified_at: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> str:
        """
        Add a job, or fold the change into the open job for the same entity.

        Returns:
            Id of the job that now carries the change
        """
        now = self.clock()
        open_key = open_key_for(ref, direction)

        def _enqueue(tx: JobTransaction) -> str:
            open_id = tx.get_open_job_id(open_key)
            existing = tx.get_job(open_id) if open_id else None

            if existing is not None and existing.status in OPEN_STATUSES:
                existing.payload = payload
                existing.content_hash = content_hash
                existing.source_modified_at = source_modified_at
                existing.revision += 1
                existing.updated_at = now
                tx.put_job(existing)
                logger.debug(f"Coalesced change for {open_key} into job {existing.id}")
                return existing.id

            job = SyncJob(
                id=str(uuid.uuid4()),
                entity_type=ref.entity_type,
                direction=direction,
                entity_ref=ref,
                payload=payload,
                content_hash=content_hash,
                source_modified_at=source_modified_at,
                max_attempts=max_attempts,
                enqueued_at=now,
                updated_at=now,
                available_at=now,
            )
            tx.put_job(job)
            tx.set_open_job_id(open_key, job.id)
            return job.id

        return self.store.run_job_transaction(_enqueue)

    def dequeue_batch(
        self,
        n: int,
        direction: Optional[Direction] = None,
        entity_type: Optional[str] = None,
    ) -> List[SyncJob]:
        """
        Claim up to ``n`` due jobs and lease them to the caller.

        Jobs not acked before the visibility timeout become claimable again.
        """
        now = self.clock()
        lease = timedelta(seconds=self.settings.visibility_timeout_seconds)

        def _claim(tx: JobTransaction) -> List[SyncJob]:
            candidates = tx.claimable_jobs(now, n, direction=direction, entity_type=entity_type)
            claimed = []
            for job in candidates:
                if job.attempt >= job.max_attempts:
                    # Lease expired on the last allowed attempt
                    job.status = JobStatus.DEAD_LETTERED
                    job.error_kind = "timeout"
                    job.last_error = job.last_error or "visibility timeout expired on final attempt"
                    job.lease_expires_at = None
                    job.updated_at = now
                    tx.put_job(job)
                    tx.set_open_job_id(job.open_key, None)
                    logger.warning(f"Job {job.id} dead-lettered after its final lease expired")
                    continue

                if job.status is JobStatus.IN_FLIGHT:
                    logger.info(f"Redelivering job {job.id}; lease expired")

                job.status = JobStatus.IN_FLIGHT
                job.attempt += 1
                job.lease_expires_at = now + lease
                job.updated_at = now
                tx.put_job(job)
                claimed.append(job)
            return claimed

        return self.store.run_job_transaction(_claim)

    def ack(self, job_id: str, revision: Optional[int] = None) -> Optional[SyncJob]:
        """
        Mark a job done.

        If the payload was merged while the job was in flight, the applied
        revision is stale: the job is closed and a successor carrying the
        newer payload is opened.
        """
        now = self.clock()

        def _ack(tx: JobTransaction) -> Optional[SyncJob]:
            job = tx.get_job(job_id)
            if job is None:
                logger.warning(f"Ack for unknown job {job_id}")
                return None
            if job.status is not JobStatus.IN_FLIGHT:
                logger.warning(f"Ack for job {job_id} in status {job.status.value}; ignoring")
                return job

            stale = revision is not None and job.revision != revision
            job.status = JobStatus.DONE
            job.lease_expires_at = None
            job.updated_at = now

            if stale:
                successor = SyncJob(
                    id=str(uuid.uuid4()),
                    entity_type=job.entity_type,
                    direction=job.direction,
                    entity_ref=job.entity_ref,
                    payload=job.payload,
                    content_hash=job.content_hash,
                    source_modified_at=job.source_modified_at,
                    max_attempts=job.max_attempts,
                    enqueued_at=now,
                    updated_at=now,
                    available_at=now,
                )
                job.superseded_by = successor.id
                tx.put_job(job)
                tx.put_job(successor)
                tx.set_open_job_id(job.open_key, successor.id)
                logger.info(f"Job {job_id} changed while in flight; opened successor {successor.id}")
            else:
                tx.put_job(job)
                tx.set_open_job_id(job.open_key, None)
            return job

        return self.store.run_job_transaction(_ack)

    def nack(self, job_id: str, error: BaseException) -> Optional[SyncJob]:
        """
        Report a failed attempt; reschedule with backoff or dead-letter.

        Returns:
            The job in its new state
        """
        now = self.clock()

        def _nack(tx: JobTransaction) -> Optional[SyncJob]:
            job = tx.get_job(job_id)
            if job is None:
                logger.warning(f"Nack for unknown job {job_id}")
                return None
            if job.status is not JobStatus.IN_FLIGHT:
                logger.warning(f"Nack for job {job_id} in status {job.status.value}; ignoring")
                return job

            decision = self.retry_policy.should_retry(job, error)
            job.last_error = str(error)
            job.error_kind = "transient" if decision.transient else "permanent"
            job.lease_expires_at = None
            job.updated_at = now

            if decision.retry:
                job.status = JobStatus.FAILED
                job.available_at = now + timedelta(seconds=decision.delay)
                logger.warning(
                    f"Job {job_id} attempt {job.attempt}/{job.max_attempts} failed, "
                    f"retrying in {decision.delay:.1f}s: {error}"
                )
            else:
                job.status = JobStatus.DEAD_LETTERED
                tx.set_open_job_id(job.open_key, None)
                logger.error(f"Job {job_id} dead-lettered ({decision.reason})")

            tx.put_job(job)
            return job

        return self.store.run_job_transaction(_nack)

    def cancel(self, ref: EntityRef, direction: Direction) -> Optional[str]:
        """
        Cancel the open job for an entity, unless it is already in flight.

        Returns:
            Id of the cancelled job, if any
        """
        now = self.clock()
        open_key = open_key_for(ref, direction)

        def _cancel(tx: JobTransaction) -> Optional[str]:
            open_id = tx.get_open_job_id(open_key)
            job = tx.get_job(open_id) if open_id else None
            if job is None:
                return None
            if job.status is JobStatus.IN_FLIGHT:
                logger.warning(f"Job {job.id} is in flight and cannot be cancelled")
                return None

            job.status = JobStatus.CANCELLED
            job.updated_at = now
            tx.put_job(job)
            tx.set_open_job_id(open_key, None)
            logger.info(f"Cancelled job {job.id} for {open_key}")
            return job.id

        return self.store.run_job_transaction(_cancel)

    def get(self, job_id: str) -> Optional[SyncJob]:
        return self.store.get_job(job_id)

    def list_dead_lettered(self, limit: Optional[int] = None) -> List[SyncJob]:
        return self.store.list_jobs(statuses=[JobStatus.DEAD_LETTERED], limit=limit)

    def retry_dead_letter(self, job_id: str) -> str:
        """
        Manual recovery: open a fresh job from a dead letter's payload.

        Returns:
            Id of the job that now carries the payload
        """
        job = self.store.get_job(job_id)
        if job is None or job.status is not JobStatus.DEAD_LETTERED:
            raise SyncError(f"Job {job_id} is not dead-lettered")

        new_id = self.enqueue(
            job.entity_ref,
            job.direction,
            job.payload,
            job.content_hash,
            source_modified_at=job.source_modified_at,
            max_attempts=job.max_attempts,
        )
        now = self.clock()

        def _close(tx: JobTransaction) -> None:
            current = tx.get_job(job_id)
            if current is None or current.status is not JobStatus.DEAD_LETTERED:
                return
            current.status = JobStatus.DONE
            current.superseded_by = new_id
            current.updated_at = now
            tx.put_job(current)

        self.store.run_job_transaction(_close)
        logger.info(f"Dead letter {job_id} requeued as {new_id}")
        return new_id

    def depth(self) -> int:
        """Jobs not yet in a terminal state."""
        return self.store.count_jobs(OPEN_STATUSES)

    def dead_letter_count(self) -> int:
        return self.store.count_jobs([JobStatus.DEAD_LETTERED])
