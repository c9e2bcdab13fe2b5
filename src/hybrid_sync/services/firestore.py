"""
Firestore-backed state store for multi-process deployments.

Job claiming, coalescing and per-record updates run inside Firestore
transactions, so several worker processes can share one queue and one
change cache.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from google.api_core import exceptions as gcp_exceptions
from google.auth import default
from google.cloud import firestore

from ..exceptions import CacheUnavailable, QueueUnavailable
from ..models.sync import (
    EntityRef, JobStatus, SyncCycleResult, SyncJob, SyncRecord
)
from .store import JobTransaction, RecordMutator, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _FirestoreJobTransaction(JobTransaction):

    def __init__(self, service: "FirestoreStateStore", transaction):
        self.service = service
        self.transaction = transaction

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        doc = self.service._jobs().document(job_id).get(transaction=self.transaction)
        if doc.exists:
            return SyncJob.from_firestore(doc.to_dict())
        return None

    def get_open_job_id(self, open_key: str) -> Optional[str]:
        doc = self.service._open_jobs().document(open_key).get(transaction=self.transaction)
        if doc.exists:
            return doc.to_dict().get("job_id")
        return None

    def claimable_jobs(self, now, limit, direction=None, entity_type=None) -> List[SyncJob]:
        now_ts = now.timestamp()

        due = self.service._jobs().where(
            "status", "in", [JobStatus.PENDING.value, JobStatus.FAILED.value]
        ).where("available_ts", "<=", now_ts)
        expired = self.service._jobs().where(
            "status", "==", JobStatus.IN_FLIGHT.value
        ).where("lease_ts", "<=", now_ts)

        jobs = []
        for query, order_field in ((due, "available_ts"), (expired, "lease_ts")):
            if direction is not None:
                query = query.where("direction", "==", direction.value)
            if entity_type is not None:
                query = query.where("entity_type", "==", entity_type)
            query = query.order_by(order_field).limit(limit)
            for doc in query.stream(transaction=self.transaction):
                jobs.append(SyncJob.from_firestore(doc.to_dict()))

        jobs.sort(key=lambda j: (j.available_at, j.enqueued_at))
        return jobs[:limit]

    def put_job(self, job: SyncJob) -> None:
        self.transaction.set(self.service._jobs().document(job.id), job.to_firestore())

    def set_open_job_id(self, open_key: str, job_id: Optional[str]) -> None:
        ref = self.service._open_jobs().document(open_key)
        if job_id is None:
            self.transaction.delete(ref)
        else:
            self.transaction.set(ref, {"job_id": job_id})


class FirestoreStateStore(StateStore):
    """
    State store in Firestore.
    """

    def __init__(self, project_id: Optional[str] = None, prefix: str = "hybrid_sync", client=None):
        """
        Initialize Firestore state store.

        Args:
            project_id: Google Cloud project ID. If None, uses default from environment.
            prefix: Prefix for collection names
            client: Pre-built firestore.Client (mainly for tests)
        """
        try:
            if client is not None:
                self.db = client
            elif project_id:
                self.db = firestore.Client(project=project_id)
            else:
                # Use application default credentials
                credentials, project = default()
                self.db = firestore.Client(project=project, credentials=credentials)

            self.jobs_collection = f"{prefix}_jobs"
            self.open_jobs_collection = f"{prefix}_open_jobs"
            self.records_collection = f"{prefix}_records"
            self.watermarks_collection = f"{prefix}_watermarks"
            self.cycles_collection = f"{prefix}_cycles"

            logger.info(f"Firestore state store initialized for project: {self.db.project}")

        except Exception as e:
            logger.error(f"Failed to initialize Firestore: {e}")
            raise

    def _jobs(self):
        return self.db.collection(self.jobs_collection)

    def _open_jobs(self):
        return self.db.collection(self.open_jobs_collection)

    def _records(self):
        return self.db.collection(self.records_collection)

    # Jobs

    def run_job_transaction(self, fn: Callable[[JobTransaction], T]) -> T:
        @firestore.transactional
        def _run(transaction):
            return fn(_FirestoreJobTransaction(self, transaction))

        try:
            return _run(self.db.transaction())
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Job transaction failed: {e}")
            raise QueueUnavailable(str(e)) from e

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        try:
            doc = self._jobs().document(job_id).get()
            if doc.exists:
                return SyncJob.from_firestore(doc.to_dict())
            return None
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            raise QueueUnavailable(str(e)) from e

    def list_jobs(self, statuses=None, direction=None, entity_type=None, limit=None) -> List[SyncJob]:
        try:
            query = self._jobs()
            if statuses is not None:
                query = query.where("status", "in", [JobStatus(s).value for s in statuses])
            if direction is not None:
                query = query.where("direction", "==", direction.value)
            if entity_type is not None:
                query = query.where("entity_type", "==", entity_type)

            query = query.order_by("enqueued_ts")
            if limit:
                query = query.limit(limit)

            return [SyncJob.from_firestore(doc.to_dict()) for doc in query.stream()]

        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to list jobs: {e}")
            raise QueueUnavailable(str(e)) from e

    # Sync records

    def _find_record_ref(self, ref: EntityRef, transaction=None):
        query = (self._records()
                 .where("entity_type", "==", ref.entity_type)
                 .where(f"ids.{ref.source_system.value}", "==", ref.source_id)
                 .limit(1))
        for doc in query.stream(transaction=transaction):
            return doc.reference
        return self._records().document(ref.key)

    def get_record(self, ref: EntityRef) -> Optional[SyncRecord]:
        try:
            doc = self._find_record_ref(ref).get()
            if doc.exists:
                return SyncRecord.from_firestore(doc.to_dict())
            return None
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to get sync record {ref.key}: {e}")
            raise CacheUnavailable(str(e)) from e

    def update_record(self, ref: EntityRef, mutator: RecordMutator) -> Optional[SyncRecord]:
        @firestore.transactional
        def _run(transaction):
            doc_ref = self._find_record_ref(ref, transaction=transaction)
            doc = doc_ref.get(transaction=transaction)
            current = SyncRecord.from_firestore(doc.to_dict()) if doc.exists else None

            updated = mutator(current)
            if updated is None:
                return current

            updated.record_id = doc_ref.id
            transaction.set(doc_ref, updated.to_firestore())
            return updated

        try:
            return _run(self.db.transaction())
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to update sync record {ref.key}: {e}")
            raise CacheUnavailable(str(e)) from e

    def delete_record(self, ref: EntityRef) -> bool:
        try:
            doc_ref = self._find_record_ref(ref)
            if doc_ref.get().exists:
                doc_ref.delete()
                logger.info(f"Deleted sync record: {doc_ref.id}")
                return True
            return False
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to delete sync record {ref.key}: {e}")
            raise CacheUnavailable(str(e)) from e

    # Orchestrator state

    def get_watermark(self, key: str) -> Optional[datetime]:
        try:
            doc = self.db.collection(self.watermarks_collection).document(key).get()
            if doc.exists:
                value = doc.to_dict().get("value")
                return datetime.fromisoformat(value.replace("Z", "+00:00")) if value else None
            return None
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to read watermark {key}: {e}")
            raise CacheUnavailable(str(e)) from e

    def set_watermark(self, key: str, value: datetime) -> None:
        try:
            self.db.collection(self.watermarks_collection).document(key).set({
                "value": value.isoformat(),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to write watermark {key}: {e}")
            raise CacheUnavailable(str(e)) from e

    def record_cycle(self, results: List[SyncCycleResult]) -> None:
        try:
            batch = self.db.batch()
            for result in results:
                doc_ref = self.db.collection(self.cycles_collection).document()
                batch.set(doc_ref, result.model_dump(mode="json"))
            batch.commit()
        except gcp_exceptions.GoogleAPICallError as e:
            # History is for reporting only
            logger.warning(f"Failed to record cycle results: {e}")

    def recent_cycles(self, limit: int = 20) -> List[SyncCycleResult]:
        try:
            query = (self.db.collection(self.cycles_collection)
                     .order_by("started_at", direction=firestore.Query.DESCENDING)
                     .limit(limit))
            return [SyncCycleResult(**doc.to_dict()) for doc in query.stream()]
        except gcp_exceptions.GoogleAPICallError as e:
            logger.error(f"Failed to list cycle results: {e}")
            raise CacheUnavailable(str(e)) from e
