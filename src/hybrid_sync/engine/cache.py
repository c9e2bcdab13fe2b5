"""
Change cache: last known synced state per entity.

Used to skip no-op writes and to notice when both systems were edited
since the last sync.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..models.sync import ChangeStatus, Direction, EntityRef, SyncRecord
from ..services.store import StateStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeCache:
    """
    Keyed store of sync records on top of a StateStore.

    Every mutation goes through StateStore.update_record, which serializes
    access per record.
    """

    def __init__(self, store: StateStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or _utcnow

    def get(self, ref: EntityRef) -> Optional[SyncRecord]:
        return self.store.get_record(ref)

    def detect_change(self, ref: EntityRef, new_hash: str, direction: Direction) -> ChangeStatus:
        """
        Compare a freshly mapped record against the last synced state.

        Args:
            ref: Source-side reference of the record
            new_hash: Digest of the mapped record
            direction: Direction the change would flow in

        Returns:
            UNCHANGED when the source side still matches its last sync,
            CONFLICTING when the opposite side also has an unsynced change,
            CHANGED otherwise
        """
        record = self.store.get_record(ref)
        if record is None:
            return ChangeStatus.CHANGED

        if record.last_hash(direction.source) == new_hash:
            return ChangeStatus.UNCHANGED

        if record.has_unsynced_change(direction.target):
            return ChangeStatus.CONFLICTING

        return ChangeStatus.CHANGED

    def observe(
        self,
        ref: EntityRef,
        new_hash: str,
        direction: Direction,
        modified_at: Optional[datetime] = None,
    ) -> SyncRecord:
        """Record what listing saw for the source side of ``direction``."""
        side = direction.source

        def mutate(record: Optional[SyncRecord]) -> SyncRecord:
            record = record or self._new_record(ref)
            self._ensure_id(record, ref)
            setattr(record, f"observed_hash_{side.value}", new_hash)
            if modified_at is not None:
                setattr(record, f"modified_at_{side.value}", modified_at)
            return record

        return self.store.update_record(ref, mutate)

    def put(
        self,
        ref: EntityRef,
        content_hash: str,
        direction: Direction,
        timestamp: Optional[datetime] = None,
        counterpart_id: Optional[str] = None,
        echo_hash: Optional[str] = None,
    ) -> SyncRecord:
        """
        Record a confirmed write.

        Args:
            ref: Source-side reference of the synced record
            content_hash: Digest of the payload that was written
            direction: Direction of the write
            timestamp: When the write was confirmed
            counterpart_id: Id of the record in the target system
            echo_hash: Digest of the target record mapped back the other way,
                so the write is not picked up as a fresh change; None when
                it cannot be computed
        """
        source, target = direction.source, direction.target
        timestamp = timestamp or self.clock()

        def mutate(record: Optional[SyncRecord]) -> SyncRecord:
            record = record or self._new_record(ref)
            self._ensure_id(record, ref)

            if counterpart_id:
                existing = record.id_for(target)
                if existing is None:
                    setattr(record, f"id_{target.value}", counterpart_id)
                elif existing != counterpart_id:
                    logger.warning(
                        f"{record.record_id} is linked to {existing} in {target.value}; "
                        f"ignoring counterpart {counterpart_id}"
                    )

            setattr(record, f"last_hash_{source.value}", content_hash)
            setattr(record, f"observed_hash_{source.value}", content_hash)
            setattr(record, f"last_hash_{target.value}", echo_hash)
            setattr(record, f"observed_hash_{target.value}", echo_hash)

            if record.canonical_key is None and record.id_a and record.id_b:
                record.canonical_key = f"{record.entity_type}:{record.id_a}:{record.id_b}"

            record.last_synced_at = timestamp
            record.last_direction = direction
            return record

        return self.store.update_record(ref, mutate)

    def flag_conflict(self, ref: EntityRef, resolution: str) -> Optional[SyncRecord]:
        def mutate(record: Optional[SyncRecord]) -> Optional[SyncRecord]:
            if record is None:
                return None
            record.conflict_flag = True
            record.conflict_resolution = resolution
            return record

        return self.store.update_record(ref, mutate)

    def clear_conflict(self, ref: EntityRef) -> Optional[SyncRecord]:
        """Reset the conflict flag once a reviewer has reconciled the entity."""
        def mutate(record: Optional[SyncRecord]) -> Optional[SyncRecord]:
            if record is None or not record.conflict_flag:
                return None
            record.conflict_flag = False
            record.conflict_resolution = None
            return record

        return self.store.update_record(ref, mutate)

    def reconcile_delete(self, ref: EntityRef) -> bool:
        """Explicit reconciliation: forget everything known about the entity."""
        deleted = self.store.delete_record(ref)
        if deleted:
            logger.info(f"Removed sync record for {ref.key}")
        return deleted

    @staticmethod
    def _new_record(ref: EntityRef) -> SyncRecord:
        return SyncRecord(record_id=ref.key, entity_type=ref.entity_type)

    @staticmethod
    def _ensure_id(record: SyncRecord, ref: EntityRef) -> None:
        if record.id_for(ref.source_system) is None:
            setattr(record, f"id_{ref.source_system.value}", ref.source_id)
