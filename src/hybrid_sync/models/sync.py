"""
Models for sync records, jobs and cycle results.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class Side(str, Enum):
    """One of the two systems of record."""
    A = "a"
    B = "b"

    @property
    def other(self) -> "Side":
        return Side.B if self is Side.A else Side.A


class Direction(str, Enum):
    """Direction a change flows in."""
    A_TO_B = "a_to_b"
    B_TO_A = "b_to_a"

    @property
    def source(self) -> Side:
        return Side.A if self is Direction.A_TO_B else Side.B

    @property
    def target(self) -> Side:
        return self.source.other

    @property
    def opposite(self) -> "Direction":
        return Direction.B_TO_A if self is Direction.A_TO_B else Direction.A_TO_B


class ChangeStatus(str, Enum):
    """Outcome of comparing a freshly listed record against the cache."""
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    CONFLICTING = "conflicting"


class JobStatus(str, Enum):
    """Lifecycle of a sync job."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"  # nacked, waiting for its backoff
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class EntityRef(BaseModel):
    """One logical record as known to one system."""
    model_config = ConfigDict(frozen=True)

    entity_type: str
    source_system: Side
    source_id: str

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.source_system.value}:{self.source_id}"


class SyncRecord(BaseModel):
    """Last known synced state of one real-world entity across both systems."""
    record_id: str
    entity_type: str
    canonical_key: Optional[str] = None

    id_a: Optional[str] = None
    id_b: Optional[str] = None

    # Digests confirmed by the last sync
    last_hash_a: Optional[str] = None
    last_hash_b: Optional[str] = None

    # Digests seen by the most recent listing
    observed_hash_a: Optional[str] = None
    observed_hash_b: Optional[str] = None

    # System-provided last-modified timestamps seen by listing
    modified_at_a: Optional[datetime] = None
    modified_at_b: Optional[datetime] = None

    last_synced_at: Optional[datetime] = None
    last_direction: Optional[Direction] = None
    conflict_flag: bool = False
    conflict_resolution: Optional[str] = None

    def id_for(self, side: Side) -> Optional[str]:
        return getattr(self, f"id_{side.value}")

    def last_hash(self, side: Side) -> Optional[str]:
        return getattr(self, f"last_hash_{side.value}")

    def observed_hash(self, side: Side) -> Optional[str]:
        return getattr(self, f"observed_hash_{side.value}")

    def modified_at(self, side: Side) -> Optional[datetime]:
        return getattr(self, f"modified_at_{side.value}")

    def has_unsynced_change(self, side: Side) -> bool:
        """True when listing saw a version of ``side`` that was never synced."""
        observed = self.observed_hash(side)
        return observed is not None and observed != self.last_hash(side)

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(mode="json")
        data["ids"] = {side.value: self.id_for(side) for side in Side if self.id_for(side)}
        return data

    @classmethod
    def from_firestore(cls, data: Dict[str, Any]) -> "SyncRecord":
        data = {k: v for k, v in data.items() if k != "ids"}
        return cls(**data)


class SyncJob(BaseModel):
    """One entity sync in one direction: exactly one target-system write."""
    id: str
    entity_type: str
    direction: Direction
    entity_ref: EntityRef
    payload: Dict[str, Any]
    content_hash: str
    source_modified_at: Optional[datetime] = None

    attempt: int = 0
    max_attempts: int = 3
    revision: int = 1
    status: JobStatus = JobStatus.PENDING

    enqueued_at: datetime
    updated_at: datetime
    available_at: datetime
    lease_expires_at: Optional[datetime] = None

    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    superseded_by: Optional[str] = None

    @property
    def open_key(self) -> str:
        return open_key_for(self.entity_ref, self.direction)

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format.

        Timestamps used in range queries are duplicated as epoch seconds,
        since ISO strings with optional microseconds do not sort reliably.
        """
        data = self.model_dump(mode="json")
        data["enqueued_ts"] = self.enqueued_at.timestamp()
        data["available_ts"] = self.available_at.timestamp()
        data["lease_ts"] = self.lease_expires_at.timestamp() if self.lease_expires_at else None
        data["open_key"] = self.open_key
        return data

    @classmethod
    def from_firestore(cls, data: Dict[str, Any]) -> "SyncJob":
        data = {k: v for k, v in data.items() if k not in ("enqueued_ts", "available_ts", "lease_ts", "open_key")}
        return cls(**data)


def open_key_for(ref: EntityRef, direction: Direction) -> str:
    """Key under which at most one open job may exist."""
    return f"{ref.key}|{direction.value}"


class SyncCycleResult(BaseModel):
    """Summary of one direction/entity type within one cycle."""
    direction: Direction
    entity_type: str
    since: Optional[datetime] = None
    started_at: datetime

    scanned: int = 0
    enqueued: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0
    retried: int = 0
    dead_lettered: int = 0

    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the cycle for logs."""
        return {
            "direction": self.direction.value,
            "entity_type": self.entity_type,
            "scanned": self.scanned,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "duration_ms": self.duration_ms,
        }


class SyncStatusReport(BaseModel):
    """What the orchestrator reports to health and reporting endpoints."""
    mode: str
    running: bool = False
    last_cycle_at: Optional[datetime] = None
    last_results: List[SyncCycleResult] = Field(default_factory=list)
    queue_depth: int = 0
    dead_letter_count: int = 0
    pending_trigger: bool = False
    coalesced_triggers: int = 0
    last_error: Optional[str] = None
