"""
Models for the Hybrid Sync engine.
"""

from .config import (
    SyncSettings, DirectionSettings, RetrySettings, QueueSettings,
    SyncMode, ConflictPolicyName, FieldMapping, MappingTable, TransformKind
)
from .sync import (
    Side, Direction, ChangeStatus, JobStatus, EntityRef, SyncRecord,
    SyncJob, SyncCycleResult, SyncStatusReport
)

__all__ = [
    # Settings
    "SyncSettings",
    "DirectionSettings",
    "RetrySettings",
    "QueueSettings",
    "SyncMode",
    "ConflictPolicyName",
    "FieldMapping",
    "MappingTable",
    "TransformKind",

    # Sync state
    "Side",
    "Direction",
    "ChangeStatus",
    "JobStatus",
    "EntityRef",
    "SyncRecord",
    "SyncJob",
    "SyncCycleResult",
    "SyncStatusReport",
]
