"""
Sync engine: mapping, change detection, queueing and the direction workers.
"""

from .cache import ChangeCache
from .conflicts import get_conflict_policy
from .orchestrator import SyncOrchestrator
from .queue import SyncQueue
from .retry import RetryPolicy
from .transforms import FieldMapper, default_mapper
from .worker import DirectionWorker

__all__ = [
    "ChangeCache",
    "DirectionWorker",
    "FieldMapper",
    "RetryPolicy",
    "SyncOrchestrator",
    "SyncQueue",
    "default_mapper",
    "get_conflict_policy",
]
