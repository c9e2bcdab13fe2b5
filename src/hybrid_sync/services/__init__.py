"""
Backing stores for Hybrid Sync.
"""

from .store import StateStore, JobTransaction, MemoryStateStore, KeyedLock

__all__ = [
    "StateStore",
    "JobTransaction",
    "MemoryStateStore",
    "KeyedLock",
]
