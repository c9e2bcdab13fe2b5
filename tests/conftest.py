"""
Shared test fixtures and configuration for pytest.
"""

import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import pytest

from hybrid_sync.connectors.base import (
    BaseConnector, ConnectorCapability, EntitySchema, filter_since
)
from hybrid_sync.engine.cache import ChangeCache
from hybrid_sync.engine.queue import SyncQueue
from hybrid_sync.engine.retry import RetryPolicy
from hybrid_sync.models.config import QueueSettings, RetrySettings
from hybrid_sync.services.store import MemoryStateStore


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds, **kwargs)
            return self.now


class FakeSystem(BaseConnector):
    """
    In-memory stand-in for RealGreen or GoHighLevel.

    Records carry ``id`` and ``updatedAt``. Failures can be scripted per
    operation by pushing exceptions onto ``fail_next``.
    """

    def __init__(self, name: str, clock: FakeClock, start_id: int = 1):
        super().__init__()
        self.name = name
        self.schemas = {
            entity_type: EntitySchema(entity_type=entity_type, id_field="id", modified_field="updatedAt")
            for entity_type in ("customer", "appointment")
        }
        self.clock = clock
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {"customer": {}, "appointment": {}}
        self.next_id = start_id
        self.writes: List[tuple] = []
        self.fail_next: Dict[str, List[Exception]] = {"list": [], "create": [], "update": [], "get": []}
        self._lock = threading.Lock()

    # Test helpers

    def seed(self, entity_type: str, record_id: str, modified_at: Optional[datetime] = None, **fields) -> Dict[str, Any]:
        record = dict(fields, id=record_id, updatedAt=(modified_at or self.clock()).isoformat())
        self.records[entity_type][record_id] = record
        return record

    def edit(self, entity_type: str, record_id: str, modified_at: Optional[datetime] = None, **fields) -> None:
        record = self.records[entity_type][record_id]
        record.update(fields)
        record["updatedAt"] = (modified_at or self.clock()).isoformat()

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            if self.fail_next[operation]:
                raise self.fail_next[operation].pop(0)

    # BaseConnector

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(
            can_read_customers=True,
            can_write_customers=True,
            can_read_appointments=True,
            can_write_appointments=True,
        )

    def test_connection(self) -> bool:
        return True

    def _list_changed(self, entity_type: str, since: datetime) -> Iterator[Dict[str, Any]]:
        self._maybe_fail("list")
        snapshot = [dict(r) for r in self.records[entity_type].values()]
        return filter_since(snapshot, "updatedAt", since)

    def _create(self, entity_type: str, record: Dict[str, Any]) -> str:
        self._maybe_fail("create")
        with self._lock:
            new_id = str(self.next_id)
            self.next_id += 1
        self.records[entity_type][new_id] = dict(record, id=new_id, updatedAt=self.clock().isoformat())
        self.writes.append(("create", entity_type, new_id, dict(record)))
        return new_id

    def _update(self, entity_type: str, external_id: str, record: Dict[str, Any]) -> None:
        self._maybe_fail("update")
        self.records[entity_type][external_id].update(record)
        self.records[entity_type][external_id]["updatedAt"] = self.clock().isoformat()
        self.writes.append(("update", entity_type, external_id, dict(record)))

    def _get(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail("get")
        record = self.records[entity_type].get(external_id)
        return dict(record) if record else None

    def find_existing(self, entity_type: str, record: Dict[str, Any]) -> Optional[str]:
        email = record.get("email")
        if entity_type != "customer" or not email:
            return None
        for existing in self.records[entity_type].values():
            if existing.get("email") == email:
                return existing["id"]
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def cache(store, clock):
    return ChangeCache(store, clock=clock)


@pytest.fixture
def retry_policy(rng):
    return RetryPolicy(RetrySettings(base_delay_seconds=5, max_delay_seconds=300, jitter_ratio=0.2), rng=rng)


@pytest.fixture
def queue(store, retry_policy, clock):
    return SyncQueue(store, retry_policy, QueueSettings(visibility_timeout_seconds=120, poll_interval_seconds=0.01),
                     clock=clock)


@pytest.fixture
def system_a(clock):
    return FakeSystem("realgreen", clock, start_id=1000)


@pytest.fixture
def system_b(clock):
    return FakeSystem("gohighlevel", clock, start_id=42)
