"""
Base connector class for the two synced systems.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional
from pydantic import BaseModel
import logging

from ..exceptions import MappingError

logger = logging.getLogger(__name__)


class ConnectorCapability(BaseModel):
    """Defines what operations a connector supports."""
    can_read_customers: bool = False
    can_write_customers: bool = False
    can_read_appointments: bool = False
    can_write_appointments: bool = False

    def supports(self, entity_type: str, write: bool = False) -> bool:
        verb = "write" if write else "read"
        return bool(getattr(self, f"can_{verb}_{entity_type}s", False))


class EntitySchema(BaseModel):
    """Where a connector finds the id and last-modified stamp of an entity."""
    entity_type: str
    id_field: str = "id"
    modified_field: Optional[str] = None


class BaseConnector(ABC):
    """
    Abstract base class for connectors.

    A connector is the client collaborator injected into the sync engine:
    it lists changed records, reads one record, and creates or updates one
    record in its system. Writes are single calls; a write either happens
    or raises.
    """

    name: str = "base"
    schemas: Dict[str, EntitySchema] = {}

    def __init__(self, credentials: Optional[Dict[str, Any]] = None, base_url: Optional[str] = None, **kwargs):
        """
        Initialize the connector.

        Args:
            credentials: Authentication credentials
            base_url: Optional base URL for the API
            **kwargs: Additional configuration parameters
        """
        self.credentials = credentials or {}
        self.base_url = base_url
        self.config = kwargs
        logger.info(f"Initialized {self.__class__.__name__} connector")

    @abstractmethod
    def get_capabilities(self) -> ConnectorCapability:
        """Return what operations this connector supports."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the connector can successfully connect to the service."""
        pass

    def get_schema(self, entity_type: str) -> EntitySchema:
        try:
            return self.schemas[entity_type]
        except KeyError:
            raise NotImplementedError(f"{self.__class__.__name__} does not support {entity_type}")

    # Record helpers

    def record_id(self, entity_type: str, record: Dict[str, Any]) -> str:
        """Id of a raw record in this system."""
        field = self.get_schema(entity_type).id_field
        value = record.get(field)
        if value is None or value == "":
            raise MappingError(field, "missing", f"{self.name} {entity_type} has no id")
        return str(value)

    def modified_at(self, entity_type: str, record: Dict[str, Any]) -> Optional[datetime]:
        """System-provided last-modified timestamp of a raw record."""
        field = self.get_schema(entity_type).modified_field
        if not field:
            return None
        return parse_timestamp(record.get(field))

    # Entity operations

    def list_changed(self, entity_type: str, since: datetime) -> Iterator[Dict[str, Any]]:
        """
        Lazily iterate over records changed since ``since``.

        Pagination happens inside the iterator; one full drain is one scan.
        """
        if not self.get_capabilities().supports(entity_type):
            raise NotImplementedError(f"{self.__class__.__name__} does not support reading {entity_type}")
        return self._list_changed(entity_type, since)

    def create(self, entity_type: str, record: Dict[str, Any]) -> str:
        """
        Create a record.

        Returns:
            The external id assigned by the system
        """
        if not self.get_capabilities().supports(entity_type, write=True):
            raise NotImplementedError(f"{self.__class__.__name__} does not support writing {entity_type}")
        return self._create(entity_type, record)

    def update(self, entity_type: str, external_id: str, record: Dict[str, Any]) -> None:
        if not self.get_capabilities().supports(entity_type, write=True):
            raise NotImplementedError(f"{self.__class__.__name__} does not support writing {entity_type}")
        self._update(entity_type, external_id, record)

    def get(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        """Read one record; None when it does not exist."""
        return self._get(entity_type, external_id)

    def find_existing(self, entity_type: str, record: Dict[str, Any]) -> Optional[str]:
        """
        Look for a record that already represents ``record`` (e.g. same email).

        Connectors without a natural key return None and a create follows.
        """
        return None

    @abstractmethod
    def _list_changed(self, entity_type: str, since: datetime) -> Iterator[Dict[str, Any]]:
        pass

    @abstractmethod
    def _create(self, entity_type: str, record: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def _update(self, entity_type: str, external_id: str, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def _get(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        pass


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the timestamp formats the two APIs return (ISO strings, epoch ms)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filter_since(records: Iterable[Dict[str, Any]], field: str, since: datetime) -> Iterator[Dict[str, Any]]:
    """Yield records modified at or after ``since`` (client-side filtering).

    Records without a readable timestamp are kept; the change cache drops
    them later if they did not change.
    """
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    for record in records:
        stamp = parse_timestamp(record.get(field))
        if stamp is None or stamp >= since:
            yield record
