"""
RealGreen connector for reading and writing customers and appointments.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from ..exceptions import PermanentSystemError, SyncError
from ..integrations.realgreen.client import RealGreenClient
from .base import BaseConnector, ConnectorCapability, EntitySchema, filter_since

logger = logging.getLogger(__name__)


class RealGreenConnector(BaseConnector):
    """
    RealGreen (Source A) connector over the company-scoped REST API.
    """

    name = "realgreen"
    schemas = {
        "customer": EntitySchema(entity_type="customer", id_field="id", modified_field="lastModified"),
        "appointment": EntitySchema(entity_type="appointment", id_field="id", modified_field="lastModified"),
    }

    def __init__(self, credentials: Optional[Dict[str, Any]] = None, base_url: Optional[str] = None,
                 client: Optional[RealGreenClient] = None, **kwargs):
        super().__init__(credentials, base_url, **kwargs)
        if client is None:
            client = RealGreenClient(
                api_key=self.credentials["api_key"],
                company_id=self.credentials["company_id"],
                base_url=base_url or "https://saapi.realgreen.com",
            )
        self.client = client

    def get_capabilities(self) -> ConnectorCapability:
        """RealGreen can read and write customers and appointments."""
        return ConnectorCapability(
            can_read_customers=True,
            can_write_customers=True,
            can_read_appointments=True,
            can_write_appointments=True,
        )

    def test_connection(self) -> bool:
        """Test connection to RealGreen API."""
        try:
            self.client.health()
            return True
        except SyncError as e:
            logger.error(f"RealGreen connection test failed: {e}")
            return False

    def _list_changed(self, entity_type: str, since: datetime) -> Iterator[Dict[str, Any]]:
        modified_since = since.isoformat()
        if entity_type == "customer":
            records = self.client.list_customers(modified_since=modified_since)
        else:
            records = self.client.list_appointments(modified_since=modified_since)
        # The modifiedSince filter is not honoured by every endpoint
        return filter_since(records, self.get_schema(entity_type).modified_field, since)

    def _create(self, entity_type: str, record: Dict[str, Any]) -> str:
        if entity_type == "customer":
            created = self.client.create_customer(record)
        else:
            created = self.client.create_appointment(record)

        new_id = created.get("id") or created.get(f"{entity_type}Id")
        if new_id is None:
            raise PermanentSystemError(
                f"RealGreen returned no id for new {entity_type}", system=self.name
            )
        logger.info(f"Created RealGreen {entity_type} {new_id}")
        return str(new_id)

    def _update(self, entity_type: str, external_id: str, record: Dict[str, Any]) -> None:
        if entity_type == "customer":
            self.client.update_customer(external_id, record)
        else:
            self.client.update_appointment(external_id, record)
        logger.info(f"Updated RealGreen {entity_type} {external_id}")

    def _get(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        try:
            if entity_type == "customer":
                return self.client.get_customer(external_id)
            return self.client.get_appointment(external_id)
        except PermanentSystemError as e:
            if e.status_code == 404:
                return None
            raise

    def find_existing(self, entity_type: str, record: Dict[str, Any]) -> Optional[str]:
        """Match customers by email; appointments have no natural key."""
        email = record.get("email")
        if entity_type != "customer" or not email:
            return None

        for candidate in self.client.search_customers(email):
            if str(candidate.get("email", "")).lower() == str(email).lower():
                logger.info(f"Found existing RealGreen customer {candidate.get('id')} for {email}")
                return str(candidate["id"])
        return None
