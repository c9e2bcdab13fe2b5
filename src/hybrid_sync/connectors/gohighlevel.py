"""
GoHighLevel connector for reading and writing contacts and appointments.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional

from ..exceptions import PermanentSystemError, SyncError
from ..integrations.gohighlevel.client import GoHighLevelClient
from .base import BaseConnector, ConnectorCapability, EntitySchema, filter_since

logger = logging.getLogger(__name__)


class GoHighLevelConnector(BaseConnector):
    """
    GoHighLevel (Source B) connector. Customers are GHL contacts and
    appointments are calendar events of one location.

    Extra configuration:
        calendar_id: Calendar new appointments are booked into
        appointment_horizon_days: How far ahead appointment listing looks
    """

    name = "gohighlevel"
    schemas = {
        "customer": EntitySchema(entity_type="customer", id_field="id", modified_field="dateUpdated"),
        "appointment": EntitySchema(entity_type="appointment", id_field="id", modified_field="dateUpdated"),
    }

    def __init__(self, credentials: Optional[Dict[str, Any]] = None, base_url: Optional[str] = None,
                 client: Optional[GoHighLevelClient] = None, **kwargs):
        super().__init__(credentials, base_url, **kwargs)
        if client is None:
            client = GoHighLevelClient(
                api_key=self.credentials["api_key"],
                location_id=self.credentials["location_id"],
                base_url=base_url or "https://services.leadconnectorhq.com",
            )
        self.client = client
        self.calendar_id = self.config.get("calendar_id")
        self.appointment_horizon = timedelta(days=int(self.config.get("appointment_horizon_days", 90)))

    def get_capabilities(self) -> ConnectorCapability:
        """GoHighLevel can read and write contacts and appointments."""
        return ConnectorCapability(
            can_read_customers=True,
            can_write_customers=True,
            can_read_appointments=True,
            can_write_appointments=True,
        )

    def test_connection(self) -> bool:
        """Test connection to GoHighLevel API."""
        try:
            self.client.get_location()
            return True
        except SyncError as e:
            logger.error(f"GoHighLevel connection test failed: {e}")
            return False

    def _list_changed(self, entity_type: str, since: datetime) -> Iterator[Dict[str, Any]]:
        # Neither listing endpoint filters by modification time
        if entity_type == "customer":
            records = self.client.list_contacts()
        else:
            start = since if since.tzinfo else since.replace(tzinfo=timezone.utc)
            end = datetime.now(timezone.utc) + self.appointment_horizon
            records = self.client.list_appointments(
                int(start.timestamp() * 1000),
                int(end.timestamp() * 1000),
                calendar_id=self.calendar_id,
            )
        return filter_since(records, self.get_schema(entity_type).modified_field, since)

    def _create(self, entity_type: str, record: Dict[str, Any]) -> str:
        if entity_type == "customer":
            created = self.client.create_contact(record)
        else:
            body = dict(record)
            if self.calendar_id and "calendarId" not in body:
                body["calendarId"] = self.calendar_id
            created = self.client.create_appointment(body)

        new_id = created.get("id")
        if new_id is None:
            raise PermanentSystemError(
                f"GoHighLevel returned no id for new {entity_type}", system=self.name
            )
        logger.info(f"Created GoHighLevel {entity_type} {new_id}")
        return str(new_id)

    def _update(self, entity_type: str, external_id: str, record: Dict[str, Any]) -> None:
        if entity_type == "customer":
            self.client.update_contact(external_id, record)
        else:
            self.client.update_appointment(external_id, record)
        logger.info(f"Updated GoHighLevel {entity_type} {external_id}")

    def _get(self, entity_type: str, external_id: str) -> Optional[Dict[str, Any]]:
        try:
            if entity_type == "customer":
                return self.client.get_contact(external_id)
            return self.client.get_appointment(external_id)
        except PermanentSystemError as e:
            if e.status_code in (400, 404):
                return None
            raise

    def find_existing(self, entity_type: str, record: Dict[str, Any]) -> Optional[str]:
        """Match contacts by email within the location."""
        email = record.get("email")
        if entity_type != "customer" or not email:
            return None

        contact = self.client.find_contact_by_email(email)
        if contact and contact.get("id"):
            logger.info(f"Found existing GoHighLevel contact {contact['id']} for {email}")
            return str(contact["id"])
        return None
