"""GoHighLevel API client for contacts and calendar appointments."""

import os
import logging
from typing import Any, Dict, Iterator, Optional

from ..base import ApiClient

logger = logging.getLogger(__name__)

API_VERSION = "2021-07-28"


class GoHighLevelClient(ApiClient):
    """Client for the GoHighLevel (LeadConnector) API, scoped to one location."""

    system_name = "gohighlevel"

    endpoints = {
        "contacts": "/contacts/",
        "contact": "/contacts/{contactId}",
        "contact_lookup": "/contacts/search/duplicate",
        "appointments": "/calendars/events",
        "appointment_create": "/calendars/events/appointments",
        "appointment": "/calendars/events/appointments/{appointmentId}",
        "location": "/locations/{locationId}",
    }

    def __init__(self, api_key: str, location_id: str,
                 base_url: str = "https://services.leadconnectorhq.com",
                 timeout: float = 30.0, page_size: int = 100):
        """Initialize the GoHighLevel client.

        Args:
            api_key: Private integration token or OAuth access token
            location_id: Sub-account the token is scoped to
            base_url: Base URL for the GoHighLevel API
            timeout: Per-request timeout in seconds
            page_size: Records requested per page (API maximum is 100)
        """
        super().__init__(base_url, timeout=timeout)
        self.api_key = api_key
        self.location_id = location_id
        self.page_size = min(page_size, 100)
        self.session.headers.update({
            'Authorization': f'Bearer {self.api_key}',
            'Version': API_VERSION,
        })

    # Contact Management

    def list_contacts(self, query: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Iterate over all contacts of the location.

        Pages are chained with the ``startAfterId`` / ``startAfter`` cursor
        returned in ``meta``.
        """
        params: Dict[str, Any] = {"locationId": self.location_id, "limit": self.page_size}
        if query:
            params["query"] = query

        while True:
            data = self._make_request('GET', self.endpoints["contacts"], params=params)
            contacts = data.get("contacts", [])
            for contact in contacts:
                yield contact

            meta = data.get("meta") or {}
            start_after_id = meta.get("startAfterId")
            if not contacts or not start_after_id or len(contacts) < self.page_size:
                break

            logger.debug(f"Fetching contacts after {start_after_id}")
            params = dict(params, startAfterId=start_after_id)
            if meta.get("startAfter") is not None:
                params["startAfter"] = meta["startAfter"]

    def get_contact(self, contact_id: str) -> Dict[str, Any]:
        data = self._make_request('GET', self.endpoints["contact"].format(contactId=contact_id))
        return data.get("contact", data)

    def find_contact_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Return the contact with this email in the location, if any."""
        data = self._make_request(
            'GET',
            self.endpoints["contact_lookup"],
            params={"locationId": self.location_id, "email": email},
        )
        return data.get("contact") or None

    def create_contact(self, contact_data: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(contact_data, locationId=self.location_id)
        data = self._make_request('POST', self.endpoints["contacts"], data=body)
        return data.get("contact", data)

    def update_contact(self, contact_id: str, contact_data: Dict[str, Any]) -> Dict[str, Any]:
        data = self._make_request('PUT', self.endpoints["contact"].format(contactId=contact_id), data=contact_data)
        return data.get("contact", data)

    # Calendar Management

    def list_appointments(self, start_time_ms: int, end_time_ms: int,
                          calendar_id: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Iterate over calendar events between two epoch-millisecond bounds."""
        params: Dict[str, Any] = {
            "locationId": self.location_id,
            "startTime": start_time_ms,
            "endTime": end_time_ms,
        }
        if calendar_id:
            params["calendarId"] = calendar_id

        data = self._make_request('GET', self.endpoints["appointments"], params=params)
        for event in data.get("events", []):
            yield event

    def get_appointment(self, appointment_id: str) -> Dict[str, Any]:
        data = self._make_request('GET', self.endpoints["appointment"].format(appointmentId=appointment_id))
        return data.get("appointment", data)

    def create_appointment(self, appointment_data: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(appointment_data, locationId=self.location_id)
        return self._make_request('POST', self.endpoints["appointment_create"], data=body)

    def update_appointment(self, appointment_id: str, appointment_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request(
            'PUT', self.endpoints["appointment"].format(appointmentId=appointment_id), data=appointment_data
        )

    def get_location(self) -> Dict[str, Any]:
        return self._make_request('GET', self.endpoints["location"].format(locationId=self.location_id))


def create_gohighlevel_client_from_env() -> GoHighLevelClient:
    """Create a GoHighLevel client from environment variables.

    Raises:
        ValueError: If required environment variables are missing
    """
    api_key = os.getenv('GHL_API_KEY')
    location_id = os.getenv('GHL_LOCATION_ID')
    if not api_key:
        raise ValueError("GHL_API_KEY environment variable is required")
    if not location_id:
        raise ValueError("GHL_LOCATION_ID environment variable is required")

    base_url = os.getenv('GHL_BASE_URL', 'https://services.leadconnectorhq.com')
    timeout = float(os.getenv('HTTP_TIMEOUT_SECONDS', '30'))
    return GoHighLevelClient(api_key=api_key, location_id=location_id, base_url=base_url, timeout=timeout)
