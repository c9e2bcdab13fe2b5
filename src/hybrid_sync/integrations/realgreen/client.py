"""RealGreen API client for customer and appointment operations."""

import os
import logging
from typing import Any, Dict, Iterator, List, Optional

from ..base import ApiClient

logger = logging.getLogger(__name__)


class RealGreenClient(ApiClient):
    """Client for the RealGreen service assistant API."""

    system_name = "realgreen"

    endpoints = {
        "customers": "/company/{companyId}/customers",
        "customer": "/company/{companyId}/customers/{customerId}",
        "appointments": "/company/{companyId}/appointments",
        "appointment": "/company/{companyId}/appointments/{appointmentId}",
        "health": "/health",
    }

    def __init__(self, api_key: str, company_id: str, base_url: str = "https://saapi.realgreen.com",
                 timeout: float = 30.0, page_size: int = 100):
        """Initialize the RealGreen client.

        Args:
            api_key: RealGreen API key
            company_id: Company the key belongs to
            base_url: Base URL for RealGreen API
            timeout: Per-request timeout in seconds
            page_size: Records requested per page
        """
        super().__init__(base_url, timeout=timeout)
        self.api_key = api_key
        self.company_id = company_id
        self.page_size = page_size
        self.session.headers.update({'X-API-Key': self.api_key})

    def _build_url(self, name: str, **params: str) -> str:
        return self.endpoints[name].format(companyId=self.company_id, **params)

    def iter_pages(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield records from every page of a list endpoint.

        RealGreen returns either a bare list or an envelope with
        ``items`` and ``totalPages``.
        """
        page = 1
        while True:
            page_params = dict(params or {})
            page_params.update({"page": page, "pageSize": self.page_size})

            logger.debug(f"Fetching page {page} of {endpoint}")
            data = self._make_request('GET', endpoint, params=page_params)

            if isinstance(data, list):
                items, pages = data, None
            else:
                items = data.get("items") or data.get("data") or []
                pages = data.get("totalPages")

            for item in items:
                yield item

            if not items:
                break
            if pages is not None and page >= pages:
                break
            if pages is None and len(items) < self.page_size:
                break
            page += 1

    # Customer Management

    def list_customers(self, modified_since: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        params = {"modifiedSince": modified_since} if modified_since else {}
        return self.iter_pages(self._build_url("customers"), params)

    def search_customers(self, search_term: str) -> List[Dict[str, Any]]:
        return list(self.iter_pages(self._build_url("customers"), {"search": search_term}))

    def get_customer(self, customer_id: str) -> Dict[str, Any]:
        return self._make_request('GET', self._build_url("customer", customerId=customer_id))

    def create_customer(self, customer_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request('POST', self._build_url("customers"), data=customer_data)

    def update_customer(self, customer_id: str, customer_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request('PUT', self._build_url("customer", customerId=customer_id), data=customer_data)

    # Appointment Management

    def list_appointments(self, modified_since: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        params = {"modifiedSince": modified_since} if modified_since else {}
        return self.iter_pages(self._build_url("appointments"), params)

    def get_appointment(self, appointment_id: str) -> Dict[str, Any]:
        return self._make_request('GET', self._build_url("appointment", appointmentId=appointment_id))

    def create_appointment(self, appointment_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request('POST', self._build_url("appointments"), data=appointment_data)

    def update_appointment(self, appointment_id: str, appointment_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request(
            'PUT', self._build_url("appointment", appointmentId=appointment_id), data=appointment_data
        )

    def health(self) -> Dict[str, Any]:
        return self._make_request('GET', self.endpoints["health"])


def create_realgreen_client_from_env() -> RealGreenClient:
    """Create a RealGreen client from environment variables.

    Raises:
        ValueError: If required environment variables are missing
    """
    api_key = os.getenv('REALGREEN_API_KEY')
    company_id = os.getenv('REALGREEN_COMPANY_ID')
    if not api_key:
        raise ValueError("REALGREEN_API_KEY environment variable is required")
    if not company_id:
        raise ValueError("REALGREEN_COMPANY_ID environment variable is required")

    base_url = os.getenv('REALGREEN_BASE_URL', 'https://saapi.realgreen.com')
    timeout = float(os.getenv('HTTP_TIMEOUT_SECONDS', '30'))
    return RealGreenClient(api_key=api_key, company_id=company_id, base_url=base_url, timeout=timeout)
