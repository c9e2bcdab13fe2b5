"""Shared HTTP plumbing for the RealGreen and GoHighLevel clients."""

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import PermanentSystemError, TransientSystemError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class ApiClient:
    """Base client: session with retries, timeouts and error classification."""

    system_name = "api"
    user_agent = "Hybrid-Sync/0.1.0"

    def __init__(self, base_url: str, timeout: float = 30.0):
        """Initialize the client.

        Args:
            base_url: Base URL for the API
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        # Transport retries only for idempotent reads; writes are retried
        # by the sync queue so they are never doubled here
        self.session = requests.Session()
        retry_strategy = Retry(
            total=2,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            backoff_factor=0.5,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': self.user_agent,
        })

    def _make_request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                      data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make a request to the API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            data: JSON body

        Returns:
            JSON response data

        Raises:
            TransientSystemError: Network failure, timeout, 429 or 5xx
            PermanentSystemError: Any other HTTP error
        """
        url = f"{self.base_url}{endpoint}"

        try:
            logger.debug(f"{self.system_name} request: {method} {url} params={params}")
            response = self.session.request(method, url, params=params, json=data, timeout=self.timeout)
            response.raise_for_status()

            if response.content:
                return response.json()
            return {}

        except requests.exceptions.HTTPError as e:
            raise self._classify_http_error(method, url, e.response)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error(f"{self.system_name} request failed: {method} {url}: {e}")
            raise TransientSystemError(f"Request failed: {e}", system=self.system_name)
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.system_name} request failed: {method} {url}: {e}")
            raise TransientSystemError(f"Request failed: {e}", system=self.system_name)

    def _classify_http_error(self, method: str, url: str, response) -> Exception:
        status = response.status_code
        try:
            detail = response.json()
        except ValueError:
            detail = response.text

        logger.error(f"{self.system_name} response error: {method} {url} status={status} data={detail}")
        message = f"HTTP {status}: {detail}"

        if status in TRANSIENT_STATUS_CODES:
            return TransientSystemError(
                message,
                status_code=status,
                system=self.system_name,
                retry_after=_retry_after(response),
            )
        return PermanentSystemError(message, status_code=status, system=self.system_name)


def _retry_after(response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
