"""
Tests for the RealGreen and GoHighLevel API clients and connectors.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from hybrid_sync.connectors import (
    CONNECTOR_REGISTRY, GoHighLevelConnector, RealGreenConnector, get_connector
)
from hybrid_sync.exceptions import PermanentSystemError, TransientSystemError
from hybrid_sync.integrations.gohighlevel.client import API_VERSION, GoHighLevelClient
from hybrid_sync.integrations.realgreen.client import RealGreenClient, create_realgreen_client_from_env

SINCE = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


def make_response(status=200, payload=None, headers=None):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload).encode() if payload is not None else b""
    response.headers.update(headers or {})
    response.url = "https://api.test/endpoint"
    return response


@pytest.fixture
def realgreen():
    return RealGreenClient(api_key="rg-key", company_id="c1", base_url="https://rg.test/", page_size=2)


@pytest.fixture
def gohighlevel():
    return GoHighLevelClient(api_key="ghl-token", location_id="loc-1", base_url="https://ghl.test", page_size=2)


class TestErrorClassification:
    """HTTP failures become transient or permanent sync errors."""

    def test_rate_limit_is_transient_with_retry_after(self, realgreen):
        with patch.object(realgreen.session, "request",
                          return_value=make_response(429, {"message": "slow down"}, {"Retry-After": "7"})):
            with pytest.raises(TransientSystemError) as exc_info:
                realgreen.get_customer("7")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.system == "realgreen"

    def test_server_error_is_transient(self, realgreen):
        with patch.object(realgreen.session, "request", return_value=make_response(503, {"error": "down"})):
            with pytest.raises(TransientSystemError):
                realgreen.get_customer("7")

    def test_validation_error_is_permanent(self, realgreen):
        with patch.object(realgreen.session, "request", return_value=make_response(422, {"error": "bad email"})):
            with pytest.raises(PermanentSystemError) as exc_info:
                realgreen.create_customer({"email": "nope"})

        assert exc_info.value.status_code == 422
        assert "bad email" in str(exc_info.value)

    def test_auth_failure_is_permanent(self, gohighlevel):
        with patch.object(gohighlevel.session, "request", return_value=make_response(401, {"msg": "invalid token"})):
            with pytest.raises(PermanentSystemError):
                gohighlevel.get_location()

    def test_connection_error_is_transient(self, realgreen):
        with patch.object(realgreen.session, "request", side_effect=requests.exceptions.ConnectionError("reset")):
            with pytest.raises(TransientSystemError):
                realgreen.health()

    def test_timeout_is_transient(self, gohighlevel):
        with patch.object(gohighlevel.session, "request", side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(TransientSystemError):
                gohighlevel.get_contact("c1")

    def test_empty_body(self, realgreen):
        with patch.object(realgreen.session, "request", return_value=make_response(204)):
            assert realgreen.update_customer("7", {"firstName": "Ada"}) == {}


class TestRealGreenClient:
    """Tests for RealGreenClient."""

    def test_headers_and_url(self, realgreen):
        assert realgreen.session.headers["X-API-Key"] == "rg-key"
        assert realgreen.base_url == "https://rg.test"

        with patch.object(realgreen.session, "request", return_value=make_response(200, {"id": 7})) as request:
            realgreen.get_customer("7")

        method, url = request.call_args.args
        assert method == "GET"
        assert url == "https://rg.test/company/c1/customers/7"

    def test_envelope_pagination(self, realgreen):
        pages = [
            make_response(200, {"items": [{"id": 1}, {"id": 2}], "totalPages": 2}),
            make_response(200, {"items": [{"id": 3}], "totalPages": 2}),
        ]
        with patch.object(realgreen.session, "request", side_effect=pages) as request:
            customers = list(realgreen.list_customers(modified_since="2026-03-01T00:00:00+00:00"))

        assert [c["id"] for c in customers] == [1, 2, 3]
        assert request.call_count == 2
        second = request.call_args_list[1].kwargs["params"]
        assert second["page"] == 2
        assert second["pageSize"] == 2
        assert second["modifiedSince"] == "2026-03-01T00:00:00+00:00"

    def test_bare_list_stops_on_short_page(self, realgreen):
        with patch.object(realgreen.session, "request", return_value=make_response(200, [{"id": 1}])) as request:
            assert list(realgreen.list_appointments()) == [{"id": 1}]

        assert request.call_count == 1

    def test_from_env_requires_key(self, monkeypatch):
        monkeypatch.delenv("REALGREEN_API_KEY", raising=False)
        monkeypatch.setenv("REALGREEN_COMPANY_ID", "c1")

        with pytest.raises(ValueError):
            create_realgreen_client_from_env()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REALGREEN_API_KEY", "rg-key")
        monkeypatch.setenv("REALGREEN_COMPANY_ID", "c1")
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "5")

        client = create_realgreen_client_from_env()

        assert client.company_id == "c1"
        assert client.timeout == 5.0


class TestGoHighLevelClient:
    """Tests for GoHighLevelClient."""

    def test_headers(self, gohighlevel):
        assert gohighlevel.session.headers["Authorization"] == "Bearer ghl-token"
        assert gohighlevel.session.headers["Version"] == API_VERSION

    def test_cursor_pagination(self, gohighlevel):
        pages = [
            make_response(200, {"contacts": [{"id": "a"}, {"id": "b"}],
                                "meta": {"startAfterId": "b", "startAfter": 1700000000000}}),
            make_response(200, {"contacts": [{"id": "c"}], "meta": {"startAfterId": "c"}}),
        ]
        with patch.object(gohighlevel.session, "request", side_effect=pages) as request:
            contacts = list(gohighlevel.list_contacts())

        assert [c["id"] for c in contacts] == ["a", "b", "c"]
        first = request.call_args_list[0].kwargs["params"]
        second = request.call_args_list[1].kwargs["params"]
        assert first == {"locationId": "loc-1", "limit": 2}
        assert second["startAfterId"] == "b"
        assert second["startAfter"] == 1700000000000

    def test_find_contact_by_email(self, gohighlevel):
        response = make_response(200, {"contact": {"id": "g-9", "email": "ada@example.com"}})
        with patch.object(gohighlevel.session, "request", return_value=response) as request:
            contact = gohighlevel.find_contact_by_email("ada@example.com")

        assert contact["id"] == "g-9"
        assert request.call_args.kwargs["params"] == {"locationId": "loc-1", "email": "ada@example.com"}

    def test_find_contact_by_email_no_match(self, gohighlevel):
        with patch.object(gohighlevel.session, "request", return_value=make_response(200, {"contact": None})):
            assert gohighlevel.find_contact_by_email("nobody@example.com") is None

    def test_create_contact_adds_location(self, gohighlevel):
        response = make_response(201, {"contact": {"id": "g-1"}})
        with patch.object(gohighlevel.session, "request", return_value=response) as request:
            created = gohighlevel.create_contact({"firstName": "Ada"})

        assert created == {"id": "g-1"}
        assert request.call_args.kwargs["json"] == {"firstName": "Ada", "locationId": "loc-1"}


class TestRealGreenConnector:
    """Tests for RealGreenConnector over a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock(spec=RealGreenClient)

    @pytest.fixture
    def connector(self, client):
        return RealGreenConnector(client=client)

    def test_list_changed_filters_old_records(self, connector, client):
        client.list_customers.return_value = iter([
            {"id": 1, "lastModified": "2026-03-02T10:00:00Z"},
            {"id": 2, "lastModified": "2026-02-01T10:00:00Z"},
            {"id": 3},
        ])

        records = list(connector.list_changed("customer", SINCE))

        assert [r["id"] for r in records] == [1, 3]
        client.list_customers.assert_called_once_with(modified_since=SINCE.isoformat())

    def test_create_returns_id(self, connector, client):
        client.create_customer.return_value = {"id": 1001}
        assert connector.create("customer", {"firstName": "Ada"}) == "1001"

    def test_create_without_id_is_permanent(self, connector, client):
        client.create_appointment.return_value = {}
        with pytest.raises(PermanentSystemError):
            connector.create("appointment", {"serviceType": "Aeration"})

    def test_get_missing_returns_none(self, connector, client):
        client.get_customer.side_effect = PermanentSystemError("HTTP 404", status_code=404)
        assert connector.get("customer", "7") is None

    def test_get_other_errors_propagate(self, connector, client):
        client.get_customer.side_effect = PermanentSystemError("HTTP 401", status_code=401)
        with pytest.raises(PermanentSystemError):
            connector.get("customer", "7")

    def test_find_existing_matches_email_case_insensitively(self, connector, client):
        client.search_customers.return_value = [
            {"id": 5, "email": "someone@example.com"},
            {"id": 7, "email": "ADA@example.com"},
        ]
        assert connector.find_existing("customer", {"email": "ada@example.com"}) == "7"

    def test_find_existing_skips_appointments(self, connector, client):
        assert connector.find_existing("appointment", {"email": "ada@example.com"}) is None
        client.search_customers.assert_not_called()

    def test_connection_failure_returns_false(self, connector, client):
        client.health.side_effect = TransientSystemError("Request failed")
        assert connector.test_connection() is False


class TestGoHighLevelConnector:
    """Tests for GoHighLevelConnector over a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock(spec=GoHighLevelClient)

    def test_appointment_listing_window(self, client):
        connector = GoHighLevelConnector(client=client, calendar_id="cal-1", appointment_horizon_days=30)
        client.list_appointments.return_value = iter([{"id": "e1", "dateUpdated": "2026-03-02T10:00:00Z"}])

        records = list(connector.list_changed("appointment", SINCE))

        assert [r["id"] for r in records] == ["e1"]
        start_ms, end_ms = client.list_appointments.call_args.args
        assert start_ms == int(SINCE.timestamp() * 1000)
        assert end_ms > int((datetime.now(timezone.utc) + timedelta(days=29)).timestamp() * 1000)
        assert client.list_appointments.call_args.kwargs["calendar_id"] == "cal-1"

    def test_create_appointment_books_into_calendar(self, client):
        connector = GoHighLevelConnector(client=client, calendar_id="cal-1")
        client.create_appointment.return_value = {"id": "e1"}

        assert connector.create("appointment", {"title": "Aeration"}) == "e1"
        client.create_appointment.assert_called_once_with({"title": "Aeration", "calendarId": "cal-1"})

    def test_get_bad_id_returns_none(self, client):
        client.get_contact.side_effect = PermanentSystemError("HTTP 400", status_code=400)
        assert GoHighLevelConnector(client=client).get("customer", "nope") is None

    def test_find_existing(self, client):
        client.find_contact_by_email.return_value = {"id": "g-9"}
        assert GoHighLevelConnector(client=client).find_existing("customer", {"email": "ada@example.com"}) == "g-9"

    def test_find_existing_without_email(self, client):
        assert GoHighLevelConnector(client=client).find_existing("customer", {"firstName": "Ada"}) is None


class TestRegistry:
    """Tests for the connector registry."""

    def test_registered_connectors(self):
        assert set(CONNECTOR_REGISTRY) == {"realgreen", "gohighlevel"}
        assert get_connector("realgreen") is RealGreenConnector
        assert get_connector("gohighlevel") is GoHighLevelConnector

    def test_unknown_connector(self):
        with pytest.raises(ValueError):
            get_connector("hubspot")
