"""Tests for the provider connectors, using httpx's mock transport."""

import json

import httpx
import pytest

from app.core.exceptions import ConfigurationError, ProviderAPIError
from app.models import CRMIntegration
from app.services.connectors import (
    DynamicsConnector,
    HubSpotConnector,
    SalesforceConnector,
    ZohoConnector,
    get_connector,
)
from conftest import DEFAULT_CREDENTIALS, RecordingHandler


def _integration(provider, **credentials):
    return CRMIntegration(provider=provider, credentials=credentials or dict(DEFAULT_CREDENTIALS[provider]))


class TestConnectorFactory:

    @pytest.mark.parametrize("provider,cls", [
        ("zoho", ZohoConnector),
        ("salesforce", SalesforceConnector),
        ("hubspot", HubSpotConnector),
        ("dynamics", DynamicsConnector),
    ])
    def test_get_connector(self, provider, cls):
        assert isinstance(get_connector(_integration(provider), access_token="t"), cls)

    @pytest.mark.parametrize("provider", ["pipedrive", "freshworks", "monday"])
    def test_unimplemented_providers_are_rejected(self, provider):
        with pytest.raises(ConfigurationError):
            get_connector(CRMIntegration(provider=provider, credentials={}))


class TestRetries:

    def test_retries_server_errors_then_succeeds(self):
        handler = RecordingHandler(
            httpx.Response(503, text="unavailable"),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(201, json={"data": [{"status": "success", "details": {"id": "z-1"}}]}),
        )
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        assert connector.create_lead({"Last_Name": "Doe"}) == "z-1"
        assert len(handler.requests) == 3

    def test_retries_rate_limit(self):
        handler = RecordingHandler(
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"users": [{"id": "u1", "full_name": "Zed"}]}),
        )
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        assert connector.get_current_user().id == "u1"
        assert len(handler.requests) == 2

    def test_client_errors_are_not_retried(self):
        handler = RecordingHandler(httpx.Response(400, text="invalid field"))
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        with pytest.raises(ProviderAPIError) as exc_info:
            connector.create_lead({"Last_Name": "Doe"})

        assert exc_info.value.provider_status == 400
        assert len(handler.requests) == 1

    def test_gives_up_after_max_attempts(self):
        handler = RecordingHandler(*[httpx.Response(500, text="down") for _ in range(5)])
        connector = HubSpotConnector(_integration("hubspot"), access_token="t", client=handler.client)

        with pytest.raises(ProviderAPIError) as exc_info:
            connector.get_lead("42")

        assert exc_info.value.provider_status == 500
        assert len(handler.requests) == 3

    def test_transport_errors_are_retried(self):
        handler = RecordingHandler(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"results": []}),
        )
        connector = HubSpotConnector(_integration("hubspot"), access_token="t", client=handler.client)

        page = connector.get_leads()
        assert page.records == []
        assert len(handler.requests) == 2


class TestZohoConnector:

    def test_auth_header_and_base_url(self):
        handler = RecordingHandler(httpx.Response(200, json={"users": [{"id": "u1"}]}))
        connector = ZohoConnector(
            _integration("zoho", api_domain="https://www.zohoapis.eu"), access_token="secret", client=handler.client,
        )
        connector.get_current_user()

        request = handler.requests[0]
        assert request.headers["Authorization"] == "Zoho-oauthtoken secret"
        assert str(request.url).startswith("https://www.zohoapis.eu/crm/v3/users")

    def test_create_lead_reports_record_level_errors(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "data": [{"status": "error", "message": "required field not found"}],
        }))
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        with pytest.raises(ProviderAPIError):
            connector.create_lead({})

    def test_get_leads_pagination(self):
        handler = RecordingHandler(
            httpx.Response(200, json={"data": [{"id": "1"}], "info": {"more_records": True, "count": 1}}),
        )
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        page = connector.get_leads(page_size=1, cursor=2)

        assert page.next_cursor == 3
        assert handler.requests[0].url.params["page"] == "2"

    def test_update_lead_uses_put(self):
        handler = RecordingHandler(httpx.Response(200, json={"data": [{"status": "success"}]}))
        connector = ZohoConnector(_integration("zoho"), access_token="t", client=handler.client)

        connector.update_lead("z-9", {"Email": "a@b.co"})

        request = handler.requests[0]
        assert request.method == "PUT"
        assert request.url.path.endswith("/Leads/z-9")
        assert json.loads(request.content) == {"data": [{"Email": "a@b.co"}]}


class TestSalesforceConnector:

    def test_missing_instance_url(self):
        connector = SalesforceConnector(CRMIntegration(provider="salesforce", credentials={}), access_token="t")
        with pytest.raises(ConfigurationError):
            connector.get_leads()

    def test_create_and_update(self):
        handler = RecordingHandler(
            httpx.Response(201, json={"id": "00Q1", "success": True}),
            httpx.Response(204),
        )
        connector = SalesforceConnector(_integration("salesforce"), access_token="t", client=handler.client)

        assert connector.create_lead({"LastName": "Doe", "Company": "Acme"}) == "00Q1"
        connector.update_lead("00Q1", {"Phone": "555"})

        assert handler.requests[0].url.path == "/services/data/v58.0/sobjects/Lead"
        assert handler.requests[1].method == "PATCH"
        assert handler.requests[1].url.path == "/services/data/v58.0/sobjects/Lead/00Q1"

    def test_get_leads_offset_cursor(self):
        records = [{"Id": f"00Q{i}"} for i in range(2)]
        handler = RecordingHandler(httpx.Response(200, json={"records": records, "totalSize": 5}))
        connector = SalesforceConnector(_integration("salesforce"), access_token="t", client=handler.client)

        page = connector.get_leads(page_size=2, cursor=2)

        assert page.next_cursor == 4
        assert "OFFSET 2" in handler.requests[0].url.params["q"]


class TestHubSpotConnector:

    def test_current_user_from_token_info(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "hub_id": 12345, "hub_domain": "acme.com", "user": "owner@acme.com", "user_id": 7,
        }))
        connector = HubSpotConnector(_integration("hubspot"), access_token="tok", client=handler.client)

        user = connector.get_current_user()

        assert user.id == "12345"
        assert user.extra["hub_id"] == 12345
        assert handler.requests[0].url.path == "/oauth/v1/access-tokens/tok"

    def test_rejected_token_is_not_logged(self, caplog):
        handler = RecordingHandler(httpx.Response(401, text="expired"))
        connector = HubSpotConnector(
            _integration("hubspot"), access_token="SECRET-ACCESS-TOKEN", client=handler.client,
        )

        with caplog.at_level("WARNING"):
            with pytest.raises(ProviderAPIError):
                connector.get_current_user()

        assert "returned 401" in caplog.text
        assert "access-tokens/***" in caplog.text
        assert "SECRET-ACCESS-TOKEN" not in caplog.text

    def test_get_leads_after_cursor(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "results": [{"id": "1", "properties": {}}],
            "paging": {"next": {"after": "abc"}},
        }))
        connector = HubSpotConnector(_integration("hubspot"), access_token="t", client=handler.client)

        page = connector.get_leads(cursor="prev")

        assert page.next_cursor == "abc"
        assert handler.requests[0].url.params["after"] == "prev"
        assert "lead_source_system" in handler.requests[0].url.params["properties"]

    def test_register_webhook_subscriptions_collects_failures(self):
        handler = RecordingHandler(
            httpx.Response(201, json={"id": 1}),
            httpx.Response(400, text="bad event"),
        )
        connector = HubSpotConnector(_integration("hubspot"), access_token="t", client=handler.client)

        result = connector.register_webhook_subscriptions(["contact.creation", "contact.bogus"])

        assert len(result["subscriptions"]) == 1
        assert result["failed"][0]["event"] == "contact.bogus"


class TestDynamicsConnector:

    def test_create_lead_reads_entity_id_header(self):
        lead_id = "00000000-0000-0000-0000-000000000001"
        handler = RecordingHandler(httpx.Response(
            204,
            headers={"OData-EntityId": f"https://acme.crm.dynamics.com/api/data/v9.2/leads({lead_id})"},
        ))
        connector = DynamicsConnector(_integration("dynamics"), access_token="t", client=handler.client)

        assert connector.create_lead({"lastname": "Doe"}) == lead_id
        assert handler.requests[0].headers["OData-Version"] == "4.0"

    def test_get_leads_skip_cursor(self):
        handler = RecordingHandler(httpx.Response(200, json={"value": [{"leadid": "a"}, {"leadid": "b"}]}))
        connector = DynamicsConnector(_integration("dynamics"), access_token="t", client=handler.client)

        page = connector.get_leads(page_size=2)

        assert page.next_cursor == 2
        assert handler.requests[0].url.params["$top"] == "2"
