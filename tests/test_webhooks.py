"""Tests for HubSpot webhook processing."""

import hashlib
import hmac
import json

import httpx
import pytest
from fastapi import status

from app.core.config import settings
from app.core.exceptions import WebhookSignatureError
from app.models import SyncLog
from app.services.connectors.base import CRMUser
from app.services.integration_service import IntegrationService
from app.services.oauth_service import TokenResponse
from app.services.webhook_service import WebhookService
from conftest import RecordingHandler

SECRET = "hubspot-webhook-secret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _event(subscription_type, object_id=501, portal_id=12345):
    return {
        "eventId": 1,
        "subscriptionId": 10,
        "portalId": portal_id,
        "occurredAt": 1700000000000,
        "subscriptionType": subscription_type,
        "attemptNumber": 0,
        "objectId": object_id,
    }


def _contact(object_id=501, email="buyer@example.com", marker=None):
    properties = {"email": email, "firstname": "Bea", "lastname": "Buyer"}
    if marker:
        properties["lead_source_system"] = marker
    return httpx.Response(200, json={"id": str(object_id), "properties": properties})


class TestSignature:

    def test_valid_signature(self):
        body = b'[{"objectId": 1}]'
        assert WebhookService.verify_hubspot_signature(body, _sign(body), SECRET) is True

    def test_tampered_body(self):
        body = b'[{"objectId": 1}]'
        assert WebhookService.verify_hubspot_signature(b'[{"objectId": 2}]', _sign(body), SECRET) is False

    def test_missing_signature_or_secret(self):
        assert WebhookService.verify_hubspot_signature(b"[]", None, SECRET) is False
        assert WebhookService.verify_hubspot_signature(b"[]", "abc", None) is False


class TestProcessEvents:

    def _process(self, db_session, tenant_resolver, events, client=None, signature=None):
        body = json.dumps(events).encode()
        return WebhookService.process_hubspot_events(
            db_session, events, body, signature or _sign(body),
            store_factory=tenant_resolver.get_lead_store, client=client,
        )

    def test_invalid_signature_rejects_whole_batch(self, db_session, tenant_resolver, make_integration):
        make_integration("hubspot")
        with pytest.raises(WebhookSignatureError):
            self._process(db_session, tenant_resolver, [_event("contact.creation")], signature="bad")

    def test_creation_imports_lead(self, db_session, tenant_resolver, lead_store, make_integration):
        integration = make_integration("hubspot")
        handler = RecordingHandler(_contact())

        response = self._process(db_session, tenant_resolver, [_event("contact.creation")], client=handler.client)

        assert response.processed == 1
        assert response.results[0].action == "imported"
        lead = lead_store.find_by_crm_id("501")
        assert lead.lead_origin == "crm"
        assert lead.email == "buyer@example.com"

        db_session.refresh(integration)
        assert integration.webhook_total_received == 1
        assert integration.webhook_last_received_at is not None
        log = db_session.query(SyncLog).one()
        assert log.direction == "webhook"
        assert log.records_imported == 1

    def test_contact_created_by_platform_is_skipped(self, db_session, tenant_resolver, lead_store, make_integration):
        make_integration("hubspot")
        handler = RecordingHandler(_contact(marker="LeadSync"))

        response = self._process(db_session, tenant_resolver, [_event("contact.creation")], client=handler.client)

        assert response.skipped == 1
        assert response.results[0].reason == "originated_internally"
        assert lead_store.find_by_crm_id("501") is None

    def test_property_change_updates_crm_lead(self, db_session, tenant_resolver, lead_store, make_integration, make_lead):
        make_integration("hubspot")
        lead = make_lead(email="buyer@example.com", phone="111", crm_id="501", lead_origin="crm", origin_crm_id="501")
        handler = RecordingHandler(httpx.Response(200, json={
            "id": "501", "properties": {"email": "buyer@example.com", "phone": "222"},
        }))

        response = self._process(
            db_session, tenant_resolver, [_event("contact.propertyChange")], client=handler.client,
        )

        assert response.results[0].action == "updated"
        lead_store.session.expire_all()
        assert lead_store.get(lead.id).phone == "222"

    def test_deletion_unlinks_lead(self, db_session, tenant_resolver, lead_store, make_integration, make_lead):
        make_integration("hubspot")
        lead = make_lead(crm_id="501", crm_sync_status="synced", lead_origin="platform")

        response = self._process(db_session, tenant_resolver, [_event("contact.deletion")])

        assert response.results[0].action == "unlinked"
        lead_store.session.expire_all()
        refreshed = lead_store.get(lead.id)
        assert refreshed is not None
        assert refreshed.crm_id is None
        assert refreshed.crm_sync_status == "not_synced"

    def test_unknown_portal_and_event(self, db_session, tenant_resolver, make_integration):
        make_integration("hubspot")
        events = [_event("contact.creation", portal_id=777), _event("deal.creation")]

        response = self._process(db_session, tenant_resolver, events)

        reasons = sorted(r.reason for r in response.results)
        assert reasons == ["unknown_event", "unknown_portal"]
        assert response.skipped == 2

    def test_outbound_only_integration_ignores_events(self, db_session, tenant_resolver, make_integration):
        make_integration("hubspot", sync_direction="to_crm")
        response = self._process(db_session, tenant_resolver, [_event("contact.creation")])

        assert response.results[0].reason == "direction_to_crm"

    def test_fetch_failure_is_recorded(self, db_session, tenant_resolver, make_integration):
        integration = make_integration("hubspot")
        handler = RecordingHandler(httpx.Response(404, text="not found"))

        response = self._process(db_session, tenant_resolver, [_event("contact.creation")], client=handler.client)

        assert response.failed == 1
        db_session.refresh(integration)
        assert integration.error_logs[-1].error_type == "webhook"
        assert db_session.query(SyncLog).one().status == "failed"


class TestWebhookEndpoint:

    def test_rejects_bad_signature(self, client, make_integration):
        make_integration("hubspot")
        body = json.dumps([_event("contact.deletion")])

        response = client.post(
            "/api/webhooks/hubspot",
            content=body,
            headers={"Content-Type": "application/json", "X-HubSpot-Signature": "nope"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error_code"] == "INVALID_WEBHOOK_SIGNATURE"

    def test_deletion_through_endpoint(self, client, lead_store, make_integration, make_lead):
        make_integration("hubspot")
        lead = make_lead(crm_id="501", crm_sync_status="synced")
        body = json.dumps([_event("contact.deletion")]).encode()

        response = client.post(
            "/api/webhooks/hubspot",
            content=body,
            headers={"Content-Type": "application/json", "X-HubSpot-Signature": _sign(body)},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["received"] == 1
        assert data["results"][0]["action"] == "unlinked"
        lead_store.session.expire_all()
        assert lead_store.get(lead.id).crm_id is None

    def test_rejects_malformed_body(self, client):
        response = client.post(
            "/api/webhooks/hubspot",
            content=b"not json",
            headers={"Content-Type": "application/json", "X-HubSpot-Signature": "x"},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestConnectedIntegration:

    def test_delivery_signed_with_client_secret_is_accepted(
        self, db_session, company, tenant_resolver, lead_store, make_lead,
    ):
        """An integration created by the OAuth callback verifies with the app client secret"""
        tokens = TokenResponse(access_token="at", refresh_token="rt", expires_in=3600)
        user = CRMUser(id=None, extra={"hub_id": 12345})
        integration = IntegrationService.save_connection(
            db_session, company.id, "hubspot", tokens, user,
            IntegrationService.build_credentials("hubspot", tokens, user),
        )
        lead = make_lead(crm_id="501", crm_sync_status="synced")
        events = [_event("contact.deletion")]
        body = json.dumps(events).encode()

        response = WebhookService.process_hubspot_events(
            db_session, events, body, _sign(body, settings.HUBSPOT_CLIENT_SECRET),
            store_factory=tenant_resolver.get_lead_store,
        )

        assert integration.webhook_secret is None
        assert response.results[0].action == "unlinked"
        lead_store.session.expire_all()
        assert lead_store.get(lead.id).crm_id is None
