"""Tests for pushing platform leads to the CRM."""

import json
from datetime import datetime, timedelta

import httpx
import pytest

from app.core.exceptions import IntegrationNotFoundError, LeadNotFoundError, ProviderAPIError
from app.models import SyncLog
from app.services.outbound_sync_service import OutboundSyncService
from conftest import RecordingHandler


def _zoho_created(crm_id):
    return httpx.Response(201, json={"data": [{"status": "success", "details": {"id": crm_id}}]})


class TestSyncLeadToCRM:

    def test_creates_lead_and_marks_synced(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho")
        lead = make_lead()
        handler = RecordingHandler(_zoho_created("z-100"))

        result = OutboundSyncService.sync_lead_to_crm(
            db_session, lead_store, lead.id, integration, client=handler.client,
        )

        assert result == {"lead_id": str(lead.id), "crm_id": "z-100", "provider": "zoho", "action": "created"}
        assert lead.crm_id == "z-100"
        assert lead.crm_sync_status == "synced"
        assert lead.lead_origin == "platform"
        assert lead.last_synced_at is not None
        assert integration.total_leads_synced == 1

        request = handler.requests[0]
        assert request.method == "POST"
        body = json.loads(request.content)
        assert body["data"][0]["Email"] == "jane@example.com"

    def test_resubmit_updates_instead_of_creating(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho")
        lead = make_lead(crm_id="z-7", crm_sync_status="synced", lead_origin="platform")
        handler = RecordingHandler(httpx.Response(200, json={"data": [{"status": "success"}]}))

        result = OutboundSyncService.sync_lead_to_crm(
            db_session, lead_store, lead.id, integration, client=handler.client,
        )

        assert result["action"] == "updated"
        assert result["crm_id"] == "z-7"
        assert len(handler.requests) == 1
        assert handler.requests[0].method == "PUT"
        assert handler.requests[0].url.path.endswith("/Leads/z-7")

    def test_failure_marks_lead_and_logs_error(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho")
        lead = make_lead()
        handler = RecordingHandler(httpx.Response(400, text="MANDATORY_NOT_FOUND"))

        with pytest.raises(ProviderAPIError):
            OutboundSyncService.sync_lead_to_crm(db_session, lead_store, lead.id, integration, client=handler.client)

        assert lead.crm_sync_status == "failed"
        assert "MANDATORY_NOT_FOUND" in lead.sync_error
        db_session.refresh(integration)
        assert integration.status == "active"
        assert integration.error_logs[-1].error_type == "sync"

    def test_rejected_credentials_put_integration_in_error(
        self, db_session, lead_store, make_integration, make_lead,
    ):
        integration = make_integration("hubspot")
        lead = make_lead()
        handler = RecordingHandler(httpx.Response(401, text="expired"))

        with pytest.raises(ProviderAPIError):
            OutboundSyncService.sync_lead_to_crm(db_session, lead_store, lead.id, integration, client=handler.client)

        db_session.refresh(integration)
        assert integration.status == "error"

    def test_unknown_lead(self, db_session, lead_store, make_integration):
        integration = make_integration("zoho")
        with pytest.raises(LeadNotFoundError):
            OutboundSyncService.sync_lead_to_crm(db_session, lead_store, "missing", integration)

    def test_hubspot_payload_carries_origin_marker(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("hubspot")
        lead = make_lead()
        handler = RecordingHandler(httpx.Response(201, json={"id": "hs-1"}))

        OutboundSyncService.sync_lead_to_crm(db_session, lead_store, lead.id, integration, client=handler.client)

        properties = json.loads(handler.requests[0].content)["properties"]
        assert properties["lead_source_system"] == "LeadSync"
        assert properties["lifecyclestage"] == "lead"


class TestSyncBatch:

    def test_partial_batch_keeps_going(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho")
        first = make_lead(email="one@example.com")
        second = make_lead(email="two@example.com")
        handler = RecordingHandler(
            httpx.Response(400, text="duplicate"),
            _zoho_created("z-2"),
        )

        results = OutboundSyncService.sync_leads_to_crm(
            db_session, lead_store, [first.id, second.id, "missing"], integration, client=handler.client,
        )

        assert results["successful"] == [str(second.id)]
        assert [f["lead_id"] for f in results["failed"]] == [str(first.id), "missing"]
        assert results["total"] == 3

        log = db_session.query(SyncLog).filter(SyncLog.integration_id == integration.id).one()
        assert log.direction == "outbound"
        assert log.status == "partial"
        assert log.records_imported == 1
        assert log.records_failed == 2

        db_session.refresh(integration)
        assert integration.successful_syncs == 1
        assert integration.failed_syncs == 2
        assert integration.last_sync_status == "success"

    def test_refresh_failure_short_circuits(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho", token_expires_at=datetime.utcnow() - timedelta(minutes=1))
        leads = [make_lead(email=f"lead{i}@example.com") for i in range(3)]
        handler = RecordingHandler(httpx.Response(400, json={"error": "invalid_grant"}))

        results = OutboundSyncService.sync_leads_to_crm(
            db_session, lead_store, [lead.id for lead in leads], integration, client=handler.client,
        )

        assert results["successful"] == []
        assert len(results["failed"]) == 3
        # Only the refresh attempt reached the network
        assert len(handler.requests) == 1
        assert all(lead.crm_sync_status == "failed" for lead in leads)

        db_session.refresh(integration)
        assert integration.status == "error"
        assert integration.error_logs[-1].error_type == "auth"

    def test_token_is_refreshed_before_expiry(self, db_session, lead_store, make_integration, make_lead):
        integration = make_integration("zoho", token_expires_at=datetime.utcnow() + timedelta(minutes=2))
        lead = make_lead()
        handler = RecordingHandler(
            httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600}),
            _zoho_created("z-5"),
        )

        OutboundSyncService.sync_leads_to_crm(db_session, lead_store, [lead.id], integration, client=handler.client)

        assert handler.requests[1].headers["Authorization"] == "Zoho-oauthtoken fresh-token"
        db_session.refresh(integration)
        assert integration.token_expires_at > datetime.utcnow() + timedelta(minutes=50)


class TestRetryAndAutoSync:

    def test_retry_failed_syncs(self, db_session, company, lead_store, make_integration, make_lead):
        make_integration("zoho")
        failed = make_lead(crm_sync_status="failed", sync_error="timeout")
        make_lead(email="ok@example.com", crm_id="z-1", crm_sync_status="synced")
        handler = RecordingHandler(_zoho_created("z-9"))

        results = OutboundSyncService.retry_failed_syncs(db_session, company.id, lead_store, client=handler.client)

        assert results["successful"] == [str(failed.id)]
        assert failed.crm_sync_status == "synced"
        assert failed.sync_error is None
        log = db_session.query(SyncLog).one()
        assert log.trigger_type == "retry"

    def test_retry_without_integration(self, db_session, company, lead_store):
        with pytest.raises(IntegrationNotFoundError):
            OutboundSyncService.retry_failed_syncs(db_session, company.id, lead_store)

    def test_auto_sync_disabled(self, db_session, company, lead_store, make_integration, make_lead):
        make_integration("zoho", auto_sync_enabled=False)
        lead = make_lead()

        result = OutboundSyncService.auto_sync_new_lead(db_session, lead, company.id, lead_store)

        assert result == {"success": False, "reason": "Auto-sync is disabled"}

    def test_auto_sync_without_active_integration(self, db_session, company, lead_store, make_integration, make_lead):
        make_integration("zoho", status="error")
        lead = make_lead()
        handler = RecordingHandler()

        result = OutboundSyncService.auto_sync_new_lead(
            db_session, lead, company.id, lead_store, client=handler.client,
        )

        assert result == {"success": False, "reason": "No active CRM integration"}
        assert handler.requests == []
        assert lead.crm_sync_status == "not_synced"

    def test_auto_sync_skips_inbound_only_integration(
        self, db_session, company, lead_store, make_integration, make_lead,
    ):
        make_integration("zoho", sync_direction="from_crm")
        lead = make_lead()
        handler = RecordingHandler()

        result = OutboundSyncService.auto_sync_new_lead(
            db_session, lead, company.id, lead_store, client=handler.client,
        )

        assert result == {"success": False, "reason": "Integration only syncs from the CRM"}
        assert handler.requests == []
        assert lead.crm_id is None

    def test_auto_sync_never_raises(self, db_session, company, lead_store, make_integration, make_lead):
        make_integration("zoho")
        lead = make_lead()
        handler = RecordingHandler(httpx.Response(400, text="rejected"))

        result = OutboundSyncService.auto_sync_new_lead(
            db_session, lead, company.id, lead_store, client=handler.client,
        )

        assert result["success"] is False
        assert "rejected" in result["error"]

    def test_get_sync_status(self, db_session, company, lead_store, make_integration, make_lead):
        make_integration("zoho")
        make_lead(email="a@example.com", crm_sync_status="synced", crm_id="1")
        make_lead(email="b@example.com", crm_sync_status="failed")
        make_lead(email="c@example.com")

        status = OutboundSyncService.get_sync_status(db_session, company.id, lead_store)

        assert status.has_integration is True
        assert status.provider == "zoho"
        assert status.stats.total_leads == 3
        assert status.stats.synced_leads == 1
        assert status.stats.failed_leads == 1
        assert status.stats.pending_leads == 1
        assert status.stats.sync_percentage == pytest.approx(33.33)
