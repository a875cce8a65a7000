"""Tests for integration and lead model behaviour."""

from datetime import datetime, timedelta

import pytest

from app.models import CRMIntegration, Lead
from app.models.integration import MAX_ERROR_LOGS
from app.models.sync_log import SyncLog


class TestCRMIntegrationModel:

    def test_needs_token_refresh_inside_buffer(self):
        now = datetime(2026, 1, 1, 12, 0, 0)
        integration = CRMIntegration(token_expires_at=now + timedelta(minutes=4))
        assert integration.needs_token_refresh(now) is True

    def test_needs_token_refresh_outside_buffer(self):
        now = datetime(2026, 1, 1, 12, 0, 0)
        integration = CRMIntegration(token_expires_at=now + timedelta(minutes=6))
        assert integration.needs_token_refresh(now) is False

    def test_no_expiry_never_needs_refresh(self):
        assert CRMIntegration(token_expires_at=None).needs_token_refresh() is False

    def test_is_active_requires_status_and_token(self):
        now = datetime(2026, 1, 1)
        integration = CRMIntegration(
            status="active",
            access_token_encrypted="cipher",
            token_expires_at=now + timedelta(hours=1),
        )
        assert integration.is_active(now) is True

        integration.token_expires_at = now - timedelta(seconds=1)
        assert integration.is_active(now) is False

        integration.token_expires_at = None
        integration.status = "error"
        assert integration.is_active(now) is False

    @pytest.mark.parametrize("direction,outbound,inbound", [
        ("to_crm", True, False),
        ("from_crm", False, True),
        ("bidirectional", True, True),
    ])
    def test_sync_direction_gates(self, direction, outbound, inbound):
        integration = CRMIntegration(sync_direction=direction)
        assert integration.allows_outbound() is outbound
        assert integration.allows_inbound() is inbound

    def test_update_sync_stats(self):
        integration = CRMIntegration(successful_syncs=2, failed_syncs=1)

        integration.update_sync_stats(0, 3, "Synced 0 of 3 leads")
        assert integration.successful_syncs == 2
        assert integration.failed_syncs == 4
        assert integration.last_sync_status == "error"
        assert integration.last_sync_message == "Synced 0 of 3 leads"
        assert integration.last_sync_at is not None

        integration.update_sync_stats(1, 1)
        assert integration.last_sync_status == "success"

    def test_add_error_keeps_newest_entries(self, db_session, make_integration):
        """Error log is trimmed to the newest entries."""
        integration = make_integration()
        for i in range(MAX_ERROR_LOGS + 5):
            integration.add_error("sync", f"error {i}")
        db_session.commit()
        db_session.refresh(integration)

        assert len(integration.error_logs) == MAX_ERROR_LOGS
        messages = {e.error_message for e in integration.error_logs}
        assert "error 0" not in messages
        assert f"error {MAX_ERROR_LOGS + 4}" in messages

    def test_get_field_mapping_prefers_custom(self, db_session, make_integration):
        from app.models.integration_field_mapping import IntegrationFieldMapping

        integration = make_integration()
        integration.custom_field_mappings.append(
            IntegrationFieldMapping(form_field="email", crm_field="Secondary_Email")
        )
        db_session.commit()

        assert integration.get_field_mapping("email") == "Secondary_Email"
        assert integration.get_field_mapping("phone") == "phone"
        assert integration.get_field_mapping("budget") is None


class TestLeadModel:

    def test_email_is_normalized(self):
        lead = Lead(email="  Jane@Example.COM ")
        assert lead.email == "jane@example.com"

    def test_lead_origin_is_immutable(self):
        lead = Lead(lead_origin="platform")
        with pytest.raises(ValueError):
            lead.lead_origin = "crm"

    def test_lead_origin_rejects_unknown_values(self):
        with pytest.raises(ValueError):
            Lead(lead_origin="spreadsheet")

    def test_display_name_falls_back(self):
        assert Lead(first_name="Ada", last_name="Lovelace").display_name == "Ada Lovelace"
        assert Lead(email="ada@example.com").display_name == "ada@example.com"


class TestSyncLog:

    @pytest.mark.parametrize("imported,failed,expected", [
        (3, 0, "success"),
        (2, 1, "partial"),
        (0, 2, "failed"),
    ])
    def test_finish_derives_status(self, imported, failed, expected):
        log = SyncLog(
            direction="inbound", status="running",
            records_imported=imported, records_updated=0, records_skipped=0, records_failed=failed,
        )
        log.finish(errors=["boom"] if failed else None, summary="done")

        assert log.status == expected
        assert log.completed_at is not None
        assert log.summary == "done"
