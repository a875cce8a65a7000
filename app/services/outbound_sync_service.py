import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.core.exceptions import LeadNotFoundError, LeadSyncException, ProviderAPIError, TokenRefreshError
from app.models.integration import CRMIntegration
from app.models.lead import Lead
from app.models.sync_log import SyncLog
from app.schemas.crm_integration import IntegrationStats, SyncStats, SyncStatusResponse
from app.services.connectors import get_connector
from app.services.field_mapper import lead_to_canonical, to_provider_payload
from app.services.integration_service import IntegrationService
from app.services.lead_store import LeadStore

logger = logging.getLogger(__name__)

_OUTBOUND_ERRORS = (LeadSyncException, ValueError)


class OutboundSyncService:
    """Push platform leads to the connected CRM."""

    @staticmethod
    def _mark_failed(store: LeadStore, lead: Optional[Lead], error: str) -> None:
        if lead is None:
            return
        lead.crm_sync_status = "failed"
        lead.sync_error = error[:2000]
        store.commit()

    @staticmethod
    def sync_lead_to_crm(
        db: Session,
        store: LeadStore,
        lead_id,
        integration: CRMIntegration,
        client: Optional[httpx.Client] = None,
    ) -> dict:
        """
        Create or update one lead in the CRM.

        A lead that already has a crm_id is updated in place so a resubmit never
        creates a duplicate. On failure the lead is marked failed, the error is
        logged on the integration and the exception propagates.
        """
        lead = store.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(lead_id)

        action = "updated" if lead.crm_id else "created"
        try:
            access_token = IntegrationService.ensure_fresh_token(db, integration, client=client)
            connector = get_connector(integration, access_token=access_token, client=client)
            canonical = lead_to_canonical(lead, integration)
            if lead.crm_id:
                connector.update_lead(lead.crm_id, to_provider_payload(integration.provider, canonical, for_update=True))
                crm_id = lead.crm_id
            else:
                crm_id = connector.create_lead(to_provider_payload(integration.provider, canonical))
        except _OUTBOUND_ERRORS as e:
            logger.error(f"Failed to sync lead {lead_id} to {integration.provider}: {e}")
            OutboundSyncService._mark_failed(store, lead, str(e))
            if not isinstance(e, TokenRefreshError):
                # Rejected credentials put the integration into error until reconnected
                auth_failure = isinstance(e, ProviderAPIError) and e.provider_status in (401, 403)
                IntegrationService.record_error(
                    db, integration, "sync", f"Lead {lead_id}: {e}",
                    code=getattr(e, "error_code", None), set_status=auth_failure,
                )
            raise

        lead.crm_id = str(crm_id)
        lead.crm_sync_status = "synced"
        lead.last_synced_at = datetime.utcnow()
        lead.sync_error = None
        if lead.lead_origin is None:
            lead.lead_origin = "platform"
        store.commit()

        integration.total_leads_synced = (integration.total_leads_synced or 0) + 1
        db.commit()

        logger.info(f"Lead {lead_id} {action} in {integration.provider} as {crm_id}")
        return {"lead_id": str(lead_id), "crm_id": str(crm_id), "provider": integration.provider, "action": action}

    @staticmethod
    def sync_leads_to_crm(
        db: Session,
        store: LeadStore,
        lead_ids: list,
        integration: CRMIntegration,
        trigger: str = "manual",
        client: Optional[httpx.Client] = None,
    ) -> dict:
        """Sync leads one by one. A failed lead never stops the batch."""
        results = {"successful": [], "failed": [], "total": len(lead_ids)}
        log = SyncLog(
            integration_id=integration.id,
            direction="outbound",
            status="running",
            trigger_type=trigger,
            records_fetched=len(lead_ids),
        )
        db.add(log)
        db.commit()

        created = updated = 0
        refresh_error: Optional[TokenRefreshError] = None
        for lead_id in lead_ids:
            if refresh_error is not None:
                # No usable token: fail the rest without calling the provider
                OutboundSyncService._mark_failed(store, store.get(lead_id), str(refresh_error))
                results["failed"].append({"lead_id": str(lead_id), "error": str(refresh_error)})
                continue
            try:
                result = OutboundSyncService.sync_lead_to_crm(db, store, lead_id, integration, client=client)
            except TokenRefreshError as e:
                refresh_error = e
                results["failed"].append({"lead_id": str(lead_id), "error": str(e)})
            except _OUTBOUND_ERRORS as e:
                results["failed"].append({"lead_id": str(lead_id), "error": str(e)})
            else:
                results["successful"].append(str(lead_id))
                if result["action"] == "created":
                    created += 1
                else:
                    updated += 1

        message = f"Synced {len(results['successful'])} of {results['total']} leads"
        integration.update_sync_stats(len(results["successful"]), len(results["failed"]), message)

        log.records_imported = created
        log.records_updated = updated
        log.records_failed = len(results["failed"])
        log.finish(errors=[f"{f['lead_id']}: {f['error']}" for f in results["failed"][:50]], summary=message)
        db.commit()

        logger.info(f"Outbound batch to {integration.provider}: {message}")
        return results

    @staticmethod
    def retry_failed_syncs(
        db: Session,
        company_id: UUID,
        store: LeadStore,
        client: Optional[httpx.Client] = None,
    ) -> dict:
        """Resubmit every lead whose last sync failed."""
        integration = IntegrationService.require_active_outbound(db, company_id)
        lead_ids = [lead.id for lead in store.list_failed()]
        if not lead_ids:
            return {"successful": [], "failed": [], "total": 0}
        return OutboundSyncService.sync_leads_to_crm(
            db, store, lead_ids, integration, trigger="retry", client=client,
        )

    @staticmethod
    def auto_sync_new_lead(
        db: Session,
        lead: Lead,
        company_id: UUID,
        store: LeadStore,
        client: Optional[httpx.Client] = None,
    ) -> dict:
        """Called after lead capture. Never raises; the outcome is in the result."""
        active = IntegrationService.get_active_integrations(db, company_id)
        if not active:
            return {"success": False, "reason": "No active CRM integration"}

        enabled = [i for i in active if i.auto_sync_enabled]
        if not enabled:
            return {"success": False, "reason": "Auto-sync is disabled"}

        eligible = [i for i in enabled if i.allows_outbound()]
        if not eligible:
            return {"success": False, "reason": "Integration only syncs from the CRM"}

        integration = eligible[0]
        try:
            result = OutboundSyncService.sync_lead_to_crm(db, store, lead.id, integration, client=client)
        except _OUTBOUND_ERRORS as e:
            logger.error(f"Auto-sync of lead {lead.id} failed: {e}")
            return {"success": False, "error": str(e)}
        return {"success": True, "result": result}

    @staticmethod
    def get_sync_status(db: Session, company_id: UUID, store: LeadStore) -> SyncStatusResponse:
        counts = store.sync_counts()
        total = counts["total"]
        stats = SyncStats(
            total_leads=total,
            synced_leads=counts["synced"],
            pending_leads=counts["pending"],
            failed_leads=counts["failed"],
            sync_percentage=round(counts["synced"] / total * 100, 2) if total else 0.0,
        )

        active = IntegrationService.get_active_integrations(db, company_id)
        if not active:
            return SyncStatusResponse(has_integration=False, stats=stats)

        integration = active[0]
        return SyncStatusResponse(
            has_integration=True,
            provider=integration.provider,
            status=integration.status,
            auto_sync_enabled=integration.auto_sync_enabled,
            last_sync_at=integration.last_sync_at,
            stats=stats,
            integration_stats=IntegrationStats(
                total_leads_synced=integration.total_leads_synced or 0,
                successful_syncs=integration.successful_syncs or 0,
                failed_syncs=integration.failed_syncs or 0,
                last_sync_status=integration.last_sync_status,
                last_sync_message=integration.last_sync_message,
            ),
        )
