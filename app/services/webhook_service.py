import hashlib
import hmac
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import LeadSyncException, WebhookSignatureError
from app.core.tenant import get_lead_store
from app.models.integration import CRMIntegration
from app.models.sync_log import SyncLog
from app.schemas.webhooks import WebhookEventResult, WebhookProcessResponse
from app.services.connectors import get_connector
from app.services.field_mapper import from_provider_record
from app.services.inbound_sync_service import InboundSyncService
from app.services.integration_service import IntegrationService
from app.services.lead_store import LeadStore

logger = logging.getLogger(__name__)

FETCH_EVENTS = ("contact.creation", "contact.propertyChange")
DELETE_EVENT = "contact.deletion"


class WebhookService:
    """Real-time inbound sync from HubSpot contact webhooks."""

    @staticmethod
    def verify_hubspot_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
        """HMAC-SHA256 hex digest of the raw body, compared in constant time."""
        if not signature or not secret:
            return False
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    @staticmethod
    def find_integration_by_portal(db: Session, portal_id) -> CRMIntegration | None:
        if portal_id is None:
            return None
        portal = str(portal_id)
        for integration in db.query(CRMIntegration).filter(CRMIntegration.provider == "hubspot").all():
            credentials = integration.credentials or {}
            account_info = integration.account_info or {}
            if str(credentials.get("portal_id") or "") == portal or str(account_info.get("id") or "") == portal:
                return integration
        return None

    @staticmethod
    def _handle_event(
        db: Session,
        store: LeadStore,
        integration: CRMIntegration,
        event: dict,
        client: Optional[httpx.Client] = None,
    ) -> WebhookEventResult:
        subscription_type = event.get("subscriptionType") or ""
        object_id = str(event.get("objectId")) if event.get("objectId") is not None else None
        result = WebhookEventResult(object_id=object_id, subscription_type=subscription_type, action="skipped")

        if subscription_type == DELETE_EVENT:
            lead = store.find_by_crm_id(object_id)
            if lead is None:
                result.reason = "not_found"
                return result
            # Unlink only; the platform keeps the lead
            lead.crm_id = None
            lead.crm_sync_status = "not_synced"
            lead.last_synced_at = datetime.utcnow()
            store.commit()
            result.action = "unlinked"
            result.lead_id = str(lead.id)
            return result

        if subscription_type not in FETCH_EVENTS:
            logger.warning(f"Unknown HubSpot webhook event: {subscription_type}")
            result.reason = "unknown_event"
            return result

        access_token = IntegrationService.ensure_fresh_token(db, integration, client=client)
        connector = get_connector(integration, access_token=access_token, client=client)
        contact = connector.get_lead(object_id)
        mapped = from_provider_record("hubspot", contact, integration)

        if mapped.get("origin_marker") == settings.PLATFORM_SOURCE_SYSTEM:
            result.reason = "originated_internally"
            return result

        outcome = InboundSyncService.apply_inbound_record(store, integration, mapped, store.platform_crm_ids())
        store.commit()
        result.action = outcome.action
        result.reason = outcome.reason
        if outcome.lead is not None:
            result.lead_id = str(outcome.lead.id)
        return result

    @staticmethod
    def process_hubspot_events(
        db: Session,
        events: list[dict],
        raw_body: bytes,
        signature: Optional[str],
        store_factory: Callable[[UUID], LeadStore] = get_lead_store,
        client: Optional[httpx.Client] = None,
    ) -> WebhookProcessResponse:
        """
        Verify and apply one HubSpot delivery.

        The signature is checked against every integration the delivery touches
        before anything is processed; a single mismatch rejects the whole batch.
        """
        response = WebhookProcessResponse(received=len(events))

        groups: "OrderedDict[UUID, tuple[CRMIntegration, list[dict]]]" = OrderedDict()
        unknown = []
        for event in events:
            integration = WebhookService.find_integration_by_portal(db, event.get("portalId"))
            if integration is None:
                unknown.append(event)
                continue
            groups.setdefault(integration.id, (integration, []))[1].append(event)

        secrets_to_check = [i.webhook_secret or settings.HUBSPOT_CLIENT_SECRET for i, _ in groups.values()]
        if not secrets_to_check:
            secrets_to_check = [settings.HUBSPOT_CLIENT_SECRET]
        for secret in secrets_to_check:
            if not WebhookService.verify_hubspot_signature(raw_body, signature, secret):
                logger.warning("Rejected HubSpot webhook delivery with invalid signature")
                raise WebhookSignatureError()

        for event in unknown:
            logger.warning(f"HubSpot webhook for unknown portal {event.get('portalId')}")
            response.results.append(WebhookEventResult(
                object_id=str(event.get("objectId")),
                subscription_type=event.get("subscriptionType") or "",
                action="skipped",
                reason="unknown_portal",
            ))

        for integration, integration_events in groups.values():
            integration.webhook_last_received_at = datetime.utcnow()
            integration.webhook_total_received = (integration.webhook_total_received or 0) + len(integration_events)
            db.commit()

            if integration.status != "active" or not integration.allows_inbound():
                for event in integration_events:
                    response.results.append(WebhookEventResult(
                        object_id=str(event.get("objectId")),
                        subscription_type=event.get("subscriptionType") or "",
                        action="skipped",
                        reason="integration_inactive" if integration.status != "active" else "direction_to_crm",
                    ))
                continue

            log = SyncLog(
                integration_id=integration.id,
                direction="webhook",
                status="running",
                trigger_type="webhook",
                records_fetched=len(integration_events),
            )
            db.add(log)
            db.commit()

            errors = []
            with store_factory(integration.company_id) as store:
                for event in integration_events:
                    try:
                        result = WebhookService._handle_event(db, store, integration, event, client=client)
                    except (LeadSyncException, SQLAlchemyError, ValueError) as e:
                        store.rollback()
                        logger.error(f"HubSpot webhook event {event.get('subscriptionType')} failed: {e}")
                        IntegrationService.record_error(
                            db, integration, "webhook", str(e), code=getattr(e, "error_code", None),
                        )
                        errors.append(str(e)[:500])
                        result = WebhookEventResult(
                            object_id=str(event.get("objectId")),
                            subscription_type=event.get("subscriptionType") or "",
                            action="failed",
                            error=str(e),
                        )
                    response.results.append(result)

                    if result.action == "imported":
                        log.records_imported += 1
                    elif result.action in ("updated", "unlinked"):
                        log.records_updated += 1
                    elif result.action == "failed":
                        log.records_failed += 1
                    else:
                        log.records_skipped += 1

            log.finish(errors=errors, summary=f"Processed {len(integration_events)} HubSpot events")
            db.commit()

        for result in response.results:
            if result.action == "skipped":
                response.skipped += 1
            elif result.action == "failed":
                response.failed += 1
            else:
                response.processed += 1

        return response
