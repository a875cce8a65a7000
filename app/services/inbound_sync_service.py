import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import LeadSyncException, ProviderAPIError, TokenRefreshError
from app.core.tenant import get_lead_store
from app.models.integration import CRMIntegration
from app.models.lead import Lead
from app.models.sync_log import SyncLog
from app.services.connectors import get_connector
from app.services.field_mapper import from_provider_record
from app.services.integration_service import IntegrationService
from app.services.lead_store import LeadStore

logger = logging.getLogger(__name__)

# Fields an inbound record may overwrite on a CRM-originated lead
UPDATABLE_FIELDS = (
    "first_name", "last_name", "full_name", "email", "phone", "company",
    "job_title", "location", "status", "notes", "platform_url",
)


@dataclass
class RecordOutcome:
    action: str  # "imported" | "updated" | "skipped"
    reason: Optional[str] = None
    lead: Optional[Lead] = None


@dataclass
class InboundResult:
    provider: str
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)
    error: Optional[str] = None
    sync_log_id: Optional[UUID] = None

    def count(self, outcome: RecordOutcome) -> None:
        setattr(self, outcome.action, getattr(self, outcome.action) + 1)

    @property
    def summary(self) -> str:
        return (
            f"Imported {self.imported}, updated {self.updated}, skipped {self.skipped}, "
            f"failed {self.failed} of {self.total} records"
        )


def _has_value(value) -> bool:
    return value is not None and value != ""


class InboundSyncService:
    """Pull leads from CRMs into tenant databases without echoing platform leads back."""

    @staticmethod
    def apply_inbound_record(
        store: LeadStore,
        integration: CRMIntegration,
        mapped: dict,
        platform_crm_ids: set[str],
    ) -> RecordOutcome:
        """
        Import, update or skip one reverse-mapped record.

        Leads that originated on the platform are never modified here, whether
        matched by crm_id or by email. Only CRM-originated leads are updated,
        field by field, with non-empty values.
        """
        email = mapped.get("email")
        crm_id = mapped.get("crm_id")

        if not email:
            return RecordOutcome("skipped", "no_email")
        if not crm_id:
            return RecordOutcome("skipped", "no_crm_id")
        if crm_id in platform_crm_ids:
            return RecordOutcome("skipped", "originated_internally")

        existing = store.find_existing(crm_id, email)
        now = datetime.utcnow()

        if existing is not None:
            if existing.lead_origin != "crm":
                return RecordOutcome("skipped", "originated_internally", existing)

            for key in UPDATABLE_FIELDS:
                if _has_value(mapped.get(key)):
                    setattr(existing, key, mapped[key])
            if mapped.get("custom_fields"):
                existing.custom_fields = {**(existing.custom_fields or {}), **mapped["custom_fields"]}
            existing.crm_id = crm_id
            existing.crm_sync_status = "synced"
            existing.last_synced_at = now
            existing.sync_error = None
            store.session.flush()
            return RecordOutcome("updated", lead=existing)

        lead = Lead(
            **{key: mapped.get(key) for key in UPDATABLE_FIELDS if _has_value(mapped.get(key))},
            custom_fields=mapped.get("custom_fields") or {},
            source="import",
            platform=mapped.get("platform") or integration.provider,
            lead_origin="crm",
            origin_crm_provider=integration.provider,
            origin_crm_id=crm_id,
            crm_id=crm_id,
            crm_sync_status="synced",
            last_synced_at=now,
        )
        store.add(lead)
        return RecordOutcome("imported", lead=lead)

    @staticmethod
    def import_leads_for_integration(
        db: Session,
        store: LeadStore,
        integration: CRMIntegration,
        trigger: str = "scheduled",
        max_pages: Optional[int] = None,
        page_size: Optional[int] = None,
        client: Optional[httpx.Client] = None,
    ) -> InboundResult:
        """Page through the CRM's leads and apply each record. Provider failures propagate."""
        max_pages = max_pages or settings.CRM_POLL_MAX_PAGES
        page_size = page_size or settings.CRM_POLL_PAGE_SIZE
        result = InboundResult(provider=integration.provider)

        log = SyncLog(
            integration_id=integration.id,
            direction="inbound",
            status="running",
            trigger_type=trigger,
        )
        db.add(log)
        db.commit()
        result.sync_log_id = log.id

        try:
            access_token = IntegrationService.ensure_fresh_token(db, integration, client=client)
            connector = get_connector(integration, access_token=access_token, client=client)
            platform_ids = store.platform_crm_ids()

            cursor = None
            for _ in range(max_pages):
                page = connector.get_leads(page_size=page_size, cursor=cursor)
                for record in page.records:
                    result.total += 1
                    try:
                        mapped = from_provider_record(integration.provider, record, integration)
                        outcome = InboundSyncService.apply_inbound_record(store, integration, mapped, platform_ids)
                        store.commit()
                    except (SQLAlchemyError, ValueError) as e:
                        store.rollback()
                        result.failed += 1
                        result.errors.append(str(e)[:500])
                        logger.warning(f"Failed to apply {integration.provider} record: {e}")
                    else:
                        result.count(outcome)
                cursor = page.next_cursor
                if not cursor:
                    break
        except (LeadSyncException, ValueError) as e:
            result.error = str(e)
            log.records_fetched = result.total
            log.records_failed = max(result.failed, 1)
            log.finish(errors=result.errors + [str(e)], summary=f"Import from {integration.provider} failed")
            log.status = "failed"
            if isinstance(e, TokenRefreshError):
                db.commit()
            else:
                auth_failure = isinstance(e, ProviderAPIError) and e.provider_status in (401, 403)
                IntegrationService.record_error(
                    db, integration, "api", f"Inbound sync failed: {e}",
                    code=getattr(e, "error_code", None), set_status=auth_failure,
                )
            raise

        log.records_fetched = result.total
        log.records_imported = result.imported
        log.records_updated = result.updated
        log.records_skipped = result.skipped
        log.records_failed = result.failed
        log.finish(errors=result.errors[:50], summary=result.summary)
        integration.last_sync_at = datetime.utcnow()
        integration.last_sync_message = result.summary
        db.commit()

        logger.info(f"Inbound {integration.provider} for company {integration.company_id}: {result.summary}")
        return result

    @staticmethod
    def sync_company(
        db: Session,
        company_id: UUID,
        store: Optional[LeadStore] = None,
        trigger: str = "scheduled",
        client: Optional[httpx.Client] = None,
    ) -> list[InboundResult]:
        """Import from every active inbound integration. One provider failing does not stop the rest."""
        integrations = [
            i for i in IntegrationService.get_active_integrations(db, company_id) if i.allows_inbound()
        ]
        if not integrations:
            return []

        own_store = store is None
        store = store or get_lead_store(company_id)
        results = []
        try:
            for integration in integrations:
                try:
                    results.append(InboundSyncService.import_leads_for_integration(
                        db, store, integration, trigger=trigger, client=client,
                    ))
                except (LeadSyncException, ValueError) as e:
                    logger.error(f"Inbound sync of {integration.provider} for company {company_id} failed: {e}")
                    results.append(InboundResult(provider=integration.provider, error=str(e)))
        finally:
            if own_store:
                store.close()
        return results

    @staticmethod
    def sync_all_companies(
        session_factory: Callable[[], Session] = SessionLocal,
        store_factory: Callable[[UUID], LeadStore] = get_lead_store,
        max_workers: Optional[int] = None,
    ) -> dict[str, list[InboundResult]]:
        """Scheduler entry point: poll every company, sharded over a bounded thread pool."""
        db = session_factory()
        try:
            company_ids = [
                row[0] for row in db.query(CRMIntegration.company_id).filter(
                    CRMIntegration.status == "active",
                    CRMIntegration.sync_direction != "to_crm",
                ).distinct().all()
            ]
        finally:
            db.close()

        if not company_ids:
            logger.info("Inbound poll: no active integrations")
            return {}

        def _run(company_id) -> list[InboundResult]:
            session = session_factory()
            try:
                with store_factory(company_id) as store:
                    return InboundSyncService.sync_company(session, company_id, store=store, trigger="scheduled")
            finally:
                session.close()

        workers = max(1, min(max_workers or settings.CRM_POLL_MAX_WORKERS, len(company_ids)))
        summary: dict[str, list[InboundResult]] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crm-poll") as pool:
            futures = {pool.submit(_run, company_id): company_id for company_id in company_ids}
            for future in as_completed(futures):
                company_id = futures[future]
                try:
                    summary[str(company_id)] = future.result()
                except Exception:
                    logger.exception(f"Inbound poll failed for company {company_id}")
                    summary[str(company_id)] = []

        logger.info(f"Inbound poll finished for {len(company_ids)} companies")
        return summary
