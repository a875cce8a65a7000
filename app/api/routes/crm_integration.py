import logging
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.api.deps import get_current_company, get_company_lead_store
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import ConfigurationError, LeadSyncException, ValidationError
from app.core.rate_limit import rate_limit_oauth, rate_limit_sync
from app.models.company import Company
from app.models.integration import CRMIntegration, PROVIDERS
from app.schemas.crm_integration import (
    CRMLeadsResponse,
    DisconnectResponse,
    ErrorLogListResponse,
    ErrorLogResponse,
    FieldMappingUpdateRequest,
    ImportProviderResult,
    ImportResponse,
    IntegrationListResponse,
    IntegrationResponse,
    OAuthInitResponse,
    ProviderInfo,
    ProvidersResponse,
    SyncBatchResponse,
    SyncLeadsRequest,
    SyncLogListResponse,
    SyncLogResponse,
    SyncStatusResponse,
    TestConnectionResponse,
    UpdateIntegrationRequest,
)
from app.services.connectors import get_connector
from app.services.connectors.base import CRMUser
from app.services.connectors.hubspot import HUBSPOT_WEBHOOK_EVENTS
from app.services.field_mapper import from_provider_record
from app.services.inbound_sync_service import InboundSyncService
from app.services.integration_service import IntegrationService
from app.services.lead_store import LeadStore
from app.services.oauth_service import OAUTH_CONFIGS, OAuthService
from app.services.outbound_sync_service import OutboundSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/crm-integration", tags=["CRM Integration"])

PROVIDER_NAMES = {
    "zoho": "Zoho CRM",
    "salesforce": "Salesforce",
    "hubspot": "HubSpot",
    "dynamics": "Microsoft Dynamics 365",
}


def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/settings?{urlencode(params)}")


# --- Providers & OAuth ---

@router.get("/providers", response_model=ProvidersResponse)
def list_providers():
    """Supported CRMs and whether this deployment has client credentials for them."""
    return ProvidersResponse(providers=[
        ProviderInfo(
            provider=provider,
            name=PROVIDER_NAMES.get(provider, provider),
            configured=OAuthService.is_provider_configured(provider),
            supports_webhooks=provider == "hubspot",
        )
        for provider in OAUTH_CONFIGS
    ])


@router.get("/oauth/init", response_model=OAuthInitResponse)
@rate_limit_oauth()
def init_oauth(
    request: Request,
    provider: str = Query(...),
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Start the OAuth flow for a provider."""
    if provider not in PROVIDERS:
        raise ValidationError(f"Unknown CRM provider: {provider}")
    if provider not in OAUTH_CONFIGS:
        raise ConfigurationError(f"Unsupported CRM provider: {provider}")

    IntegrationService.ensure_can_connect(db, company.id, provider)
    result = OAuthService.generate_auth_url(provider, company.id)
    return OAuthInitResponse(auth_url=result["auth_url"], state=result["state"], provider=provider)


@router.get("/oauth/callback/{provider}")
def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Handle the provider redirect: exchange the code, test the connection, store the integration."""
    if error or not code or not state:
        return _settings_redirect(integration="failed", error=error or "missing_code")

    try:
        tokens = OAuthService.exchange_code_for_token(provider, code, state)
        company_id = UUID(tokens.state_data["company_id"])

        if IntegrationService.get_by_provider(db, company_id, provider) is None:
            IntegrationService.check_channel_limit(db, company_id)

        # Probe with the fresh token before anything is persisted
        probe = CRMIntegration(
            provider=provider,
            credentials=IntegrationService.build_credentials(provider, tokens, CRMUser(id=None)),
        )
        user = get_connector(probe, access_token=tokens.access_token).test_connection()
        credentials = IntegrationService.build_credentials(provider, tokens, user)

        IntegrationService.save_connection(db, company_id, provider, tokens, user, credentials)
    except LeadSyncException as e:
        logger.error(f"{provider} OAuth callback failed: {e}")
        return _settings_redirect(integration="failed", error=str(e))

    return _settings_redirect(integration="success", provider=provider)


# --- Integration settings ---

@router.get("", response_model=IntegrationListResponse)
def list_integrations(
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """List the company's CRM integrations (tokens masked)."""
    integrations = IntegrationService.get_all(db, company.id)
    return IntegrationListResponse(
        integrations=[IntegrationService.to_response(i) for i in integrations],
        total=len(integrations),
    )


@router.put("/field-mapping", response_model=IntegrationResponse)
def update_field_mapping(
    data: FieldMappingUpdateRequest,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Replace the custom form-field to CRM-field mappings."""
    if data.integration_id is not None:
        integration = IntegrationService.get_or_404(db, data.integration_id, company.id)
    else:
        integration = IntegrationService.require_active_outbound(db, company.id)

    IntegrationService.set_mappings(db, integration, data.mappings)
    return IntegrationService.to_response(integration)


# --- Sync ---

@router.post("/sync", response_model=SyncBatchResponse)
@rate_limit_sync()
def sync_leads(
    request: Request,
    data: SyncLeadsRequest,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
    store: LeadStore = Depends(get_company_lead_store),
):
    """Push the given leads to the active CRM."""
    integration = IntegrationService.require_active_outbound(db, company.id)
    return OutboundSyncService.sync_leads_to_crm(db, store, data.lead_ids, integration)


@router.post("/import", response_model=ImportResponse)
@rate_limit_sync()
def import_leads(
    request: Request,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
    store: LeadStore = Depends(get_company_lead_store),
):
    """Run an inbound poll for this company now."""
    results = InboundSyncService.sync_company(db, company.id, store=store, trigger="manual")
    response = ImportResponse(results=[
        ImportProviderResult(
            provider=r.provider, imported=r.imported, updated=r.updated,
            skipped=r.skipped, failed=r.failed, total=r.total, error=r.error,
        )
        for r in results
    ])
    response.imported = sum(r.imported for r in response.results)
    response.updated = sum(r.updated for r in response.results)
    response.skipped = sum(r.skipped for r in response.results)
    response.failed = sum(r.failed for r in response.results)
    return response


@router.get("/sync-status", response_model=SyncStatusResponse)
def get_sync_status(
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
    store: LeadStore = Depends(get_company_lead_store),
):
    return OutboundSyncService.get_sync_status(db, company.id, store)


@router.post("/retry-failed", response_model=SyncBatchResponse)
@rate_limit_sync()
def retry_failed(
    request: Request,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
    store: LeadStore = Depends(get_company_lead_store),
):
    """Resubmit every lead whose last sync failed."""
    return OutboundSyncService.retry_failed_syncs(db, company.id, store)


# --- Logs ---

@router.get("/error-logs", response_model=ErrorLogListResponse)
def get_error_logs(
    limit: int = Query(50, ge=1, le=200),
    integration_id: Optional[UUID] = Query(None),
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    entries = IntegrationService.get_error_logs(db, company.id, integration_id=integration_id, limit=limit)
    return ErrorLogListResponse(
        errors=[ErrorLogResponse.model_validate(e) for e in entries],
        total=len(entries),
    )


@router.patch("/error-logs/{error_id}/resolve", response_model=ErrorLogResponse)
def resolve_error(
    error_id: UUID,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    entry = IntegrationService.resolve_error(db, company.id, error_id)
    return ErrorLogResponse.model_validate(entry)


@router.get("/sync-logs", response_model=SyncLogListResponse)
def get_sync_logs(
    limit: int = Query(20, ge=1, le=100),
    integration_id: Optional[UUID] = Query(None),
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Get sync history across the company's integrations."""
    logs = IntegrationService.get_sync_logs(db, company.id, integration_id=integration_id, limit=limit)
    return SyncLogListResponse(
        logs=[SyncLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )


# --- Live CRM listing ---

def _page_cursor(provider: str, page: int, limit: int, cursor: Optional[str]):
    if cursor:
        return cursor
    if provider == "zoho":
        return page
    if provider == "hubspot":
        return None
    return (page - 1) * limit


@router.get("/leads", response_model=CRMLeadsResponse)
def list_crm_leads(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    cursor: Optional[str] = Query(None),
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Browse leads directly in the connected CRM without importing them."""
    active = IntegrationService.get_active_integrations(db, company.id)
    if not active:
        return CRMLeadsResponse(provider="", page=page, limit=limit)

    integration = active[0]
    access_token = IntegrationService.ensure_fresh_token(db, integration)
    connector = get_connector(integration, access_token=access_token)
    result = connector.get_leads(page_size=limit, cursor=_page_cursor(integration.provider, page, limit, cursor))

    leads = [from_provider_record(integration.provider, r, integration) for r in result.records]
    if search:
        needle = search.lower()
        leads = [
            lead for lead in leads
            if any(needle in str(lead.get(key) or "").lower() for key in ("full_name", "email", "company"))
        ]

    return CRMLeadsResponse(
        provider=integration.provider,
        leads=leads,
        page=page,
        limit=limit,
        has_more=result.next_cursor is not None,
        next_cursor=str(result.next_cursor) if result.next_cursor is not None else None,
        total=result.total,
    )


# --- Single integration ---

@router.put("/{integration_id}", response_model=IntegrationResponse)
def update_integration(
    integration_id: UUID,
    data: UpdateIntegrationRequest,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Update sync, mapping, notification and webhook settings."""
    integration = IntegrationService.get_or_404(db, integration_id, company.id)
    enabling_webhooks = bool(data.webhook_enabled) and not integration.webhook_enabled
    integration = IntegrationService.update(db, integration, data)

    if enabling_webhooks and integration.provider == "hubspot" and integration.status == "active":
        access_token = IntegrationService.ensure_fresh_token(db, integration)
        connector = get_connector(integration, access_token=access_token)
        events = integration.webhook_events or list(HUBSPOT_WEBHOOK_EVENTS)
        registration = connector.register_webhook_subscriptions(events)
        for failure in registration["failed"]:
            integration.add_error("webhook", f"Subscription {failure['event']} failed: {failure['error']}")
        integration.webhook_events = events
        db.commit()
        db.refresh(integration)

    return IntegrationService.to_response(integration)


@router.delete("/{integration_id}", response_model=DisconnectResponse)
def disconnect_integration(
    integration_id: UUID,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Revoke tokens (best effort) and delete the integration."""
    integration = IntegrationService.get_or_404(db, integration_id, company.id)
    provider = integration.provider
    revoked = IntegrationService.disconnect(db, integration)
    return DisconnectResponse(message=f"{PROVIDER_NAMES.get(provider, provider)} disconnected", revoked=revoked)


@router.post("/{integration_id}/test", response_model=TestConnectionResponse)
def test_connection(
    integration_id: UUID,
    company: Company = Depends(get_current_company),
    db: Session = Depends(get_db),
):
    """Check the stored credentials against the provider. Success reactivates an errored integration."""
    integration = IntegrationService.get_or_404(db, integration_id, company.id)
    try:
        access_token = IntegrationService.ensure_fresh_token(db, integration)
        user = get_connector(integration, access_token=access_token).test_connection()
    except (LeadSyncException, ValueError) as e:
        IntegrationService.record_error(db, integration, "api", f"Connection test failed: {e}", set_status=True)
        return TestConnectionResponse(success=False, status=integration.status, error=str(e))

    integration.status = "active"
    integration.account_info = user.to_account_info()
    db.commit()
    return TestConnectionResponse(success=True, status=integration.status, account_info=integration.account_info)
