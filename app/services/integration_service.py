import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.encryption import encrypt_value, decrypt_value
from app.core.exceptions import (
    AlreadyExistsError,
    ForbiddenError,
    IntegrationNotFoundError,
    NotFoundError,
    TokenRefreshError,
)
from app.models.company import Company
from app.models.integration import CRMIntegration
from app.models.integration_error_log import IntegrationErrorLog
from app.models.integration_field_mapping import IntegrationFieldMapping
from app.models.sync_log import SyncLog
from app.schemas.crm_integration import (
    FieldMappingInput,
    FieldMappingResponse,
    IntegrationResponse,
    UpdateIntegrationRequest,
)
from app.services.connectors.base import CRMUser
from app.services.oauth_service import OAuthService, TokenResponse

logger = logging.getLogger(__name__)

# Number of CRM integrations a plan may connect; None = unlimited
PLAN_CHANNEL_LIMITS = {
    "free": 0,
    "starter": 1,
    "pro": 2,
    "growth": None,
}


class IntegrationService:
    """Credential store: CRUD, token lifecycle and error bookkeeping for CRM integrations."""

    @staticmethod
    def get_all(db: Session, company_id: UUID) -> list[CRMIntegration]:
        return db.query(CRMIntegration).filter(
            CRMIntegration.company_id == company_id,
        ).order_by(CRMIntegration.created_at.desc()).all()

    @staticmethod
    def get_by_id(db: Session, integration_id: UUID, company_id: UUID) -> CRMIntegration | None:
        """Get a single integration by ID, scoped to the company."""
        return db.query(CRMIntegration).filter(
            CRMIntegration.id == integration_id,
            CRMIntegration.company_id == company_id,
        ).first()

    @staticmethod
    def get_or_404(db: Session, integration_id: UUID, company_id: UUID) -> CRMIntegration:
        integration = IntegrationService.get_by_id(db, integration_id, company_id)
        if integration is None:
            raise NotFoundError("CRM integration")
        return integration

    @staticmethod
    def get_by_provider(db: Session, company_id: UUID, provider: str) -> CRMIntegration | None:
        return db.query(CRMIntegration).filter(
            CRMIntegration.company_id == company_id,
            CRMIntegration.provider == provider,
        ).first()

    @staticmethod
    def get_active_integrations(db: Session, company_id: UUID) -> list[CRMIntegration]:
        return db.query(CRMIntegration).filter(
            CRMIntegration.company_id == company_id,
            CRMIntegration.status == "active",
        ).order_by(CRMIntegration.created_at.desc()).all()

    @staticmethod
    def get_active_outbound(db: Session, company_id: UUID) -> CRMIntegration | None:
        """Most recently connected active integration that pushes leads to the CRM."""
        for integration in IntegrationService.get_active_integrations(db, company_id):
            if integration.allows_outbound():
                return integration
        return None

    @staticmethod
    def require_active_outbound(db: Session, company_id: UUID) -> CRMIntegration:
        integration = IntegrationService.get_active_outbound(db, company_id)
        if integration is None:
            raise IntegrationNotFoundError()
        return integration

    # --- Connection ---

    @staticmethod
    def check_channel_limit(db: Session, company_id: UUID) -> None:
        """Raise ForbiddenError if the company's plan has no free CRM channel."""
        company = db.query(Company).filter(Company.id == company_id).first()
        plan = company.subscription_plan if company else "free"
        limit = PLAN_CHANNEL_LIMITS.get(plan, 0)
        if limit is None:
            return
        connected = db.query(CRMIntegration).filter(CRMIntegration.company_id == company_id).count()
        if connected >= limit:
            raise ForbiddenError(
                f"Your {plan} plan allows {limit} CRM integration(s). Upgrade to connect more."
            )

    @staticmethod
    def ensure_can_connect(db: Session, company_id: UUID, provider: str) -> None:
        if IntegrationService.get_by_provider(db, company_id, provider) is not None:
            raise AlreadyExistsError(detail=f"A {provider} integration already exists. Disconnect it first.")
        IntegrationService.check_channel_limit(db, company_id)

    @staticmethod
    def build_credentials(provider: str, tokens: TokenResponse, user: CRMUser) -> dict:
        """Non-token provider config kept on the integration."""
        if provider == "zoho":
            return {"api_domain": tokens.extra.get("api_domain")}
        if provider == "salesforce":
            return {"instance_url": tokens.extra.get("instance_url"), "id": tokens.extra.get("id")}
        if provider == "hubspot":
            return {"portal_id": str(user.extra.get("hub_id") or user.id or "")}
        if provider == "dynamics":
            return {"resource": settings.DYNAMICS_RESOURCE}
        return {}

    @staticmethod
    def save_connection(
        db: Session,
        company_id: UUID,
        provider: str,
        tokens: TokenResponse,
        user: CRMUser,
        credentials: dict,
    ) -> CRMIntegration:
        """Create the integration after a tested OAuth callback, or refresh tokens on an existing one."""
        integration = IntegrationService.get_by_provider(db, company_id, provider)
        if integration is None:
            # webhook_secret stays NULL: HubSpot signs deliveries with the app client secret
            integration = CRMIntegration(company_id=company_id, provider=provider)
            db.add(integration)

        integration.credentials = credentials
        integration.account_info = user.to_account_info()
        integration.access_token_encrypted = encrypt_value(tokens.access_token)
        if tokens.refresh_token:
            integration.refresh_token_encrypted = encrypt_value(tokens.refresh_token)
        integration.token_expires_at = OAuthService.calculate_token_expiry(tokens.expires_in)
        integration.scope = tokens.scope
        integration.status = "active"
        if provider == "hubspot":
            integration.webhook_url = f"{settings.SERVER_URL}/api/webhooks/hubspot"

        db.commit()
        db.refresh(integration)
        logger.info(f"{provider} integration connected for company {company_id}")
        return integration

    @staticmethod
    def update(db: Session, integration: CRMIntegration, data: UpdateIntegrationRequest) -> CRMIntegration:
        """Apply settings changes. Only fields present in the request are touched."""
        for key, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(integration, key, value)
        integration.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(integration)
        return integration

    @staticmethod
    def disconnect(db: Session, integration: CRMIntegration, client: Optional[httpx.Client] = None) -> bool:
        """Revoke (best effort) then delete. Returns whether the provider confirmed revocation."""
        token = None
        try:
            token = decrypt_value(integration.refresh_token_encrypted) or decrypt_value(
                integration.access_token_encrypted
            )
        except ValueError as e:
            logger.warning(f"Could not decrypt tokens for revocation on {integration.id}: {e}")

        revoked = False
        if token:
            result = OAuthService.revoke_token(integration.provider, token, client=client)
            revoked = result.get("success", False)
            if not revoked:
                logger.info(f"Token not revoked for {integration.provider}: {result.get('error')}")

        db.delete(integration)
        db.commit()
        logger.info(f"{integration.provider} integration {integration.id} disconnected")
        return revoked

    # --- Tokens ---

    @staticmethod
    def get_access_token(integration: CRMIntegration) -> str:
        return decrypt_value(integration.access_token_encrypted) or ""

    @staticmethod
    def ensure_fresh_token(
        db: Session,
        integration: CRMIntegration,
        client: Optional[httpx.Client] = None,
    ) -> str:
        """Return a usable access token, refreshing first when it expires within the buffer."""
        if not integration.needs_token_refresh():
            return IntegrationService.get_access_token(integration)

        logger.info(f"Refreshing {integration.provider} token for integration {integration.id}")
        try:
            refresh_token = decrypt_value(integration.refresh_token_encrypted)
            tokens = OAuthService.refresh_access_token(integration.provider, refresh_token, client=client)
        except (TokenRefreshError, ValueError) as e:
            integration.status = "error"
            integration.add_error("auth", f"Token refresh failed: {e}", code="TOKEN_REFRESH_FAILED")
            db.commit()
            if isinstance(e, TokenRefreshError):
                raise
            raise TokenRefreshError(integration.provider, str(e))

        integration.access_token_encrypted = encrypt_value(tokens.access_token)
        if tokens.refresh_token:
            integration.refresh_token_encrypted = encrypt_value(tokens.refresh_token)
        integration.token_expires_at = OAuthService.calculate_token_expiry(tokens.expires_in)
        db.commit()
        return tokens.access_token

    # --- Errors ---

    @staticmethod
    def record_error(
        db: Session,
        integration: CRMIntegration,
        error_type: str,
        message: str,
        code: str | None = None,
        set_status: bool = False,
    ) -> None:
        integration.add_error(error_type, message, code=code)
        if set_status:
            integration.status = "error"
        integration.updated_at = datetime.utcnow()
        db.commit()

    @staticmethod
    def get_error_logs(
        db: Session,
        company_id: UUID,
        integration_id: UUID | None = None,
        limit: int = 50,
    ) -> list[IntegrationErrorLog]:
        """Newest error log entries across the company's integrations."""
        query = db.query(IntegrationErrorLog).join(CRMIntegration).filter(
            CRMIntegration.company_id == company_id,
        )
        if integration_id is not None:
            query = query.filter(IntegrationErrorLog.integration_id == integration_id)
        return query.order_by(IntegrationErrorLog.timestamp.desc()).limit(limit).all()

    @staticmethod
    def resolve_error(db: Session, company_id: UUID, error_id: UUID) -> IntegrationErrorLog:
        entry = db.query(IntegrationErrorLog).join(CRMIntegration).filter(
            IntegrationErrorLog.id == error_id,
            CRMIntegration.company_id == company_id,
        ).first()
        if entry is None:
            raise NotFoundError("Error log entry")
        entry.resolved = True
        db.commit()
        db.refresh(entry)
        return entry

    # --- Field Mappings ---

    @staticmethod
    def set_mappings(
        db: Session,
        integration: CRMIntegration,
        mappings: list[FieldMappingInput],
    ) -> list[IntegrationFieldMapping]:
        """Replace all custom field mappings for an integration."""
        integration.custom_field_mappings.clear()
        db.flush()

        seen = set()
        for m in mappings:
            if m.form_field in seen:
                continue
            seen.add(m.form_field)
            integration.custom_field_mappings.append(IntegrationFieldMapping(
                form_field=m.form_field,
                crm_field=m.crm_field,
                field_type=m.field_type,
            ))

        integration.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(integration)
        return list(integration.custom_field_mappings)

    # --- Sync Logs ---

    @staticmethod
    def get_sync_logs(
        db: Session,
        company_id: UUID,
        integration_id: UUID | None = None,
        limit: int = 20,
    ) -> list[SyncLog]:
        """Get recent sync logs across the company's integrations."""
        query = db.query(SyncLog).join(CRMIntegration).filter(CRMIntegration.company_id == company_id)
        if integration_id is not None:
            query = query.filter(SyncLog.integration_id == integration_id)
        return query.order_by(SyncLog.started_at.desc()).limit(limit).all()

    # --- Helpers ---

    @staticmethod
    def to_response(integration: CRMIntegration) -> IntegrationResponse:
        """Convert an integration to its masked response schema."""
        return IntegrationResponse(
            id=integration.id,
            company_id=integration.company_id,
            provider=integration.provider,
            status=integration.status,
            account_info=integration.account_info or {},
            has_access_token=integration.has_access_token,
            has_refresh_token=integration.has_refresh_token,
            token_expires_at=integration.token_expires_at,
            scope=integration.scope,
            auto_sync_enabled=integration.auto_sync_enabled,
            auto_sync_interval=integration.auto_sync_interval,
            sync_direction=integration.sync_direction,
            lead_field_mapping=integration.lead_field_mapping or {},
            custom_field_mappings=[
                FieldMappingResponse.model_validate(m) for m in integration.custom_field_mappings
            ],
            notify_sync_errors=integration.notify_sync_errors,
            notify_sync_success=integration.notify_sync_success,
            notify_token_expiry=integration.notify_token_expiry,
            total_leads_synced=integration.total_leads_synced or 0,
            successful_syncs=integration.successful_syncs or 0,
            failed_syncs=integration.failed_syncs or 0,
            last_sync_status=integration.last_sync_status,
            last_sync_message=integration.last_sync_message,
            last_sync_at=integration.last_sync_at,
            webhook_enabled=integration.webhook_enabled,
            webhook_events=integration.webhook_events or [],
            webhook_last_received_at=integration.webhook_last_received_at,
            webhook_total_received=integration.webhook_total_received or 0,
            created_at=integration.created_at,
            updated_at=integration.updated_at,
        )
