from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


SYNC_DIRECTION_PATTERN = "^(to_crm|from_crm|bidirectional)$"
FIELD_TYPE_PATTERN = "^(text|email|phone|number|date|select|multiselect)$"


# --- Request schemas ---

class UpdateIntegrationRequest(CamelModel):
    auto_sync_enabled: Optional[bool] = None
    auto_sync_interval: Optional[int] = Field(None, ge=60, le=86400)
    sync_direction: Optional[str] = Field(None, pattern=SYNC_DIRECTION_PATTERN)
    lead_field_mapping: Optional[dict[str, str]] = None
    notify_sync_errors: Optional[bool] = None
    notify_sync_success: Optional[bool] = None
    notify_token_expiry: Optional[bool] = None
    webhook_enabled: Optional[bool] = None
    webhook_events: Optional[list[str]] = None


class FieldMappingInput(CamelModel):
    form_field: str = Field(..., min_length=1, max_length=255)
    crm_field: str = Field(..., min_length=1, max_length=255)
    field_type: str = Field("text", pattern=FIELD_TYPE_PATTERN)


class FieldMappingUpdateRequest(CamelModel):
    integration_id: Optional[UUID] = None
    mappings: list[FieldMappingInput] = Field(default_factory=list)


class SyncLeadsRequest(CamelModel):
    lead_ids: list[str] = Field(..., min_length=1, max_length=500)


# --- Response schemas ---

class ProviderInfo(CamelModel):
    provider: str
    name: str
    configured: bool
    supports_webhooks: bool = False


class ProvidersResponse(CamelModel):
    providers: list[ProviderInfo]


class OAuthInitResponse(CamelModel):
    auth_url: str
    state: str
    provider: str


class FieldMappingResponse(CamelModel):
    id: UUID
    form_field: str
    crm_field: str
    field_type: str


class IntegrationResponse(CamelModel):
    """Outward view of an integration. Never carries token values."""
    id: UUID
    company_id: UUID
    provider: str
    status: str
    account_info: dict = Field(default_factory=dict)

    has_access_token: bool = False
    has_refresh_token: bool = False
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None

    auto_sync_enabled: bool
    auto_sync_interval: int
    sync_direction: str
    lead_field_mapping: dict = Field(default_factory=dict)
    custom_field_mappings: list[FieldMappingResponse] = Field(default_factory=list)
    notify_sync_errors: bool
    notify_sync_success: bool
    notify_token_expiry: bool

    total_leads_synced: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    last_sync_status: Optional[str] = None
    last_sync_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None

    webhook_enabled: bool = False
    webhook_events: list[str] = Field(default_factory=list)
    webhook_last_received_at: Optional[datetime] = None
    webhook_total_received: int = 0

    created_at: datetime
    updated_at: datetime


class IntegrationListResponse(CamelModel):
    integrations: list[IntegrationResponse]
    total: int


class TestConnectionResponse(CamelModel):
    success: bool
    status: str
    account_info: Optional[dict] = None
    error: Optional[str] = None


class DisconnectResponse(CamelModel):
    message: str
    revoked: bool = False


class SyncFailure(CamelModel):
    lead_id: str
    error: str


class SyncBatchResponse(CamelModel):
    successful: list[str] = Field(default_factory=list)
    failed: list[SyncFailure] = Field(default_factory=list)
    total: int = 0


class ImportProviderResult(CamelModel):
    provider: str
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    error: Optional[str] = None


class ImportResponse(CamelModel):
    results: list[ImportProviderResult] = Field(default_factory=list)
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class SyncStats(CamelModel):
    total_leads: int = 0
    synced_leads: int = 0
    pending_leads: int = 0
    failed_leads: int = 0
    sync_percentage: float = 0.0


class IntegrationStats(CamelModel):
    total_leads_synced: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    last_sync_status: Optional[str] = None
    last_sync_message: Optional[str] = None


class SyncStatusResponse(CamelModel):
    has_integration: bool
    provider: Optional[str] = None
    status: Optional[str] = None
    auto_sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None
    stats: SyncStats = Field(default_factory=SyncStats)
    integration_stats: Optional[IntegrationStats] = None


class ErrorLogResponse(CamelModel):
    id: UUID
    timestamp: datetime
    error_type: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    resolved: bool = False


class ErrorLogListResponse(CamelModel):
    errors: list[ErrorLogResponse]
    total: int


class SyncLogResponse(CamelModel):
    id: UUID
    direction: str
    status: str
    trigger_type: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_fetched: int = 0
    records_imported: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    error_details: Optional[Any] = None
    summary: Optional[str] = None


class SyncLogListResponse(CamelModel):
    logs: list[SyncLogResponse]
    total: int


class CRMLeadsResponse(CamelModel):
    provider: str
    leads: list[dict] = Field(default_factory=list)
    page: int = 1
    limit: int = 20
    has_more: bool = False
    next_cursor: Optional[str] = None
    total: Optional[int] = None


class MessageResponse(CamelModel):
    message: str
