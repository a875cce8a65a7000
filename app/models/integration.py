import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    Column, String, Text, Integer, DateTime, ForeignKey, Index, Boolean, JSON, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.models.integration_error_log import IntegrationErrorLog

PROVIDERS = ("zoho", "hubspot", "salesforce", "pipedrive", "freshworks", "monday", "dynamics")
STATUSES = ("active", "inactive", "error", "expired")
SYNC_DIRECTIONS = ("to_crm", "from_crm", "bidirectional")

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
MAX_ERROR_LOGS = 50

DEFAULT_LEAD_FIELD_MAPPING = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "job_title": "job_title",
    "source": "source",
}


def _default_lead_field_mapping():
    return dict(DEFAULT_LEAD_FIELD_MAPPING)


class CRMIntegration(Base):
    """A company's connection to one CRM provider (credentials, tokens, settings)."""
    __tablename__ = "crm_integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)

    # One of PROVIDERS
    provider = Column(String(30), nullable=False)

    # "active" | "inactive" | "error" | "expired"
    status = Column(String(20), nullable=False, default="inactive")

    # Provider-specific non-token config (api_domain, instance_url, portal_id, resource)
    credentials = Column(JSON, nullable=False, default=dict)

    # OAuth tokens (Fernet-encrypted)
    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    scope = Column(Text, nullable=True)

    # Connected CRM user: {"id", "name", "email"}
    account_info = Column(JSON, nullable=True, default=dict)

    # Settings
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    auto_sync_interval = Column(Integer, nullable=False, default=300)
    last_sync_at = Column(DateTime, nullable=True)
    sync_direction = Column(String(20), nullable=False, default="bidirectional")
    lead_field_mapping = Column(JSON, nullable=False, default=_default_lead_field_mapping)
    notify_sync_errors = Column(Boolean, nullable=False, default=True)
    notify_sync_success = Column(Boolean, nullable=False, default=False)
    notify_token_expiry = Column(Boolean, nullable=False, default=True)

    # Stats
    total_leads_synced = Column(Integer, nullable=False, default=0)
    successful_syncs = Column(Integer, nullable=False, default=0)
    failed_syncs = Column(Integer, nullable=False, default=0)
    # "success" | "error" | "pending"
    last_sync_status = Column(String(20), nullable=True)
    last_sync_message = Column(Text, nullable=True)

    # Webhooks
    webhook_enabled = Column(Boolean, nullable=False, default=False)
    webhook_url = Column(String(500), nullable=True)
    webhook_secret = Column(String(255), nullable=True)
    webhook_events = Column(JSON, nullable=True, default=list)
    webhook_last_received_at = Column(DateTime, nullable=True)
    webhook_total_received = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    company = relationship("Company", back_populates="crm_integrations")
    custom_field_mappings = relationship(
        "IntegrationFieldMapping", back_populates="integration", cascade="all, delete-orphan",
    )
    error_logs = relationship(
        "IntegrationErrorLog", back_populates="integration", cascade="all, delete-orphan",
        order_by="IntegrationErrorLog.timestamp",
    )
    sync_logs = relationship(
        "SyncLog", back_populates="integration", cascade="all, delete-orphan",
        order_by="desc(SyncLog.started_at)",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "provider", name="uq_crm_integration_company_provider"),
        Index("ix_crm_integrations_company_id", "company_id"),
        Index("ix_crm_integrations_status", "status"),
        Index("ix_crm_integrations_token_expires_at", "token_expires_at"),
    )

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token_encrypted)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token_encrypted)

    def is_active(self, now: datetime | None = None) -> bool:
        """Active status with a token that has not passed its expiry."""
        now = now or datetime.utcnow()
        return (
            self.status == "active"
            and self.has_access_token
            and (self.token_expires_at is None or self.token_expires_at > now)
        )

    def needs_token_refresh(self, now: datetime | None = None) -> bool:
        """True when the access token expires within the refresh buffer."""
        if self.token_expires_at is None:
            return False
        now = now or datetime.utcnow()
        return self.token_expires_at - now < TOKEN_REFRESH_BUFFER

    def allows_outbound(self) -> bool:
        return self.sync_direction in ("to_crm", "bidirectional")

    def allows_inbound(self) -> bool:
        return self.sync_direction in ("from_crm", "bidirectional")

    def get_field_mapping(self, form_field: str) -> str | None:
        """CRM field a platform form field is written to, or None if unmapped."""
        for mapping in self.custom_field_mappings:
            if mapping.form_field == form_field:
                return mapping.crm_field
        return (self.lead_field_mapping or {}).get(form_field)

    def update_sync_stats(self, successes: int, failures: int, message: str | None = None) -> None:
        """Fold one batch result into the aggregate counters."""
        self.successful_syncs = (self.successful_syncs or 0) + successes
        self.failed_syncs = (self.failed_syncs or 0) + failures
        self.last_sync_status = "success" if successes > 0 or failures == 0 else "error"
        if message:
            self.last_sync_message = message
        self.last_sync_at = datetime.utcnow()

    def add_error(self, error_type: str, message: str, code: str | None = None) -> IntegrationErrorLog:
        """Append to the error log, keeping only the newest MAX_ERROR_LOGS entries."""
        entry = IntegrationErrorLog(
            error_type=error_type,
            error_message=(message or "")[:2000],
            error_code=code,
            timestamp=datetime.utcnow(),
        )
        self.error_logs.append(entry)

        if len(self.error_logs) > MAX_ERROR_LOGS:
            ordered = sorted(self.error_logs, key=lambda e: e.timestamp)
            for stale in ordered[: len(ordered) - MAX_ERROR_LOGS]:
                self.error_logs.remove(stale)
        return entry

    def __repr__(self):
        return f"<CRMIntegration {self.provider} company={self.company_id} ({self.status})>"
