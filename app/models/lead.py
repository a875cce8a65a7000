import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, Index, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import validates

from app.core.database import TenantBase

LEAD_STATUSES = ("new", "cold", "warm", "hot", "qualified")
SYNC_STATUSES = ("not_synced", "pending", "synced", "failed")
LEAD_ORIGINS = ("platform", "crm")


class Lead(TenantBase):
    """A lead in a company's own database. Sync fields track its CRM twin."""
    __tablename__ = "leads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Contact
    full_name = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    company = Column(String(255), nullable=True)
    job_title = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)

    # "manual" | "form" | "scraping" | "import" ...
    source = Column(String(50), nullable=True)
    platform = Column(String(50), nullable=True)
    platform_url = Column(String(500), nullable=True)

    # One of LEAD_STATUSES
    status = Column(String(20), nullable=False, default="new")
    notes = Column(Text, nullable=True)
    message = Column(Text, nullable=True)

    # Extra form fields, keyed by form field name
    custom_fields = Column(JSON, nullable=True, default=dict)

    # CRM sync
    crm_id = Column(String(255), nullable=True)
    crm_sync_status = Column(String(20), nullable=False, default="not_synced")
    lead_origin = Column(String(20), nullable=True)
    origin_crm_provider = Column(String(30), nullable=True)
    origin_crm_id = Column(String(255), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_leads_email", "email"),
        Index("ix_leads_crm_id", "crm_id"),
        Index("ix_leads_origin_crm_id", "origin_crm_id"),
        Index("ix_leads_crm_sync_status", "crm_sync_status"),
        Index("ix_leads_lead_origin", "lead_origin"),
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return value.strip().lower() if value else value

    @validates("lead_origin")
    def _freeze_origin(self, key, value):
        if self.lead_origin is not None and value != self.lead_origin:
            raise ValueError(f"lead_origin is immutable (already '{self.lead_origin}')")
        if value is not None and value not in LEAD_ORIGINS:
            raise ValueError(f"Invalid lead_origin: {value}")
        return value

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return " ".join(p for p in (self.first_name, self.last_name) if p) or (self.email or "")

    def __repr__(self):
        return f"<Lead {self.email} ({self.lead_origin or 'unknown'})>"
