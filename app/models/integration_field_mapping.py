import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base

FIELD_TYPES = ("text", "email", "phone", "number", "date", "select", "multiselect")


class IntegrationFieldMapping(Base):
    """User-configured mapping of a platform form field onto a native CRM field."""
    __tablename__ = "integration_field_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("crm_integrations.id", ondelete="CASCADE"), nullable=False,
    )

    form_field = Column(String(255), nullable=False)
    crm_field = Column(String(255), nullable=False)

    # One of FIELD_TYPES
    field_type = Column(String(20), nullable=False, default="text")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    integration = relationship("CRMIntegration", back_populates="custom_field_mappings")

    __table_args__ = (
        UniqueConstraint("integration_id", "form_field", name="uq_mapping_integration_form_field"),
        Index("ix_field_mappings_integration_id", "integration_id"),
    )

    def __repr__(self):
        return f"<IntegrationFieldMapping {self.form_field} -> {self.crm_field}>"
