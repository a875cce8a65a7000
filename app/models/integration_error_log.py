import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, Boolean
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class IntegrationErrorLog(Base):
    """One entry in an integration's bounded error log."""
    __tablename__ = "integration_error_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("crm_integrations.id", ondelete="CASCADE"), nullable=False,
    )

    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    # "auth" | "sync" | "api" | "validation" | "webhook"
    error_type = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)

    integration = relationship("CRMIntegration", back_populates="error_logs")

    __table_args__ = (
        Index("ix_integration_error_logs_integration_id", "integration_id"),
    )

    def __repr__(self):
        return f"<IntegrationErrorLog {self.error_type}: {self.error_message[:40] if self.error_message else ''}>"
