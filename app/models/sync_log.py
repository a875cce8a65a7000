import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey, Index, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.database import Base


class SyncLog(Base):
    """Log entry for one outbound batch, inbound poll or webhook delivery."""
    __tablename__ = "sync_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(
        UUID(as_uuid=True), ForeignKey("crm_integrations.id", ondelete="CASCADE"), nullable=False,
    )

    # "outbound" | "inbound" | "webhook"
    direction = Column(String(20), nullable=False)

    # "running" | "success" | "partial" | "failed"
    status = Column(String(20), nullable=False)

    # "manual" | "scheduled" | "auto" | "webhook" | "retry"
    trigger_type = Column(String(20), nullable=False, default="manual")

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    records_fetched = Column(Integer, nullable=False, default=0)
    records_imported = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)

    error_details = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)

    # Relationships
    integration = relationship("CRMIntegration", back_populates="sync_logs")

    __table_args__ = (
        Index("ix_sync_logs_integration_id", "integration_id"),
        Index("ix_sync_logs_started_at", "started_at"),
        Index("ix_sync_logs_status", "status"),
    )

    def finish(self, errors: list[str] | None = None, summary: str | None = None) -> None:
        """Close the log, deriving the status from the failure count."""
        self.completed_at = datetime.utcnow()
        self.error_details = errors or None
        if summary:
            self.summary = summary
        total_ok = self.records_imported + self.records_updated + self.records_skipped
        if self.records_failed == 0:
            self.status = "success"
        elif total_ok > 0:
            self.status = "partial"
        else:
            self.status = "failed"

    def __repr__(self):
        return f"<SyncLog {self.direction} {self.integration_id} {self.status} at {self.started_at}>"
