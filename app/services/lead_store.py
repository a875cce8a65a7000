"""
Repository over one company's lead database.

Sync code never opens tenant sessions itself; it receives a LeadStore bound
to the right company and goes through it for every read and write.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.models.lead import Lead

logger = logging.getLogger(__name__)


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


class LeadStore:
    def __init__(self, session: Session, company_id=None):
        self.session = session
        self.company_id = company_id

    def __enter__(self) -> "LeadStore":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.session.rollback()
        self.close()
        return False

    def close(self) -> None:
        self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # ── reads ────────────────────────────────────────────────────────────────

    def get(self, lead_id) -> Optional[Lead]:
        key = _as_uuid(lead_id)
        if key is None:
            return None
        return self.session.query(Lead).filter(Lead.id == key).first()

    def find_by_crm_id(self, crm_id: str) -> Optional[Lead]:
        if not crm_id:
            return None
        return self.session.query(Lead).filter(Lead.crm_id == str(crm_id)).first()

    def find_by_origin_crm_id(self, crm_id: str) -> Optional[Lead]:
        if not crm_id:
            return None
        return self.session.query(Lead).filter(Lead.origin_crm_id == str(crm_id)).first()

    def find_by_email(self, email: str) -> Optional[Lead]:
        if not email:
            return None
        return self.session.query(Lead).filter(Lead.email == email.strip().lower()).first()

    def find_existing(self, crm_id: Optional[str], email: Optional[str]) -> Optional[Lead]:
        """Match an inbound record: crm_id first, then origin_crm_id, then email."""
        return (
            self.find_by_crm_id(crm_id)
            or self.find_by_origin_crm_id(crm_id)
            or self.find_by_email(email)
        )

    def platform_crm_ids(self) -> set[str]:
        """CRM ids of every lead this platform created and pushed out."""
        rows = (
            self.session.query(Lead.crm_id)
            .filter(Lead.crm_id.isnot(None))
            .filter(or_(Lead.lead_origin.is_(None), Lead.lead_origin != "crm"))
            .all()
        )
        return {row[0] for row in rows}

    def list_failed(self) -> list[Lead]:
        return (
            self.session.query(Lead)
            .filter(Lead.crm_sync_status == "failed")
            .order_by(Lead.created_at)
            .all()
        )

    def sync_counts(self) -> dict:
        rows = (
            self.session.query(Lead.crm_sync_status, func.count(Lead.id))
            .group_by(Lead.crm_sync_status)
            .all()
        )
        by_status = {status: count for status, count in rows}
        total = sum(by_status.values())
        return {
            "total": total,
            "synced": by_status.get("synced", 0),
            "pending": by_status.get("pending", 0) + by_status.get("not_synced", 0) + by_status.get(None, 0),
            "failed": by_status.get("failed", 0),
        }

    # ── writes ───────────────────────────────────────────────────────────────

    def add(self, lead: Lead) -> Lead:
        self.session.add(lead)
        self.session.flush()
        return lead
