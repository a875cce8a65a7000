from typing import Generator
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import InvalidTokenError
from app.core.security import verify_token
from app.core.tenant import get_lead_store
from app.models.company import Company
from app.services.lead_store import LeadStore


# HTTP Bearer token scheme
security = HTTPBearer()


def get_current_company(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> Company:
    """
    Resolve the company from the platform JWT's company_id claim.
    Raises InvalidTokenError if the token is invalid or the company is unknown.
    """
    payload = verify_token(credentials.credentials)
    if payload is None:
        raise InvalidTokenError()

    try:
        company_id = UUID(str(payload.get("company_id")))
    except ValueError:
        raise InvalidTokenError()

    company = db.query(Company).filter(Company.id == company_id).first()
    if company is None or not company.is_active:
        raise InvalidTokenError("Company not found or inactive")

    request.state.company_id = company.id
    return company


def get_company_lead_store(
    company: Company = Depends(get_current_company),
) -> Generator[LeadStore, None, None]:
    """Lead store bound to the current company's own database."""
    with get_lead_store(company.id) as store:
        yield store
