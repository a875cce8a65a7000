"""Pytest configuration and fixtures."""

import os
import uuid
from datetime import datetime, timedelta

from cryptography.fernet import Fernet

# Set test environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-32chars")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("TENANT_DATABASE_URL_TEMPLATE", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("CRM_SCHEDULER_ENABLED", "false")
os.environ.setdefault("CRM_HTTP_BACKOFF_SECONDS", "0")
os.environ.setdefault("CRM_HTTP_MAX_RETRIES", "3")
os.environ.setdefault("SERVER_URL", "http://testserver")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("ZOHO_CLIENT_ID", "zoho-client-id")
os.environ.setdefault("ZOHO_CLIENT_SECRET", "zoho-client-secret")
os.environ.setdefault("HUBSPOT_CLIENT_ID", "hubspot-client-id")
os.environ.setdefault("HUBSPOT_CLIENT_SECRET", "hubspot-client-secret")
os.environ.setdefault("SALESFORCE_CLIENT_ID", "sf-client-id")
os.environ.setdefault("SALESFORCE_CLIENT_SECRET", "sf-client-secret")

# Patch PostgreSQL types for SQLite compatibility BEFORE importing models
from sqlalchemy import String, TypeDecorator
import sqlalchemy.dialects.postgresql as pg_dialect


class SQLiteUUID(TypeDecorator):
    """Platform-independent UUID type that works with SQLite."""
    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if isinstance(value, uuid.UUID):
                return str(value)
            return str(uuid.UUID(value))
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            return uuid.UUID(value)
        return value


class MockUUID(SQLiteUUID):
    """Mock PostgreSQL UUID that works with SQLite for testing."""
    def __init__(self, as_uuid=True):
        super().__init__()
        self.as_uuid = as_uuid


pg_dialect.UUID = MockUUID

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.core.tenant as tenant_module
from app.core.database import Base, get_db
from app.core.encryption import encrypt_value
from app.core.security import create_access_token
from app.core.tenant import TenantResolver
from app.models import Company, CRMIntegration, Lead
from main import app

# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

DEFAULT_CREDENTIALS = {
    "zoho": {"api_domain": "https://www.zohoapis.com"},
    "salesforce": {"instance_url": "https://acme.my.salesforce.com"},
    "hubspot": {"portal_id": "12345"},
    "dynamics": {"resource": "https://acme.crm.dynamics.com"},
}


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh shared database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def tenant_resolver(monkeypatch):
    """Fresh per-test tenant resolver; every company gets its own in-memory database."""
    resolver = TenantResolver(url_template="sqlite://", max_engines=10)
    monkeypatch.setattr(tenant_module, "tenant_resolver", resolver)
    yield resolver
    resolver.dispose_all()


@pytest.fixture(scope="function")
def client(db_session, tenant_resolver):
    """Create a test client with database override."""
    app.dependency_overrides[get_db] = lambda: db_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def company(db_session):
    """A company on a plan that allows two CRM integrations."""
    company = Company(name="Acme Outreach", subscription_plan="pro")
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


@pytest.fixture
def auth_headers(company):
    token = create_access_token({"company_id": str(company.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def lead_store(tenant_resolver, company):
    """Lead store bound to the test company's own database."""
    with tenant_resolver.get_lead_store(company.id) as store:
        yield store


@pytest.fixture
def make_integration(db_session, company):
    """Factory for an active, connected integration."""

    def _make(provider="zoho", **overrides):
        values = dict(
            company_id=company.id,
            provider=provider,
            status="active",
            credentials=dict(DEFAULT_CREDENTIALS.get(provider, {})),
            access_token_encrypted=encrypt_value("access-token"),
            refresh_token_encrypted=encrypt_value("refresh-token"),
            token_expires_at=datetime.utcnow() + timedelta(hours=1),
            account_info={"id": "crm-user-1", "name": "Crm User"},
        )
        if provider == "hubspot":
            values["webhook_secret"] = "hubspot-webhook-secret"
        values.update(overrides)
        integration = CRMIntegration(**values)
        db_session.add(integration)
        db_session.commit()
        db_session.refresh(integration)
        return integration

    return _make


@pytest.fixture
def make_lead(lead_store):
    """Factory for a lead in the test company's database."""

    def _make(**overrides):
        values = dict(
            full_name="Jane Doe",
            first_name="Jane",
            last_name="Doe",
            email="jane@example.com",
            phone="+1 555 0100",
            company="Doe Industries",
            source="form",
        )
        values.update(overrides)
        lead = Lead(**values)
        lead_store.add(lead)
        lead_store.commit()
        return lead

    return _make


def mock_client(handler) -> httpx.Client:
    """httpx client whose requests are answered by handler(request)."""
    return httpx.Client(transport=httpx.MockTransport(handler))


class RecordingHandler:
    """MockTransport handler that replays queued responses and keeps the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, json={"message": "no response queued"})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def client(self) -> httpx.Client:
        return mock_client(self)
