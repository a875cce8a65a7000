from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"

    # Shared database (companies, integrations, logs)
    DATABASE_URL: str

    # Per-company lead databases. {company_id} is substituted at resolve time.
    TENANT_DATABASE_URL_TEMPLATE: str = "postgresql://localhost/leadsync_company_{company_id}"
    TENANT_MAX_ENGINES: int = 50

    # JWT issued by the platform auth service
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # CORS / redirects
    FRONTEND_URL: str = "http://localhost:5173"
    SERVER_URL: str = "http://localhost:8000"

    # Redis (OAuth state store and distributed rate limiting)
    REDIS_URL: Optional[str] = None

    RATE_LIMIT_ENABLED: bool = True

    # Encryption key for OAuth tokens (Fernet key)
    ENCRYPTION_KEY: str = ""

    # OAuth
    OAUTH_STATE_TTL_SECONDS: int = 30 * 60

    ZOHO_CLIENT_ID: Optional[str] = None
    ZOHO_CLIENT_SECRET: Optional[str] = None
    ZOHO_REDIRECT_URI: Optional[str] = None

    SALESFORCE_CLIENT_ID: Optional[str] = None
    SALESFORCE_CLIENT_SECRET: Optional[str] = None
    SALESFORCE_REDIRECT_URI: Optional[str] = None

    HUBSPOT_CLIENT_ID: Optional[str] = None
    HUBSPOT_CLIENT_SECRET: Optional[str] = None
    HUBSPOT_REDIRECT_URI: Optional[str] = None

    DYNAMICS_CLIENT_ID: Optional[str] = None
    DYNAMICS_CLIENT_SECRET: Optional[str] = None
    DYNAMICS_REDIRECT_URI: Optional[str] = None
    DYNAMICS_RESOURCE: str = "https://yourdomain.crm.dynamics.com"

    # Outbound HTTP to CRM providers
    CRM_HTTP_TIMEOUT_SECONDS: float = 30.0
    CRM_HTTP_MAX_RETRIES: int = 3
    CRM_HTTP_BACKOFF_SECONDS: float = 1.0

    # Inbound polling
    CRM_SCHEDULER_ENABLED: bool = True
    CRM_POLL_INTERVAL_MINUTES: int = 15
    CRM_POLL_PAGE_SIZE: int = 100
    CRM_POLL_MAX_PAGES: int = 20
    CRM_POLL_MAX_WORKERS: int = 4

    # Marker written to CRM records created by this platform
    PLATFORM_SOURCE_SYSTEM: str = "LeadSync"
    HUBSPOT_ORIGIN_PROPERTY: str = "lead_source_system"

    def validate_required_secrets(self) -> list[str]:
        """Validate that critical secrets are set. Returns list of errors."""
        errors = []
        if not self.SECRET_KEY or len(self.SECRET_KEY) < 16:
            errors.append("SECRET_KEY must be set and at least 16 characters")
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL must be set")
        if "{company_id}" not in self.TENANT_DATABASE_URL_TEMPLATE:
            errors.append("TENANT_DATABASE_URL_TEMPLATE must contain {company_id}")
        if self.ENVIRONMENT == "production":
            if not self.ENCRYPTION_KEY:
                errors.append("ENCRYPTION_KEY must be set in production")
            if not self.REDIS_URL:
                errors.append("REDIS_URL must be set in production (shared OAuth state)")
        return errors

    def get_provider_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str], str]:
        """Return (client_id, client_secret, redirect_uri) for a provider."""
        prefix = provider.upper()
        client_id = getattr(self, f"{prefix}_CLIENT_ID", None)
        client_secret = getattr(self, f"{prefix}_CLIENT_SECRET", None)
        redirect_uri = (
            getattr(self, f"{prefix}_REDIRECT_URI", None)
            or f"{self.SERVER_URL}/api/crm-integration/oauth/callback/{provider}"
        )
        return client_id, client_secret, redirect_uri

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
