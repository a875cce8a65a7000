"""Custom exceptions and error handling for the LeadSync API."""

from fastapi import HTTPException, status


class LeadSyncException(HTTPException):
    """Base exception for the LeadSync API."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail)
        self.error_code = error_code

    def __str__(self) -> str:
        return str(self.detail)


# Authentication Errors (401, 403)
class InvalidTokenError(LeadSyncException):
    """Raised when the platform JWT is invalid."""

    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="INVALID_TOKEN",
        )


class ForbiddenError(LeadSyncException):
    """Raised when a company lacks permission for an action."""

    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN",
        )


class WebhookSignatureError(LeadSyncException):
    """Raised when a webhook delivery fails signature verification."""

    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="INVALID_WEBHOOK_SIGNATURE",
        )


# Resource Errors (404, 409)
class NotFoundError(LeadSyncException):
    """Raised when a resource is not found."""

    def __init__(self, resource: str = "Resource", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{resource} not found",
            error_code="NOT_FOUND",
        )


class IntegrationNotFoundError(NotFoundError):
    """Raised when a company has no (active) CRM integration."""

    def __init__(self, detail: str = "Active CRM integration not found"):
        super().__init__(resource="CRM integration", detail=detail)


class LeadNotFoundError(NotFoundError):
    """Raised when a lead does not exist in the tenant store."""

    def __init__(self, lead_id):
        super().__init__(resource="Lead", detail=f"Lead not found: {lead_id}")
        self.lead_id = lead_id


class AlreadyExistsError(LeadSyncException):
    """Raised when trying to create a resource that already exists."""

    def __init__(self, resource: str = "Resource", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail or f"{resource} already exists",
            error_code="ALREADY_EXISTS",
        )


# Validation / OAuth Errors (400)
class ValidationError(LeadSyncException):
    """Raised when input validation fails."""

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="VALIDATION_ERROR",
        )


class OAuthError(LeadSyncException):
    """Raised when an OAuth code exchange fails."""

    def __init__(self, detail: str = "OAuth authorization failed"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="OAUTH_ERROR",
        )


class OAuthStateError(OAuthError):
    """Raised when an OAuth state is unknown, expired, reused or mismatched."""

    def __init__(self, detail: str = "Invalid or expired OAuth state"):
        super().__init__(detail=detail)
        self.error_code = "INVALID_OAUTH_STATE"


class TokenRefreshError(LeadSyncException):
    """Raised when a provider refuses to refresh an access token."""

    def __init__(self, provider: str, detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail or f"Token refresh failed for {provider}. Please reconnect.",
            error_code="TOKEN_REFRESH_FAILED",
        )
        self.provider = provider


# Server Errors (500, 502)
class ConfigurationError(LeadSyncException):
    """Raised when a provider is unsupported or missing client credentials."""

    def __init__(self, detail: str = "CRM provider is not configured"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
            error_code="CONFIGURATION_ERROR",
        )


class ProviderAPIError(LeadSyncException):
    """Raised for any non-2xx (or unreachable) response from a CRM provider."""

    def __init__(self, provider: str, provider_status: int | None, body: str = ""):
        if provider_status is None:
            detail = f"{provider} API request failed: {body}"
        else:
            detail = f"{provider} API request failed ({provider_status}): {body}"
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code="PROVIDER_API_ERROR",
        )
        self.provider = provider
        self.provider_status = provider_status
        self.body = body

    @property
    def is_retryable(self) -> bool:
        if self.provider_status is None:
            return True
        return self.provider_status == 429 or self.provider_status >= 500
