"""Rate limiting configuration using slowapi."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings


def get_company_identifier(request: Request) -> str:
    """
    Get identifier for rate limiting.
    Uses the company ID if authenticated, otherwise IP address.
    """
    company_id = getattr(request.state, "company_id", None)
    if company_id:
        return f"company:{company_id}"
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_company_identifier,
    default_limits=["1000/minute"],
    storage_uri=settings.REDIS_URL or "memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)


def rate_limit_oauth(limit: str = "10/minute"):
    """Rate limit for starting OAuth flows."""
    return limiter.limit(limit)


def rate_limit_sync(limit: str = "30/minute"):
    """Rate limit for manual sync, import and retry."""
    return limiter.limit(limit)


def rate_limit_webhook(limit: str = "600/minute"):
    """Rate limit for provider webhook deliveries (by IP)."""
    return limiter.limit(limit, key_func=get_remote_address)
