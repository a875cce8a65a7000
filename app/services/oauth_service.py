import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from app.core.config import settings
from app.core.exceptions import ConfigurationError, OAuthError, OAuthStateError, TokenRefreshError
from app.core.state_store import get_state_store

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60

OAUTH_CONFIGS = {
    "zoho": {
        "auth_url": "https://accounts.zoho.com/oauth/v2/auth",
        "token_url": "https://accounts.zoho.com/oauth/v2/token",
        "revoke_url": "https://accounts.zoho.com/oauth/v2/token/revoke",
        "scope": "ZohoCRM.modules.ALL,ZohoCRM.settings.ALL,ZohoCRM.users.READ",
        "extra_params": {"access_type": "offline", "prompt": "consent"},
    },
    "salesforce": {
        "auth_url": "https://login.salesforce.com/services/oauth2/authorize",
        "token_url": "https://login.salesforce.com/services/oauth2/token",
        "revoke_url": "https://login.salesforce.com/services/oauth2/revoke",
        "scope": "api refresh_token offline_access",
    },
    "hubspot": {
        "auth_url": "https://app.hubspot.com/oauth/authorize",
        "token_url": "https://api.hubapi.com/oauth/v1/token",
        "scope": (
            "crm.objects.contacts.read crm.objects.contacts.write "
            "crm.objects.companies.read crm.objects.companies.write "
            "crm.objects.deals.read crm.objects.deals.write"
        ),
    },
    "dynamics": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "scope": "https://dynamics.microsoft.com/.default offline_access",
    },
}

# Provider-specific token response fields kept as integration credentials
_EXTRA_TOKEN_FIELDS = {
    "zoho": ("api_domain",),
    "salesforce": ("instance_url", "id"),
}


@dataclass
class TokenResponse:
    """Normalized token endpoint response."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    state_data: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)


def _provider_config(provider: str) -> dict:
    config = OAUTH_CONFIGS.get(provider)
    if config is None:
        raise ConfigurationError(f"Unsupported CRM provider: {provider}")
    return config


def _http_client(client: Optional[httpx.Client]) -> httpx.Client:
    return client or httpx.Client(timeout=settings.CRM_HTTP_TIMEOUT_SECONDS)


class OAuthService:
    """OAuth2 authorization-code flow for every supported CRM."""

    @staticmethod
    def is_provider_configured(provider: str) -> bool:
        if provider not in OAUTH_CONFIGS:
            return False
        client_id, client_secret, _ = settings.get_provider_oauth_credentials(provider)
        return bool(client_id and client_secret)

    @staticmethod
    def get_configured_providers() -> list[str]:
        return [p for p in OAUTH_CONFIGS if OAuthService.is_provider_configured(p)]

    @staticmethod
    def calculate_token_expiry(expires_in) -> Optional[datetime]:
        """Expiry timestamp with a 5-minute safety buffer, or None."""
        if not expires_in:
            return None
        return datetime.utcnow() + timedelta(seconds=int(expires_in) - TOKEN_EXPIRY_BUFFER_SECONDS)

    # ── state ────────────────────────────────────────────────────────────────

    @staticmethod
    def _create_state(company_id, provider: str) -> str:
        state = secrets.token_hex(32)
        get_state_store().put(
            state,
            {"company_id": str(company_id), "provider": provider, "timestamp": time.time()},
            settings.OAUTH_STATE_TTL_SECONDS,
        )
        return state

    @staticmethod
    def verify_state(state: str, provider: str) -> dict:
        """Consume a state token. A second call with the same state fails."""
        data = get_state_store().pop(state) if state else None
        if data is None:
            raise OAuthStateError()
        if time.time() - data.get("timestamp", 0) > settings.OAUTH_STATE_TTL_SECONDS:
            raise OAuthStateError()
        if data.get("provider") != provider:
            raise OAuthStateError("Provider mismatch in OAuth state")
        return data

    # ── flow ─────────────────────────────────────────────────────────────────

    @staticmethod
    def generate_auth_url(provider: str, company_id) -> dict:
        """Build the provider consent URL and register a fresh state."""
        config = _provider_config(provider)
        client_id, _, redirect_uri = settings.get_provider_oauth_credentials(provider)
        if not client_id:
            raise ConfigurationError(f"{provider.upper()}_CLIENT_ID not configured")

        state = OAuthService._create_state(company_id, provider)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        params.update(config.get("extra_params", {}))

        logger.info(f"Generated {provider} OAuth URL for company {company_id}")
        return {"auth_url": f"{config['auth_url']}?{urlencode(params)}", "state": state}

    @staticmethod
    def exchange_code_for_token(
        provider: str,
        code: str,
        state: str,
        client: Optional[httpx.Client] = None,
    ) -> TokenResponse:
        config = _provider_config(provider)
        state_data = OAuthService.verify_state(state, provider)

        client_id, client_secret, redirect_uri = settings.get_provider_oauth_credentials(provider)
        if not client_id or not client_secret:
            raise ConfigurationError(f"{provider.upper()} credentials not configured")

        form = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "code": code,
        }
        http = _http_client(client)
        try:
            resp = http.post(config["token_url"], data=form)
        except httpx.HTTPError as e:
            logger.error(f"{provider} token exchange request failed: {e}")
            raise OAuthError(f"Failed to exchange code for token: {e}")
        finally:
            if client is None:
                http.close()

        if resp.status_code >= 400:
            logger.error(f"{provider} token exchange rejected ({resp.status_code})")
            raise OAuthError(f"Failed to exchange code for token: {resp.text[:500]}")

        try:
            data = resp.json()
        except ValueError:
            logger.error(f"{provider} token exchange returned a non-JSON body ({resp.status_code})")
            raise OAuthError(f"{provider} token endpoint returned an invalid response")
        if not isinstance(data, dict) or not data.get("access_token"):
            raise OAuthError(f"{provider} token response did not include an access token")

        extra = {
            key: data[key] for key in _EXTRA_TOKEN_FIELDS.get(provider, ()) if data.get(key)
        }
        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type"),
            scope=data.get("scope"),
            state_data=state_data,
            extra=extra,
        )

    @staticmethod
    def refresh_access_token(
        provider: str,
        refresh_token: str,
        client: Optional[httpx.Client] = None,
    ) -> TokenResponse:
        """Trade a refresh token for a new access token. Keeps the old refresh token if none is issued."""
        config = _provider_config(provider)
        client_id, client_secret, _ = settings.get_provider_oauth_credentials(provider)
        if not client_id or not client_secret:
            raise ConfigurationError(f"{provider.upper()} credentials not configured")
        if not refresh_token:
            raise TokenRefreshError(provider, "No refresh token stored. Please reconnect.")

        form = {
            "grant_type": "refresh_token",
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
        }
        http = _http_client(client)
        try:
            resp = http.post(config["token_url"], data=form)
        except httpx.HTTPError as e:
            logger.error(f"{provider} token refresh request failed: {e}")
            raise TokenRefreshError(provider, f"Failed to refresh token: {e}")
        finally:
            if client is None:
                http.close()

        if resp.status_code >= 400:
            logger.error(f"{provider} token refresh rejected ({resp.status_code})")
            raise TokenRefreshError(provider, f"Failed to refresh token: {resp.text[:500]}")

        try:
            data = resp.json()
        except ValueError:
            logger.error(f"{provider} token refresh returned a non-JSON body ({resp.status_code})")
            raise TokenRefreshError(provider, "Token endpoint returned an invalid response")
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TokenRefreshError(provider, "Refresh response did not include an access token")

        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type"),
            scope=data.get("scope"),
        )

    @staticmethod
    def revoke_token(provider: str, token: str, client: Optional[httpx.Client] = None) -> dict:
        """Best-effort revocation. Never raises."""
        config = OAUTH_CONFIGS.get(provider) or {}
        revoke_url = config.get("revoke_url")
        if not revoke_url:
            return {"success": False, "error": f"Token revocation not supported for {provider}"}
        if not token:
            return {"success": False, "error": "No token to revoke"}

        form = {"token": token}
        if provider == "zoho":
            client_id, client_secret, _ = settings.get_provider_oauth_credentials(provider)
            form.update({"client_id": client_id or "", "client_secret": client_secret or ""})

        http = _http_client(client)
        try:
            resp = http.post(revoke_url, data=form)
            if resp.status_code >= 400:
                logger.warning(f"{provider} token revocation returned {resp.status_code}")
                return {"success": False, "error": f"Revocation failed with status {resp.status_code}"}
            return {"success": True}
        except httpx.HTTPError as e:
            logger.error(f"{provider} token revocation failed: {e}")
            return {"success": False, "error": str(e)}
        finally:
            if client is None:
                http.close()
