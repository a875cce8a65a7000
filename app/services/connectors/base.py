import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.encryption import decrypt_value
from app.core.exceptions import ProviderAPIError

logger = logging.getLogger(__name__)


@dataclass
class CRMUser:
    """The CRM account an integration is connected as."""
    id: Optional[str]
    name: Optional[str] = None
    email: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_account_info(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, **self.extra}


@dataclass
class LeadPage:
    """One page of raw provider records."""
    records: list[dict] = field(default_factory=list)
    # Page number, offset or opaque cursor for the next page; None on the last page
    next_cursor: Optional[Union[int, str]] = None
    total: Optional[int] = None


def _should_retry(exc: BaseException) -> bool:
    return isinstance(exc, ProviderAPIError) and exc.is_retryable


class BaseCRMConnector(ABC):
    """Abstract base class for CRM provider adapters."""

    provider: str = ""
    auth_scheme: str = "Bearer"

    def __init__(self, integration, access_token: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.integration = integration
        self.credentials = integration.credentials or {}
        self._access_token = access_token
        self._client = client

    @property
    def access_token(self) -> str:
        if self._access_token is None:
            self._access_token = decrypt_value(self.integration.access_token_encrypted) or ""
        return self._access_token

    @property
    @abstractmethod
    def base_url(self) -> str:
        ...

    def _headers(self) -> dict:
        return {
            "Authorization": f"{self.auth_scheme} {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _redact(self, text: str) -> str:
        """Mask the access token wherever it appears in a URL or error message."""
        if self._access_token:
            return text.replace(self._access_token, "***")
        return text

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """One attempt. Every non-2xx or transport failure becomes ProviderAPIError."""
        client = self._client or httpx.Client(timeout=settings.CRM_HTTP_TIMEOUT_SECONDS)
        try:
            resp = client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider} {method} {self._redact(url)} transport error: {self._redact(str(e))}")
            raise ProviderAPIError(self.provider, None, self._redact(str(e)))
        finally:
            if self._client is None:
                client.close()

        if resp.status_code >= 400:
            logger.warning(f"{self.provider} {method} {self._redact(url)} returned {resp.status_code}")
            raise ProviderAPIError(self.provider, resp.status_code, resp.text[:1000])
        return resp

    def _request(self, method: str, path_or_url: str, **kwargs) -> httpx.Response:
        """Send with exponential backoff on transport errors, 429 and 5xx."""
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        retrying = Retrying(
            stop=stop_after_attempt(max(1, settings.CRM_HTTP_MAX_RETRIES)),
            wait=wait_exponential(multiplier=settings.CRM_HTTP_BACKOFF_SECONDS, max=30),
            retry=retry_if_exception(_should_retry),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(method, url, **kwargs)

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        return resp.json()

    def test_connection(self) -> CRMUser:
        """Fetch the current user. Raises ProviderAPIError if credentials do not work."""
        return self.get_current_user()

    @abstractmethod
    def get_current_user(self) -> CRMUser:
        ...

    @abstractmethod
    def create_lead(self, payload: dict) -> str:
        """Create a record from a native payload. Returns the CRM id."""
        ...

    @abstractmethod
    def update_lead(self, crm_id: str, payload: dict) -> None:
        ...

    @abstractmethod
    def get_leads(self, page_size: int = 100, cursor: Optional[Union[int, str]] = None) -> LeadPage:
        """Fetch one page of leads, newest first."""
        ...

    @abstractmethod
    def get_lead(self, crm_id: str) -> dict:
        ...
