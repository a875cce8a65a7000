import logging
from typing import Optional, Union

from app.core.exceptions import ProviderAPIError
from app.services.connectors.base import BaseCRMConnector, CRMUser, LeadPage

logger = logging.getLogger(__name__)

ZOHO_DEFAULT_API_DOMAIN = "https://www.zohoapis.com"


class ZohoConnector(BaseCRMConnector):
    """Connector for the Zoho CRM v3 Leads module."""

    provider = "zoho"
    auth_scheme = "Zoho-oauthtoken"

    @property
    def base_url(self) -> str:
        api_domain = self.credentials.get("api_domain") or ZOHO_DEFAULT_API_DOMAIN
        return f"{api_domain.rstrip('/')}/crm/v3"

    def get_current_user(self) -> CRMUser:
        data = self._json(self._request("GET", "/users", params={"type": "CurrentUser"}))
        users = data.get("users") or [{}]
        user = users[0]
        return CRMUser(id=user.get("id"), name=user.get("full_name"), email=user.get("email"))

    def create_lead(self, payload: dict) -> str:
        data = self._json(self._request("POST", "/Leads", json={"data": [payload]}))
        result = (data.get("data") or [{}])[0]
        if result.get("status") not in (None, "success"):
            raise ProviderAPIError(self.provider, 400, result.get("message") or str(result))
        crm_id = (result.get("details") or {}).get("id")
        if not crm_id:
            raise ProviderAPIError(self.provider, 400, "Zoho did not return a record id")
        return str(crm_id)

    def update_lead(self, crm_id: str, payload: dict) -> None:
        data = self._json(self._request("PUT", f"/Leads/{crm_id}", json={"data": [payload]}))
        result = (data.get("data") or [{}])[0]
        if result.get("status") not in (None, "success"):
            raise ProviderAPIError(self.provider, 400, result.get("message") or str(result))

    def get_leads(self, page_size: int = 100, cursor: Optional[Union[int, str]] = None) -> LeadPage:
        page = int(cursor or 1)
        data = self._json(self._request(
            "GET",
            "/Leads",
            params={
                "page": page,
                "per_page": min(page_size, 200),
                "sort_by": "Modified_Time",
                "sort_order": "desc",
            },
        ))
        info = data.get("info") or {}
        return LeadPage(
            records=data.get("data") or [],
            next_cursor=page + 1 if info.get("more_records") else None,
            total=info.get("count"),
        )

    def get_lead(self, crm_id: str) -> dict:
        data = self._json(self._request("GET", f"/Leads/{crm_id}"))
        records = data.get("data") or []
        if not records:
            raise ProviderAPIError(self.provider, 404, f"Lead {crm_id} not found")
        return records[0]
