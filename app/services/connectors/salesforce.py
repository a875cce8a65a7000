import logging
from typing import Optional, Union

from app.core.exceptions import ConfigurationError, ProviderAPIError
from app.services.connectors.base import BaseCRMConnector, CRMUser, LeadPage

logger = logging.getLogger(__name__)

SALESFORCE_API_VERSION = "v58.0"
LEAD_FIELDS = "Id, FirstName, LastName, Email, Phone, Company, Title, LeadSource, Status, Description, CreatedDate"


class SalesforceConnector(BaseCRMConnector):
    """Connector for Salesforce Lead sObjects (REST + SOQL)."""

    provider = "salesforce"

    @property
    def instance_url(self) -> str:
        instance_url = self.credentials.get("instance_url")
        if not instance_url:
            raise ConfigurationError("Salesforce instance_url missing from integration credentials")
        return instance_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return f"{self.instance_url}/services/data/{SALESFORCE_API_VERSION}"

    def get_current_user(self) -> CRMUser:
        data = self._json(self._request("GET", f"{self.instance_url}/services/oauth2/userinfo"))
        return CRMUser(
            id=data.get("user_id"),
            name=data.get("name"),
            email=data.get("email"),
            extra={"organization_id": data.get("organization_id")} if data.get("organization_id") else {},
        )

    def create_lead(self, payload: dict) -> str:
        data = self._json(self._request("POST", "/sobjects/Lead", json=payload))
        if not data.get("success", True) or not data.get("id"):
            raise ProviderAPIError(self.provider, 400, str(data.get("errors") or data))
        return str(data["id"])

    def update_lead(self, crm_id: str, payload: dict) -> None:
        # 204 No Content on success
        self._request("PATCH", f"/sobjects/Lead/{crm_id}", json=payload)

    def get_leads(self, page_size: int = 100, cursor: Optional[Union[int, str]] = None) -> LeadPage:
        offset = int(cursor or 0)
        soql = (
            f"SELECT {LEAD_FIELDS} FROM Lead ORDER BY CreatedDate DESC "
            f"LIMIT {int(page_size)} OFFSET {offset}"
        )
        data = self._json(self._request("GET", "/query", params={"q": soql}))
        records = data.get("records") or []
        total = data.get("totalSize")
        next_offset = offset + len(records)
        has_more = len(records) == page_size and (total is None or next_offset < total)
        return LeadPage(records=records, next_cursor=next_offset if has_more else None, total=total)

    def get_lead(self, crm_id: str) -> dict:
        return self._json(self._request("GET", f"/sobjects/Lead/{crm_id}"))
