import logging
import re
from typing import Optional, Union

from app.core.config import settings
from app.core.exceptions import ProviderAPIError
from app.services.connectors.base import BaseCRMConnector, CRMUser, LeadPage

logger = logging.getLogger(__name__)

# OData-EntityId: https://org.crm.dynamics.com/api/data/v9.2/leads(00000000-0000-0000-0000-000000000001)
_ENTITY_ID_RE = re.compile(r"\(([0-9a-fA-F-]{36})\)")


class DynamicsConnector(BaseCRMConnector):
    """Connector for Dynamics 365 leads through the Web API (OData v4)."""

    provider = "dynamics"

    @property
    def base_url(self) -> str:
        resource = self.credentials.get("resource") or settings.DYNAMICS_RESOURCE
        return f"{resource.rstrip('/')}/api/data/v9.2"

    def _headers(self) -> dict:
        headers = super()._headers()
        headers.update({
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Prefer": "return=representation",
        })
        return headers

    def get_current_user(self) -> CRMUser:
        data = self._json(self._request("GET", "/WhoAmI"))
        return CRMUser(
            id=data.get("UserId"),
            extra={
                "business_unit_id": data.get("BusinessUnitId"),
                "organization_id": data.get("OrganizationId"),
            },
        )

    def create_lead(self, payload: dict) -> str:
        resp = self._request("POST", "/leads", json=payload)
        data = self._json(resp)
        crm_id = data.get("leadid") if isinstance(data, dict) else None
        if not crm_id:
            match = _ENTITY_ID_RE.search(resp.headers.get("OData-EntityId", ""))
            crm_id = match.group(1) if match else None
        if not crm_id:
            raise ProviderAPIError(self.provider, resp.status_code, "Dynamics did not return a lead id")
        return str(crm_id)

    def update_lead(self, crm_id: str, payload: dict) -> None:
        self._request("PATCH", f"/leads({crm_id})", json=payload)

    def get_leads(self, page_size: int = 100, cursor: Optional[Union[int, str]] = None) -> LeadPage:
        skip = int(cursor or 0)
        data = self._json(self._request(
            "GET",
            "/leads",
            params={"$top": page_size, "$skip": skip, "$orderby": "createdon desc"},
        ))
        records = data.get("value") or []
        has_more = len(records) == page_size or bool(data.get("@odata.nextLink"))
        return LeadPage(records=records, next_cursor=skip + len(records) if has_more and records else None)

    def get_lead(self, crm_id: str) -> dict:
        return self._json(self._request("GET", f"/leads({crm_id})"))
