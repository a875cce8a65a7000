import logging
from typing import Optional, Union

from app.core.config import settings
from app.core.exceptions import ProviderAPIError
from app.services.connectors.base import BaseCRMConnector, CRMUser, LeadPage

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_WEBHOOK_EVENTS = ("contact.creation", "contact.propertyChange", "contact.deletion")

CONTACT_PROPERTIES = (
    "email", "firstname", "lastname", "phone", "mobilephone", "company", "jobtitle",
    "city", "state", "country", "website", "hs_lead_status", "notes", "lifecyclestage",
)


def _contact_properties() -> str:
    props = list(CONTACT_PROPERTIES)
    if settings.HUBSPOT_ORIGIN_PROPERTY:
        props.append(settings.HUBSPOT_ORIGIN_PROPERTY)
    return ",".join(props)


class HubSpotConnector(BaseCRMConnector):
    """Connector for HubSpot CRM v3 contacts. Leads are contacts with lifecyclestage=lead."""

    provider = "hubspot"

    @property
    def base_url(self) -> str:
        return HUBSPOT_API_BASE

    def get_current_user(self) -> CRMUser:
        data = self._json(self._request("GET", f"/oauth/v1/access-tokens/{self.access_token}"))
        hub_id = data.get("hub_id")
        return CRMUser(
            id=str(hub_id) if hub_id is not None else None,
            name=data.get("hub_domain"),
            email=data.get("user"),
            extra={"hub_id": hub_id, "user_id": data.get("user_id")},
        )

    def create_lead(self, payload: dict) -> str:
        data = self._json(self._request("POST", "/crm/v3/objects/contacts", json={"properties": payload}))
        if not data.get("id"):
            raise ProviderAPIError(self.provider, 400, "HubSpot did not return a contact id")
        return str(data["id"])

    def update_lead(self, crm_id: str, payload: dict) -> None:
        self._request("PATCH", f"/crm/v3/objects/contacts/{crm_id}", json={"properties": payload})

    def get_leads(self, page_size: int = 100, cursor: Optional[Union[int, str]] = None) -> LeadPage:
        params = {"limit": min(page_size, 100), "properties": _contact_properties()}
        if cursor:
            params["after"] = cursor
        data = self._json(self._request("GET", "/crm/v3/objects/contacts", params=params))
        next_after = ((data.get("paging") or {}).get("next") or {}).get("after")
        return LeadPage(records=data.get("results") or [], next_cursor=next_after, total=data.get("total"))

    def get_lead(self, crm_id: str) -> dict:
        return self._json(self._request(
            "GET",
            f"/crm/v3/objects/contacts/{crm_id}",
            params={"properties": _contact_properties()},
        ))

    def register_webhook_subscriptions(self, events=HUBSPOT_WEBHOOK_EVENTS) -> dict:
        """Subscribe to contact events. A failed event does not stop the others."""
        created, failed = [], []
        for event in events:
            try:
                data = self._json(self._request(
                    "POST",
                    "/webhooks/v3/subscriptions",
                    json={"eventType": event, "active": True},
                ))
                created.append(data)
            except ProviderAPIError as e:
                logger.error(f"HubSpot webhook subscription for {event} failed: {e}")
                failed.append({"event": event, "error": str(e)})
        return {"subscriptions": created, "failed": failed}
