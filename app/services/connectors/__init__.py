from typing import Optional

import httpx

from app.core.exceptions import ConfigurationError
from app.services.connectors.base import BaseCRMConnector, CRMUser, LeadPage
from app.services.connectors.zoho import ZohoConnector
from app.services.connectors.salesforce import SalesforceConnector
from app.services.connectors.hubspot import HubSpotConnector
from app.services.connectors.dynamics import DynamicsConnector

CONNECTOR_REGISTRY = {
    "zoho": ZohoConnector,
    "salesforce": SalesforceConnector,
    "hubspot": HubSpotConnector,
    "dynamics": DynamicsConnector,
}


def get_connector(
    integration,
    access_token: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> BaseCRMConnector:
    """Factory: return the correct connector instance for an integration."""
    connector_cls = CONNECTOR_REGISTRY.get(integration.provider)
    if connector_cls is None:
        raise ConfigurationError(f"Unsupported CRM provider: {integration.provider}")
    return connector_cls(integration, access_token=access_token, client=client)


__all__ = [
    "BaseCRMConnector",
    "CRMUser",
    "LeadPage",
    "ZohoConnector",
    "SalesforceConnector",
    "HubSpotConnector",
    "DynamicsConnector",
    "CONNECTOR_REGISTRY",
    "get_connector",
]
