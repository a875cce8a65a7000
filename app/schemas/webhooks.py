from typing import Any, Optional

from pydantic import BaseModel, Field

from app.schemas.crm_integration import CamelModel


class HubSpotEvent(BaseModel):
    """One entry of a HubSpot webhook delivery (the payload is a JSON array)."""
    eventId: Optional[int] = None
    subscriptionId: Optional[int] = None
    portalId: Optional[int] = None
    appId: Optional[int] = None
    occurredAt: Optional[int] = None
    subscriptionType: str
    attemptNumber: Optional[int] = None
    objectId: Optional[int] = None
    propertyName: Optional[str] = None
    propertyValue: Optional[Any] = None

    model_config = {"extra": "allow"}


class WebhookEventResult(CamelModel):
    object_id: Optional[str] = None
    subscription_type: str
    action: str
    reason: Optional[str] = None
    lead_id: Optional[str] = None
    error: Optional[str] = None


class WebhookProcessResponse(CamelModel):
    received: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[WebhookEventResult] = Field(default_factory=list)
