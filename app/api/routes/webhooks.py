import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import ValidationError
from app.core.rate_limit import rate_limit_webhook
from app.schemas.webhooks import HubSpotEvent, WebhookProcessResponse
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/hubspot", response_model=WebhookProcessResponse)
@rate_limit_webhook()
async def hubspot_webhook(
    request: Request,
    x_hubspot_signature: Optional[str] = Header(None, alias="X-HubSpot-Signature"),
    db: Session = Depends(get_db),
):
    """
    Receive HubSpot contact events.

    The body must be read raw so the signature is computed over the exact bytes sent.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"[]")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValidationError("Webhook body must be a JSON array of events")

    try:
        events = [HubSpotEvent.model_validate(e).model_dump() for e in payload]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid webhook event: {e.errors()[0].get('msg')}")

    logger.info(f"Received {len(events)} HubSpot webhook events")
    return await run_in_threadpool(
        WebhookService.process_hubspot_events, db, events, raw_body, x_hubspot_signature,
    )
