from app.api.routes.crm_integration import router as crm_integration_router
from app.api.routes.webhooks import router as webhooks_router

__all__ = ["crm_integration_router", "webhooks_router"]
