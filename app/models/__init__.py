from app.models.company import Company
from app.models.integration import CRMIntegration
from app.models.integration_field_mapping import IntegrationFieldMapping
from app.models.integration_error_log import IntegrationErrorLog
from app.models.sync_log import SyncLog
from app.models.lead import Lead

__all__ = [
    "Company",
    "CRMIntegration",
    "IntegrationFieldMapping",
    "IntegrationErrorLog",
    "SyncLog",
    "Lead",
]
