"""
Translate leads between the platform schema and each CRM's native schema.

Outbound: Lead -> canonical dict -> provider payload (custom mappings merged on top).
Inbound: provider record -> canonical dict ready for the inbound sync rules.
"""
import logging
import re
from datetime import date, datetime
from typing import Any, Optional

from app.core.config import settings
from app.core.exceptions import ConfigurationError
from app.models.integration import DEFAULT_LEAD_FIELD_MAPPING
from app.models.lead import Lead

logger = logging.getLogger(__name__)

_LEAD_COLUMNS = set(Lead.__table__.columns.keys())

_STATUS_MAP = {
    # HubSpot hs_lead_status
    "NEW": "new",
    "OPEN": "warm",
    "IN_PROGRESS": "warm",
    "CONNECTED": "hot",
    "QUALIFIED": "qualified",
    "UNQUALIFIED": "cold",
    # Salesforce Status
    "OPEN_NOT_CONTACTED": "new",
    "WORKING_CONTACTED": "warm",
    "CLOSED_CONVERTED": "qualified",
    "CLOSED_NOT_CONVERTED": "cold",
    # Zoho Lead_Status
    "NOT_CONTACTED": "new",
    "CONTACTED": "warm",
    "ATTEMPTED_TO_CONTACT": "warm",
    "PRE_QUALIFIED": "qualified",
    "NOT_QUALIFIED": "cold",
    "JUNK_LEAD": "cold",
    "LOST_LEAD": "cold",
    "CONTACT_IN_FUTURE": "cold",
}

# Dynamics statuscode option set
_DYNAMICS_STATUS_CODES = {1: "new", 2: "warm", 3: "qualified", 4: "cold", 5: "cold", 6: "cold", 7: "cold"}


def map_crm_status(value: Any) -> str:
    """Provider lead status -> platform status. Unknown values map to 'new'."""
    if value is None or value == "":
        return "new"
    if isinstance(value, int) and not isinstance(value, bool):
        return _DYNAMICS_STATUS_CODES.get(value, "new")
    key = re.sub(r"[^A-Z]+", "_", str(value).upper()).strip("_")
    return _STATUS_MAP.get(key, "new")


def _clean(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if v is not None and v != ""}


def _split_name(name: Optional[str]) -> tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _join_name(first: Optional[str], last: Optional[str]) -> str:
    return " ".join(p for p in (first, last) if p).strip()


def _coerce(value: Any, field_type: str) -> Any:
    if field_type == "number":
        try:
            number = float(value)
        except (TypeError, ValueError):
            return value
        return int(number) if number.is_integer() else number
    if field_type == "date" and isinstance(value, (date, datetime)):
        return value.isoformat()
    if field_type == "multiselect" and isinstance(value, (list, tuple)):
        return ";".join(str(v) for v in value)
    if field_type in ("text", "email", "phone", "select") and not isinstance(value, str):
        return str(value)
    return value


# ── outbound ─────────────────────────────────────────────────────────────────

def lead_to_canonical(lead: Lead, integration) -> dict:
    first_name = lead.first_name or ""
    last_name = lead.last_name or ""
    name = lead.full_name or _join_name(first_name, last_name)
    if name and not (first_name or last_name):
        first_name, last_name = _split_name(name)

    custom_fields = {}
    extra = lead.custom_fields or {}
    for mapping in integration.custom_field_mappings:
        if mapping.form_field in _LEAD_COLUMNS:
            value = getattr(lead, mapping.form_field, None)
        else:
            value = extra.get(mapping.form_field)
        if value is None or value == "" or value == []:
            continue
        custom_fields[mapping.crm_field] = _coerce(value, mapping.field_type)

    return {
        "name": name,
        "first_name": first_name,
        "last_name": last_name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "job_title": lead.job_title,
        "source": lead.source,
        "description": lead.notes,
        "message": lead.message,
        "custom_fields": custom_fields,
    }


def _last_name(canonical: dict) -> str:
    return canonical.get("last_name") or canonical.get("name") or "Unknown"


def _first_name(canonical: dict) -> str:
    return canonical.get("first_name") if canonical.get("last_name") else ""


def _zoho_payload(c: dict, for_update: bool) -> dict:
    return {
        "Last_Name": _last_name(c),
        "First_Name": _first_name(c),
        "Email": c.get("email"),
        "Phone": c.get("phone"),
        "Company": c.get("company"),
        "Title": c.get("job_title"),
        "Lead_Source": c.get("source") or "Web Form",
        "Description": c.get("description") or c.get("message"),
    }


def _salesforce_payload(c: dict, for_update: bool) -> dict:
    return {
        "LastName": _last_name(c),
        "FirstName": _first_name(c),
        "Email": c.get("email"),
        "Phone": c.get("phone"),
        "Company": c.get("company") or "Unknown",
        "Title": c.get("job_title"),
        "LeadSource": c.get("source") or "Web",
        "Description": c.get("description") or c.get("message"),
    }


def _hubspot_payload(c: dict, for_update: bool) -> dict:
    first_name = c.get("first_name") or _split_name(c.get("name"))[0]
    last_name = c.get("last_name") or _split_name(c.get("name"))[1] or "Unknown"
    payload = {
        "email": c.get("email"),
        "firstname": first_name,
        "lastname": last_name,
        "phone": c.get("phone"),
        "company": c.get("company"),
        "jobtitle": c.get("job_title"),
    }
    if not for_update:
        payload["hs_lead_status"] = "NEW"
        payload["lifecyclestage"] = "lead"
    if settings.HUBSPOT_ORIGIN_PROPERTY:
        payload[settings.HUBSPOT_ORIGIN_PROPERTY] = settings.PLATFORM_SOURCE_SYSTEM
    return payload


def _dynamics_payload(c: dict, for_update: bool) -> dict:
    payload = {
        "lastname": _last_name(c),
        "firstname": _first_name(c),
        "emailaddress1": c.get("email"),
        "telephone1": c.get("phone"),
        "companyname": c.get("company"),
        "jobtitle": c.get("job_title"),
        "description": c.get("description") or c.get("message"),
    }
    if not for_update:
        payload["subject"] = "Web Lead"
    return payload


_OUTBOUND = {
    "zoho": _zoho_payload,
    "salesforce": _salesforce_payload,
    "hubspot": _hubspot_payload,
    "dynamics": _dynamics_payload,
}


def to_provider_payload(provider: str, canonical: dict, for_update: bool = False) -> dict:
    """Canonical lead -> provider-native create/update payload."""
    builder = _OUTBOUND.get(provider)
    if builder is None:
        raise ConfigurationError(f"Unsupported CRM provider: {provider}")
    payload = _clean(builder(canonical, for_update))
    payload.update(canonical.get("custom_fields") or {})
    return payload


# ── inbound ──────────────────────────────────────────────────────────────────

def resolve_platform_field(integration, crm_field: str) -> Optional[str]:
    """Platform field a CRM field feeds: custom mapping, then default mapping, else None."""
    for mapping in integration.custom_field_mappings:
        if mapping.crm_field == crm_field:
            return mapping.form_field
    defaults = integration.lead_field_mapping or DEFAULT_LEAD_FIELD_MAPPING
    for platform_field, mapped_crm_field in defaults.items():
        if mapped_crm_field == crm_field:
            return platform_field
    return None


def _zoho_record(r: dict) -> tuple[dict, set]:
    consumed = {
        "id", "First_Name", "Last_Name", "Full_Name", "Email", "Phone", "Mobile", "Company",
        "Designation", "Title", "City", "Lead_Status", "Description",
    }
    return {
        "crm_id": r.get("id"),
        "first_name": r.get("First_Name"),
        "last_name": r.get("Last_Name"),
        "full_name": r.get("Full_Name"),
        "email": r.get("Email"),
        "phone": r.get("Phone") or r.get("Mobile"),
        "company": r.get("Company"),
        "job_title": r.get("Designation") or r.get("Title"),
        "location": r.get("City"),
        "status": map_crm_status(r.get("Lead_Status")),
        "notes": r.get("Description"),
    }, consumed


def _salesforce_record(r: dict) -> tuple[dict, set]:
    consumed = {
        "attributes", "Id", "FirstName", "LastName", "Email", "Phone", "Company", "Title",
        "LeadSource", "Status", "Description", "CreatedDate",
    }
    return {
        "crm_id": r.get("Id"),
        "first_name": r.get("FirstName"),
        "last_name": r.get("LastName"),
        "email": r.get("Email"),
        "phone": r.get("Phone"),
        "company": r.get("Company"),
        "job_title": r.get("Title"),
        "status": map_crm_status(r.get("Status")),
        "notes": r.get("Description"),
    }, consumed


def _hubspot_record(r: dict) -> tuple[dict, set]:
    props = r.get("properties") or {}
    consumed = set(props) & {
        "email", "firstname", "lastname", "phone", "mobilephone", "company", "jobtitle",
        "city", "state", "hs_lead_status", "notes", "lifecyclestage", "hs_object_id",
        "createdate", "lastmodifieddate", settings.HUBSPOT_ORIGIN_PROPERTY,
    }
    return {
        "crm_id": r.get("id"),
        "first_name": props.get("firstname"),
        "last_name": props.get("lastname"),
        "email": props.get("email"),
        "phone": props.get("phone") or props.get("mobilephone"),
        "company": props.get("company"),
        "job_title": props.get("jobtitle"),
        "location": props.get("city") or props.get("state"),
        "status": map_crm_status(props.get("hs_lead_status")),
        "notes": props.get("notes"),
        "origin_marker": props.get(settings.HUBSPOT_ORIGIN_PROPERTY) if settings.HUBSPOT_ORIGIN_PROPERTY else None,
    }, consumed


def _dynamics_record(r: dict) -> tuple[dict, set]:
    consumed = {
        "leadid", "firstname", "lastname", "fullname", "emailaddress1", "telephone1", "mobilephone",
        "companyname", "jobtitle", "address1_city", "statuscode", "description", "subject",
    }
    return {
        "crm_id": r.get("leadid"),
        "first_name": r.get("firstname"),
        "last_name": r.get("lastname"),
        "full_name": r.get("fullname"),
        "email": r.get("emailaddress1"),
        "phone": r.get("telephone1") or r.get("mobilephone"),
        "company": r.get("companyname"),
        "job_title": r.get("jobtitle"),
        "location": r.get("address1_city"),
        "status": map_crm_status(r.get("statuscode")),
        "notes": r.get("description"),
    }, consumed


_INBOUND = {
    "zoho": _zoho_record,
    "salesforce": _salesforce_record,
    "hubspot": _hubspot_record,
    "dynamics": _dynamics_record,
}


def _platform_url(provider: str, crm_id: Optional[str], integration) -> Optional[str]:
    if not crm_id or integration is None:
        return None
    credentials = integration.credentials or {}
    if provider == "hubspot":
        portal = credentials.get("portal_id") or (integration.account_info or {}).get("id") or "portal"
        return f"https://app.hubspot.com/contacts/{portal}/contact/{crm_id}"
    if provider == "salesforce" and credentials.get("instance_url"):
        return f"{credentials['instance_url'].rstrip('/')}/lightning/r/Lead/{crm_id}/view"
    return None


def from_provider_record(provider: str, record: dict, integration=None) -> dict:
    """Provider record -> canonical inbound lead dict (always carries crm_id, email, status)."""
    reverse = _INBOUND.get(provider)
    if reverse is None:
        raise ConfigurationError(f"Unsupported CRM provider: {provider}")
    mapped, consumed = reverse(record)

    if mapped.get("crm_id") is not None:
        mapped["crm_id"] = str(mapped["crm_id"])
    email = mapped.get("email")
    mapped["email"] = email.strip().lower() if email else None
    if not mapped.get("full_name"):
        mapped["full_name"] = _join_name(mapped.get("first_name"), mapped.get("last_name")) or mapped["email"]

    mapped["source"] = "import"
    mapped["platform"] = provider
    mapped["platform_url"] = _platform_url(provider, mapped.get("crm_id"), integration)

    # Extra fields the company mapped onto platform fields
    if integration is not None and integration.custom_field_mappings:
        fields = record.get("properties") if provider == "hubspot" else record
        custom = {}
        for crm_field, value in (fields or {}).items():
            if crm_field in consumed or value in (None, ""):
                continue
            platform_field = resolve_platform_field(integration, crm_field)
            if platform_field and platform_field not in mapped:
                custom[platform_field] = value
        if custom:
            mapped["custom_fields"] = custom

    return mapped
