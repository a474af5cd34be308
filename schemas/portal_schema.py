# portal_schema.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from schemas.base import CamelModel


class PortalProfileRead(CamelModel):
    portal_key: str
    name: str
    service_areas: List[str]
    target_zip_codes: List[str]
    lead_delivery_phones: List[str]
    lead_delivery_emails: List[str]
    billing_model: Optional[str] = None
    is_active: bool
    leadgen_paid: bool
    updated_at: datetime


class PortalProfilePatch(CamelModel):
    preview_token: Optional[str] = None
    # raw profile payload; normalized into a PortalProfile by the service
    profile: Dict[str, Any]


class PortalProfileEditRead(CamelModel):
    id: int
    changed_keys: List[str]
    added_zip_codes: List[str]
    removed_zip_codes: List[str]
    actor_label: Optional[str] = None
    created_at: datetime
