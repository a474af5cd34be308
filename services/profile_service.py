import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlmodel import Session

from core.exceptions import InputValidationError
from core.zip_codes import MAX_TARGET_ZIP_CODES, MIN_TARGET_ZIP_CODES, diff_zip_codes, normalize_zip_codes, zip_count_error
from models.models import Organization, PortalProfileEdit, ProfileEditActor, utcnow

logger = logging.getLogger(__name__)

MAX_SERVICE_AREAS = 50
MAX_ROUTING_TARGETS = 10
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PROFILE_FIELDS = ("service_areas", "target_zip_codes", "lead_delivery_phones", "lead_delivery_emails")


@dataclass
class PortalProfile:
    service_areas: List[str]
    target_zip_codes: List[str]
    lead_delivery_phones: List[str]
    lead_delivery_emails: List[str]

    @classmethod
    def from_organization(cls, organization: Organization) -> "PortalProfile":
        return cls(
            service_areas=list(organization.service_areas or []),
            target_zip_codes=list(organization.target_zip_codes or []),
            lead_delivery_phones=list(organization.lead_delivery_phones or []),
            lead_delivery_emails=list(organization.lead_delivery_emails or []),
        )


def _string_list(value: Any, lowercase: bool = False) -> List[str]:
    if isinstance(value, str):
        value = re.split(r"[,\n]", value)
    if not isinstance(value, (list, tuple)):
        return []
    seen: List[str] = []
    for entry in value:
        if not isinstance(entry, str):
            continue
        cleaned = entry.strip().lower() if lowercase else entry.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def normalize_portal_profile(payload: dict) -> PortalProfile:
    """Typed profile or InputValidationError carrying every problem found."""
    errors: List[str] = []

    service_areas = _string_list(payload.get("serviceAreas"))
    if not service_areas:
        errors.append("Add at least 1 service area.")
    elif len(service_areas) > MAX_SERVICE_AREAS:
        errors.append(f"Maximum {MAX_SERVICE_AREAS} service areas allowed.")

    zips = normalize_zip_codes(payload.get("targetZipCodes"))
    for invalid in zips.invalid_zip_codes:
        errors.append(f"ZIP must be 5 digits: {invalid}")
    count_error = zip_count_error(len(zips.zip_codes), MIN_TARGET_ZIP_CODES, MAX_TARGET_ZIP_CODES)
    if count_error:
        errors.append(count_error)

    phones = _string_list(payload.get("leadDeliveryPhones"))
    emails = _string_list(payload.get("leadDeliveryEmails"), lowercase=True)
    for email in emails:
        if not _EMAIL_PATTERN.match(email):
            errors.append(f"Invalid lead delivery email: {email}")
    if not phones and not emails:
        errors.append("Add at least 1 lead routing phone or email.")
    if len(phones) > MAX_ROUTING_TARGETS or len(emails) > MAX_ROUTING_TARGETS:
        errors.append(f"Maximum {MAX_ROUTING_TARGETS} routing phones and {MAX_ROUTING_TARGETS} routing emails allowed.")

    if errors:
        raise InputValidationError(errors[0], details={"errors": errors})

    return PortalProfile(
        service_areas=service_areas,
        target_zip_codes=zips.zip_codes,
        lead_delivery_phones=phones,
        lead_delivery_emails=emails,
    )


def update_portal_profile(
    session: Session,
    organization: Organization,
    profile: PortalProfile,
    actor_type: ProfileEditActor = ProfileEditActor.INTERNAL_PREVIEW,
    actor_label: Optional[str] = None,
) -> Optional[PortalProfileEdit]:
    """Apply the profile and record an audit row; None when nothing changed."""
    current = PortalProfile.from_organization(organization)
    changed_keys = []
    for key in PROFILE_FIELDS:
        before, after = getattr(current, key), getattr(profile, key)
        # territory order is irrelevant
        if key == "target_zip_codes":
            before, after = set(before), set(after)
        if before != after:
            changed_keys.append(key)
    if not changed_keys:
        return None

    added, removed = diff_zip_codes(current.target_zip_codes, profile.target_zip_codes)
    for key in changed_keys:
        setattr(organization, key, list(getattr(profile, key)))
    organization.updated_at = utcnow()

    edit = PortalProfileEdit(
        portal_key=organization.portal_key,
        actor_type=actor_type.value,
        actor_label=actor_label,
        changed_keys=changed_keys,
        added_zip_codes=added,
        removed_zip_codes=removed,
    )
    session.add(organization)
    session.add(edit)
    session.commit()
    session.refresh(edit)
    session.refresh(organization)

    logger.info(f"🧾 Portal profile for {organization.portal_key} updated ({', '.join(changed_keys)}) by {actor_label or actor_type.value}")
    return edit
