import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import Request

from core.exceptions import UpstreamError
from core.zip_codes import normalize_zip_codes
from services.crm_registry import AirtableRegistry

logger = logging.getLogger(__name__)

CONFLICT_PREVIEW_LIMIT = 20

NOT_CONFIGURED = "not_configured"
FETCH_FAILED = "fetch_failed"


@dataclass
class ZipConflict:
    zip_code: str
    business_name: str
    status: str
    record_id: str
    other_portal_key: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "zipCode": self.zip_code,
            "businessName": self.business_name,
            "status": self.status,
            "recordId": self.record_id,
            "otherPortalKey": self.other_portal_key,
        }


@dataclass
class ConflictCheckResult:
    """checked=False means the check could not run; it never means "no conflicts"."""

    checked: bool
    conflicts: List[ZipConflict] = field(default_factory=list)
    reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicts)

    @property
    def conflicting_zip_codes(self) -> List[str]:
        return sorted({c.zip_code for c in self.conflicts})

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def preview(self, limit: int = CONFLICT_PREVIEW_LIMIT) -> List[Dict[str, Any]]:
        return [c.as_dict() for c in self.conflicts[:limit]]


class ConflictDetector:
    """Finds other active clients in the CRM registry already claiming requested ZIPs."""

    def __init__(self, registry: Optional[AirtableRegistry]):
        self.registry = registry

    def check(
        self,
        portal_key: str,
        requested_add_zip_codes,
        organization_name: Optional[str] = None,
    ) -> ConflictCheckResult:
        requested = normalize_zip_codes(requested_add_zip_codes).zip_codes
        if not requested:
            return ConflictCheckResult(checked=True)

        if self.registry is None or not self.registry.configured:
            return ConflictCheckResult(
                checked=False,
                reason=NOT_CONFIGURED,
                message="Airtable client registry is not configured.",
            )

        try:
            records = self.registry.list_client_records()
        except UpstreamError as e:
            logger.error(f"❌ Conflict check for {portal_key} could not read the registry: {e.message}")
            return ConflictCheckResult(checked=False, reason=FETCH_FAILED, message=e.message)

        requested_set = set(requested)
        own_record_ids = {
            r.record_id for r in self.registry.find_matching_records(records, portal_key, organization_name)
        }

        conflicts: List[ZipConflict] = []
        seen = set()
        for record in records:
            if record.record_id in own_record_ids:
                continue
            if not self.registry.is_active_status(record.status):
                continue
            for zip_code in record.target_zip_codes:
                key = (record.record_id, zip_code)
                if zip_code not in requested_set or key in seen:
                    continue
                seen.add(key)
                conflicts.append(
                    ZipConflict(
                        zip_code=zip_code,
                        business_name=record.business_name,
                        status=record.status,
                        record_id=record.record_id,
                        other_portal_key=record.portal_key,
                    )
                )

        conflicts.sort(key=lambda c: (c.zip_code, c.business_name.lower(), c.record_id))
        logger.info(f"🔎 Conflict check for {portal_key}: {len(conflicts)} conflict(s) across {len(requested)} added ZIP(s)")
        return ConflictCheckResult(checked=True, conflicts=conflicts)


def get_conflict_detector(request: Request) -> ConflictDetector:
    return ConflictDetector(request.app.state.crm_registry)
