"""
Territory change requests: submit -> pending -> approved | rejected.

A request is resolved at most once. The pending -> terminal transition is a
conditional UPDATE (``WHERE status = 'pending'``) whose row count decides the
winner, so two racing resolve calls can never both succeed.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.exceptions import (
    ConfigurationError,
    InputValidationError,
    NotFoundError,
    StateConflictError,
    UpstreamError,
)
from core.zip_codes import diff_zip_codes, require_zip_codes
from models.models import (
    Organization,
    ResolveDecision,
    ZipChangeRequest,
    ZipChangeStatus,
    utcnow,
)
from services.conflict_detector import NOT_CONFIGURED, ConflictCheckResult, ConflictDetector

logger = logging.getLogger(__name__)

MIN_REQUESTED_ZIP_CODES = 5
MAX_REQUESTED_ZIP_CODES = 200
MAX_REASON_LENGTH = 500
MAX_RESOLUTION_NOTES_LENGTH = 1000
APPROVAL_CONFLICT_SAMPLE = 8
DEFAULT_RESOLVED_BY = "internal_owner"

ALREADY_PENDING = "already_pending"
ALREADY_RESOLVED = "already_resolved"
ZIP_CONFLICT = "zip_conflict"


@dataclass
class ResolveOutcome:
    updated: bool
    request: ZipChangeRequest
    decision: ResolveDecision
    reason: Optional[str] = None
    target_zip_codes: Optional[List[str]] = None


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_organization(session: Session, portal_key: str) -> Organization:
    organization = session.get(Organization, portal_key)
    if not organization:
        raise NotFoundError("Organization not found.", details={"portalKey": portal_key})
    return organization


def get_zip_change_request(session: Session, request_id: str) -> ZipChangeRequest:
    zip_request = session.get(ZipChangeRequest, request_id) if request_id else None
    if not zip_request:
        raise NotFoundError("ZIP change request not found.", details={"requestId": request_id})
    return zip_request


def list_zip_change_requests(
    session: Session,
    portal_key: Optional[str] = None,
    status: Optional[ZipChangeStatus] = None,
    limit: int = 50,
) -> List[ZipChangeRequest]:
    statement = select(ZipChangeRequest)
    if portal_key:
        statement = statement.where(ZipChangeRequest.portal_key == portal_key)
    if status:
        statement = statement.where(ZipChangeRequest.status == status.value)
    statement = statement.order_by(ZipChangeRequest.created_at.desc()).limit(limit)
    return list(session.exec(statement).all())


def find_pending_request(session: Session, portal_key: str) -> Optional[ZipChangeRequest]:
    return session.exec(
        select(ZipChangeRequest).where(
            ZipChangeRequest.portal_key == portal_key,
            ZipChangeRequest.status == ZipChangeStatus.PENDING.value,
        )
    ).first()


# ============================================================
# 📝 Submit
# ============================================================
def submit_zip_change_request(
    session: Session,
    portal_key: str,
    requested_zip_codes: Any,
    reason: Optional[str] = None,
    requested_by: Optional[str] = None,
    requested_by_email: Optional[str] = None,
) -> ZipChangeRequest:
    """Validate, diff against the current territory and persist a pending request."""
    requested = require_zip_codes(
        requested_zip_codes,
        minimum=MIN_REQUESTED_ZIP_CODES,
        maximum=MAX_REQUESTED_ZIP_CODES,
    )
    reason = _clean_text(reason)
    if reason and len(reason) > MAX_REASON_LENGTH:
        raise InputValidationError(
            f"Reason must be {MAX_REASON_LENGTH} characters or fewer.", details={"field": "reason"}
        )

    organization = get_organization(session, portal_key)
    added, removed = diff_zip_codes(organization.target_zip_codes or [], requested)
    if not added and not removed:
        raise InputValidationError("Requested ZIP codes match the current territory; nothing to change.")

    existing = find_pending_request(session, portal_key)
    if existing:
        raise StateConflictError(
            "A ZIP change request is already pending review.",
            details={"reason": ALREADY_PENDING, "requestId": existing.request_id},
        )

    zip_request = ZipChangeRequest(
        portal_key=portal_key,
        requested_zip_codes=requested,
        added_zip_codes=added,
        removed_zip_codes=removed,
        reason=reason,
        requested_by=requested_by,
        requested_by_email=requested_by_email,
    )
    session.add(zip_request)
    try:
        session.commit()
    except IntegrityError:
        # Lost the race against another submit for the same portal
        session.rollback()
        existing = find_pending_request(session, portal_key)
        raise StateConflictError(
            "A ZIP change request is already pending review.",
            details={"reason": ALREADY_PENDING, "requestId": existing.request_id if existing else None},
        )

    session.refresh(zip_request)
    logger.info(
        f"📝 ZIP change request {zip_request.request_id} submitted for {portal_key}: "
        f"+{len(added)} / -{len(removed)}"
    )
    return zip_request


# ============================================================
# 🔎 Conflict check
# ============================================================
def check_zip_change_conflicts(
    session: Session,
    detector: ConflictDetector,
    request_id: str,
) -> tuple:
    """(request, result) for a pending request; only the added ZIPs are checked."""
    zip_request = get_zip_change_request(session, request_id)
    if not zip_request.is_pending:
        raise StateConflictError(
            "ZIP change request is no longer pending.",
            details={"reason": ALREADY_RESOLVED, "status": zip_request.status},
        )
    organization = session.get(Organization, zip_request.portal_key)
    result = detector.check(
        zip_request.portal_key,
        zip_request.added_zip_codes,
        organization_name=organization.name if organization else None,
    )
    return zip_request, result


def raise_for_unchecked(result: ConflictCheckResult) -> None:
    if result.checked:
        return
    details = {"reason": result.reason}
    if result.reason == NOT_CONFIGURED:
        raise ConfigurationError(result.message or "Conflict check is not configured.", details=details)
    raise UpstreamError(
        "Conflict check could not run. Please retry.",
        details={**details, "message": result.message},
        status_code=503,
    )


# ============================================================
# ✅ Resolve
# ============================================================
def parse_decision(value: Any) -> ResolveDecision:
    try:
        return ResolveDecision(str(value).strip().lower())
    except ValueError:
        raise InputValidationError("decision must be 'approve' or 'reject'.", details={"field": "decision"})


def resolve_zip_change_request(
    session: Session,
    request_id: str,
    decision: Any,
    detector: ConflictDetector,
    resolved_by: Optional[str] = None,
    resolution_notes: Optional[str] = None,
) -> ResolveOutcome:
    decision = parse_decision(decision)
    resolution_notes = _clean_text(resolution_notes)
    resolved_by = _clean_text(resolved_by) or DEFAULT_RESOLVED_BY

    if decision == ResolveDecision.REJECT and not resolution_notes:
        raise InputValidationError("resolutionNotes is required when rejecting.", details={"field": "resolutionNotes"})
    if resolution_notes and len(resolution_notes) > MAX_RESOLUTION_NOTES_LENGTH:
        raise InputValidationError(
            f"resolutionNotes must be {MAX_RESOLUTION_NOTES_LENGTH} characters or fewer.",
            details={"field": "resolutionNotes"},
        )

    zip_request = get_zip_change_request(session, request_id)
    if not zip_request.is_pending:
        return ResolveOutcome(updated=False, request=zip_request, decision=decision, reason=ALREADY_RESOLVED)

    if decision == ResolveDecision.APPROVE:
        organization = session.get(Organization, zip_request.portal_key)
        result = detector.check(
            zip_request.portal_key,
            zip_request.added_zip_codes,
            organization_name=organization.name if organization else None,
        )
        raise_for_unchecked(result)
        if result.has_conflict:
            raise StateConflictError(
                "Requested ZIP codes are already claimed by another client.",
                details={
                    "reason": ZIP_CONFLICT,
                    "conflictingZipCodes": result.conflicting_zip_codes,
                    "conflicts": result.preview(APPROVAL_CONFLICT_SAMPLE),
                    "conflictCount": result.conflict_count,
                },
            )

    now = utcnow()
    new_status = ZipChangeStatus.APPROVED if decision == ResolveDecision.APPROVE else ZipChangeStatus.REJECTED
    connection = session.connection()
    swap = connection.execute(
        update(ZipChangeRequest)
        .where(
            ZipChangeRequest.request_id == zip_request.request_id,
            ZipChangeRequest.status == ZipChangeStatus.PENDING.value,
        )
        .values(
            status=new_status.value,
            resolved_by=resolved_by,
            resolution_notes=resolution_notes,
            resolved_at=now,
        )
    )
    if swap.rowcount != 1:
        session.rollback()
        session.refresh(zip_request)
        logger.info(f"⏭️ ZIP change request {zip_request.request_id} was already resolved ({zip_request.status})")
        return ResolveOutcome(updated=False, request=zip_request, decision=decision, reason=ALREADY_RESOLVED)

    target_zip_codes = None
    if decision == ResolveDecision.APPROVE:
        # Territory becomes the frozen snapshot, in the same transaction
        target_zip_codes = list(zip_request.requested_zip_codes)
        connection.execute(
            update(Organization)
            .where(Organization.portal_key == zip_request.portal_key)
            .values(target_zip_codes=target_zip_codes, updated_at=now)
        )

    session.commit()
    session.refresh(zip_request)
    organization = session.get(Organization, zip_request.portal_key)
    if organization is not None:
        session.refresh(organization)

    logger.info(f"✅ ZIP change request {zip_request.request_id} {new_status.value} by {resolved_by}")
    return ResolveOutcome(
        updated=True,
        request=zip_request,
        decision=decision,
        target_zip_codes=target_zip_codes,
    )
