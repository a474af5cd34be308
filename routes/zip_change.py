import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse
from sqlmodel import Session

from core.database import get_session
from core.rate_limit import RateLimitClass, rate_limit
from core.request_guards import require_json_content_type
from core.security import OperatorIdentity, get_current_portal_user, require_operator, require_operator_read
from models.models import Organization, PortalUser, ResolveDecision, ZipChangeStatus, utcnow
from schemas.zip_change_schema import (
    ConflictCheckBody,
    ConflictCheckResponse,
    ResolveBody,
    ZipChangeRequestList,
    ZipChangeRequestRead,
    ZipChangeSubmit,
    ZipChangeSubmitResponse,
)
from services.conflict_detector import ConflictDetector, get_conflict_detector
from services.crm_registry import AirtableRegistry, get_crm_registry
from services.email_service import EmailService, get_email_service
from services.zip_change_service import (
    check_zip_change_conflicts,
    list_zip_change_requests,
    raise_for_unchecked,
    resolve_zip_change_request,
    submit_zip_change_request,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Zip Change Requests"])


# ==========================================================
# 📝 Portal: submit a territory change
# ==========================================================
@router.post(
    "/portal/zip-change-request",
    response_model=ZipChangeSubmitResponse,
    status_code=201,
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.DEFAULT))],
)
def submit_request(
    body: ZipChangeSubmit,
    background_tasks: BackgroundTasks,
    current_user: PortalUser = Depends(get_current_portal_user),
    session: Session = Depends(get_session),
    email_service: EmailService = Depends(get_email_service),
):
    zip_request = submit_zip_change_request(
        session,
        portal_key=current_user.portal_key,
        requested_zip_codes=body.requested_zip_codes,
        reason=body.reason,
        requested_by=current_user.full_name or current_user.email,
        requested_by_email=current_user.email,
    )

    organization = session.get(Organization, zip_request.portal_key)
    background_tasks.add_task(
        email_service.send_zip_change_request_notification,
        portal_key=zip_request.portal_key,
        organization_name=organization.name if organization else zip_request.portal_key,
        request_id=zip_request.request_id,
        added_zip_codes=list(zip_request.added_zip_codes),
        removed_zip_codes=list(zip_request.removed_zip_codes),
        requested_by_email=zip_request.requested_by_email,
        reason=zip_request.reason,
    )

    return ZipChangeSubmitResponse(
        request_id=zip_request.request_id,
        status=zip_request.status,
        added_zip_codes=zip_request.added_zip_codes,
        removed_zip_codes=zip_request.removed_zip_codes,
    )


@router.get(
    "/portal/zip-change-request",
    response_model=ZipChangeRequestList,
    dependencies=[Depends(rate_limit(RateLimitClass.DEFAULT))],
)
def list_own_requests(
    current_user: PortalUser = Depends(get_current_portal_user),
    session: Session = Depends(get_session),
):
    requests = list_zip_change_requests(session, portal_key=current_user.portal_key)
    return ZipChangeRequestList(requests=[ZipChangeRequestRead.model_validate(r) for r in requests])


# ==========================================================
# 🔎 Operator: conflict check
# ==========================================================
@router.post(
    "/internal/zip-change-request/conflicts",
    response_model=ConflictCheckResponse,
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUDIT))],
)
def check_conflicts(
    body: ConflictCheckBody,
    operator: OperatorIdentity = Depends(require_operator_read),
    session: Session = Depends(get_session),
    detector: ConflictDetector = Depends(get_conflict_detector),
):
    zip_request, result = check_zip_change_conflicts(session, detector, body.request_id)
    raise_for_unchecked(result)

    return ConflictCheckResponse(
        request_id=zip_request.request_id,
        portal_key=zip_request.portal_key,
        checked_at=utcnow(),
        conflict=result.has_conflict,
        conflicting_zip_codes=result.conflicting_zip_codes,
        conflicts=result.preview(),
        conflict_count=result.conflict_count,
    )


@router.get(
    "/internal/zip-change-requests",
    response_model=ZipChangeRequestList,
    dependencies=[Depends(rate_limit(RateLimitClass.AUDIT))],
)
def list_requests(
    portal_key: Optional[str] = Query(default=None, alias="portalKey"),
    status: Optional[ZipChangeStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    operator: OperatorIdentity = Depends(require_operator_read),
    session: Session = Depends(get_session),
):
    requests = list_zip_change_requests(session, portal_key=portal_key, status=status, limit=limit)
    return ZipChangeRequestList(requests=[ZipChangeRequestRead.model_validate(r) for r in requests])


# ==========================================================
# ✅ Operator: approve / reject
# ==========================================================
@router.post(
    "/internal/zip-change-request/resolve",
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUDIT))],
)
def resolve_request(
    body: ResolveBody,
    background_tasks: BackgroundTasks,
    operator: OperatorIdentity = Depends(require_operator),
    session: Session = Depends(get_session),
    detector: ConflictDetector = Depends(get_conflict_detector),
    registry: AirtableRegistry = Depends(get_crm_registry),
    email_service: EmailService = Depends(get_email_service),
):
    outcome = resolve_zip_change_request(
        session,
        request_id=body.request_id,
        decision=body.decision,
        detector=detector,
        resolved_by=body.resolved_by or (operator.label if operator.method == "basic" else None),
        resolution_notes=body.resolution_notes,
    )
    zip_request = outcome.request

    if not outcome.updated:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "updated": False,
                "reason": outcome.reason,
                "error": "ZIP change request was already resolved.",
                "requestId": zip_request.request_id,
                "status": zip_request.status,
            },
        )

    response = {
        "success": True,
        "updated": True,
        "requestId": zip_request.request_id,
        "portalKey": zip_request.portal_key,
        "decision": outcome.decision.value,
        "status": zip_request.status,
        "resolvedBy": zip_request.resolved_by,
        "targetZipCodes": outcome.target_zip_codes,
        "addedZipCodes": zip_request.added_zip_codes,
        "removedZipCodes": zip_request.removed_zip_codes,
    }

    organization = session.get(Organization, zip_request.portal_key)
    organization_name = organization.name if organization else zip_request.portal_key
    background_tasks.add_task(
        email_service.send_zip_change_resolution_notice,
        to_email=zip_request.requested_by_email,
        organization_name=organization_name,
        decision=outcome.decision.value,
        target_zip_codes=list(outcome.target_zip_codes or []),
        resolution_notes=zip_request.resolution_notes,
    )

    if outcome.decision == ResolveDecision.APPROVE:
        sync = registry.sync_target_zip_codes(zip_request.portal_key, organization_name, outcome.target_zip_codes)
        response["registrySync"] = sync.as_dict()
        if not sync.synced:
            logger.error(f"❌ Approved {zip_request.request_id} but Airtable sync failed: {sync.reason} {sync.message}")
            return JSONResponse(
                status_code=502,
                content={
                    **response,
                    "success": False,
                    "approvedInStore": True,
                    "error": "Approved, but the CRM registry could not be updated.",
                },
            )

    return response
