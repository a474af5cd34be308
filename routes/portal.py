import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlmodel import Session

from core.database import get_session
from core.exceptions import ForbiddenError, InputValidationError
from core.rate_limit import RateLimitClass, rate_limit
from core.request_guards import require_json_content_type
from core.security import TokenService, get_current_portal_user, get_token_service, require_internal_tool_token
from models.models import PortalUser, ProfileEditActor
from schemas.auth_schema import PreviewTokenRequest
from schemas.portal_schema import PortalProfileEditRead, PortalProfilePatch, PortalProfileRead
from services.crm_registry import AirtableRegistry, get_crm_registry
from services.email_service import EmailService, get_email_service
from services.profile_service import normalize_portal_profile, update_portal_profile
from services.zip_change_service import get_organization

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Portal Profile"])


def _resolve_preview(tokens: TokenService, preview_token: Optional[str]) -> str:
    if not preview_token:
        raise InputValidationError("previewToken is required.", details={"field": "previewToken"})
    portal_key = tokens.resolve_portal_preview_token(preview_token)
    if not portal_key:
        raise ForbiddenError("Forbidden")
    return portal_key


# ==========================================================
# 👤 Portal user: own profile
# ==========================================================
@router.get(
    "/portal/profile",
    response_model=PortalProfileRead,
    dependencies=[Depends(rate_limit(RateLimitClass.DEFAULT))],
)
def read_own_profile(
    current_user: PortalUser = Depends(get_current_portal_user),
    session: Session = Depends(get_session),
):
    return PortalProfileRead.model_validate(get_organization(session, current_user.portal_key))


@router.patch(
    "/portal/profile",
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUDIT))],
)
def update_own_profile(
    body: PortalProfilePatch,
    background_tasks: BackgroundTasks,
    current_user: PortalUser = Depends(get_current_portal_user),
    session: Session = Depends(get_session),
    registry: AirtableRegistry = Depends(get_crm_registry),
    email_service: EmailService = Depends(get_email_service),
):
    return _save_profile(
        session,
        current_user.portal_key,
        body.profile,
        ProfileEditActor.PORTAL_USER,
        current_user.email,
        registry,
        email_service,
        background_tasks,
    )


# ==========================================================
# 🔑 Internal: preview token for one portal
# ==========================================================
@router.post(
    "/internal/portal/preview-token",
    dependencies=[
        Depends(require_json_content_type),
        Depends(rate_limit(RateLimitClass.AUTH)),
        Depends(require_internal_tool_token),
    ],
)
def issue_preview_token(
    body: PreviewTokenRequest,
    session: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
):
    organization = get_organization(session, body.portal_key)
    return {
        "success": True,
        "portalKey": organization.portal_key,
        "previewToken": tokens.create_portal_preview_token(organization.portal_key),
        "expiresInSeconds": int(tokens.preview_ttl.total_seconds()),
    }


# ==========================================================
# 🧾 Internal: view / edit a portal profile via preview token
# ==========================================================
@router.get(
    "/internal/portal/profile",
    response_model=PortalProfileRead,
    dependencies=[Depends(rate_limit(RateLimitClass.AUDIT))],
)
def read_profile_with_preview(
    preview_token: Optional[str] = Query(default=None, alias="previewToken"),
    session: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
):
    portal_key = _resolve_preview(tokens, preview_token)
    return PortalProfileRead.model_validate(get_organization(session, portal_key))


@router.patch(
    "/internal/portal/profile",
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUDIT))],
)
def update_profile_with_preview(
    body: PortalProfilePatch,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
    registry: AirtableRegistry = Depends(get_crm_registry),
    email_service: EmailService = Depends(get_email_service),
):
    portal_key = _resolve_preview(tokens, body.preview_token)
    return _save_profile(
        session,
        portal_key,
        body.profile,
        ProfileEditActor.INTERNAL_PREVIEW,
        "internal_preview",
        registry,
        email_service,
        background_tasks,
    )


def _save_profile(
    session: Session,
    portal_key: str,
    payload: dict,
    actor_type: ProfileEditActor,
    actor_label: str,
    registry: AirtableRegistry,
    email_service: EmailService,
    background_tasks: BackgroundTasks,
) -> dict:
    profile = normalize_portal_profile(payload)
    organization = get_organization(session, portal_key)

    edit = update_portal_profile(session, organization, profile, actor_type=actor_type, actor_label=actor_label)
    response = {
        "success": True,
        "updated": edit is not None,
        "profile": PortalProfileRead.model_validate(organization).model_dump(by_alias=True, mode="json"),
        "audit": PortalProfileEditRead.model_validate(edit).model_dump(by_alias=True, mode="json") if edit else None,
    }
    if edit is None:
        return response

    if edit.added_zip_codes or edit.removed_zip_codes:
        # Best-effort: the store stays authoritative when the registry is unavailable
        sync = registry.sync_target_zip_codes(portal_key, organization.name, list(organization.target_zip_codes))
        response["registrySync"] = sync.as_dict()
        if not sync.synced:
            logger.warning(f"⚠️ Profile saved for {portal_key} but Airtable sync failed: {sync.reason}")

    background_tasks.add_task(
        email_service.send_profile_change_notification,
        portal_key=portal_key,
        organization_name=organization.name,
        actor_label=edit.actor_label,
        changed_keys=list(edit.changed_keys),
        added_zip_codes=list(edit.added_zip_codes),
        removed_zip_codes=list(edit.removed_zip_codes),
    )
    return response
