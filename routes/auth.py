import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.config import Settings, get_settings
from core.database import get_session
from core.exceptions import AuthError
from core.rate_limit import RateLimitClass, rate_limit
from core.request_guards import require_json_content_type
from core.security import TokenService, get_token_service, verify_password
from models.models import PortalUser, utcnow
from schemas.auth_schema import PortalLogin, PortalToken, VerifyAuthRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Authentication"])


# ==========================================================
# ✅ Portal login — session token scoped to one portal
# ==========================================================
@router.post(
    "/portal/auth/login",
    response_model=PortalToken,
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUTH))],
)
def portal_login(
    credentials: PortalLogin,
    session: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
):
    user = session.exec(select(PortalUser).where(PortalUser.email == credentials.email.lower())).first()
    if not user or not user.is_active or not verify_password(credentials.password, user.password_hash):
        logger.info(f"🔒 Failed portal login for {credentials.email}")
        raise AuthError("Invalid email or password.", headers={"WWW-Authenticate": "Bearer"})

    user.last_login_at = utcnow()
    session.add(user)
    try:
        session.commit()
        session.refresh(user)
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"⚠️ Could not record last login for {user.email}: {e}")

    return PortalToken(access_token=tokens.create_portal_session_token(user), portal_key=user.portal_key)


# ==========================================================
# ✅ Internal tool — password exchange / token check
# ==========================================================
@router.post(
    "/internal/verify-auth",
    dependencies=[Depends(require_json_content_type), Depends(rate_limit(RateLimitClass.AUTH))],
)
def verify_internal_auth(
    body: VerifyAuthRequest,
    settings: Settings = Depends(get_settings),
    tokens: TokenService = Depends(get_token_service),
):
    """Exchange the internal password for a tool-session token, or check a token."""
    if body.token:
        return {"success": True, "valid": tokens.verify_internal_tool_token(body.token)}

    if body.password:
        token = tokens.exchange_password(body.password, settings.INTERNAL_TOOL_PASSWORD)
        if not token:
            raise AuthError("Unauthorized")
        return {"success": True, "valid": True, "token": token}

    return {"success": True, "valid": False}
