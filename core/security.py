# core/security.py
import base64
import binascii
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import Session, select

from core.config import MIN_JWT_SECRET_LENGTH, Settings, get_settings
from core.database import get_session
from core.exceptions import AuthError, ConfigurationError, ForbiddenError
from models.models import PortalUser

logger = logging.getLogger(__name__)

# ========================================
# 🔑 Token kinds
# ========================================
TOOL_SESSION = "internal_tool"
PORTAL_PREVIEW = "portal_preview"
PORTAL_SESSION = "portal_session"

PORTAL_PREVIEW_SCOPE = "internal_portal_preview"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/portal/auth/login", auto_error=False)


# ========================================
# 🔐 Password Hashing (Argon2)
# ========================================
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash password using Argon2."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password using Argon2."""
    return pwd_context.verify(plain_password, hashed_password)


def constant_time_equals(provided: str, expected: str) -> bool:
    """Hash both sides first so the comparison never depends on input length."""
    provided_digest = hashlib.sha256(provided.encode("utf-8")).digest()
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    return secrets.compare_digest(provided_digest, expected_digest)


# ========================================
# 🎟️ Token Service
# ========================================
class TokenService:
    """
    Issues and verifies the three HS256 token kinds used by the service.

    Every token carries a ``typ`` claim; verification of one kind never
    accepts another, even though all of them share the signing secret.
    Verification methods fail closed: they return ``False``/``None`` and
    never raise to the caller.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = "leadzone-internal-tool",
        audience: str = "leadzone-internal-api",
        tool_session_ttl: timedelta = timedelta(days=30),
        preview_ttl: timedelta = timedelta(minutes=30),
        portal_session_ttl: timedelta = timedelta(hours=12),
    ):
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters.")
        self._secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.tool_session_ttl = tool_session_ttl
        self.preview_ttl = preview_ttl
        self.portal_session_ttl = portal_session_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            secret=settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            issuer=settings.INTERNAL_TOOL_TOKEN_ISSUER,
            audience=settings.INTERNAL_TOOL_TOKEN_AUDIENCE,
            tool_session_ttl=timedelta(minutes=settings.INTERNAL_TOOL_TOKEN_EXPIRE_MINUTES),
            preview_ttl=timedelta(minutes=settings.PORTAL_PREVIEW_TOKEN_EXPIRE_MINUTES),
            portal_session_ttl=timedelta(minutes=settings.PORTAL_SESSION_TOKEN_EXPIRE_MINUTES),
        )

    # ---------- encoding ----------
    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        to_encode = claims.copy()
        to_encode.update({"iat": now, "exp": now + ttl})
        return jwt.encode(to_encode, self._secret, algorithm=self.algorithm)

    def _decode(self, token: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(token, self._secret, algorithms=[self.algorithm], **kwargs)
        except JWTError:
            return None

    # ---------- tool session ----------
    def create_internal_tool_token(self) -> str:
        claims = {
            "typ": TOOL_SESSION,
            "authorized": True,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return self._encode(claims, self.tool_session_ttl)

    def verify_internal_tool_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        payload = self._decode(token, audience=self.audience, issuer=self.issuer)
        if not payload:
            return False
        return payload.get("typ") == TOOL_SESSION and payload.get("authorized") is True

    # ---------- portal preview ----------
    def create_portal_preview_token(self, portal_key: str) -> str:
        portal_key = (portal_key or "").strip()
        if not portal_key:
            raise ValueError("portal_key is required")
        claims = {"typ": PORTAL_PREVIEW, "scope": PORTAL_PREVIEW_SCOPE, "portalKey": portal_key}
        return self._encode(claims, self.preview_ttl)

    def resolve_portal_preview_token(self, token: Optional[str]) -> Optional[str]:
        """Returns the portal key the preview token is scoped to, or None."""
        if not token:
            return None
        payload = self._decode(token)
        if not payload:
            return None
        if payload.get("typ") != PORTAL_PREVIEW or payload.get("scope") != PORTAL_PREVIEW_SCOPE:
            return None
        portal_key = payload.get("portalKey")
        if not isinstance(portal_key, str) or not portal_key.strip():
            return None
        return portal_key.strip()

    # ---------- portal session ----------
    def create_portal_session_token(self, user: PortalUser) -> str:
        claims = {
            "typ": PORTAL_SESSION,
            "sub": user.email,
            "portal_user_id": user.id,
            "portal_key": user.portal_key,
        }
        return self._encode(claims, self.portal_session_ttl)

    def decode_portal_session_token(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        payload = self._decode(token)
        if not payload or payload.get("typ") != PORTAL_SESSION:
            return None
        return payload

    # ---------- helpers ----------
    def classify(self, token: Optional[str]) -> Optional[str]:
        """Kind of a validly signed, unexpired token; None when it is neither."""
        if self.verify_internal_tool_token(token):
            return TOOL_SESSION
        if self.resolve_portal_preview_token(token):
            return PORTAL_PREVIEW
        if self.decode_portal_session_token(token):
            return PORTAL_SESSION
        return None

    def exchange_password(self, password: Optional[str], expected: Optional[str]) -> Optional[str]:
        """Tool-session token for the right internal password, else None."""
        if not expected:
            raise ConfigurationError("INTERNAL_TOOL_PASSWORD is not configured.")
        if not password or not constant_time_equals(password, expected):
            return None
        return self.create_internal_tool_token()


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def _authorization_parts(request: Request) -> tuple:
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    return scheme.strip().lower(), credentials.strip()


# ========================================
# 🛠️ Internal tool bearer guard
# ========================================
def require_internal_tool_token(
    request: Request,
    tokens: TokenService = Depends(get_token_service),
) -> str:
    scheme, credentials = _authorization_parts(request)
    if scheme != "bearer" or not credentials:
        raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})

    kind = tokens.classify(credentials)
    if kind == TOOL_SESSION:
        return TOOL_SESSION
    if kind is not None:
        raise ForbiddenError("Forbidden")
    raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})


# ========================================
# 🧑‍💼 Operator guard (bearer tool token or HTTP Basic)
# ========================================
@dataclass
class OperatorIdentity:
    label: str
    method: str


def _check_basic_credentials(settings: Settings, credentials: str) -> Optional[str]:
    if not settings.OPERATOR_BASIC_AUTH_CONFIGURED:
        return None
    try:
        decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    user_ok = constant_time_equals(username, settings.INTERNAL_BASIC_AUTH_USER)
    pass_ok = constant_time_equals(password, settings.INTERNAL_BASIC_AUTH_PASS)
    return username if user_ok and pass_ok else None


def _authenticate_operator(request: Request, settings: Settings, tokens: TokenService, read_only: bool) -> OperatorIdentity:
    scheme, credentials = _authorization_parts(request)

    if not settings.OPERATOR_AUTH_CONFIGURED:
        if read_only and not settings.IS_PRODUCTION:
            logger.warning("⚠️ Operator credentials not configured — allowing read-only access outside production.")
            return OperatorIdentity(label="unauthenticated_dev", method="none")
        raise ConfigurationError("Operator authentication is not configured.")

    challenge = {"WWW-Authenticate": f'Basic realm="{settings.INTERNAL_BASIC_AUTH_REALM}"'}

    if scheme == "bearer" and credentials:
        kind = tokens.classify(credentials)
        if kind == TOOL_SESSION:
            return OperatorIdentity(label="internal_tool", method="bearer")
        if kind is not None:
            raise ForbiddenError("Forbidden")
        raise AuthError("Unauthorized", headers=challenge)

    if scheme == "basic" and credentials:
        username = _check_basic_credentials(settings, credentials)
        if username:
            return OperatorIdentity(label=username, method="basic")

    raise AuthError("Unauthorized", headers=challenge)


def require_operator(
    request: Request,
    settings: Settings = Depends(get_settings),
    tokens: TokenService = Depends(get_token_service),
) -> OperatorIdentity:
    """Operator credentials for mutating internal endpoints."""
    return _authenticate_operator(request, settings, tokens, read_only=False)


def require_operator_read(
    request: Request,
    settings: Settings = Depends(get_settings),
    tokens: TokenService = Depends(get_token_service),
) -> OperatorIdentity:
    """Same as require_operator, but may fail open outside production."""
    return _authenticate_operator(request, settings, tokens, read_only=True)


# ========================================
# 👤 Portal session guard
# ========================================
def get_current_portal_user(
    token: Optional[str] = Depends(oauth2_scheme),
    tokens: TokenService = Depends(get_token_service),
    session: Session = Depends(get_session),
) -> PortalUser:
    """Extract the portal user from the session token and load the DB record."""
    if not token:
        raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})

    payload = tokens.decode_portal_session_token(token)
    if payload is None:
        if tokens.classify(token) is not None:
            raise ForbiddenError("Forbidden")
        raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})

    user = None
    user_id = payload.get("portal_user_id")
    if user_id:
        user = session.get(PortalUser, user_id)
    if not user and payload.get("sub"):
        user = session.exec(select(PortalUser).where(PortalUser.email == payload["sub"])).first()

    if not user or not user.is_active:
        raise AuthError("Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    if user.portal_key != payload.get("portal_key"):
        raise ForbiddenError("Forbidden")
    return user
