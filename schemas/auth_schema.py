# auth_schema.py
from typing import Optional

from pydantic import EmailStr, Field

from schemas.base import CamelModel


class PortalLogin(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class PortalToken(CamelModel):
    access_token: str
    token_type: str = "bearer"
    portal_key: str


class VerifyAuthRequest(CamelModel):
    password: Optional[str] = None
    token: Optional[str] = None


class PreviewTokenRequest(CamelModel):
    portal_key: str = Field(..., min_length=1, max_length=120)
