from .base import CamelModel
from .auth_schema import PortalLogin, PortalToken, VerifyAuthRequest, PreviewTokenRequest
from .billing_schema import ProvisionBillingRequest, ProvisionBillingResponse, ActivateRequest, ActivateResponse
from .portal_schema import PortalProfileRead, PortalProfilePatch, PortalProfileEditRead
from .zip_change_schema import (
    ZipChangeStatus,
    ZipChangeSubmit, ZipChangeSubmitResponse,
    ZipChangeRequestRead, ZipChangeRequestList,
    ConflictCheckBody, ConflictCheckResponse,
    ResolveBody,
)

__all__ = [
    "CamelModel",

    # Auth
    "PortalLogin", "PortalToken", "VerifyAuthRequest", "PreviewTokenRequest",

    # Billing
    "ProvisionBillingRequest", "ProvisionBillingResponse", "ActivateRequest", "ActivateResponse",

    # Portal profile
    "PortalProfileRead", "PortalProfilePatch", "PortalProfileEditRead",

    # Zip change requests
    "ZipChangeStatus",
    "ZipChangeSubmit", "ZipChangeSubmitResponse",
    "ZipChangeRequestRead", "ZipChangeRequestList",
    "ConflictCheckBody", "ConflictCheckResponse",
    "ResolveBody",
]
