# zip_change_schema.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from models.models import ZipChangeStatus
from schemas.base import CamelModel


# ---------------------------
# Portal (requester) side
# ---------------------------
class ZipChangeSubmit(CamelModel):
    # list of codes or a comma/newline separated string; normalized by the service
    requested_zip_codes: Any
    reason: Optional[str] = None


class ZipChangeSubmitResponse(CamelModel):
    success: bool = True
    request_id: str
    status: ZipChangeStatus
    added_zip_codes: List[str]
    removed_zip_codes: List[str]


class ZipChangeRequestRead(CamelModel):
    request_id: str
    portal_key: str
    status: ZipChangeStatus
    requested_zip_codes: List[str]
    added_zip_codes: List[str]
    removed_zip_codes: List[str]
    reason: Optional[str] = None
    resolution_notes: Optional[str] = None
    requested_by: Optional[str] = None
    requested_by_email: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class ZipChangeRequestList(CamelModel):
    success: bool = True
    requests: List[ZipChangeRequestRead]


# ---------------------------
# Operator side
# ---------------------------
class ConflictCheckBody(CamelModel):
    request_id: str = Field(..., min_length=1, max_length=64)


class ConflictCheckResponse(CamelModel):
    success: bool = True
    request_id: str
    portal_key: str
    checked_at: datetime
    conflict: bool
    conflicting_zip_codes: List[str]
    conflicts: List[Dict[str, Any]]
    conflict_count: int


class ResolveBody(CamelModel):
    request_id: str = Field(..., min_length=1, max_length=64)
    decision: str
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = Field(default=None, max_length=255)
