"""Airtable-backed CRM registry: client rows with their claimed territory."""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from fastapi import Request

from core.exceptions import UpstreamError
from core.zip_codes import is_valid_zip_code

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
_RECORD_ZIP_SPLIT = re.compile(r"[\s,;]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_business_name(value: Optional[str]) -> str:
    """Lowercase, punctuation to spaces, collapsed whitespace."""
    return " ".join(_NON_ALNUM.sub(" ", (value or "").lower()).split())


def parse_record_zip_codes(value) -> List[str]:
    if isinstance(value, list):
        tokens = [str(v).strip() for v in value]
    elif isinstance(value, str):
        tokens = _RECORD_ZIP_SPLIT.split(value)
    else:
        return []

    seen = []
    for token in tokens:
        if is_valid_zip_code(token) and token not in seen:
            seen.append(token)
    return seen


@dataclass
class ClientRecord:
    record_id: str
    business_name: str
    status: str
    target_zip_codes: List[str] = field(default_factory=list)
    portal_key: Optional[str] = None

    @property
    def business_name_normalized(self) -> str:
        return normalize_business_name(self.business_name)


@dataclass
class RegistrySyncResult:
    synced: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    record_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "synced": self.synced,
            "reason": self.reason,
            "message": self.message,
            "recordId": self.record_id,
        }


class AirtableRegistry:
    """
    Reads client rows from the Airtable client table and writes approved
    territories back. Every transport failure, timeout or non-2xx answer
    surfaces as UpstreamError; nothing is retried here.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        api_key: Optional[str],
        base_id: Optional[str],
        table_id: Optional[str],
        name_field: str = "Business Name",
        status_field: str = "Status",
        target_zips_field: str = "Target ZIP Codes",
        active_statuses: Optional[List[str]] = None,
        portal_key_map: Optional[Dict[str, str]] = None,
        api_url: str = "https://api.airtable.com/v0",
        max_pages: int = 200,
    ):
        self.http = http_client
        self.api_key = api_key
        self.base_id = base_id
        self.table_id = table_id
        self.name_field = name_field
        self.status_field = status_field
        self.target_zips_field = target_zips_field
        self.active_statuses = {s.strip().lower() for s in (active_statuses or []) if s.strip()}
        self.api_url = api_url.rstrip("/")
        self.max_pages = max_pages

        # normalized business name -> portal key, and the reverse lookup
        self.portal_key_by_name = {
            normalize_business_name(name): portal_key
            for name, portal_key in (portal_key_map or {}).items()
            if normalize_business_name(name)
        }
        self.names_by_portal_key: Dict[str, set] = {}
        for name, portal_key in self.portal_key_by_name.items():
            self.names_by_portal_key.setdefault(portal_key, set()).add(name)

    @classmethod
    def from_settings(cls, settings, http_client: httpx.Client) -> "AirtableRegistry":
        return cls(
            http_client=http_client,
            api_key=settings.AIRTABLE_API_KEY,
            base_id=settings.AIRTABLE_CLIENT_BASE_ID,
            table_id=settings.AIRTABLE_CLIENT_TABLE_ID,
            name_field=settings.AIRTABLE_CLIENT_NAME_FIELD,
            status_field=settings.AIRTABLE_CLIENT_STATUS_FIELD,
            target_zips_field=settings.AIRTABLE_CLIENT_TARGET_ZIPS_FIELD,
            active_statuses=settings.AIRTABLE_ACTIVE_STATUSES,
            portal_key_map=settings.AIRTABLE_PORTAL_KEY_MAP,
            api_url=settings.AIRTABLE_API_URL,
            max_pages=settings.AIRTABLE_MAX_PAGES,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.base_id and self.table_id)

    @property
    def _table_url(self) -> str:
        return f"{self.api_url}/{self.base_id}/{self.table_id}"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def is_active_status(self, status: str) -> bool:
        return status.strip().lower() in self.active_statuses

    # ============================================================
    # 📥 Read
    # ============================================================
    def list_client_records(self) -> List[ClientRecord]:
        records: List[ClientRecord] = []
        offset: Optional[str] = None

        for _ in range(self.max_pages):
            params = [
                ("pageSize", str(PAGE_SIZE)),
                ("fields[]", self.name_field),
                ("fields[]", self.status_field),
                ("fields[]", self.target_zips_field),
            ]
            if offset:
                params.append(("offset", offset))

            payload = self._request("GET", self._table_url, params=params)
            for row in payload.get("records") or []:
                record = self._to_record(row)
                if record:
                    records.append(record)

            offset = payload.get("offset")
            if not offset:
                return records

        raise UpstreamError(
            f"Airtable pagination exceeded {self.max_pages} pages.",
            details={"reason": "fetch_failed"},
        )

    def _to_record(self, row: dict) -> Optional[ClientRecord]:
        record_id = row.get("id")
        if not isinstance(record_id, str) or not record_id:
            return None
        fields = row.get("fields") or {}
        business_name = fields.get(self.name_field)
        business_name = business_name.strip() if isinstance(business_name, str) else ""
        status = fields.get(self.status_field)
        status = status.strip() if isinstance(status, str) else ""

        return ClientRecord(
            record_id=record_id,
            business_name=business_name,
            status=status,
            target_zip_codes=parse_record_zip_codes(fields.get(self.target_zips_field)),
            portal_key=self.portal_key_by_name.get(normalize_business_name(business_name)),
        )

    def find_matching_records(
        self,
        records: List[ClientRecord],
        portal_key: str,
        organization_name: Optional[str] = None,
    ) -> List[ClientRecord]:
        """Rows that belong to the given portal (portal-key map first, then org name)."""
        candidate_names = set(self.names_by_portal_key.get(portal_key, set()))
        normalized_org_name = normalize_business_name(organization_name)
        if normalized_org_name:
            candidate_names.add(normalized_org_name)

        return [
            record
            for record in records
            if record.portal_key == portal_key
            or (record.business_name_normalized and record.business_name_normalized in candidate_names)
        ]

    # ============================================================
    # 📤 Write
    # ============================================================
    def update_target_zip_codes(self, record_id: str, zip_codes: List[str]) -> None:
        body = {"fields": {self.target_zips_field: ", ".join(zip_codes)}, "typecast": True}
        self._request("PATCH", f"{self._table_url}/{record_id}", json=body)

    def sync_target_zip_codes(
        self,
        portal_key: str,
        organization_name: Optional[str],
        zip_codes: List[str],
    ) -> RegistrySyncResult:
        """Write the approved territory into the single registry row for this portal."""
        if not self.configured:
            return RegistrySyncResult(False, "not_configured", "Airtable client registry is not configured.")

        try:
            records = self.list_client_records()
        except UpstreamError as e:
            return RegistrySyncResult(False, "fetch_failed", e.message)

        matches = self.find_matching_records(records, portal_key, organization_name)
        if not matches:
            return RegistrySyncResult(False, "client_not_found", f"No Airtable client row matches portal {portal_key}.")
        if len(matches) > 1:
            return RegistrySyncResult(False, "client_ambiguous", f"{len(matches)} Airtable client rows match portal {portal_key}.")

        record = matches[0]
        try:
            self.update_target_zip_codes(record.record_id, zip_codes)
        except UpstreamError as e:
            return RegistrySyncResult(False, "update_failed", e.message, record.record_id)

        logger.info(f"✅ Synced {len(zip_codes)} ZIP codes to Airtable record {record.record_id} ({portal_key})")
        return RegistrySyncResult(True, record_id=record.record_id)

    # ============================================================
    # 🌐 Transport
    # ============================================================
    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self.http.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Airtable request timed out: {e}", status_code=503) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Airtable request failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamError(f"Airtable responded {response.status_code}: {response.text[:300]}")

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Airtable returned a non-JSON body.") from e


def get_crm_registry(request: Request) -> AirtableRegistry:
    return request.app.state.crm_registry
