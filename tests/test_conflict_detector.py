"""
test_conflict_detector.py — Territory conflicts against the Airtable client registry.

Business Rules:
- Only active registry rows can conflict; the requesting portal's own row never does
- "checked=False" (not configured / fetch failed) is never reported as "no conflicts"
- Pagination is followed until Airtable stops returning an offset
"""

import httpx
import pytest

from core.exceptions import UpstreamError
from services.conflict_detector import FETCH_FAILED, NOT_CONFIGURED, ConflictDetector
from services.crm_registry import AirtableRegistry, normalize_business_name, parse_record_zip_codes


# ── Registry parsing helpers ──


class TestRegistryHelpers:
    def test_business_names_normalize_punctuation_and_case(self):
        assert normalize_business_name("  Acme  Roofing, LLC. ") == "acme roofing llc"
        assert normalize_business_name(None) == ""

    def test_record_zip_codes_accept_mixed_separators(self):
        assert parse_record_zip_codes("75001; 75002,75003\n75001 bad") == ["75001", "75002", "75003"]
        assert parse_record_zip_codes([75004, "75005"]) == ["75004", "75005"]
        assert parse_record_zip_codes(None) == []


# ── Detector ──


class TestConflictDetector:
    def test_active_other_client_conflicts(self, registry):
        result = ConflictDetector(registry).check("acme", ["75004", "75003", "75009"], "Acme Roofing LLC")
        assert result.checked is True
        assert result.has_conflict is True
        assert result.conflicting_zip_codes == ["75003", "75004"]
        assert [c["zipCode"] for c in result.preview()] == ["75003", "75004"]
        assert result.preview()[0]["businessName"] == "Beta Builders"

    def test_inactive_rows_do_not_conflict(self, registry):
        result = ConflictDetector(registry).check("acme", ["75002"], "Acme Roofing LLC")
        assert result.checked is True
        assert result.has_conflict is False

    def test_own_row_is_excluded(self, registry):
        result = ConflictDetector(registry).check("acme", ["75001"], "Acme Roofing LLC")
        assert result.has_conflict is False

    def test_own_row_is_matched_by_name_without_a_map_entry(self, registry, airtable):
        airtable.add("recDelta", "Delta Decks", "4. Launched", "75020")
        result = ConflictDetector(registry).check("delta", ["75020"], "Delta Decks")
        assert result.has_conflict is False

    def test_another_portal_sees_mapped_row_as_conflict(self, registry):
        result = ConflictDetector(registry).check("someone-else", ["75001"], "Other Co")
        assert result.conflicting_zip_codes == ["75001"]
        assert result.preview()[0]["otherPortalKey"] == "acme"

    def test_empty_request_is_trivially_checked(self, registry, airtable):
        result = ConflictDetector(registry).check("acme", [], "Acme Roofing LLC")
        assert result.checked is True
        assert airtable.list_calls == 0

    def test_unconfigured_registry_is_not_checked(self):
        registry = AirtableRegistry(httpx.Client(), api_key=None, base_id=None, table_id=None)
        result = ConflictDetector(registry).check("acme", ["75003"])
        assert result.checked is False
        assert result.reason == NOT_CONFIGURED

    def test_fetch_failure_is_not_checked(self, registry, airtable):
        airtable.fail_list = True
        result = ConflictDetector(registry).check("acme", ["75003"], "Acme Roofing LLC")
        assert result.checked is False
        assert result.reason == FETCH_FAILED
        assert result.has_conflict is False

    def test_pagination_is_followed(self, registry, airtable):
        airtable.page_size = 1
        airtable.add("recEcho", "Echo Exteriors", "3. Ready to Launch", "75099")
        result = ConflictDetector(registry).check("acme", ["75099"], "Acme Roofing LLC")
        assert result.conflicting_zip_codes == ["75099"]
        assert airtable.list_calls == 4

    def test_repeated_checks_give_the_same_answer(self, registry):
        detector = ConflictDetector(registry)
        first = detector.check("acme", ["75003", "75004"], "Acme Roofing LLC")
        second = detector.check("acme", ["75003", "75004"], "Acme Roofing LLC")
        assert first.preview() == second.preview()


# ── Registry write-back ──


class TestRegistrySync:
    def test_sync_patches_the_single_matching_row(self, registry, airtable):
        result = registry.sync_target_zip_codes("acme", "Acme Roofing LLC", ["75001", "75002"])
        assert result.synced is True
        assert result.record_id == "recAcme"
        record_id, payload = airtable.patches[0]
        assert record_id == "recAcme"
        assert payload == {"fields": {"Target ZIP Codes": "75001, 75002"}, "typecast": True}

    def test_sync_without_a_matching_row(self, registry):
        result = registry.sync_target_zip_codes("nobody", "Nobody Inc", ["75001"])
        assert result.synced is False
        assert result.reason == "client_not_found"

    def test_sync_with_two_matching_rows_is_ambiguous(self, registry, airtable):
        airtable.add("recAcme2", "ACME Roofing, LLC", "1. Prospect", "")
        result = registry.sync_target_zip_codes("acme", "Acme Roofing LLC", ["75001"])
        assert result.reason == "client_ambiguous"
        assert airtable.patches == []

    def test_patch_failure_is_reported(self, registry, airtable):
        airtable.fail_patch = True
        result = registry.sync_target_zip_codes("acme", "Acme Roofing LLC", ["75001"])
        assert result.synced is False
        assert result.reason == "update_failed"
        assert result.record_id == "recAcme"

    def test_page_cap_raises_upstream_error(self, airtable, settings):
        airtable.page_size = 1
        client = httpx.Client(transport=httpx.MockTransport(airtable.handler))
        registry = AirtableRegistry.from_settings(settings, client)
        registry.max_pages = 2
        with pytest.raises(UpstreamError, match="pagination"):
            registry.list_client_records()

    def test_timeout_is_upstream_503(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        registry = AirtableRegistry.from_settings(settings, httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(UpstreamError) as exc:
            registry.list_client_records()
        assert exc.value.status_code == 503
