"""
test_zip_codes.py — ZIP normalization, bounds and diffing.
"""

import pytest

from core.exceptions import InputValidationError
from core.zip_codes import diff_zip_codes, normalize_zip_codes, require_zip_codes, zip_count_error


class TestNormalize:
    def test_string_input_splits_on_commas_and_newlines(self):
        result = normalize_zip_codes("75001, 75002\n75003,,\n 75004 ")
        assert result.zip_codes == ["75001", "75002", "75003", "75004"]
        assert result.invalid_zip_codes == []

    def test_list_input_is_deduplicated_in_first_seen_order(self):
        result = normalize_zip_codes(["75002", " 75001", "75002", "75001"])
        assert result.zip_codes == ["75002", "75001"]

    def test_invalid_tokens_are_reported_not_dropped(self):
        result = normalize_zip_codes(["7500", "75001", "abcde", "750011", "7500"])
        assert result.zip_codes == ["75001"]
        assert result.invalid_zip_codes == ["7500", "abcde", "750011"]

    def test_numbers_are_stringified_and_none_or_bool_skipped(self):
        result = normalize_zip_codes([75001, None, True, "75002"])
        assert result.zip_codes == ["75001", "75002"]
        assert result.invalid_zip_codes == []

    @pytest.mark.parametrize("value", [None, 75001, {"zip": "75001"}])
    def test_unsupported_types_yield_nothing(self, value):
        assert normalize_zip_codes(value) == ([], [])


class TestRequire:
    def test_duplicates_count_once_against_the_minimum(self):
        with pytest.raises(InputValidationError) as exc:
            require_zip_codes(["75001", "75002", "75003", "75004", "75004"])
        assert exc.value.message == "Add at least 5 target ZIP codes."

    def test_invalid_code_is_named_in_details(self):
        with pytest.raises(InputValidationError) as exc:
            require_zip_codes(["75001", "75002", "75003", "75004", "7500"])
        assert exc.value.details["invalidZipCodes"] == ["7500"]
        assert exc.value.status_code == 400

    def test_maximum_is_enforced(self):
        codes = [f"{n:05d}" for n in range(201)]
        with pytest.raises(InputValidationError) as exc:
            require_zip_codes(codes)
        assert exc.value.message == "Maximum 200 target ZIP codes allowed."

    def test_valid_set_passes_through(self):
        assert require_zip_codes("75001,75002,75003,75004,75005") == ["75001", "75002", "75003", "75004", "75005"]

    def test_count_error_boundaries(self):
        assert zip_count_error(5) is None
        assert zip_count_error(200) is None
        assert zip_count_error(1, minimum=1, maximum=None) is None


class TestDiff:
    def test_added_and_removed_follow_input_order(self):
        added, removed = diff_zip_codes(["A", "B", "C"], ["C", "D", "E", "A"])
        assert added == ["D", "E"]
        assert removed == ["B"]

    def test_identical_sets_in_any_order_have_no_diff(self):
        assert diff_zip_codes(["75001", "75002"], ["75002", "75001"]) == ([], [])
