# core/zip_codes.py
import re
from typing import Any, Iterable, List, NamedTuple, Optional

from core.exceptions import InputValidationError

ZIP_CODE_PATTERN = re.compile(r"[0-9]{5}")
_STRING_DELIMITERS = re.compile(r"[,\n]")

MIN_TARGET_ZIP_CODES = 5
MAX_TARGET_ZIP_CODES = 200


class ZipNormalization(NamedTuple):
    zip_codes: List[str]
    invalid_zip_codes: List[str]


def is_valid_zip_code(value: str) -> bool:
    return bool(ZIP_CODE_PATTERN.fullmatch(value))


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _tokens(value: Any) -> List[str]:
    if isinstance(value, str):
        return [token.strip() for token in _STRING_DELIMITERS.split(value)]

    if isinstance(value, (list, tuple)):
        tokens = []
        for entry in value:
            if entry is None or isinstance(entry, bool):
                continue
            tokens.append(entry.strip() if isinstance(entry, str) else str(entry).strip())
        return tokens

    return []


def normalize_zip_codes(value: Any) -> ZipNormalization:
    """
    Accepts a list of strings or a comma/newline separated string.

    Returns the valid 5-digit codes and the rejected tokens, both deduplicated
    in first-seen order. Anything that is neither a list nor a string yields
    two empty lists.
    """
    tokens = [token for token in _tokens(value) if token]
    valid = [token for token in tokens if is_valid_zip_code(token)]
    invalid = [token for token in tokens if not is_valid_zip_code(token)]
    return ZipNormalization(_unique(valid), _unique(invalid))


def zip_count_error(
    count: int,
    minimum: int = MIN_TARGET_ZIP_CODES,
    maximum: Optional[int] = MAX_TARGET_ZIP_CODES,
) -> Optional[str]:
    if count < minimum:
        return f"Add at least {minimum} target ZIP codes."
    if maximum is not None and count > maximum:
        return f"Maximum {maximum} target ZIP codes allowed."
    return None


def require_zip_codes(
    value: Any,
    minimum: int = MIN_TARGET_ZIP_CODES,
    maximum: Optional[int] = MAX_TARGET_ZIP_CODES,
    field: str = "requestedZipCodes",
) -> List[str]:
    """Normalize and enforce validity plus count bounds, or raise InputValidationError."""
    normalized = normalize_zip_codes(value)

    if normalized.invalid_zip_codes:
        raise InputValidationError(
            f"ZIP codes must be 5 digits: {', '.join(normalized.invalid_zip_codes)}",
            details={"field": field, "invalidZipCodes": normalized.invalid_zip_codes},
        )

    count_error = zip_count_error(len(normalized.zip_codes), minimum, maximum)
    if count_error:
        raise InputValidationError(count_error, details={"field": field})

    return normalized.zip_codes


def diff_zip_codes(current: Iterable[str], requested: Iterable[str]) -> tuple:
    """(added, removed) going from current to requested; order follows each input."""
    current_list = _unique(current)
    requested_list = _unique(requested)
    current_set = set(current_list)
    requested_set = set(requested_list)
    added = [z for z in requested_list if z not in current_set]
    removed = [z for z in current_list if z not in requested_set]
    return added, removed
