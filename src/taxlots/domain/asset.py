from __future__ import annotations

import re
from enum import StrEnum

# Naive check for ISO 6166 shaped values; the check digit is not verified.
_ISIN_PATTERN = re.compile(r"^[A-Z]{2}[0-9A-Z]{10}$")


class AssetKind(StrEnum):
    SECURITY = "SECURITY"
    TOKEN = "TOKEN"
    CURRENCY = "CURRENCY"


def normalize_isin(value: str) -> str:
    """Return the ISIN without separators, raising ValueError if it is malformed.

    >>> normalize_isin("US-000402625-0")
    'US0004026250'
    """
    normalized = value.replace("-", "").strip()
    if not _ISIN_PATTERN.match(normalized):
        msg = f"Invalid ISO 6166 identifier: {value!r}"
        raise ValueError(msg)
    return normalized


def is_valid_isin(value: str) -> bool:
    try:
        normalize_isin(value)
    except ValueError:
        return False
    return True


def is_currency_code(value: str) -> bool:
    return len(value) == 3 and value.isalpha() and value.isupper()
