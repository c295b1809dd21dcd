"""
Deterministic formatting corrections for guide identifiers.

Each normalizer returns the corrected value, or None when the input cannot
be corrected without guessing.
"""

import re
from typing import Optional

from tiss_claims.core.validation import CARD_MAX_DIGITS, CARD_MIN_DIGITS, CID_PATTERN, CRM_PATTERN
from tiss_claims.utils.dates import parse_loose_date

_CID_LOOSE = re.compile(r"^([A-Z])(\d{2})\.?(\d{0,2})$")
_CRM_LOOSE = re.compile(r"^(?:CRM)?([A-Z]{2})?(\d{4,7})([A-Z]{2})?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
REGISTRY_DIGITS = 6


def normalize_cid(value: str) -> Optional[str]:
    """'j069' -> 'J06.9', 'J 06' -> 'J06'."""
    compact = re.sub(r"[\s\-_/]", "", value).upper()
    match = _CID_LOOSE.match(compact)
    if not match:
        return None
    letter, category, detail = match.groups()
    fixed = f"{letter}{category}.{detail}" if detail else f"{letter}{category}"
    return fixed if CID_PATTERN.match(fixed) else None


def normalize_card(value: str) -> Optional[str]:
    digits = re.sub(r"\D", "", value)
    if CARD_MIN_DIGITS <= len(digits) <= CARD_MAX_DIGITS:
        return digits
    return None


def normalize_crm(value: str) -> Optional[str]:
    """'123456-SP', 'CRM/SP 123456' and '123456 sp' all become '123456SP'."""
    compact = re.sub(r"[^A-Za-z0-9]", "", value).upper()
    match = _CRM_LOOSE.match(compact)
    if not match:
        return None
    prefix_uf, number, suffix_uf = match.groups()
    if bool(prefix_uf) == bool(suffix_uf):
        return None
    fixed = f"{number}{prefix_uf or suffix_uf}"
    return fixed if CRM_PATTERN.match(fixed) else None


def normalize_date(value: str) -> Optional[str]:
    parsed = parse_loose_date(value)
    return parsed.isoformat() if parsed else None


def normalize_registry(value: str) -> Optional[str]:
    digits = re.sub(r"\D", "", value)
    return digits if len(digits) == REGISTRY_DIGITS else None


def is_iso_date(value: str) -> bool:
    return bool(_ISO_DATE.match(value))


def is_valid_cid(value: str) -> bool:
    return bool(CID_PATTERN.match(value))


def is_valid_crm(value: str) -> bool:
    return bool(CRM_PATTERN.match(value))


def is_valid_card(value: str) -> bool:
    return value.isdigit() and CARD_MIN_DIGITS <= len(value) <= CARD_MAX_DIGITS


def is_valid_registry(value: str) -> bool:
    return value.isdigit() and len(value) == REGISTRY_DIGITS
