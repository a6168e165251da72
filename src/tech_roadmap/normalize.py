"""Normalization of raw field values into the canonical roadmap schema.

Every function here is total (never raises) and idempotent, so values can
be normalized again after a round-trip through CSV or the snapshot cache
without drifting.
"""

import re
from collections.abc import Callable
from datetime import date

LIST_SEPARATOR_RE = re.compile(r"[;,|]")
_ACRONYM_RE = re.compile(r"^[A-Z0-9]+$")
_DIGIT_RE = re.compile(r"\d")

T_SHIRT_SIZES = {"xs": "XS", "s": "S", "m": "M", "l": "L"}


def _normalize_title_token(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return ""
    # Acronyms and codes such as "API" or "Q1" keep their casing
    if _ACRONYM_RE.match(trimmed) and (len(trimmed) <= 4 or _DIGIT_RE.search(trimmed)):
        return trimmed
    lower = trimmed.lower()
    first = lower[0].upper()
    if len(first) != 1:
        first = lower[0]
    return first + lower[1:]


def normalize_title_case(value: str) -> str:
    """Title-case each space- or hyphen-delimited token."""
    if not value:
        return ""
    words = []
    for word in value.split(" "):
        words.append("-".join(_normalize_title_token(part) for part in word.split("-")))
    return " ".join(words).strip()


def normalize_delimited_list(value: str, normalizer: Callable[[str], str]) -> str:
    """Split on ``;``, ``,`` or ``|``, normalize each entry and rejoin with ``"; "``."""
    if not value:
        return ""
    parts = [part.strip() for part in LIST_SEPARATOR_RE.split(value)]
    normalized = [normalizer(part) for part in parts if part]
    return "; ".join(entry for entry in normalized if entry)


def normalize_region_value(value: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    if trimmed.upper() in ("US", "USA"):
        return "US"
    return normalize_title_case(trimmed)


def normalize_region(value: str) -> str:
    """Normalize a delimited list of regions, e.g. ``"usa, canada"`` -> ``"US; Canada"``."""
    return normalize_delimited_list(value, normalize_region_value)


def normalize_stakeholders(value: str) -> str:
    return normalize_delimited_list(value, normalize_title_case)


def normalize_tags(value: str) -> str:
    return normalize_delimited_list(value, str.strip)


def normalize_t_shirt_size(value: str) -> str:
    """Map a size to XS/S/M/L, or ``""`` when it is not one of them."""
    return T_SHIRT_SIZES.get((value or "").strip().lower(), "")


def normalize_date(value: str) -> str:
    """Return the ``YYYY-MM-DD`` part of an ISO date or datetime, else ``""``."""
    candidate = (value or "").strip()[:10]
    try:
        return date.fromisoformat(candidate).isoformat()
    except ValueError:
        return ""


# Canonical fields holding categories or people's names, title-cased on import.
TITLE_CASE_FIELDS = {
    "submitterName",
    "submitterDepartment",
    "submitterPriority",
    "criticality",
    "disposition",
    "executiveSponsor",
    "pillar",
    "expenseType",
    "pointOfContact",
    "lead",
}


def normalize_field(name: str, value: str) -> str:
    """Apply the normalizer for a canonical (camelCase) field name."""
    if name in TITLE_CASE_FIELDS:
        return normalize_title_case(value)
    if name == "region":
        return normalize_region(value)
    if name == "impactedStakeholders":
        return normalize_stakeholders(value)
    if name == "tShirtSize":
        return normalize_t_shirt_size(value)
    if name == "tags":
        return normalize_tags(value)
    return value
