"""Cheap text signals shared by the deterministic tiers and calibration.

Everything here is a pure function of the OCR text. Patterns are compiled
once at import time.
"""

import re
from typing import Dict, FrozenSet, List, Optional

from docspine.models.doc_types import DocType


# Text beyond the first two pages is rarely needed to recognise a layout
TWO_PAGE_CHARS = 6000

_EXPLICIT_YEAR = re.compile(
    r'(?:tax\s+year|for\s+(?:the\s+)?year(?:\s+ended)?)\s*:?\s*(20[12]\d)', re.IGNORECASE
)
_CALENDAR_YEAR = re.compile(r'(?:december\s+31|12/31)[,\s]+(\d{4})', re.IGNORECASE)
_ANY_YEAR = re.compile(r'\b(20[12]\d)\b')
_DETECTED_YEAR = re.compile(r'\b((?:19[9]\d)|(?:20[0-4]\d))\b')

_EIN = re.compile(r'\b\d{2}-\d{7}\b')
_SSN = re.compile(r'\b(?:\d{3}|[Xx*]{3})-(?:\d{2}|[Xx*]{2})-\d{4}\b')

_FORM_PATTERNS = [
    (re.compile(r'Form\s+1040', re.IGNORECASE), "1040"),
    (re.compile(r'Form\s+1120-?S\b', re.IGNORECASE), "1120S"),
    (re.compile(r'Form\s+1120\b', re.IGNORECASE), "1120"),
    (re.compile(r'Form\s+1065', re.IGNORECASE), "1065"),
    (re.compile(r'Schedule\s+K-?1', re.IGNORECASE), "K-1"),
    (re.compile(r'Schedule\s+C\b', re.IGNORECASE), "Schedule C"),
    (re.compile(r'Schedule\s+E\b', re.IGNORECASE), "Schedule E"),
    (re.compile(r'Form\s+W-?2', re.IGNORECASE), "W-2"),
    (re.compile(r'Form\s+1099', re.IGNORECASE), "1099"),
    (re.compile(r'Form\s+4506-?[CT]\b', re.IGNORECASE), "4506"),
    (re.compile(r'Form\s+8821', re.IGNORECASE), "8821"),
    (re.compile(r'Form\s+2848', re.IGNORECASE), "2848"),
    (re.compile(r'SBA\s+Form\s+1919', re.IGNORECASE), "1919"),
    (re.compile(r'SBA\s+Form\s+413', re.IGNORECASE), "413"),
]

# Which doc types a detected form number corroborates
FORM_DOC_TYPES: Dict[str, FrozenSet[DocType]] = {
    "1040": frozenset({DocType.PERSONAL_TAX_RETURN}),
    "Schedule C": frozenset({DocType.PERSONAL_TAX_RETURN}),
    "Schedule E": frozenset({DocType.PERSONAL_TAX_RETURN}),
    "1120S": frozenset({DocType.BUSINESS_TAX_RETURN}),
    "1120": frozenset({DocType.BUSINESS_TAX_RETURN}),
    "1065": frozenset({DocType.BUSINESS_TAX_RETURN}),
    "K-1": frozenset({DocType.K1}),
    "W-2": frozenset({DocType.W2}),
    "1099": frozenset({DocType.FORM_1099}),
    "4506": frozenset({DocType.TAX_TRANSCRIPT_REQUEST}),
    "8821": frozenset({DocType.TAX_AUTH}),
    "2848": frozenset({DocType.TAX_AUTH}),
    "1919": frozenset({DocType.SBA_APPLICATION}),
    "413": frozenset({DocType.PERSONAL_FINANCIAL_STATEMENT}),
}


def first_two_pages(text: str) -> str:
    """Return the first two form-feed pages, or the first TWO_PAGE_CHARS characters."""
    if not text:
        return ""
    pages = text.split("\f")
    if len(pages) > 1:
        return "\f".join(pages[:2])
    return text[:TWO_PAGE_CHARS]


def extract_tax_year(text: str) -> Optional[int]:
    """Find the tax year a document covers.

    Tries an explicit "tax year" / "for the year ended" phrase, then a
    December 31 calendar year end, then the latest 20xx year near the top.
    """
    if not text:
        return None
    head = text[:2000]

    explicit = _EXPLICIT_YEAR.search(head)
    if explicit:
        return int(explicit.group(1))

    calendar = _CALENDAR_YEAR.search(head)
    if calendar:
        return int(calendar.group(1))

    years = [int(y) for y in _ANY_YEAR.findall(head[:500])]
    if years:
        return max(years)

    return None


def extract_form_numbers(text: str) -> List[str]:
    """List IRS/SBA form numbers mentioned in the first 3000 characters."""
    if not text:
        return []
    head = text[:3000]
    return [name for pattern, name in _FORM_PATTERNS if pattern.search(head)]


def detect_years(text: str) -> List[int]:
    """Distinct plausible years (1990-2049) in the first two pages, ascending."""
    if not text:
        return []
    return sorted({int(y) for y in _DETECTED_YEAR.findall(first_two_pages(text))})


def form_supports_doc_type(form_number: str, doc_type: DocType) -> bool:
    return doc_type in FORM_DOC_TYPES.get(form_number, frozenset())


def has_ein(text: str) -> bool:
    return bool(text) and _EIN.search(text) is not None


def has_ssn(text: str) -> bool:
    return bool(text) and _SSN.search(text) is not None
