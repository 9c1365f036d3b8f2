"""Gatekeeper routing rules.

The route is a pure function of the gatekeeper's doc type, confidence and
tax year. It decides which extraction engine handles the document:

- GOOGLE_DOC_AI_CORE: tax returns, financial statements and PFS
- STANDARD: every other recognised document type
- NEEDS_REVIEW: unknown types, low confidence, tax returns without a year
"""

from typing import Literal, Optional, Union

from docspine.models.doc_types import (
    CORE_FAMILY,
    DocType,
    SENTINEL_DOC_TYPE,
    YEAR_REQUIRED_TYPES,
    parse_doc_type,
)


GatekeeperRoute = Literal["GOOGLE_DOC_AI_CORE", "STANDARD", "NEEDS_REVIEW"]

# Below this the gatekeeper has no usable opinion
REVIEW_FLOOR = 0.80

_STANDARD_TYPES = frozenset({
    DocType.TAX_TRANSCRIPT_REQUEST,
    DocType.TAX_AUTH,
    DocType.SBA_APPLICATION,
    DocType.BANK_STATEMENT,
    DocType.RENT_ROLL,
    DocType.DEBT_SCHEDULE,
    DocType.AR_AGING,
    DocType.VOIDED_CHECK,
    DocType.INSURANCE,
    DocType.DRIVERS_LICENSE,
    DocType.OTHER,
})

# Gatekeeper types that collapse onto a coarser slot type
_EFFECTIVE_DOC_TYPE = {
    DocType.W2: "PERSONAL_TAX_RETURN",
    DocType.K1: "PERSONAL_TAX_RETURN",
    DocType.FORM_1099: "PERSONAL_TAX_RETURN",
    DocType.DRIVERS_LICENSE: "ENTITY_DOCS",
    DocType.VOIDED_CHECK: "OTHER",
    DocType.OTHER: "OTHER",
    DocType.UNKNOWN: "OTHER",
}


def compute_gatekeeper_route(
    doc_type: Union[DocType, str],
    confidence: float,
    tax_year: Optional[int],
) -> GatekeeperRoute:
    """Derive the extraction route for a gatekeeper classification."""
    doc_type = parse_doc_type(doc_type)

    if doc_type in (DocType.UNKNOWN, SENTINEL_DOC_TYPE):
        return "NEEDS_REVIEW"
    if not confidence >= REVIEW_FLOOR:
        return "NEEDS_REVIEW"
    if doc_type in YEAR_REQUIRED_TYPES and tax_year is None:
        return "NEEDS_REVIEW"
    if doc_type in CORE_FAMILY:
        return "GOOGLE_DOC_AI_CORE"
    if doc_type in _STANDARD_TYPES:
        return "STANDARD"
    return "NEEDS_REVIEW"


def map_gatekeeper_doc_type_to_effective(doc_type: Union[DocType, str]) -> str:
    """Map a gatekeeper doc type onto the slot (effective) vocabulary."""
    parsed = parse_doc_type(doc_type)
    return _EFFECTIVE_DOC_TYPE.get(parsed, parsed.value)
