"""Canonical document type vocabulary shared by every tier."""

from enum import Enum
from typing import FrozenSet


class DocType(str, Enum):
    """Canonical document types emitted by the spine."""

    BUSINESS_TAX_RETURN = "BUSINESS_TAX_RETURN"
    PERSONAL_TAX_RETURN = "PERSONAL_TAX_RETURN"
    K1 = "K1"
    W2 = "W2"
    FORM_1099 = "FORM_1099"
    TAX_TRANSCRIPT_REQUEST = "TAX_TRANSCRIPT_REQUEST"
    TAX_AUTH = "TAX_AUTH"
    SBA_APPLICATION = "SBA_APPLICATION"
    PERSONAL_FINANCIAL_STATEMENT = "PERSONAL_FINANCIAL_STATEMENT"
    FINANCIAL_STATEMENT = "FINANCIAL_STATEMENT"
    INCOME_STATEMENT = "INCOME_STATEMENT"
    BALANCE_SHEET = "BALANCE_SHEET"
    BANK_STATEMENT = "BANK_STATEMENT"
    RENT_ROLL = "RENT_ROLL"
    DEBT_SCHEDULE = "DEBT_SCHEDULE"
    AR_AGING = "AR_AGING"
    VOIDED_CHECK = "VOIDED_CHECK"
    INSURANCE = "INSURANCE"
    DRIVERS_LICENSE = "DRIVERS_LICENSE"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"
    T12 = "T12"


# Generic "needs human review" type. Deterministic tiers must never emit it.
SENTINEL_DOC_TYPE = DocType.T12

TAX_RETURN_FAMILY: FrozenSet[DocType] = frozenset({
    DocType.BUSINESS_TAX_RETURN,
    DocType.PERSONAL_TAX_RETURN,
    DocType.K1,
    DocType.W2,
    DocType.FORM_1099,
})

FINANCIAL_STATEMENT_FAMILY: FrozenSet[DocType] = frozenset({
    DocType.FINANCIAL_STATEMENT,
    DocType.INCOME_STATEMENT,
    DocType.BALANCE_SHEET,
})

PFS_FAMILY: FrozenSet[DocType] = frozenset({
    DocType.PERSONAL_FINANCIAL_STATEMENT,
})

CORE_FAMILY: FrozenSet[DocType] = TAX_RETURN_FAMILY | FINANCIAL_STATEMENT_FAMILY | PFS_FAMILY

# Tax returns that are unusable downstream without a tax year
YEAR_REQUIRED_TYPES: FrozenSet[DocType] = frozenset({
    DocType.BUSINESS_TAX_RETURN,
    DocType.PERSONAL_TAX_RETURN,
})


def parse_doc_type(value: object) -> DocType:
    """Coerce an arbitrary value into a DocType, falling back to UNKNOWN."""
    if isinstance(value, DocType):
        return value
    try:
        return DocType(str(value).strip().upper())
    except ValueError:
        return DocType.UNKNOWN
