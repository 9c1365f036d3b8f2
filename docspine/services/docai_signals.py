"""DocAI cross-validation, run between Tier 1 and Tier 2.

When an upstream DocAI processor already labelled the document with enough
confidence, its label is mapped onto the canonical vocabulary and accepted,
unless a Tier 1 anchor names a different type. Text evidence from an anchor
always beats the processor label.

DOCAI_LABEL_MAP never maps to the sentinel type: operating, income and
financial statement labels all resolve to INCOME_STATEMENT.
"""

import logging
import re
from typing import Dict, Mapping, Optional, Union

from docspine.exceptions import ConfigurationInvariantError
from docspine.models.classification import DocAIMatch, EvidenceItem, NoMatch, Tier1Match
from docspine.models.doc_types import DocType, SENTINEL_DOC_TYPE
from docspine.models.gatekeeper import DocAISignals
from docspine.services.text_signals import extract_form_numbers, extract_tax_year

logger = logging.getLogger(__name__)

DOCAI_MIN_CONFIDENCE = 0.75

DOCAI_LABEL_MAP: Dict[str, DocType] = {
    "tax_return_1040": DocType.PERSONAL_TAX_RETURN,
    "tax_return_1120": DocType.BUSINESS_TAX_RETURN,
    "tax_return_1120s": DocType.BUSINESS_TAX_RETURN,
    "tax_return_1065": DocType.BUSINESS_TAX_RETURN,
    "1040": DocType.PERSONAL_TAX_RETURN,
    "1120": DocType.BUSINESS_TAX_RETURN,
    "1120s": DocType.BUSINESS_TAX_RETURN,
    "1065": DocType.BUSINESS_TAX_RETURN,
    "personal_financial_statement": DocType.PERSONAL_FINANCIAL_STATEMENT,
    "rent_roll": DocType.RENT_ROLL,
    "operating_statement": DocType.INCOME_STATEMENT,
    "income_statement": DocType.INCOME_STATEMENT,
    "financial_statement": DocType.INCOME_STATEMENT,
    "balance_sheet": DocType.BALANCE_SHEET,
    "bank_statement": DocType.BANK_STATEMENT,
    "insurance_certificate": DocType.INSURANCE,
    "k1": DocType.K1,
    "schedule_k1": DocType.K1,
    "w2": DocType.W2,
    "1099": DocType.FORM_1099,
}

_SEPARATORS = re.compile(r'[\s-]+')


def validate_docai_label_map(label_map: Mapping[str, DocType] = DOCAI_LABEL_MAP) -> None:
    """Raise ConfigurationInvariantError if a label maps to the sentinel or UNKNOWN."""
    violations = [
        f"{label}: resolves to {doc_type.value}"
        for label, doc_type in label_map.items()
        if doc_type in (SENTINEL_DOC_TYPE, DocType.UNKNOWN)
    ]
    if violations:
        raise ConfigurationInvariantError(
            "DocAI label map violates invariants",
            details={"violations": violations},
        )


def map_docai_label(label: Optional[str]) -> Optional[DocType]:
    """Map a DocAI label such as "Tax Return 1120" to a DocType, or None if unmapped."""
    if not label:
        return None
    return DOCAI_LABEL_MAP.get(_SEPARATORS.sub("_", label.strip().lower()))


def cross_validate(
    tier1: Union[Tier1Match, NoMatch],
    signals: Optional[DocAISignals],
    text: str,
) -> Optional[DocAIMatch]:
    """Return the DocAI match to accept, or None to carry on with Tier 1 / Tier 2.

    Args:
        tier1: Result of the anchor matcher on the same text
        signals: Upstream DocAI label, if the document went through a processor
        text: OCR text, used for tax year and form numbers when Tier 1 did not match
    """
    if signals is None or signals.confidence is None:
        return None
    if signals.confidence < DOCAI_MIN_CONFIDENCE:
        return None

    doc_type = map_docai_label(signals.label)
    if doc_type is None:
        return None

    if tier1.kind == "tier1" and tier1.doc_type is not doc_type:
        logger.info(
            f"Tier 1 anchor {tier1.anchor_id} ({tier1.doc_type.value}) overrides "
            f"DocAI label {signals.label!r} ({doc_type.value})"
        )
        return None

    anchored = tier1.kind == "tier1"
    return DocAIMatch(
        doc_type=doc_type,
        confidence=signals.confidence,
        evidence=[EvidenceItem(
            source="tier1",
            signal=f"docai_signal:{signals.label}",
            weight=signals.confidence,
            anchor_id=f"docai:{signals.processor or 'unknown'}",
        )],
        label=signals.label,
        processor=signals.processor,
        entity_type=tier1.entity_type if anchored else None,
        tax_year=tier1.tax_year if anchored and tier1.tax_year else extract_tax_year(text),
        form_numbers=list(tier1.form_numbers) if anchored else extract_form_numbers(text),
    )
