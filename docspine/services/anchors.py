"""Tier 1: deterministic anchor matcher.

Anchors are exact form headers (IRS, SBA, ACORD) plus three structural
anchors that need corroborating line items before they fire. Rules are
evaluated in table order and the first hit wins, so more specific anchors
(Schedule K-1, Form 1040-SR) sit above the forms they mention.

Every anchor carries a fixed confidence in [0.90, 0.99] and never resolves
to the sentinel type. ``validate_anchor_rules`` checks both.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Tuple, Union

from docspine.exceptions import ConfigurationInvariantError
from docspine.models.classification import EvidenceItem, NoMatch, Tier1Match
from docspine.models.doc_types import DocType, SENTINEL_DOC_TYPE
from docspine.services.text_signals import (
    extract_form_numbers,
    extract_tax_year,
    first_two_pages,
)


TIER1_MIN_CONFIDENCE = 0.90
TIER1_MAX_CONFIDENCE = 0.99

_MAX_SIGNAL_CHARS = 80


@dataclass(frozen=True)
class AnchorRule:
    """A high-confidence pattern that uniquely identifies a document type."""

    anchor_id: str
    doc_type: DocType
    patterns: Tuple[Pattern[str], ...]
    confidence: float
    entity_type: Optional[str] = None
    secondary_patterns: Tuple[Pattern[str], ...] = field(default_factory=tuple)
    min_secondary: int = 0


def _rx(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# ---------------------------------------------------------------------------
# Form anchors
# ---------------------------------------------------------------------------

_FORM_ANCHORS = (
    # K-1 headers mention the parent form, so they must be checked first
    AnchorRule("K1_SCHEDULE_HEADER", DocType.K1, _rx(r"Schedule\s+K-?1\b"), 0.96),
    AnchorRule(
        "IRS_1040SR_FORM_HEADER", DocType.PERSONAL_TAX_RETURN,
        _rx(r"Form\s+1040-?SR\b"), 0.96, entity_type="personal",
    ),
    AnchorRule(
        "IRS_1040_FORM_HEADER", DocType.PERSONAL_TAX_RETURN,
        _rx(r"Form\s+1040\b"), 0.97, entity_type="personal",
    ),
    AnchorRule(
        "IRS_1040_TITLE", DocType.PERSONAL_TAX_RETURN,
        _rx(r"U\.?\s?S\.?\s+Individual\s+Income\s+Tax\s+Return"), 0.94, entity_type="personal",
    ),
    AnchorRule(
        "IRS_1120S_FORM_HEADER", DocType.BUSINESS_TAX_RETURN,
        _rx(r"Form\s+1120-?S\b"), 0.97, entity_type="business",
    ),
    AnchorRule(
        "IRS_1120_FORM_HEADER", DocType.BUSINESS_TAX_RETURN,
        _rx(r"Form\s+1120\b"), 0.97, entity_type="business",
    ),
    AnchorRule(
        "IRS_1065_FORM_HEADER", DocType.BUSINESS_TAX_RETURN,
        _rx(r"Form\s+1065\b"), 0.96, entity_type="business",
    ),
    AnchorRule(
        "IRS_W2_FORM_HEADER", DocType.W2,
        _rx(r"Form\s+W-?2\b", r"\bWage\s+and\s+Tax\s+Statement\b"), 0.95, entity_type="personal",
    ),
    AnchorRule("IRS_1099_FORM_HEADER", DocType.FORM_1099, _rx(r"Form\s+1099\b"), 0.95),
    AnchorRule(
        "IRS_4506_FORM_HEADER", DocType.TAX_TRANSCRIPT_REQUEST,
        _rx(r"Form\s+4506-?[CT]\b"), 0.95,
    ),
    AnchorRule("IRS_8821_FORM_HEADER", DocType.TAX_AUTH, _rx(r"Form\s+8821\b"), 0.95),
    AnchorRule("IRS_2848_FORM_HEADER", DocType.TAX_AUTH, _rx(r"Form\s+2848\b"), 0.95),
    AnchorRule(
        "SBA_1919_FORM_HEADER", DocType.SBA_APPLICATION,
        _rx(r"SBA\s+Form\s+1919\b"), 0.95, entity_type="business",
    ),
    AnchorRule(
        "SBA_413_FORM_HEADER", DocType.PERSONAL_FINANCIAL_STATEMENT,
        _rx(r"SBA\s+Form\s+413\b"), 0.95, entity_type="personal",
    ),
    AnchorRule(
        "ACORD_INSURANCE_CERT", DocType.INSURANCE,
        _rx(r"\bACORD\s+(?:25|27|28)\b"), 0.93,
    ),
)

# ---------------------------------------------------------------------------
# Structural anchors (title plus corroborating line items)
# ---------------------------------------------------------------------------

_STRUCTURAL_ANCHORS = (
    AnchorRule(
        "BALANCE_SHEET_STRUCTURAL", DocType.BALANCE_SHEET,
        _rx(r"\bbalance\s+sheet\b", r"\bstatement\s+of\s+financial\s+position\b"),
        0.92,
        secondary_patterns=_rx(r"\btotal\s+assets\b", r"\btotal\s+liabilities\b"),
        min_secondary=2,
    ),
    AnchorRule(
        "INCOME_STMT_STRUCTURAL", DocType.INCOME_STATEMENT,
        _rx(
            r"\bincome\s+statement\b",
            r"\bprofit\s+(?:and|&)\s+loss\b",
            r"\bP\s*&\s*L\b",
            r"\bstatement\s+of\s+operations\b",
        ),
        0.91,
        secondary_patterns=_rx(
            r"\b(?:revenues?|sales|gross\s+receipts)\b",
            r"\bexpenses?\b",
            r"\bnet\s+(?:income|profit|loss)\b",
        ),
        min_secondary=2,
    ),
    AnchorRule(
        "BANK_STMT_STRUCTURAL", DocType.BANK_STATEMENT,
        _rx(r"\b(?:beginning|opening|starting)\s+balance\b"),
        0.90,
        secondary_patterns=_rx(r"\b(?:ending|closing)\s+balance\b"),
        min_secondary=1,
    ),
)

ANCHOR_RULES: Tuple[AnchorRule, ...] = _FORM_ANCHORS + _STRUCTURAL_ANCHORS


def validate_anchor_rules(rules: Iterable[AnchorRule] = ANCHOR_RULES) -> None:
    """Raise ConfigurationInvariantError if any anchor breaks a Tier 1 invariant."""
    violations: List[str] = []
    seen = set()
    for rule in rules:
        if not TIER1_MIN_CONFIDENCE <= rule.confidence <= TIER1_MAX_CONFIDENCE:
            violations.append(
                f"{rule.anchor_id}: confidence {rule.confidence} outside "
                f"[{TIER1_MIN_CONFIDENCE}, {TIER1_MAX_CONFIDENCE}]"
            )
        if rule.doc_type in (SENTINEL_DOC_TYPE, DocType.UNKNOWN):
            violations.append(f"{rule.anchor_id}: resolves to {rule.doc_type.value}")
        if not rule.patterns:
            violations.append(f"{rule.anchor_id}: no patterns")
        if rule.min_secondary > len(rule.secondary_patterns):
            violations.append(f"{rule.anchor_id}: min_secondary exceeds secondary patterns")
        if rule.anchor_id in seen:
            violations.append(f"{rule.anchor_id}: duplicate anchor id")
        seen.add(rule.anchor_id)

    if violations:
        raise ConfigurationInvariantError(
            "Tier 1 anchor table violates invariants",
            details={"violations": violations},
        )


def _signal(match: "re.Match[str]") -> str:
    return " ".join(match.group(0).split())[:_MAX_SIGNAL_CHARS]


def _evaluate(rule: AnchorRule, text: str) -> Optional[List[EvidenceItem]]:
    """Return evidence if the rule fires on text, else None."""
    primary = [m for m in (p.search(text) for p in rule.patterns) if m]
    if not primary:
        return None

    secondary = [m for m in (p.search(text) for p in rule.secondary_patterns) if m]
    if len(secondary) < rule.min_secondary:
        return None

    return [
        EvidenceItem(
            source="tier1",
            signal=_signal(m),
            weight=rule.confidence,
            anchor_id=rule.anchor_id,
        )
        for m in primary + secondary
    ]


def match_tier1(text: Optional[str]) -> Union[Tier1Match, NoMatch]:
    """Match text against the anchor table.

    Args:
        text: Raw OCR text, any length, may be empty.

    Returns:
        Tier1Match for the first anchor that fires, otherwise NoMatch.
    """
    if not text or not text.strip():
        return NoMatch()

    head = first_two_pages(text)
    for rule in ANCHOR_RULES:
        evidence = _evaluate(rule, head)
        if evidence is None:
            continue
        return Tier1Match(
            doc_type=rule.doc_type,
            confidence=rule.confidence,
            evidence=evidence,
            anchor_id=rule.anchor_id,
            entity_type=rule.entity_type,
            tax_year=extract_tax_year(text),
            form_numbers=extract_form_numbers(text),
        )

    return NoMatch()
