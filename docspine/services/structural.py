"""Tier 2: structural pattern matcher.

Layout heuristics without an LLM: tenant tables, asset/liability layouts,
year or month columns next to P&L line items, transaction logs. Every
pattern's confidence sits in [0.75, 0.90) so Tier 2 can never outrank a
Tier 1 anchor. Operating statements resolve to INCOME_STATEMENT, never to
the sentinel type.

Detection only looks at the first two pages of text.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from docspine.exceptions import ConfigurationInvariantError
from docspine.models.calibration import ConfusionCandidate
from docspine.models.classification import EvidenceItem, NoMatch, Tier2Match
from docspine.models.doc_types import DocType, SENTINEL_DOC_TYPE
from docspine.services.text_signals import (
    extract_form_numbers,
    extract_tax_year,
    first_two_pages,
)


TIER2_MIN_CONFIDENCE = 0.75
TIER2_MAX_CONFIDENCE = 0.90  # exclusive

# Confidence lost per rival pattern that points at a different doc type
AMBIGUITY_PENALTY = 0.06

Detector = Callable[[str], Optional[List[str]]]


@dataclass(frozen=True)
class StructuralPattern:
    """A layout heuristic mapped to a document type."""

    pattern_id: str
    doc_type: DocType
    confidence: float
    detect: Detector


def _rx(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


def _count_hits(patterns: Iterable["re.Pattern[str]"], text: str, label: str, signals: List[str]) -> int:
    hits = 0
    for p in patterns:
        if p.search(text):
            hits += 1
            signals.append(f"{label}: {p.pattern}")
    return hits


# ---------------------------------------------------------------------------
# Rent roll
# ---------------------------------------------------------------------------

_RENT_ROLL_COLUMNS = (
    _rx(r"\btenants?\b"),
    _rx(r"(?:sq\.?\s*ft|square\s*feet|sqft)"),
    _rx(r"\b(?:monthly\s+)?rent\b"),
    _rx(r"\b(?:lease\s+)?(?:expir\w*|end|term)\b"),
    _rx(r"\bunit\s*(?:#|no\b|num)"),
)
_DOLLAR_AMOUNT = re.compile(r"\$\s*[\d,]+")


def detect_rent_roll(text: str) -> Optional[List[str]]:
    signals: List[str] = []
    if _count_hits(_RENT_ROLL_COLUMNS, text, "Column header", signals) < 3:
        return None

    dollar_rows = sum(1 for line in text.split("\n") if _DOLLAR_AMOUNT.search(line))
    if dollar_rows < 3:
        return None
    signals.append(f"{dollar_rows} rows with dollar amounts")
    return signals


# ---------------------------------------------------------------------------
# Personal financial statement
# ---------------------------------------------------------------------------

_PFS_ASSETS = _rx(r"(?:personal\s+)?assets|cash\s+(?:on\s+)?hand|savings?\s+account")
_PFS_LIABILITIES = _rx(r"(?:personal\s+)?liabilities|(?:mortgage|loan)\s+(?:balance|payable)")
_PFS_NET_WORTH = _rx(r"net\s+worth")
_PFS_TITLE = _rx(r"personal\s+financial\s+statement")
_PFS_SBA_413 = _rx(r"SBA\s+(?:Form\s+)?413")
_PFS_PERSONAL = _rx(
    r"(?:contingent\s+liabilities|life\s+insurance|annual\s+(?:income|salary)"
    r"|other\s+personal\s+property|installment\s+account|notes\s+payable\s+to\s+banks"
    r"|guarantor|statement\s+of\s+personal|spouse|joint\s+(?:assets|statement)"
    r"|social\s+security|date\s+of\s+birth|\bDOB\b|(?:home|primary)\s+(?:address|residence)"
    r"|\bIRA\b|retirement\s+account|401\s*\(?\s*k\s*\)?|auto(?:mobile)?\s+(?:loan|value)"
    r"|cash\s+surrender\s+value)"
)


def detect_pfs(text: str) -> Optional[List[str]]:
    has_assets = bool(_PFS_ASSETS.search(text))
    has_liabilities = bool(_PFS_LIABILITIES.search(text))
    has_net_worth = bool(_PFS_NET_WORTH.search(text))
    has_title = bool(_PFS_TITLE.search(text) or _PFS_SBA_413.search(text))
    has_personal = bool(_PFS_PERSONAL.search(text))

    signals = [
        label for flag, label in (
            (has_assets, "Assets section detected"),
            (has_liabilities, "Liabilities section detected"),
            (has_net_worth, "Net Worth line detected"),
            (has_title, "PFS title detected"),
            (has_personal, "Personal financial indicators detected"),
        ) if flag
    ]

    if has_assets and has_liabilities and (has_net_worth or has_personal):
        return signals
    if has_title and (has_assets or has_liabilities or has_personal):
        return signals
    return None


# ---------------------------------------------------------------------------
# Multi-year P&L
# ---------------------------------------------------------------------------

_ADJACENT_YEARS = re.compile(r"\b(20[12]\d)\s+(?:\|\s*)?(20[12]\d)\b")
_PL_ITEMS = (
    _rx(r"\b(?:total\s+)?(?:revenues?|sales|income)\b"),
    _rx(r"\b(?:cost\s+of\s+(?:goods\s+)?sold|cogs)\b"),
    _rx(r"\bgross\s+(?:profit|margin)\b"),
    _rx(r"\b(?:operating\s+)?(?:expenses?|costs?)\b"),
    _rx(r"\bnet\s+(?:income|loss|profit|operating)\b"),
)


def detect_multi_year_pl(text: str) -> Optional[List[str]]:
    year_row = _ADJACENT_YEARS.search(text)
    if not year_row:
        return None
    signals = [f"Adjacent year columns: {year_row.group(1)}, {year_row.group(2)}"]
    if _count_hits(_PL_ITEMS, text, "P&L line", signals) < 2:
        return None
    return signals


# ---------------------------------------------------------------------------
# Monthly / quarterly operating statement
# ---------------------------------------------------------------------------

_MONTH_COLUMNS = _rx(
    r"\b(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\b"
)
_QUARTER_COLUMNS = _rx(r"\b(?:Q[1-4]|(?:1st|2nd|3rd|4th)\s+qtr)\b")
_OPERATING_CATEGORIES = (
    _rx(r"\b(?:rental\s+)?income\b"),
    _rx(r"\b(?:operating\s+)?expenses?\b"),
    _rx(r"\b(?:net\s+operating\s+income|NOI)\b"),
    _rx(r"\b(?:vacancy|management\s+fees?|maintenance|utilities|insurance|taxes)\b"),
)


def detect_operating_statement(text: str) -> Optional[List[str]]:
    has_months = bool(_MONTH_COLUMNS.search(text))
    has_quarters = bool(_QUARTER_COLUMNS.search(text))
    if not has_months and not has_quarters:
        return None

    signals: List[str] = []
    if has_months:
        signals.append("Monthly columns detected")
    if has_quarters:
        signals.append("Quarterly columns detected")
    if _count_hits(_OPERATING_CATEGORIES, text, "Category", signals) < 2:
        return None
    return signals


# ---------------------------------------------------------------------------
# Bank transaction log
# ---------------------------------------------------------------------------

_TRANSACTION_COLUMNS = (
    _rx(r"\b(?:transaction\s+|posting\s+)?date\b"),
    _rx(r"\bdescription\b"),
    _rx(r"\b(?:debits?|withdrawals?)\b"),
    _rx(r"\b(?:credits?|deposits?)\b"),
    _rx(r"\b(?:running\s+)?balance\b"),
)
_ROW_DATE = re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b")


def detect_bank_transaction_log(text: str) -> Optional[List[str]]:
    signals: List[str] = []
    if _count_hits(_TRANSACTION_COLUMNS, text, "Column", signals) < 3:
        return None
    date_rows = len(_ROW_DATE.findall(text))
    if date_rows < 3:
        return None
    signals.append(f"{date_rows} date entries in transaction rows")
    return signals


# ---------------------------------------------------------------------------
# Voided check
# ---------------------------------------------------------------------------

_VOID = _rx(r"\bvoid(?:ed)?\b")
_CHECK = _rx(r"\bche(?:ck|que)\b")
_ROUTING_NUMBER = re.compile(r"\b\d{9}\b")
_ACCOUNT_LABEL = _rx(r"(?:routing|account)\s*(?:#|number|no\b)")


def detect_voided_check(text: str) -> Optional[List[str]]:
    if not (_VOID.search(text) and _CHECK.search(text)):
        return None
    signals = ["VOID + check detected"]
    has_routing = bool(_ROUTING_NUMBER.search(text))
    has_label = bool(_ACCOUNT_LABEL.search(text))
    if has_routing:
        signals.append("Routing/account number pattern detected")
    if has_label:
        signals.append("Account label detected")
    return signals if (has_routing or has_label) else None


# ---------------------------------------------------------------------------
# Debt schedule
# ---------------------------------------------------------------------------

_DEBT_TITLE = _rx(r"\bdebt\s+schedule\b|\bschedule\s+of\s+(?:liabilities|debts?)\b")
_DEBT_COLUMNS = (
    _rx(r"\blender\b"),
    _rx(r"\bcreditor\b"),
    _rx(r"\bbalance\b"),
    _rx(r"\bpayment\b"),
    _rx(r"\bmaturity\b"),
    _rx(r"\binterest\s+rate\b"),
)


def detect_debt_schedule(text: str) -> Optional[List[str]]:
    if not _DEBT_TITLE.search(text):
        return None
    signals = ["Debt schedule title detected"]
    if _count_hits(_DEBT_COLUMNS, text, "Column keyword", signals) < 1:
        return None
    return signals


# ---------------------------------------------------------------------------
# Accounts receivable aging
# ---------------------------------------------------------------------------

_AR_TITLE = _rx(r"\baccounts\s+receivable\s+aging\b|\bA/R\s+aging\b|\breceivables?\s+aging\b")
_AGING_BUCKETS = (
    _rx(r"\bcurrent\b"),
    _rx(r"\b(?:1-)?30\s*(?:days?|d)\b"),
    _rx(r"\b(?:31-)?60\s*(?:days?|d)\b"),
    _rx(r"\b(?:61-)?90\s*(?:days?|d)\b"),
    _rx(r"\b(?:over\s+)?120\s*(?:days?|d)\b"),
)


def detect_ar_aging(text: str) -> Optional[List[str]]:
    if not _AR_TITLE.search(text):
        return None
    signals = ["AR aging title detected"]
    if _count_hits(_AGING_BUCKETS, text, "Aging bucket", signals) < 2:
        return None
    return signals


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

STRUCTURAL_PATTERNS: Tuple[StructuralPattern, ...] = (
    StructuralPattern("RENT_ROLL_TENANT_TABLE", DocType.RENT_ROLL, 0.87, detect_rent_roll),
    StructuralPattern(
        "PFS_ASSET_LIABILITY_FORMAT", DocType.PERSONAL_FINANCIAL_STATEMENT, 0.85, detect_pfs
    ),
    StructuralPattern("MULTI_YEAR_PL", DocType.INCOME_STATEMENT, 0.83, detect_multi_year_pl),
    StructuralPattern(
        "OPERATING_STATEMENT_MONTHLY", DocType.INCOME_STATEMENT, 0.82, detect_operating_statement
    ),
    StructuralPattern(
        "BANK_STMT_TRANSACTION_LOG", DocType.BANK_STATEMENT, 0.80, detect_bank_transaction_log
    ),
    StructuralPattern("VOIDED_CHECK_FORMAT", DocType.VOIDED_CHECK, 0.86, detect_voided_check),
    StructuralPattern("DEBT_SCHEDULE_FORMAT", DocType.DEBT_SCHEDULE, 0.82, detect_debt_schedule),
    StructuralPattern("AR_AGING_FORMAT", DocType.AR_AGING, 0.82, detect_ar_aging),
)


def validate_structural_patterns(
    patterns: Iterable[StructuralPattern] = STRUCTURAL_PATTERNS,
) -> None:
    """Raise ConfigurationInvariantError if any pattern breaks a Tier 2 invariant."""
    violations: List[str] = []
    seen = set()
    for pattern in patterns:
        if not TIER2_MIN_CONFIDENCE <= pattern.confidence < TIER2_MAX_CONFIDENCE:
            violations.append(
                f"{pattern.pattern_id}: confidence {pattern.confidence} outside "
                f"[{TIER2_MIN_CONFIDENCE}, {TIER2_MAX_CONFIDENCE})"
            )
        if pattern.doc_type in (SENTINEL_DOC_TYPE, DocType.UNKNOWN):
            violations.append(f"{pattern.pattern_id}: resolves to {pattern.doc_type.value}")
        if pattern.pattern_id in seen:
            violations.append(f"{pattern.pattern_id}: duplicate pattern id")
        seen.add(pattern.pattern_id)

    if violations:
        raise ConfigurationInvariantError(
            "Tier 2 structural table violates invariants",
            details={"violations": violations},
        )


def match_tier2(text: Optional[str]) -> Union[Tier2Match, NoMatch]:
    """Run every structural pattern over the first two pages.

    The first match in registry order wins. Other patterns that fired for a
    different doc type become confusion candidates and each one costs the
    gate-facing confidence AMBIGUITY_PENALTY. ``pattern_confidence`` keeps
    the unpenalized value for calibration, which prices the same rivals.
    """
    if not text or not text.strip():
        return NoMatch()

    head = first_two_pages(text)
    hits: List[Tuple[StructuralPattern, List[str]]] = []
    for pattern in STRUCTURAL_PATTERNS:
        signals = pattern.detect(head)
        if signals:
            hits.append((pattern, signals))

    if not hits:
        return NoMatch()

    winner, signals = hits[0]
    rivals: Dict[DocType, float] = {}
    for pattern, _ in hits[1:]:
        if pattern.doc_type is winner.doc_type:
            continue
        rivals[pattern.doc_type] = max(rivals.get(pattern.doc_type, 0.0), pattern.confidence)

    confidence = max(0.0, round(winner.confidence - AMBIGUITY_PENALTY * len(rivals), 4))
    evidence = [
        EvidenceItem(
            source="tier2",
            signal=signal,
            weight=winner.confidence,
            anchor_id=winner.pattern_id,
        )
        for signal in signals
    ]

    return Tier2Match(
        doc_type=winner.doc_type,
        confidence=confidence,
        evidence=evidence,
        pattern_id=winner.pattern_id,
        pattern_confidence=winner.confidence,
        confusion_candidates=[
            ConfusionCandidate(doc_type=doc_type, score=score)
            for doc_type, score in rivals.items()
        ],
        tax_year=extract_tax_year(text),
        form_numbers=extract_form_numbers(text),
    )
