"""Confidence calibration.

Turns the accepting tier's base confidence plus a handful of structural
signals into a clamped score and a HIGH / MEDIUM / LOW band.

Adjustments, applied in this order:

- tier1 anchor: +TIER1_BONUS
- each detected form number that belongs to the claimed doc type:
  +FORM_MATCH_BONUS, capped at FORM_MATCH_MAX
- each confusion candidate with a different doc type and a score of at
  least CONFUSION_MIN_SCORE: -CONFUSION_PENALTY, capped at CONFUSION_MAX
- declared tax year absent from the detected years: -YEAR_MISMATCH_PENALTY
- text shorter than SHORT_TEXT_CHARS: -SHORT_TEXT_PENALTY

A Tier 2 base confidence is the pattern confidence before the structural
ambiguity penalty. Rival patterns are priced here, once.

The magnitudes are tunable. Only the band thresholds and the ordering
``CONFIDENCE_FLOOR < MEDIUM_THRESHOLD < HIGH_THRESHOLD < CONFIDENCE_CEILING``
are fixed.
"""

import math
from typing import List

from docspine.models.calibration import CalibrationInput, CalibrationOutput, ConfidenceBand
from docspine.services.text_signals import form_supports_doc_type


CONFIDENCE_FLOOR = 0.05
CONFIDENCE_CEILING = 0.99
MEDIUM_THRESHOLD = 0.75
HIGH_THRESHOLD = 0.88

TIER1_BONUS = 0.03
FORM_MATCH_BONUS = 0.02
FORM_MATCH_MAX = 0.04
CONFUSION_MIN_SCORE = 0.20
CONFUSION_PENALTY = 0.05
CONFUSION_MAX = 0.15
YEAR_MISMATCH_PENALTY = 0.08
SHORT_TEXT_CHARS = 200
SHORT_TEXT_PENALTY = 0.05


def derive_band(score: float) -> ConfidenceBand:
    """Step function of the score against the two fixed thresholds."""
    if not isinstance(score, (int, float)) or math.isnan(score):
        return "LOW"
    if score >= HIGH_THRESHOLD:
        return "HIGH"
    if score >= MEDIUM_THRESHOLD:
        return "MEDIUM"
    return "LOW"


def _clamp(value: float) -> float:
    return min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, value))


def calibrate(signals: CalibrationInput) -> CalibrationOutput:
    """Combine base confidence and structural signals into a banded score."""
    adjustments: List[str] = []

    base = signals.base_confidence
    if not math.isfinite(base):
        adjustments.append("non_finite_base:floor")
        base = CONFIDENCE_FLOOR
    score = base

    if signals.spine_tier == "tier1":
        score += TIER1_BONUS
        adjustments.append(f"tier1_anchor:+{TIER1_BONUS:.2f}")

    supporting = sorted({
        f for f in signals.form_numbers if form_supports_doc_type(f, signals.doc_type)
    })
    if supporting:
        bonus = min(FORM_MATCH_MAX, FORM_MATCH_BONUS * len(supporting))
        score += bonus
        adjustments.append(f"form_numbers({','.join(supporting)}):+{bonus:.2f}")

    rivals = sorted({
        c.doc_type.value for c in signals.confusion_candidates
        if c.doc_type is not signals.doc_type and c.score >= CONFUSION_MIN_SCORE
    })
    if rivals:
        penalty = min(CONFUSION_MAX, CONFUSION_PENALTY * len(rivals))
        score -= penalty
        adjustments.append(f"confusion({','.join(rivals)}):-{penalty:.2f}")

    if (
        signals.tax_year is not None
        and signals.detected_years
        and signals.tax_year not in signals.detected_years
    ):
        score -= YEAR_MISMATCH_PENALTY
        adjustments.append(f"year_mismatch({signals.tax_year}):-{YEAR_MISMATCH_PENALTY:.2f}")

    if signals.text_length < SHORT_TEXT_CHARS:
        score -= SHORT_TEXT_PENALTY
        adjustments.append(f"short_text:-{SHORT_TEXT_PENALTY:.2f}")

    score = round(_clamp(score), 4)
    return CalibrationOutput(score=score, band=derive_band(score), adjustments=adjustments)
