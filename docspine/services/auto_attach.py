"""Adaptive auto-attach thresholds.

Downstream checklist matching attaches a classified document to a checklist
slot without human review when its calibrated score clears a threshold for
its (tier, band) cell. Thresholds start at fixed baselines and may loosen
when observed override data for that cell shows the spine is reliable.

The fallback tier and the LOW band never loosen, and nothing loosens below
the policy floor.
"""

import math
from typing import Dict, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from docspine.models.calibration import ConfidenceBand
from docspine.models.classification import SpineClassificationResult
from docspine.models.doc_types import DocType


ADAPTIVE_THRESHOLD_VERSION = "adaptive_v1"

SpineTierKey = Literal["tier1", "tier2", "llm", "fallback"]

TIER_KEYS = ("tier1", "tier2", "llm", "fallback")
BANDS = ("HIGH", "MEDIUM", "LOW")

BASELINE_THRESHOLDS: Dict[str, Dict[str, float]] = {
    "tier1": {"HIGH": 0.90, "MEDIUM": 0.94, "LOW": 0.99},
    "tier2": {"HIGH": 0.92, "MEDIUM": 0.96, "LOW": 0.99},
    "llm": {"HIGH": 0.94, "MEDIUM": 0.97, "LOW": 0.99},
    "fallback": {"HIGH": 0.99, "MEDIUM": 0.99, "LOW": 0.99},
}


class AdaptivePolicy(BaseModel):
    """Bounds on how far a threshold may move from its baseline."""

    model_config = ConfigDict(frozen=True)

    floor: float = Field(default=0.85, ge=0.0, le=1.0)
    ceiling: float = Field(default=0.99, ge=0.0, le=1.0)
    min_samples: int = Field(default=50, ge=1)
    max_override_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    loosen_step: float = Field(default=0.02, ge=0.0)
    max_loosen: float = Field(default=0.06, ge=0.0)


DEFAULT_ADAPTIVE_POLICY = AdaptivePolicy()


class CalibrationCell(BaseModel):
    """Observed human-override statistics for one (tier, band) cell."""

    model_config = ConfigDict(frozen=True)

    tier: SpineTierKey
    band: ConfidenceBand
    total: int = Field(ge=0)
    overrides: int = Field(ge=0)
    override_rate: float = Field(ge=0.0, le=1.0)


class AutoAttachDecision(BaseModel):
    """Resolved threshold for one (tier, band) cell."""

    model_config = ConfigDict(frozen=True)

    threshold: float
    adapted: bool
    baseline: float
    version: str = ADAPTIVE_THRESHOLD_VERSION


def _find_cell(tier: str, band: str, curve: Iterable[CalibrationCell]) -> Optional[CalibrationCell]:
    for cell in curve:
        if cell.tier == tier and cell.band == band:
            return cell
    return None


def resolve_auto_attach_threshold(
    tier: SpineTierKey,
    band: ConfidenceBand,
    curve: Iterable[CalibrationCell] = (),
    policy: AdaptivePolicy = DEFAULT_ADAPTIVE_POLICY,
) -> AutoAttachDecision:
    """Resolve the auto-attach threshold for a cell.

    Args:
        tier: Spine tier key, or "fallback".
        band: Calibrated confidence band.
        curve: Override statistics per cell; may be empty.
        policy: Floor, ceiling and loosening bounds.

    Returns:
        AutoAttachDecision; ``adapted`` is True only when the threshold moved.
    """
    baseline = BASELINE_THRESHOLDS[tier][band]
    unchanged = AutoAttachDecision(threshold=baseline, adapted=False, baseline=baseline)

    if tier == "fallback" or band == "LOW":
        return unchanged

    cell = _find_cell(tier, band, curve)
    if cell is None or cell.total < policy.min_samples:
        return unchanged
    if cell.override_rate > policy.max_override_rate:
        return unchanged

    # More headroom under the allowed override rate earns more loosening steps
    if policy.max_override_rate > 0:
        headroom = (policy.max_override_rate - cell.override_rate) / policy.max_override_rate
    else:
        headroom = 0.0
    max_steps = int(round(policy.max_loosen / policy.loosen_step, 6)) if policy.loosen_step > 0 else 0
    steps = max(1, math.ceil(headroom * max_steps)) if max_steps else 0
    loosen = min(policy.max_loosen, policy.loosen_step * steps)

    threshold = round(min(policy.ceiling, max(policy.floor, baseline - loosen)), 4)
    if threshold >= baseline:
        return unchanged
    return AutoAttachDecision(threshold=threshold, adapted=True, baseline=baseline)


def spine_tier_key(result: SpineClassificationResult) -> SpineTierKey:
    """Threshold tier for a result; UNKNOWN results count as fallback."""
    if result.doc_type is DocType.UNKNOWN:
        return "fallback"
    return result.tier


def should_auto_attach(
    result: SpineClassificationResult,
    curve: Iterable[CalibrationCell] = (),
    policy: AdaptivePolicy = DEFAULT_ADAPTIVE_POLICY,
) -> bool:
    """True when a result may be attached to a checklist slot without review."""
    if result.needs_review:
        return False
    decision = resolve_auto_attach_threshold(
        spine_tier_key(result), result.calibration.band, curve, policy
    )
    return result.calibration.score >= decision.threshold
