"""Pydantic models for confidence calibration.

CalibrationInput is built per classification call and never persisted.
CalibrationOutput travels inside the stamped SpineClassificationResult.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from docspine.models.doc_types import DocType


SpineTier = Literal["tier1", "tier2", "llm"]
ConfidenceBand = Literal["HIGH", "MEDIUM", "LOW"]


class ConfusionCandidate(BaseModel):
    """An alternate doc type that also scored on the same document."""

    model_config = ConfigDict(frozen=True)

    doc_type: DocType = Field(description="Competing document type")
    score: float = Field(
        default=1.0, ge=0.0, le=1.0,
        description="How strongly the alternate scored (1.0 when the source gives no score)"
    )


class CalibrationInput(BaseModel):
    """Signals combined by the calibration model."""

    model_config = ConfigDict(frozen=True)

    base_confidence: float = Field(description="Confidence reported by the accepting tier")
    spine_tier: SpineTier = Field(description="Tier that produced the classification")
    doc_type: DocType = Field(description="Claimed document type")
    confusion_candidates: List[ConfusionCandidate] = Field(default_factory=list)
    form_numbers: List[str] = Field(default_factory=list)
    detected_years: List[int] = Field(default_factory=list)
    tax_year: Optional[int] = None
    text_length: int = Field(default=0, ge=0)


class CalibrationOutput(BaseModel):
    """Calibrated score and its discrete band."""

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=1.0, description="Clamped calibrated score")
    band: ConfidenceBand = Field(description="HIGH / MEDIUM / LOW step of the score")
    adjustments: List[str] = Field(
        default_factory=list,
        description="Human-readable list of applied adjustments, in application order"
    )
