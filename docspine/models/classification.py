"""Pydantic models for tier matches and the stamped spine result.

Each tier reports through one member of the TierMatch union so the confidence
gate and the spine can switch on ``kind``.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docspine.models.calibration import CalibrationOutput, ConfusionCandidate, SpineTier
from docspine.models.doc_types import DocType
from docspine.models.gatekeeper import GatekeeperResult
from docspine.services.routing import GatekeeperRoute


SCHEMA_VERSION_PREFIX = "spine/"
SCHEMA_VERSION = f"{SCHEMA_VERSION_PREFIX}v2.1"

EntityType = Literal["business", "personal"]


class EvidenceItem(BaseModel):
    """One reason a document type was chosen."""

    model_config = ConfigDict(frozen=True)

    source: SpineTier = Field(description="Tier that produced the signal")
    signal: str = Field(description="Matched text, pattern id or LLM reason")
    weight: float = Field(ge=0.0, le=1.0, description="Strength of the signal")
    anchor_id: Optional[str] = Field(default=None, description="Anchor or pattern identifier")


class Tier1Match(BaseModel):
    """Accepted anchor match."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tier1"] = "tier1"
    matched: Literal[True] = True
    doc_type: DocType
    confidence: float = Field(ge=0.90, le=1.0)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    anchor_id: str
    entity_type: Optional[EntityType] = None
    tax_year: Optional[int] = None
    form_numbers: List[str] = Field(default_factory=list)


class DocAIMatch(BaseModel):
    """Upstream DocAI label accepted by cross-validation against Tier 1.

    Reported under the tier1 tier: it is accepted at the same gate step and
    carries the Tier 1 anchor's tax year and entity type when the two agree.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["docai"] = "docai"
    matched: Literal[True] = True
    doc_type: DocType
    confidence: float = Field(ge=0.75, le=1.0)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    label: str = Field(description="Raw DocAI document-type label")
    processor: Optional[str] = None
    entity_type: Optional[EntityType] = None
    tax_year: Optional[int] = None
    form_numbers: List[str] = Field(default_factory=list)


class Tier2Match(BaseModel):
    """Structural pattern match, accepted or not depending on the gate."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["tier2"] = "tier2"
    matched: Literal[True] = True
    doc_type: DocType
    confidence: float = Field(ge=0.0, lt=0.90)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    pattern_id: str
    pattern_confidence: Optional[float] = Field(
        default=None, ge=0.0, lt=0.90,
        description="Pattern confidence before the ambiguity penalty"
    )
    confusion_candidates: List[ConfusionCandidate] = Field(default_factory=list)
    tax_year: Optional[int] = None
    form_numbers: List[str] = Field(default_factory=list)


class GatekeeperMatch(BaseModel):
    """LLM gatekeeper answer, always present once the gate falls through."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["llm"] = "llm"
    matched: bool = True
    doc_type: DocType
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    result: GatekeeperResult

    @classmethod
    def from_result(cls, result: GatekeeperResult) -> "GatekeeperMatch":
        evidence = [
            EvidenceItem(source="llm", signal=reason, weight=result.confidence)
            for reason in result.reasons
        ]
        return cls(
            matched=result.doc_type is not DocType.UNKNOWN,
            doc_type=result.doc_type,
            confidence=result.confidence,
            evidence=evidence,
            result=result,
        )


class NoMatch(BaseModel):
    """No tier produced an opinion."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["none"] = "none"
    matched: Literal[False] = False
    doc_type: DocType = DocType.UNKNOWN
    confidence: float = 0.0
    evidence: List[EvidenceItem] = Field(default_factory=list)


TierMatch = Annotated[
    Union[Tier1Match, DocAIMatch, Tier2Match, GatekeeperMatch, NoMatch],
    Field(discriminator="kind"),
]


class SpineClassificationResult(BaseModel):
    """Canonical, immutable output of one spine classification call."""

    model_config = ConfigDict(frozen=True)

    doc_type: DocType = Field(description="Canonical document type")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence reported by the accepting tier")
    tax_year: Optional[int] = None
    tier: SpineTier = Field(description="Tier that accepted the classification")
    schema_version: str = Field(default=SCHEMA_VERSION)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    reason: str = ""
    entity_type: Optional[EntityType] = None
    form_numbers: List[str] = Field(default_factory=list)
    calibration: CalibrationOutput
    needs_review: bool = False
    route: Optional[GatekeeperRoute] = Field(
        default=None,
        description="Gatekeeper route, only set when the LLM tier answered"
    )
    confusion_candidates: List[ConfusionCandidate] = Field(default_factory=list)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: str) -> str:
        if not v.startswith(SCHEMA_VERSION_PREFIX):
            raise ValueError(
                f"schema_version must start with '{SCHEMA_VERSION_PREFIX}' (got: {v!r})"
            )
        return v

    @field_validator("evidence", mode="before")
    @classmethod
    def evidence_never_none(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def band(self) -> str:
        return self.calibration.band

    def to_record_fields(self) -> Dict[str, Any]:
        """Columns the document-record store writes for this result."""
        return {
            "doc_type": self.doc_type.value,
            "tax_year": self.tax_year,
            "confidence": self.confidence,
            "classification_version": self.schema_version,
            "classification_tier": self.tier,
            "confidence_band": self.calibration.band,
            "calibrated_confidence": self.calibration.score,
            "needs_review": self.needs_review,
        }
