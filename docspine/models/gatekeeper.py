"""Pydantic models for the LLM gatekeeper tier.

GatekeeperClassification is the validated shape of the model-provider
answer. GatekeeperResult wraps it with the routing decision and provenance;
the route is always recomputed from the classification, so callers cannot
set it independently.
"""

import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from docspine.models.doc_types import DocType, SENTINEL_DOC_TYPE, parse_doc_type
from docspine.services.routing import GatekeeperRoute, compute_gatekeeper_route


MAX_REASONS = 6

InputPath = Literal["text", "vision", "cache", "already_classified", "no_input", "error"]


class DocAISignals(BaseModel):
    """Document-type label from an upstream DocAI processor, when one ran."""

    model_config = ConfigDict(frozen=True)

    label: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    processor: Optional[str] = None


class DocumentSource(BaseModel):
    """A document handed to the spine by the upload/storage collaborator."""

    model_config = ConfigDict(frozen=True)

    document_id: str = Field(description="Document record identifier")
    deal_id: Optional[str] = None
    bank_id: Optional[str] = None
    sha256: Optional[str] = Field(default=None, description="Content hash, used as cache key")
    ocr_text: Optional[str] = None
    image_bytes: Optional[bytes] = None
    mime_type: str = "application/pdf"
    filename: str = ""
    docai: Optional[DocAISignals] = None


class DetectedSignals(BaseModel):
    """Identifiers the gatekeeper saw on the page."""

    form_numbers: List[str] = Field(default_factory=list)
    has_ein: bool = False
    has_ssn: bool = False


class GatekeeperClassification(BaseModel):
    """Structured answer returned by the LLM capability."""

    doc_type: DocType = Field(description="Gatekeeper document type")
    confidence: float = Field(ge=0.0, le=1.0, description="Model confidence (0.0 to 1.0)")
    tax_year: Optional[int] = None
    reasons: List[str] = Field(default_factory=list, description="Up to six short reasons")
    detected_signals: DetectedSignals = Field(default_factory=DetectedSignals)
    confusion_candidates: List[DocType] = Field(default_factory=list)

    @field_validator("doc_type", mode="before")
    @classmethod
    def coerce_doc_type(cls, v: Any) -> DocType:
        """Map unrecognised labels to UNKNOWN and the sentinel to INCOME_STATEMENT."""
        doc_type = parse_doc_type(v)
        if doc_type is SENTINEL_DOC_TYPE:
            return DocType.INCOME_STATEMENT
        return doc_type

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            raise ValueError(f"confidence must be numeric (got: {v!r})")
        if math.isnan(value):
            raise ValueError("confidence must not be NaN")
        return min(1.0, max(0.0, value))

    @field_validator("tax_year", mode="before")
    @classmethod
    def normalize_tax_year(cls, v: Any) -> Optional[int]:
        if v in (None, "", 0):
            return None
        try:
            year = int(v)
        except (TypeError, ValueError):
            return None
        return year if 1990 <= year <= 2100 else None

    @field_validator("reasons", mode="before")
    @classmethod
    def limit_reasons(cls, v: Any) -> List[str]:
        if not v:
            return []
        return [str(r) for r in v][:MAX_REASONS]

    @field_validator("confusion_candidates", mode="before")
    @classmethod
    def parse_candidates(cls, v: Any) -> List[DocType]:
        if not v:
            return []
        parsed = [parse_doc_type(c) for c in v]
        return [c for c in parsed if c not in (DocType.UNKNOWN, SENTINEL_DOC_TYPE)]


class GatekeeperResult(GatekeeperClassification):
    """Gatekeeper classification plus the derived routing decision."""

    route: GatekeeperRoute = "NEEDS_REVIEW"
    needs_review: bool = True
    cache_hit: bool = False
    model: str = Field(default="unknown", description="Model that produced the classification")
    prompt_version: str = ""
    prompt_hash: str = ""
    input_path: InputPath = "text"
    latency_ms: int = 0

    @model_validator(mode="after")
    def derive_route(self) -> "GatekeeperResult":
        """Recompute route and needs_review from doc_type, confidence and tax_year."""
        route = compute_gatekeeper_route(self.doc_type, self.confidence, self.tax_year)
        if self.input_path in ("error", "no_input"):
            route = "NEEDS_REVIEW"
        self.route = route
        self.needs_review = route == "NEEDS_REVIEW"
        return self

    @classmethod
    def from_classification(
        cls,
        classification: GatekeeperClassification,
        **provenance: Any,
    ) -> "GatekeeperResult":
        """Wrap a classification with provenance fields; the route is derived."""
        provenance.pop("route", None)
        provenance.pop("needs_review", None)
        return cls(**classification.model_dump(), **provenance)

    @classmethod
    def failure(
        cls,
        reason: str,
        *,
        input_path: InputPath = "error",
        prompt_version: str = "",
        prompt_hash: str = "",
        latency_ms: int = 0,
    ) -> "GatekeeperResult":
        """Fail-closed result: UNKNOWN, zero confidence, routed to review."""
        return cls(
            doc_type=DocType.UNKNOWN,
            confidence=0.0,
            tax_year=None,
            reasons=[reason],
            model="error",
            prompt_version=prompt_version,
            prompt_hash=prompt_hash,
            input_path=input_path,
            latency_ms=latency_ms,
        )

    def classification(self) -> GatekeeperClassification:
        """Strip routing and provenance, leaving the cacheable classification."""
        return GatekeeperClassification(
            doc_type=self.doc_type,
            confidence=self.confidence,
            tax_year=self.tax_year,
            reasons=self.reasons,
            detected_signals=self.detected_signals,
            confusion_candidates=self.confusion_candidates,
        )

    def to_record_fields(self) -> Dict[str, Any]:
        """Columns written onto the document record by the gatekeeper."""
        return {
            "gatekeeper_doc_type": self.doc_type.value,
            "gatekeeper_confidence": self.confidence,
            "gatekeeper_tax_year": self.tax_year,
            "gatekeeper_form_numbers": self.detected_signals.form_numbers,
            "gatekeeper_route": self.route,
            "gatekeeper_needs_review": self.needs_review,
            "gatekeeper_reasons": self.reasons,
            "gatekeeper_confusion_candidates": [c.value for c in self.confusion_candidates],
            "gatekeeper_signals": self.detected_signals.model_dump(),
            "gatekeeper_model": self.model,
            "gatekeeper_prompt_version": self.prompt_version,
            "gatekeeper_prompt_hash": self.prompt_hash,
            "gatekeeper_error": self.reasons[0] if self.input_path == "error" and self.reasons else None,
        }
