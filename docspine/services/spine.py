"""Classification spine.

Sequences the deterministic tiers before the LLM gatekeeper:

    gate (Tier 1 -> DocAI -> Tier 2) -> gatekeeper -> calibration -> finalize

The spine is total: every call returns a SpineClassificationResult, and any
unexpected error becomes an UNKNOWN result in the LOW band with
``needs_review`` set. It does not persist anything itself; a finished result
is handed to an optional ClassificationSink.
"""

import logging
from typing import List, Optional, Protocol

from docspine.models.calibration import (
    CalibrationInput,
    CalibrationOutput,
    ConfusionCandidate,
)
from docspine.models.classification import (
    GatekeeperMatch,
    SpineClassificationResult,
    TierMatch,
)
from docspine.models.doc_types import DocType
from docspine.models.gatekeeper import DocumentSource, GatekeeperResult
from docspine.services import confidence_gate
from docspine.services.calibration import CONFIDENCE_FLOOR, calibrate
from docspine.services.gatekeeper import Gatekeeper
from docspine.services.text_signals import detect_years, extract_form_numbers
from docspine.utils.logging import log_event

logger = logging.getLogger(__name__)


class ClassificationSink(Protocol):
    """Document-record collaborator that stores finished results."""

    async def write(self, document_id: str, result: SpineClassificationResult) -> None:
        ...


def fallback_result(reason: str) -> SpineClassificationResult:
    """UNKNOWN / LOW result used when classification cannot complete."""
    return SpineClassificationResult(
        doc_type=DocType.UNKNOWN,
        confidence=0.0,
        tier="llm",
        evidence=[],
        reason=reason,
        calibration=CalibrationOutput(
            score=CONFIDENCE_FLOOR,
            band="LOW",
            adjustments=["spine_fallback"],
        ),
        needs_review=True,
        route="NEEDS_REVIEW",
    )


def _merge_candidates(candidates: List[ConfusionCandidate]) -> List[ConfusionCandidate]:
    """One candidate per doc type, keeping the highest score, in first-seen order."""
    best = {}
    for candidate in candidates:
        current = best.get(candidate.doc_type)
        if current is None or candidate.score > current.score:
            best[candidate.doc_type] = candidate
    return list(best.values())


class ClassificationSpine:
    """Orchestrates one document through the tiers."""

    def __init__(
        self,
        gatekeeper: Optional[Gatekeeper] = None,
        sink: Optional[ClassificationSink] = None,
    ):
        """
        Args:
            gatekeeper: LLM tier; None routes every fall-through to review
            sink: Receives each finished result; failures are logged only
        """
        self.gatekeeper = gatekeeper
        self.sink = sink

    async def classify(
        self,
        source: DocumentSource,
        force_reclassify: bool = False,
    ) -> SpineClassificationResult:
        """Classify one document. Never raises."""
        try:
            result = await self._classify(source, force_reclassify)
        except Exception as e:
            logger.error(f"Spine failed for document {source.document_id}: {e}")
            result = fallback_result(f"Spine error: {str(e) or type(e).__name__}")

        log_event(
            logger,
            "spine.classified",
            document_id=source.document_id,
            doc_type=result.doc_type.value,
            tier=result.tier,
            confidence=result.confidence,
            band=result.band,
            needs_review=result.needs_review,
        )

        await self._write(source, result)
        return result

    async def _classify(
        self,
        source: DocumentSource,
        force_reclassify: bool,
    ) -> SpineClassificationResult:
        text = source.ocr_text or ""
        decision = confidence_gate.evaluate(text, docai=source.docai)

        if decision.accepted:
            return self._finalize(decision.match, text)

        if self.gatekeeper is None:
            gatekeeper_result = GatekeeperResult.failure(
                "No gatekeeper configured", input_path="no_input"
            )
        else:
            gatekeeper_result = await self.gatekeeper.run(source, force_reclassify=force_reclassify)

        rivals: List[ConfusionCandidate] = []
        if decision.rejected is not None:
            rivals.append(ConfusionCandidate(
                doc_type=decision.rejected.doc_type,
                score=decision.rejected.confidence,
            ))
            rivals.extend(decision.rejected.confusion_candidates)

        return self._finalize(GatekeeperMatch.from_result(gatekeeper_result), text, rivals)

    def _finalize(
        self,
        match: TierMatch,
        text: str,
        rivals: Optional[List[ConfusionCandidate]] = None,
    ) -> SpineClassificationResult:
        base_confidence = match.confidence
        if match.kind == "tier1":
            tier = "tier1"
            tax_year = match.tax_year
            form_numbers = list(match.form_numbers)
            candidates: List[ConfusionCandidate] = []
            reason = f"Tier 1 anchor {match.anchor_id}"
            entity_type = match.entity_type
            route = None
            gatekeeper_review = False
        elif match.kind == "docai":
            tier = "tier1"
            tax_year = match.tax_year
            form_numbers = list(match.form_numbers)
            candidates = []
            reason = f'DocAI processor classified as "{match.label}" (confidence {match.confidence})'
            entity_type = match.entity_type
            route = None
            gatekeeper_review = False
        elif match.kind == "tier2":
            tier = "tier2"
            tax_year = match.tax_year
            form_numbers = list(match.form_numbers)
            candidates = list(match.confusion_candidates)
            reason = f"Tier 2 pattern {match.pattern_id}"
            entity_type = None
            route = None
            gatekeeper_review = False
            if match.pattern_confidence is not None:
                base_confidence = match.pattern_confidence
        elif match.kind == "llm":
            gk = match.result
            tier = "llm"
            tax_year = gk.tax_year
            form_numbers = extract_form_numbers(text)
            candidates = [ConfusionCandidate(doc_type=t) for t in gk.confusion_candidates]
            reason = "Gatekeeper: " + ("; ".join(gk.reasons) if gk.reasons else gk.input_path)
            entity_type = None
            route = gk.route
            gatekeeper_review = gk.needs_review
        else:
            raise ValueError(f"Cannot finalize a {match.kind} match")

        candidates = _merge_candidates([
            c for c in candidates + list(rivals or []) if c.doc_type is not match.doc_type
        ])

        calibration = calibrate(CalibrationInput(
            base_confidence=base_confidence,
            spine_tier=tier,
            doc_type=match.doc_type,
            confusion_candidates=candidates,
            form_numbers=form_numbers,
            detected_years=detect_years(text),
            tax_year=tax_year,
            text_length=len(text),
        ))

        return SpineClassificationResult(
            doc_type=match.doc_type,
            confidence=match.confidence,
            tax_year=tax_year,
            tier=tier,
            evidence=list(match.evidence),
            reason=reason,
            entity_type=entity_type,
            form_numbers=form_numbers,
            calibration=calibration,
            needs_review=gatekeeper_review or calibration.band == "LOW",
            route=route,
            confusion_candidates=candidates,
        )

    async def _write(self, source: DocumentSource, result: SpineClassificationResult) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.write(source.document_id, result)
        except Exception as e:
            logger.warning(f"Classification stamp failed for {source.document_id}: {e}")
