"""Tests for the classification spine."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docspine.models.calibration import ConfusionCandidate
from docspine.models.classification import (
    SCHEMA_VERSION,
    NoMatch,
    SpineClassificationResult,
    Tier2Match,
)
from docspine.models.doc_types import DocType
from docspine.models.gatekeeper import (
    DocAISignals,
    DocumentSource,
    GatekeeperClassification,
    GatekeeperResult,
)
from docspine.services.calibration import CONFIDENCE_FLOOR, CONFUSION_PENALTY
from docspine.services.confidence_gate import GateDecision
from docspine.services.gatekeeper import Gatekeeper
from docspine.services.spine import ClassificationSpine, fallback_result


FORM_1120_TEXT = (
    "Form 1120 U.S. Corporation Income Tax Return\n"
    "For calendar year 2023 or tax year beginning 01/01/2023\n"
    "Name: Acme Holdings Inc  EIN 12-3456789\n"
    + "Gross receipts or sales 1,250,000\n" * 10
)

RENT_ROLL_TEXT = (
    "RENT ROLL - Oakwood Plaza\n"
    "Unit # | Tenant | Sq Ft | Monthly Rent | Lease Expiration\n"
    "101 | Acme Corp | 1,200 | $2,400 | 06/2027\n"
    "102 | Beta LLC | 900 | $1,800 | 09/2026\n"
    "103 | Gamma Inc | 1,500 | $3,000 | 12/2028\n"
    "104 | Delta Co | 2,000 | $4,100 | 03/2029\n"
)

PLAIN_TEXT = "Handwritten note regarding the parking arrangements at the site. " * 5


def _source(text, document_id="doc-1", docai=None) -> DocumentSource:
    return DocumentSource(document_id=document_id, deal_id="deal-1", ocr_text=text, docai=docai)


def _gatekeeper_result(**overrides) -> GatekeeperResult:
    fields = {
        "doc_type": "BANK_STATEMENT",
        "confidence": 0.93,
        "reasons": ["Account summary"],
        "model": "gemini-test",
        "input_path": "text",
    }
    fields.update(overrides)
    return GatekeeperResult(**fields)


def _gatekeeper(result=None) -> MagicMock:
    gatekeeper = MagicMock()
    gatekeeper.run = AsyncMock(return_value=result or _gatekeeper_result())
    return gatekeeper


class TestDeterministicTiers:
    """Tests for documents resolved by Tier 1 or Tier 2."""

    @pytest.mark.asyncio
    async def test_form_1120_end_to_end_without_gatekeeper_call(self):
        """Test that a Tier 1 anchor classifies Form 1120 with zero gatekeeper calls."""
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(FORM_1120_TEXT))

        gatekeeper.run.assert_not_called()
        assert result.doc_type is DocType.BUSINESS_TAX_RETURN
        assert result.tier == "tier1"
        assert result.confidence >= 0.90
        assert result.tax_year == 2023
        assert result.entity_type == "business"
        assert result.band == "HIGH"
        assert result.needs_review is False
        assert result.route is None
        assert result.schema_version == SCHEMA_VERSION
        assert result.evidence

    @pytest.mark.asyncio
    async def test_tier2_accepted_without_gatekeeper_call(self):
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(RENT_ROLL_TEXT))

        gatekeeper.run.assert_not_called()
        assert result.doc_type is DocType.RENT_ROLL
        assert result.tier == "tier2"
        assert result.confidence == 0.87

    @pytest.mark.asyncio
    async def test_classification_is_deterministic(self):
        """Test that the same text yields byte-identical results."""
        spine = ClassificationSpine()

        first = await spine.classify(_source(FORM_1120_TEXT))
        second = await spine.classify(_source(FORM_1120_TEXT))

        assert first.model_dump_json() == second.model_dump_json()


class TestGatekeeperTier:
    """Tests for documents escalated to the LLM gatekeeper."""

    @pytest.mark.asyncio
    async def test_low_gatekeeper_confidence_is_low_band(self):
        """Test that a 0.3 gatekeeper answer is LOW and needs review."""
        gatekeeper = _gatekeeper(_gatekeeper_result(confidence=0.3))
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(PLAIN_TEXT))

        gatekeeper.run.assert_awaited_once()
        assert result.tier == "llm"
        assert result.band == "LOW"
        assert result.needs_review is True
        assert result.route == "NEEDS_REVIEW"
        assert result.evidence is not None

    @pytest.mark.asyncio
    async def test_confident_gatekeeper_answer(self):
        spine = ClassificationSpine(gatekeeper=_gatekeeper())

        result = await spine.classify(_source(PLAIN_TEXT))

        assert result.doc_type is DocType.BANK_STATEMENT
        assert result.tier == "llm"
        assert result.route == "STANDARD"
        assert result.band == "HIGH"
        assert result.needs_review is False
        assert result.evidence[0].source == "llm"
        assert result.evidence[0].signal == "Account summary"

    @pytest.mark.asyncio
    async def test_force_reclassify_passed_through(self):
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)
        source = _source(PLAIN_TEXT)

        await spine.classify(source, force_reclassify=True)

        gatekeeper.run.assert_awaited_once_with(source, force_reclassify=True)

    @pytest.mark.asyncio
    async def test_gatekeeper_needs_review_overrides_band(self):
        """Test that a routed-to-review answer needs review even with a good score."""
        result_in = _gatekeeper_result(doc_type="BUSINESS_TAX_RETURN", confidence=0.95, tax_year=None)
        spine = ClassificationSpine(gatekeeper=_gatekeeper(result_in))

        result = await spine.classify(_source(PLAIN_TEXT))

        assert result.route == "NEEDS_REVIEW"
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_rejected_tier2_match_becomes_confusion_candidate(self):
        """Test that a structural match below the gate threshold penalizes the LLM answer."""
        weak = Tier2Match(
            doc_type=DocType.RENT_ROLL,
            confidence=0.69,
            pattern_id="RENT_ROLL_TENANT_TABLE",
        )
        decision = GateDecision(
            state="LLM_FALLBACK",
            match=NoMatch(),
            trail=("TIER1_CHECK", "TIER2_CHECK", "LLM_FALLBACK"),
            rejected=weak,
        )
        spine = ClassificationSpine(gatekeeper=_gatekeeper())

        with patch("docspine.services.spine.confidence_gate.evaluate", return_value=decision):
            result = await spine.classify(_source(PLAIN_TEXT))

        assert [c.doc_type for c in result.confusion_candidates] == [DocType.RENT_ROLL]
        assert result.calibration.score == pytest.approx(0.93 - CONFUSION_PENALTY)
        assert any(a.startswith("confusion(RENT_ROLL)") for a in result.calibration.adjustments)

    @pytest.mark.asyncio
    async def test_no_gatekeeper_fails_closed(self):
        spine = ClassificationSpine()

        result = await spine.classify(_source(PLAIN_TEXT))

        assert result.doc_type is DocType.UNKNOWN
        assert result.band == "LOW"
        assert result.needs_review is True
        assert result.route == "NEEDS_REVIEW"
        assert [e.signal for e in result.evidence] == ["No gatekeeper configured"]

    @pytest.mark.asyncio
    async def test_empty_document_fails_closed(self):
        spine = ClassificationSpine()

        result = await spine.classify(_source(None))

        assert result.doc_type is DocType.UNKNOWN
        assert result.needs_review is True
        assert result.schema_version == SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_fallback(self):
        """Test that an exception inside the pipeline never reaches the caller."""
        gatekeeper = MagicMock()
        gatekeeper.run = AsyncMock(side_effect=RuntimeError("unexpected"))
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(PLAIN_TEXT))

        assert isinstance(result, SpineClassificationResult)
        assert result.doc_type is DocType.UNKNOWN
        assert result.band == "LOW"
        assert result.needs_review is True
        assert "unexpected" in result.reason


class TestSink:
    """Tests for handing results to the document record collaborator."""

    @pytest.mark.asyncio
    async def test_result_written_to_sink(self):
        sink = MagicMock()
        sink.write = AsyncMock()
        spine = ClassificationSpine(sink=sink)

        result = await spine.classify(_source(FORM_1120_TEXT, document_id="doc-9"))

        sink.write.assert_awaited_once_with("doc-9", result)

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_classification(self):
        sink = MagicMock()
        sink.write = AsyncMock(side_effect=RuntimeError("db down"))
        spine = ClassificationSpine(sink=sink)

        result = await spine.classify(_source(FORM_1120_TEXT))

        assert result.doc_type is DocType.BUSINESS_TAX_RETURN


def test_fallback_result_shape():
    result = fallback_result("no text")

    assert result.doc_type is DocType.UNKNOWN
    assert result.calibration.score == CONFIDENCE_FLOOR
    assert result.band == "LOW"
    assert result.evidence == []
    assert result.to_record_fields()["classification_version"] == SCHEMA_VERSION


class TestDocAISignals:
    """Tests for cross-validating an upstream DocAI label."""

    @pytest.mark.asyncio
    async def test_tier1_anchor_beats_disagreeing_docai_label(self):
        docai = DocAISignals(label="bank_statement", confidence=0.95, processor="proc-1")
        spine = ClassificationSpine(gatekeeper=_gatekeeper())

        result = await spine.classify(_source(FORM_1120_TEXT, docai=docai))

        assert result.doc_type is DocType.BUSINESS_TAX_RETURN
        assert result.reason.startswith("Tier 1 anchor")
        assert all(not e.signal.startswith("docai_signal") for e in result.evidence)

    @pytest.mark.asyncio
    async def test_agreeing_docai_label_is_accepted(self):
        docai = DocAISignals(label="tax_return_1120", confidence=0.90, processor="proc-1")
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(FORM_1120_TEXT, docai=docai))

        gatekeeper.run.assert_not_called()
        assert result.doc_type is DocType.BUSINESS_TAX_RETURN
        assert result.tier == "tier1"
        assert result.confidence == 0.90
        assert result.reason == 'DocAI processor classified as "tax_return_1120" (confidence 0.9)'
        assert result.evidence[0].signal == "docai_signal:tax_return_1120"
        assert result.evidence[0].anchor_id == "docai:proc-1"
        assert result.tax_year == 2023
        assert result.entity_type == "business"

    @pytest.mark.asyncio
    async def test_docai_label_used_when_no_anchor_matches(self):
        docai = DocAISignals(label="Bank Statement", confidence=0.85)
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(PLAIN_TEXT, docai=docai))

        gatekeeper.run.assert_not_called()
        assert result.doc_type is DocType.BANK_STATEMENT
        assert result.tier == "tier1"
        assert result.route is None
        assert "tier1_anchor:+0.03" in result.calibration.adjustments
        assert result.calibration.score == pytest.approx(0.88)

    @pytest.mark.asyncio
    async def test_weak_docai_label_escalates_to_gatekeeper(self):
        docai = DocAISignals(label="bank_statement", confidence=0.60)
        gatekeeper = _gatekeeper()
        spine = ClassificationSpine(gatekeeper=gatekeeper)

        result = await spine.classify(_source(PLAIN_TEXT, docai=docai))

        gatekeeper.run.assert_awaited_once()
        assert result.tier == "llm"


class TestTier2Calibration:
    """Tests for pricing Tier 2 rivals."""

    @pytest.mark.asyncio
    async def test_rival_pattern_is_penalized_once(self):
        """Test that calibration starts from the unpenalized pattern confidence."""
        match = Tier2Match(
            doc_type=DocType.RENT_ROLL,
            confidence=0.81,
            pattern_confidence=0.87,
            pattern_id="RENT_ROLL_TENANT_TABLE",
            confusion_candidates=[ConfusionCandidate(doc_type=DocType.VOIDED_CHECK, score=0.86)],
        )
        decision = GateDecision(state="TIER2_CHECK", match=match, trail=("TIER1_CHECK", "TIER2_CHECK"))
        spine = ClassificationSpine()

        with patch("docspine.services.spine.confidence_gate.evaluate", return_value=decision):
            result = await spine.classify(_source(PLAIN_TEXT))

        assert result.confidence == 0.81
        assert result.calibration.score == pytest.approx(0.87 - CONFUSION_PENALTY)
        assert result.calibration.adjustments == [f"confusion(VOIDED_CHECK):-{CONFUSION_PENALTY:.2f}"]

    @pytest.mark.asyncio
    async def test_unmatched_gate_decision_falls_back(self):
        """Test that an accepted decision without a tier match yields the fallback result."""
        decision = GateDecision(state="TIER1_CHECK", match=NoMatch(), trail=("TIER1_CHECK",))
        spine = ClassificationSpine()

        with patch("docspine.services.spine.confidence_gate.evaluate", return_value=decision):
            result = await spine.classify(_source(PLAIN_TEXT))

        assert result.doc_type is DocType.UNKNOWN
        assert "Cannot finalize a none match" in result.reason


@patch("docspine.services.gatekeeper.gatekeeper_cache")
@patch("docspine.services.gatekeeper.document_records")
class TestGatekeeperStamp:
    """Tests for re-classifying a document that already carries a gatekeeper stamp."""

    @pytest.mark.asyncio
    async def test_reclassify_from_stamp_is_identical(self, mock_records, mock_cache):
        rows = {}

        async def stamp(client, document_id, result):
            fields = {
                **result.to_record_fields(),
                "gatekeeper_classified_at": "2024-01-01T00:00:00+00:00",
            }
            rows[document_id] = json.loads(json.dumps(fields))

        async def read(client, document_id):
            return rows.get(document_id)

        mock_records.get_gatekeeper_stamp = AsyncMock(side_effect=read)
        mock_records.stamp_gatekeeper_result = AsyncMock(side_effect=stamp)
        capability = MagicMock()
        capability.model = "gemini-test"
        capability.prompt_version = "gatekeeper_v1"
        capability.prompt_hash = "abcdef0123456789"
        capability.classify_text = AsyncMock(return_value=GatekeeperClassification(
            doc_type="BANK_STATEMENT",
            confidence=0.92,
            reasons=["Account summary"],
            confusion_candidates=["FINANCIAL_STATEMENT", "DEBT_SCHEDULE"],
        ))
        spine = ClassificationSpine(gatekeeper=Gatekeeper(capability, client=MagicMock()))

        first = await spine.classify(_source(PLAIN_TEXT))
        second = await spine.classify(_source(PLAIN_TEXT))

        capability.classify_text.assert_awaited_once()
        assert mock_records.stamp_gatekeeper_result.await_count == 1
        assert first.band == "MEDIUM"
        assert [c.doc_type for c in second.confusion_candidates] == [
            DocType.FINANCIAL_STATEMENT,
            DocType.DEBT_SCHEDULE,
        ]
        assert first.model_dump_json() == second.model_dump_json()
