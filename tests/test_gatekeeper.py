"""Tests for the LLM gatekeeper orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docspine.exceptions import MalformedGatekeeperOutputError, RecordStoreError
from docspine.models.doc_types import DocType
from docspine.models.gatekeeper import DocumentSource, GatekeeperClassification
from docspine.services.gatekeeper import MIN_OCR_CHARS, Gatekeeper


LONG_TEXT = "Statement period January 1 - January 31, 2024. " * 10


def _classification(**overrides) -> GatekeeperClassification:
    fields = {
        "doc_type": "BANK_STATEMENT",
        "confidence": 0.93,
        "tax_year": None,
        "reasons": ["Account summary table", "Bank logo"],
        "detected_signals": {"form_numbers": [], "has_ein": False, "has_ssn": False},
    }
    fields.update(overrides)
    return GatekeeperClassification(**fields)


def _capability(classification=None) -> MagicMock:
    capability = MagicMock()
    capability.model = "gemini-test"
    capability.prompt_version = "gatekeeper_v1"
    capability.prompt_hash = "abcdef0123456789"
    capability.classify_text = AsyncMock(return_value=classification or _classification())
    capability.classify_image = AsyncMock(return_value=classification or _classification())
    return capability


def _source(**overrides) -> DocumentSource:
    fields = {
        "document_id": "doc-1",
        "deal_id": "deal-1",
        "bank_id": "bank-1",
        "sha256": "f" * 64,
        "ocr_text": LONG_TEXT,
    }
    fields.update(overrides)
    return DocumentSource(**fields)


class TestInputPaths:
    """Tests for text, vision and no-input paths without a record store."""

    @pytest.mark.asyncio
    async def test_text_path(self):
        capability = _capability()
        gatekeeper = Gatekeeper(capability)

        result = await gatekeeper.run(_source())

        capability.classify_text.assert_awaited_once_with(LONG_TEXT)
        capability.classify_image.assert_not_called()
        assert result.input_path == "text"
        assert result.doc_type is DocType.BANK_STATEMENT
        assert result.route == "STANDARD"
        assert result.needs_review is False
        assert result.model == "gemini-test"
        assert result.prompt_hash == "abcdef0123456789"
        assert result.cache_hit is False

    @pytest.mark.asyncio
    async def test_identifiers_backfilled_from_text(self):
        """Test that an EIN or SSN in the OCR text sets the flag the model left off."""
        text = LONG_TEXT + "Employer identification number 12-3456789 SSN XXX-XX-6789"

        result = await Gatekeeper(_capability()).run(_source(ocr_text=text))

        assert result.detected_signals.has_ein is True
        assert result.detected_signals.has_ssn is True

    @pytest.mark.asyncio
    async def test_identifiers_left_alone_without_matches(self):
        result = await Gatekeeper(_capability()).run(_source())

        assert result.detected_signals.has_ein is False
        assert result.detected_signals.has_ssn is False

    @pytest.mark.asyncio
    async def test_model_reported_identifiers_are_kept(self):
        classification = _classification(
            detected_signals={"form_numbers": ["1120"], "has_ein": True, "has_ssn": False}
        )

        result = await Gatekeeper(_capability(classification)).run(_source())

        assert result.detected_signals.has_ein is True
        assert result.detected_signals.form_numbers == ["1120"]

    @pytest.mark.asyncio
    async def test_short_text_with_image_uses_vision(self):
        capability = _capability()
        gatekeeper = Gatekeeper(capability)

        result = await gatekeeper.run(_source(
            ocr_text="x" * MIN_OCR_CHARS,
            image_bytes=b"\x89PNG",
            mime_type="image/PNG",
        ))

        capability.classify_image.assert_awaited_once_with(b"\x89PNG", "image/png")
        assert result.input_path == "vision"

    @pytest.mark.asyncio
    async def test_no_text_and_pdf_needs_review(self):
        """Test that a document with nothing readable fails closed."""
        capability = _capability()
        gatekeeper = Gatekeeper(capability)

        result = await gatekeeper.run(_source(ocr_text=None, image_bytes=b"%PDF"))

        capability.classify_text.assert_not_called()
        capability.classify_image.assert_not_called()
        assert result.input_path == "no_input"
        assert result.route == "NEEDS_REVIEW"
        assert result.needs_review is True
        assert result.doc_type is DocType.UNKNOWN

    @pytest.mark.asyncio
    async def test_low_confidence_routes_to_review(self):
        gatekeeper = Gatekeeper(_capability(_classification(confidence=0.3)))

        result = await gatekeeper.run(_source())

        assert result.route == "NEEDS_REVIEW"
        assert result.needs_review is True
        assert result.input_path == "text"

    @pytest.mark.asyncio
    async def test_core_type_routes_to_doc_ai(self):
        gatekeeper = Gatekeeper(_capability(_classification(
            doc_type="BUSINESS_TAX_RETURN", tax_year=2023
        )))

        result = await gatekeeper.run(_source())

        assert result.route == "GOOGLE_DOC_AI_CORE"


class TestFailClosed:
    """Tests that capability failures never escape run()."""

    @pytest.mark.asyncio
    async def test_timeout_routes_to_review(self):
        """Test that a slow capability resolves to NEEDS_REVIEW after the timeout."""
        async def slow(text):
            await asyncio.sleep(5)

        capability = _capability()
        capability.classify_text = slow
        gatekeeper = Gatekeeper(capability, timeout_seconds=0.01)

        result = await gatekeeper.run(_source())

        assert result.input_path == "error"
        assert result.route == "NEEDS_REVIEW"
        assert result.needs_review is True
        assert "timed out" in result.reasons[0]

    @pytest.mark.asyncio
    async def test_malformed_output_routes_to_review(self):
        capability = _capability()
        capability.classify_text = AsyncMock(
            side_effect=MalformedGatekeeperOutputError("Gemini returned invalid JSON")
        )
        gatekeeper = Gatekeeper(capability)

        result = await gatekeeper.run(_source())

        assert result.needs_review is True
        assert result.reasons == ["Gemini returned invalid JSON"]
        assert result.to_record_fields()["gatekeeper_error"] == "Gemini returned invalid JSON"

    @pytest.mark.asyncio
    async def test_transport_error_routes_to_review(self):
        capability = _capability()
        capability.classify_text = AsyncMock(side_effect=ConnectionError("connection reset"))

        result = await Gatekeeper(capability).run(_source())

        assert result.route == "NEEDS_REVIEW"
        assert result.model == "error"


@patch("docspine.services.gatekeeper.gatekeeper_cache")
@patch("docspine.services.gatekeeper.document_records")
class TestRecordStore:
    """Tests for idempotency, caching and stamping."""

    @pytest.mark.asyncio
    async def test_already_classified_skips_capability(self, mock_records, mock_cache):
        """Test that an existing stamp is reused without calling the model."""
        mock_records.get_gatekeeper_stamp = AsyncMock(return_value={
            "gatekeeper_classified_at": "2024-01-01T00:00:00+00:00",
            "gatekeeper_doc_type": "RENT_ROLL",
            "gatekeeper_confidence": 0.9,
            "gatekeeper_reasons": ["Tenant table"],
            "gatekeeper_model": "gemini-old",
        })
        mock_records.stamp_gatekeeper_result = AsyncMock()
        capability = _capability()

        result = await Gatekeeper(capability, client=MagicMock()).run(_source())

        capability.classify_text.assert_not_called()
        mock_records.stamp_gatekeeper_result.assert_not_called()
        assert result.input_path == "already_classified"
        assert result.doc_type is DocType.RENT_ROLL
        assert result.route == "STANDARD"

    @pytest.mark.asyncio
    async def test_force_reclassify_ignores_stamp(self, mock_records, mock_cache):
        mock_records.get_gatekeeper_stamp = AsyncMock()
        mock_records.stamp_gatekeeper_result = AsyncMock()
        mock_cache.get_cached_classification = AsyncMock(return_value=None)
        mock_cache.store_classification = AsyncMock()
        capability = _capability()

        result = await Gatekeeper(capability, client=MagicMock()).run(
            _source(), force_reclassify=True
        )

        mock_records.get_gatekeeper_stamp.assert_not_called()
        capability.classify_text.assert_awaited_once()
        assert result.input_path == "text"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_capability(self, mock_records, mock_cache):
        mock_records.get_gatekeeper_stamp = AsyncMock(return_value=None)
        mock_records.stamp_gatekeeper_result = AsyncMock()
        mock_cache.get_cached_classification = AsyncMock(return_value={
            "classification": _classification().model_dump(mode="json"),
            "model": "gemini-cached",
            "prompt_version": "gatekeeper_v1",
        })
        mock_cache.store_classification = AsyncMock()
        capability = _capability()
        client = MagicMock()

        result = await Gatekeeper(capability, client=client).run(_source())

        capability.classify_text.assert_not_called()
        mock_cache.get_cached_classification.assert_awaited_once_with(
            client, "bank-1", "f" * 64, "abcdef0123456789"
        )
        mock_cache.store_classification.assert_not_called()
        mock_records.stamp_gatekeeper_result.assert_awaited_once()
        assert result.cache_hit is True
        assert result.input_path == "cache"
        assert result.model == "gemini-cached"
        assert result.doc_type is DocType.BANK_STATEMENT

    @pytest.mark.asyncio
    async def test_miss_writes_cache_and_stamp(self, mock_records, mock_cache):
        mock_records.get_gatekeeper_stamp = AsyncMock(return_value=None)
        mock_records.stamp_gatekeeper_result = AsyncMock()
        mock_cache.get_cached_classification = AsyncMock(return_value=None)
        mock_cache.store_classification = AsyncMock()
        client = MagicMock()

        result = await Gatekeeper(_capability(), client=client).run(_source())

        mock_cache.store_classification.assert_awaited_once_with(
            client, "bank-1", "f" * 64, result
        )
        mock_records.stamp_gatekeeper_result.assert_awaited_once_with(client, "doc-1", result)

    @pytest.mark.asyncio
    async def test_failures_are_stamped_but_not_cached(self, mock_records, mock_cache):
        mock_records.get_gatekeeper_stamp = AsyncMock(return_value=None)
        mock_records.stamp_gatekeeper_result = AsyncMock()
        mock_cache.get_cached_classification = AsyncMock(return_value=None)
        mock_cache.store_classification = AsyncMock()
        capability = _capability()
        capability.classify_text = AsyncMock(side_effect=RuntimeError("boom"))

        result = await Gatekeeper(capability, client=MagicMock()).run(_source())

        assert result.input_path == "error"
        mock_cache.store_classification.assert_not_called()
        mock_records.stamp_gatekeeper_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_errors_do_not_block_classification(self, mock_records, mock_cache):
        """Test that record store failures degrade to a plain model call."""
        mock_records.get_gatekeeper_stamp = AsyncMock(side_effect=RecordStoreError("read failed"))
        mock_records.stamp_gatekeeper_result = AsyncMock(side_effect=RecordStoreError("write failed"))
        mock_cache.get_cached_classification = AsyncMock(side_effect=RecordStoreError("cache down"))
        mock_cache.store_classification = AsyncMock(side_effect=RecordStoreError("cache down"))
        capability = _capability()

        result = await Gatekeeper(capability, client=MagicMock()).run(_source())

        capability.classify_text.assert_awaited_once()
        assert result.input_path == "text"
        assert result.route == "STANDARD"

    @pytest.mark.asyncio
    async def test_cache_skipped_without_bank_id(self, mock_records, mock_cache):
        mock_records.get_gatekeeper_stamp = AsyncMock(return_value=None)
        mock_records.stamp_gatekeeper_result = AsyncMock()
        mock_cache.get_cached_classification = AsyncMock()
        mock_cache.store_classification = AsyncMock()

        await Gatekeeper(_capability(), client=MagicMock()).run(_source(bank_id=None))

        mock_cache.get_cached_classification.assert_not_called()
        mock_cache.store_classification.assert_not_called()
