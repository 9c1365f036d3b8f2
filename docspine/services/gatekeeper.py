"""LLM gatekeeper orchestrator for a single document.

1. Idempotency: reuse the stamp already on the document record
2. Cache lookup by (bank_id, sha256, prompt_hash)
3. Capability call on the text path or the vision path, under a timeout;
   on the text path EIN / SSN flags are backfilled from the OCR text
4. Routing is derived by GatekeeperResult from the classification
5. Stamp gatekeeper fields on the document record and write the cache

Fail-closed: every error becomes a NEEDS_REVIEW result. ``run`` never raises.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Protocol

from supabase import Client

from docspine.db import document_records, gatekeeper_cache
from docspine.exceptions import GatekeeperTimeoutError, RecordStoreError
from docspine.models.gatekeeper import (
    DocumentSource,
    GatekeeperClassification,
    GatekeeperResult,
    InputPath,
)
from docspine.services.text_signals import has_ein, has_ssn
from docspine.utils.logging import log_event

logger = logging.getLogger(__name__)

# Below this much OCR text the text path is not worth a call
MIN_OCR_CHARS = 100

DEFAULT_TIMEOUT_SECONDS = 30.0

VISION_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/tiff",
})


class LLMCapability(Protocol):
    """Model-provider collaborator. Calls may be slow and must be awaited."""

    model: str
    prompt_version: str
    prompt_hash: str

    async def classify_text(self, text: str) -> GatekeeperClassification:
        ...

    async def classify_image(self, image_bytes: bytes, mime_type: str) -> GatekeeperClassification:
        ...


def _from_stamp(row: Dict[str, Any], prompt_version: str, prompt_hash: str) -> GatekeeperResult:
    classification = GatekeeperClassification(
        doc_type=row.get("gatekeeper_doc_type") or "UNKNOWN",
        confidence=row.get("gatekeeper_confidence") or 0.0,
        tax_year=row.get("gatekeeper_tax_year"),
        reasons=row.get("gatekeeper_reasons") or [],
        detected_signals=row.get("gatekeeper_signals") or {},
        confusion_candidates=row.get("gatekeeper_confusion_candidates") or [],
    )
    return GatekeeperResult.from_classification(
        classification,
        model=row.get("gatekeeper_model") or "cached_on_doc",
        prompt_version=row.get("gatekeeper_prompt_version") or prompt_version,
        prompt_hash=row.get("gatekeeper_prompt_hash") or prompt_hash,
        input_path="already_classified",
    )


def _backfill_identifiers(
    classification: GatekeeperClassification,
    text: str,
) -> GatekeeperClassification:
    """Set has_ein / has_ssn when the OCR text shows one the model missed."""
    signals = classification.detected_signals
    ein = signals.has_ein or has_ein(text)
    ssn = signals.has_ssn or has_ssn(text)
    if ein == signals.has_ein and ssn == signals.has_ssn:
        return classification
    return classification.model_copy(update={
        "detected_signals": signals.model_copy(update={"has_ein": ein, "has_ssn": ssn}),
    })


class Gatekeeper:
    """Runs the LLM capability for documents the deterministic tiers could not place."""

    def __init__(
        self,
        capability: LLMCapability,
        client: Optional[Client] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Args:
            capability: Model provider (GeminiClassifier in production)
            client: Supabase client for the record store and cache; None disables both
            timeout_seconds: Upper bound on one capability call
        """
        self.capability = capability
        self.client = client
        self.timeout_seconds = timeout_seconds

    @property
    def prompt_version(self) -> str:
        return getattr(self.capability, "prompt_version", "")

    @property
    def prompt_hash(self) -> str:
        return getattr(self.capability, "prompt_hash", "")

    async def run(self, source: DocumentSource, force_reclassify: bool = False) -> GatekeeperResult:
        """Classify one document, degrading every failure to NEEDS_REVIEW."""
        started = time.monotonic()

        try:
            if not force_reclassify:
                stamp = await self._read_stamp(source)
                if stamp is not None:
                    return _from_stamp(stamp, self.prompt_version, self.prompt_hash)

            cached = await self._read_cache(source)
            if cached is not None:
                result = cached.model_copy(update={"latency_ms": self._elapsed_ms(started)})
            else:
                result = await self._classify(source, started)
                if result.input_path in ("text", "vision"):
                    await self._write_cache(source, result)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(
                f"Gatekeeper failed for document {source.document_id}, routing to NEEDS_REVIEW: {reason}"
            )
            result = self._fail(reason, "error", started)

        await self._stamp(source, result)
        self._log_result(source, result)
        return result

    async def _classify(self, source: DocumentSource, started: float) -> GatekeeperResult:
        path: InputPath
        if source.ocr_text and len(source.ocr_text) > MIN_OCR_CHARS:
            call = self.capability.classify_text(source.ocr_text)
            path = "text"
        elif source.image_bytes and source.mime_type.lower() in VISION_MIME_TYPES:
            call = self.capability.classify_image(source.image_bytes, source.mime_type.lower())
            path = "vision"
        else:
            logger.warning(
                f"Gatekeeper: no OCR text and non-image input for document "
                f"{source.document_id} ({source.mime_type}), routing to NEEDS_REVIEW"
            )
            return self._fail(
                "No OCR text available and file is not a directly-viewable image",
                "no_input",
                started,
            )

        try:
            classification = await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GatekeeperTimeoutError(
                f"Gatekeeper timed out after {self.timeout_seconds}s",
                details={"document_id": source.document_id},
            ) from e

        if path == "text":
            classification = _backfill_identifiers(classification, source.ocr_text)

        return GatekeeperResult.from_classification(
            classification,
            cache_hit=False,
            model=getattr(self.capability, "model", "unknown"),
            prompt_version=self.prompt_version,
            prompt_hash=self.prompt_hash,
            input_path=path,
            latency_ms=self._elapsed_ms(started),
        )

    async def _read_stamp(self, source: DocumentSource) -> Optional[Dict[str, Any]]:
        if self.client is None:
            return None
        try:
            return await document_records.get_gatekeeper_stamp(self.client, source.document_id)
        except RecordStoreError as e:
            logger.warning(f"Gatekeeper stamp read failed for {source.document_id}: {e}")
            return None

    async def _read_cache(self, source: DocumentSource) -> Optional[GatekeeperResult]:
        if self.client is None or not source.sha256 or not source.bank_id:
            return None
        try:
            row = await gatekeeper_cache.get_cached_classification(
                self.client, source.bank_id, source.sha256, self.prompt_hash
            )
        except RecordStoreError as e:
            logger.warning(f"Gatekeeper cache read failed for {source.document_id}: {e}")
            return None
        if row is None:
            return None
        classification = GatekeeperClassification.model_validate(row["classification"])
        return GatekeeperResult.from_classification(
            classification,
            cache_hit=True,
            model=row.get("model") or "unknown",
            prompt_version=row.get("prompt_version") or self.prompt_version,
            prompt_hash=self.prompt_hash,
            input_path="cache",
        )

    async def _write_cache(self, source: DocumentSource, result: GatekeeperResult) -> None:
        if self.client is None or not source.sha256 or not source.bank_id:
            return
        try:
            await gatekeeper_cache.store_classification(
                self.client, source.bank_id, source.sha256, result
            )
        except RecordStoreError as e:
            logger.warning(f"Gatekeeper cache write failed for {source.document_id}: {e}")

    async def _stamp(self, source: DocumentSource, result: GatekeeperResult) -> None:
        if self.client is None or result.input_path == "already_classified":
            return
        try:
            await document_records.stamp_gatekeeper_result(self.client, source.document_id, result)
        except RecordStoreError as e:
            logger.warning(f"Gatekeeper stamp failed for {source.document_id}: {e}")

    def _fail(self, reason: str, path: InputPath, started: float) -> GatekeeperResult:
        return GatekeeperResult.failure(
            reason,
            input_path=path,
            prompt_version=self.prompt_version,
            prompt_hash=self.prompt_hash,
            latency_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _log_result(self, source: DocumentSource, result: GatekeeperResult) -> None:
        failed = result.input_path in ("error", "no_input")
        log_event(
            logger,
            "gatekeeper.classify_failed" if failed else "gatekeeper.classified",
            level=logging.WARNING if failed else logging.INFO,
            document_id=source.document_id,
            deal_id=source.deal_id,
            doc_type=result.doc_type.value,
            confidence=result.confidence,
            tax_year=result.tax_year,
            route=result.route,
            needs_review=result.needs_review,
            cache_hit=result.cache_hit,
            input_path=result.input_path,
            model=result.model,
            prompt_version=result.prompt_version,
            latency_ms=result.latency_ms,
        )
