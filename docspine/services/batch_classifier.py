"""Batch classification.

Fans a list of documents out over the spine with bounded concurrency and
returns results in input order. When shadow routing is enabled, each result
is also compared against the slot router's choice and the comparison is
logged; nothing in the comparison feeds back into the result.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from docspine.models.classification import SpineClassificationResult
from docspine.models.gatekeeper import DocumentSource
from docspine.models.shadow import ShadowCompareResult
from docspine.services import shadow_routing
from docspine.services.routing import (
    compute_gatekeeper_route,
    map_gatekeeper_doc_type_to_effective,
)
from docspine.services.spine import ClassificationSpine, fallback_result
from docspine.utils.logging import log_event, log_shadow_comparison

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4


class BatchItemResult(BaseModel):
    """Spine result for one document of a batch."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    result: SpineClassificationResult
    shadow: Optional[ShadowCompareResult] = None


def shadow_compare(
    result: SpineClassificationResult,
    slot_doc_type: Optional[str],
) -> ShadowCompareResult:
    """Compare the slot router's doc type with the spine's routing for one result."""
    route = result.route or compute_gatekeeper_route(
        result.doc_type, result.confidence, result.tax_year
    )
    return shadow_routing.compare(
        slot_doc_type=slot_doc_type,
        effective_doc_type=map_gatekeeper_doc_type_to_effective(result.doc_type),
        gatekeeper_doc_type=result.doc_type.value,
        gatekeeper_route=route,
        gatekeeper_confidence=result.confidence,
    )


async def classify_batch(
    spine: ClassificationSpine,
    sources: Sequence[DocumentSource],
    concurrency: int = DEFAULT_CONCURRENCY,
    slot_doc_types: Optional[Dict[str, str]] = None,
    shadow_enabled: bool = False,
    force_reclassify: bool = False,
) -> List[BatchItemResult]:
    """Classify documents concurrently.

    Args:
        spine: Configured classification spine
        sources: Documents to classify
        concurrency: Maximum documents in flight at once
        slot_doc_types: Slot router doc type per document_id, for shadow comparison
        shadow_enabled: Compare and log slot vs gatekeeper routing per document
        force_reclassify: Ignore existing gatekeeper stamps

    Returns:
        List[BatchItemResult]: One item per source, in input order
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1 (got: {concurrency})")

    semaphore = asyncio.Semaphore(concurrency)
    slot_doc_types = slot_doc_types or {}

    async def _one(source: DocumentSource) -> BatchItemResult:
        async with semaphore:
            result = await spine.classify(source, force_reclassify=force_reclassify)

        comparison = None
        if shadow_enabled:
            comparison = shadow_compare(result, slot_doc_types.get(source.document_id))
            log_shadow_comparison(logger, comparison, document_id=source.document_id)

        return BatchItemResult(document_id=source.document_id, result=result, shadow=comparison)

    gathered = await asyncio.gather(*[_one(s) for s in sources], return_exceptions=True)

    items: List[BatchItemResult] = []
    for source, outcome in zip(sources, gathered):
        if isinstance(outcome, BaseException):
            logger.error(f"Batch item {source.document_id} failed: {outcome}")
            outcome = BatchItemResult(
                document_id=source.document_id,
                result=fallback_result(f"Batch error: {outcome}"),
            )
        items.append(outcome)

    log_event(
        logger,
        "batch.completed",
        total=len(items),
        needs_review=sum(1 for i in items if i.result.needs_review),
        divergent=sum(1 for i in items if i.shadow is not None and i.shadow.divergent),
    )
    return items
