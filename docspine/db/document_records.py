"""Document record store: reads and writes classification stamps.

The spine and the gatekeeper never own the document record. They hand their
results to these functions, which write the stamp columns onto the row in
the deal_documents table.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import Client

from docspine.exceptions import RecordStoreError
from docspine.models.classification import SpineClassificationResult
from docspine.models.gatekeeper import GatekeeperResult


TABLE = "deal_documents"

_GATEKEEPER_COLUMNS = (
    "id, gatekeeper_classified_at, gatekeeper_doc_type, gatekeeper_confidence, "
    "gatekeeper_tax_year, gatekeeper_route, gatekeeper_needs_review, "
    "gatekeeper_reasons, gatekeeper_confusion_candidates, gatekeeper_signals, "
    "gatekeeper_model, gatekeeper_prompt_version, gatekeeper_prompt_hash"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_gatekeeper_stamp(client: Client, document_id: str) -> Optional[Dict[str, Any]]:
    """Return the gatekeeper stamp of a document, or None if never classified.

    Raises:
        RecordStoreError: If the query fails
    """
    try:
        response = await asyncio.to_thread(
            lambda: client.table(TABLE)
            .select(_GATEKEEPER_COLUMNS)
            .eq("id", document_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise RecordStoreError(f"Failed to read gatekeeper stamp: {str(e)}") from e

    if not response.data:
        return None
    row: Dict[str, Any] = response.data[0]
    if not row.get("gatekeeper_classified_at"):
        return None
    return row


async def stamp_gatekeeper_result(
    client: Client,
    document_id: str,
    result: GatekeeperResult,
) -> None:
    """Write gatekeeper fields onto the document record.

    Raises:
        RecordStoreError: If the update fails or no row matches
    """
    update_data = {**result.to_record_fields(), "gatekeeper_classified_at": _now()}
    try:
        response = await asyncio.to_thread(
            lambda: client.table(TABLE).update(update_data).eq("id", document_id).execute()
        )
        if not response.data:
            raise RuntimeError(f"No document found with id {document_id}")
    except Exception as e:
        raise RecordStoreError(f"Failed to stamp gatekeeper result: {str(e)}") from e


async def stamp_classification(
    client: Client,
    document_id: str,
    result: SpineClassificationResult,
) -> None:
    """Write the spine classification stamp onto the document record.

    Raises:
        RecordStoreError: If the update fails or no row matches
    """
    update_data = {**result.to_record_fields(), "classified_at": _now()}
    try:
        response = await asyncio.to_thread(
            lambda: client.table(TABLE).update(update_data).eq("id", document_id).execute()
        )
        if not response.data:
            raise RuntimeError(f"No document found with id {document_id}")
    except Exception as e:
        raise RecordStoreError(f"Failed to stamp classification: {str(e)}") from e


class SupabaseClassificationSink:
    """ClassificationSink that stamps results onto deal_documents."""

    def __init__(self, client: Client):
        self.client = client

    async def write(self, document_id: str, result: SpineClassificationResult) -> None:
        await stamp_classification(self.client, document_id, result)
