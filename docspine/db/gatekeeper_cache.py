"""Gatekeeper classification cache in the gatekeeper_cache table.

Rows are keyed by (bank_id, sha256, prompt_hash): the same bytes classified
with the same prompt and schema never hit the model twice. A prompt or
schema change produces a new hash and so a cache miss.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from supabase import Client

from docspine.exceptions import RecordStoreError
from docspine.models.gatekeeper import GatekeeperResult


TABLE = "gatekeeper_cache"


async def get_cached_classification(
    client: Client,
    bank_id: str,
    sha256: str,
    prompt_hash: str,
) -> Optional[Dict[str, Any]]:
    """Fetch a cached classification row.

    Args:
        client: Supabase client instance
        bank_id: Tenant the document belongs to
        sha256: Content hash of the document bytes
        prompt_hash: Hash of the gatekeeper prompt and schema

    Returns:
        Optional[Dict[str, Any]]: Row with ``classification``, ``model`` and
        ``prompt_version`` keys, or None on a miss.

    Raises:
        RecordStoreError: If the query fails
    """
    try:
        response = await asyncio.to_thread(
            lambda: client.table(TABLE)
            .select("classification, model, prompt_version")
            .eq("bank_id", bank_id)
            .eq("sha256", sha256)
            .eq("prompt_hash", prompt_hash)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise RecordStoreError(f"Failed to read gatekeeper cache: {str(e)}") from e

    if not response.data:
        return None
    row: Dict[str, Any] = response.data[0]
    return row


async def store_classification(
    client: Client,
    bank_id: str,
    sha256: str,
    result: GatekeeperResult,
) -> None:
    """Insert or replace the cached classification for a document.

    Raises:
        RecordStoreError: If the upsert fails
    """
    record = {
        "bank_id": bank_id,
        "sha256": sha256,
        "prompt_hash": result.prompt_hash,
        "prompt_version": result.prompt_version,
        "model": result.model,
        "classification": result.classification().model_dump(mode="json"),
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        await asyncio.to_thread(
            lambda: client.table(TABLE)
            .upsert(record, on_conflict="bank_id,sha256,prompt_hash")
            .execute()
        )
    except Exception as e:
        raise RecordStoreError(f"Failed to write gatekeeper cache: {str(e)}") from e
