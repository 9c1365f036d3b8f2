"""Gemini-backed LLM gatekeeper capability.

Two paths:
- Text: OCR text, truncated head + tail so a tax year printed near the end
  survives.
- Vision: raw image bytes for uploads that have no OCR text yet.

Both use structured JSON output against GATEKEEPER_RESPONSE_SCHEMA at
temperature 0. The prompt version and a hash of prompt + schema travel with
every result so cached answers are invalidated when either changes.
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, List

from google import genai
from google.genai import types
from pydantic import ValidationError

from docspine.exceptions import MalformedGatekeeperOutputError
from docspine.models.doc_types import DocType, SENTINEL_DOC_TYPE
from docspine.models.gatekeeper import GatekeeperClassification, MAX_REASONS
from docspine.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

PROMPT_VERSION = "gatekeeper_v1"
DEFAULT_MODEL = "gemini-2.0-flash"

HEAD_CHARS = 8000
TAIL_CHARS = 4000
TRUNCATION_MARKER = "\n\n[... truncated ...]\n\n"

SYSTEM_PROMPT = """You classify documents uploaded to a commercial loan underwriting pipeline.
Given one document (text or image), choose exactly one doc_type and return ONLY JSON
matching the response schema.

DOC TYPES:
- BUSINESS_TAX_RETURN: IRS Forms 1120, 1120-S, 1065 and their schedules (not K-1)
- PERSONAL_TAX_RETURN: IRS Form 1040 / 1040-SR and its schedules (not K-1, W-2, 1099)
- K1: Schedule K-1 from a partnership, S corporation or trust
- W2: Form W-2 Wage and Tax Statement
- FORM_1099: any 1099 variant (INT, DIV, MISC, NEC, ...)
- TAX_TRANSCRIPT_REQUEST: Form 4506-C or 4506-T
- TAX_AUTH: Form 8821 or Form 2848
- SBA_APPLICATION: SBA Form 1919 and other SBA borrower forms
- PERSONAL_FINANCIAL_STATEMENT: personal assets, liabilities and net worth (SBA Form 413)
- INCOME_STATEMENT: P&L, income statement, operating statement, trailing-twelve-month report
- BALANCE_SHEET: business balance sheet
- FINANCIAL_STATEMENT: a combined financial statement package
- BANK_STATEMENT: periodic bank account statement
- RENT_ROLL, DEBT_SCHEDULE, AR_AGING, VOIDED_CHECK, INSURANCE, DRIVERS_LICENSE
- OTHER: identifiable document outside these types (lease, appraisal, articles)
- UNKNOWN: the type cannot be determined

CONFIDENCE:
- 0.95-1.00 form number clearly visible, unambiguous
- 0.80-0.94 strong signals, minor ambiguity
- 0.60-0.79 partial signals
- below 0.60 unclear or barely readable

TAX YEAR: the year the document covers ("tax year", "for the year ended"), not the
signature or filing date. null when it cannot be determined.

REASONS: at most six short phrases naming what you saw.

DETECTED SIGNALS: form_numbers lists IRS/SBA form numbers seen (e.g. "1120-S",
"Schedule K"); has_ein is true if an EIN (XX-XXXXXXX) is visible; has_ssn is true
if an SSN (XXX-XX-XXXX) is visible, even partially redacted.

CONFUSION CANDIDATES: other doc types the document could plausibly be, if any."""

_SCHEMA_DOC_TYPES: List[str] = [t.value for t in DocType if t is not SENTINEL_DOC_TYPE]

# Explicit schema: Gemini structured output does not accept $ref or additionalProperties
GATEKEEPER_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "doc_type": {"type": "string", "enum": _SCHEMA_DOC_TYPES},
        "confidence": {"type": "number", "description": "Confidence 0-1"},
        "tax_year": {"type": "integer", "nullable": True},
        "reasons": {
            "type": "array",
            "items": {"type": "string"},
            "maxItems": MAX_REASONS,
        },
        "detected_signals": {
            "type": "object",
            "properties": {
                "form_numbers": {"type": "array", "items": {"type": "string"}},
                "has_ein": {"type": "boolean"},
                "has_ssn": {"type": "boolean"},
            },
            "required": ["form_numbers", "has_ein", "has_ssn"],
        },
        "confusion_candidates": {
            "type": "array",
            "items": {"type": "string", "enum": _SCHEMA_DOC_TYPES},
        },
    },
    "required": ["doc_type", "confidence", "tax_year", "reasons", "detected_signals"],
}


def compute_prompt_hash(
    prompt: str = SYSTEM_PROMPT,
    schema: dict[str, Any] = GATEKEEPER_RESPONSE_SCHEMA,
) -> str:
    """First 16 hex chars of sha256(prompt + schema)."""
    combined = prompt + "\n---\n" + json.dumps(schema, sort_keys=True)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def truncate_text(text: str, head: int = HEAD_CHARS, tail: int = TAIL_CHARS) -> str:
    """Keep the first ``head`` and last ``tail`` characters of long text."""
    if len(text) <= head + tail:
        return text
    return text[:head] + TRUNCATION_MARKER + text[-tail:]


class GeminiClassifier:
    """LLMCapability backed by Gemini structured output."""

    prompt_version = PROMPT_VERSION

    def __init__(self, client: genai.Client, model: str = DEFAULT_MODEL):
        self.client = client
        self.model = model
        self.prompt_hash = compute_prompt_hash()

    async def classify_text(self, text: str) -> GatekeeperClassification:
        contents: List[Any] = [f"Classify this document:\n\n{truncate_text(text)}"]
        return await asyncio.to_thread(self._generate, contents)

    async def classify_image(self, image_bytes: bytes, mime_type: str) -> GatekeeperClassification:
        contents: List[Any] = [
            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            "Classify this document:",
        ]
        return await asyncio.to_thread(self._generate, contents)

    @retry_with_backoff()
    def _generate(self, contents: List[Any]) -> GatekeeperClassification:
        """Call Gemini once and validate the JSON it returns.

        Raises:
            MalformedGatekeeperOutputError: Empty, non-JSON or off-schema output
        """
        response = self.client.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=SYSTEM_PROMPT,
                temperature=0.0,
                max_output_tokens=512,
                response_mime_type="application/json",
                response_schema=GATEKEEPER_RESPONSE_SCHEMA,
            ),
        )

        usage = getattr(response, "usage_metadata", None)
        if usage is not None:
            logger.debug(
                f"gatekeeper {self.model} tokens: "
                f"prompt={getattr(usage, 'prompt_token_count', None)} "
                f"output={getattr(usage, 'candidates_token_count', None)}"
            )

        response_text = response.text
        if not response_text:
            raise MalformedGatekeeperOutputError("Gemini returned empty content")

        try:
            data = json.loads(response_text)
        except json.JSONDecodeError as e:
            raise MalformedGatekeeperOutputError(
                "Gemini returned invalid JSON", details={"position": e.pos}
            ) from e

        try:
            return GatekeeperClassification.model_validate(data)
        except ValidationError as e:
            raise MalformedGatekeeperOutputError(
                "Gemini output failed schema validation",
                details={"errors": e.error_count()},
            ) from e
