"""Structured JSON logging helpers.

Every event is one JSON object per line. Callers pass identifiers and
decisions only; OCR text, image bytes and API keys are never logged.
"""

import json
import logging
import sys
import time
from typing import Any

from docspine.models.classification import SCHEMA_VERSION
from docspine.models.shadow import ShadowCompareResult


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger to emit raw JSON lines on stdout."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(message)s',  # events are pre-formatted JSON
        stream=sys.stdout,
        force=True,
    )


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a structured event through ``logger``."""
    if not logger.isEnabledFor(level):
        return
    log_data = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "event": event,
        **fields,
    }
    logger.log(level, json.dumps(log_data, default=str))


def log_startup(logger: logging.Logger, **fields: Any) -> None:
    """Log the spine schema version once, at process start."""
    log_event(logger, "spine.startup", schema_version=SCHEMA_VERSION, **fields)


def log_shadow_comparison(
    logger: logging.Logger,
    comparison: ShadowCompareResult,
    **fields: Any,
) -> None:
    """Log a shadow routing comparison; divergent ones at INFO, agreeing at DEBUG."""
    log_event(
        logger,
        "shadow.routing_compare",
        level=logging.INFO if comparison.divergent else logging.DEBUG,
        **fields,
        **comparison.model_dump(),
    )
