"""Shadow routing comparator.

Compares the extraction engine and doc type the slot-based router picks
against what the gatekeeper would pick. Pure: no I/O, no mutation. Logging
the result is the caller's job (see ``docspine.utils.logging``).
"""

from typing import List, Optional

from docspine.models.doc_types import CORE_FAMILY, DocType, SENTINEL_DOC_TYPE
from docspine.models.shadow import Engine, ShadowCompareResult
from docspine.services.routing import map_gatekeeper_doc_type_to_effective


_CORE_VALUES = frozenset(t.value for t in CORE_FAMILY)

# Slot vocabulary understood by the non-core engine
_KNOWN_VALUES = frozenset(
    t.value for t in DocType if t not in (DocType.UNKNOWN, SENTINEL_DOC_TYPE)
) | {"ENTITY_DOCS"}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def engine_for_slot_doc_type(doc_type: Optional[str]) -> Optional[Engine]:
    """Engine the slot router uses for a doc type; None when it has no opinion."""
    value = _clean(doc_type)
    if value is None:
        return None
    value = value.upper()
    if value in _CORE_VALUES:
        return "DOC_AI"
    if value in _KNOWN_VALUES:
        return "GEMINI"
    return None


def engine_for_route(route: Optional[str]) -> Optional[Engine]:
    """Engine implied by a gatekeeper route; NEEDS_REVIEW has none."""
    if route == "GOOGLE_DOC_AI_CORE":
        return "DOC_AI"
    if route == "STANDARD":
        return "GEMINI"
    return None


def compare(
    slot_doc_type: Optional[str],
    effective_doc_type: Optional[str],
    gatekeeper_doc_type: Optional[str],
    gatekeeper_route: Optional[str],
    gatekeeper_confidence: Optional[float] = None,
) -> ShadowCompareResult:
    """Compare slot routing with gatekeeper routing.

    Doc types diverge only when both sides have a value. Engines diverge
    only when the gatekeeper has an opinion (route is not NEEDS_REVIEW) and
    the slot engine is known.
    """
    slot = _clean(slot_doc_type)
    gatekeeper = _clean(gatekeeper_doc_type)

    slot_engine = engine_for_slot_doc_type(slot or _clean(effective_doc_type))
    gatekeeper_engine = engine_for_route(gatekeeper_route)

    divergent_doc_type = (
        slot is not None
        and gatekeeper is not None
        and slot.upper() != map_gatekeeper_doc_type_to_effective(gatekeeper)
    )
    divergent_engine = (
        gatekeeper_route != "NEEDS_REVIEW"
        and gatekeeper_engine is not None
        and slot_engine is not None
        and slot_engine != gatekeeper_engine
    )

    parts: List[str] = []
    if divergent_doc_type:
        parts.append(f"doc_type: slot={slot} gatekeeper={gatekeeper}")
    if divergent_engine:
        parts.append(f"engine: slot={slot_engine} gatekeeper={gatekeeper_engine}")

    return ShadowCompareResult(
        slot_doc_type=slot,
        gatekeeper_doc_type=gatekeeper,
        slot_engine=slot_engine,
        gatekeeper_engine=gatekeeper_engine,
        gatekeeper_confidence=gatekeeper_confidence,
        divergent_doc_type=divergent_doc_type,
        divergent_engine=divergent_engine,
        reason="; ".join(parts) if parts else None,
    )
