"""Confidence gate between the deterministic tiers and the LLM gatekeeper.

TIER1_CHECK -> TIER2_CHECK -> LLM_FALLBACK, terminal on first acceptance.
A Tier 1 match is always accepted and Tier 2 is not run at all. An upstream
DocAI label is cross-validated in the TIER1_CHECK state: it is accepted when
Tier 1 agrees or has no match, and ignored when Tier 1 names another type.
A Tier 2 match is accepted only at or above TIER2_ACCEPT_THRESHOLD; otherwise
it is kept on the decision as ``rejected`` so the spine can pass it on as a
confusion candidate.
"""

from typing import Callable, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from docspine.models.classification import NoMatch, Tier1Match, Tier2Match, TierMatch
from docspine.models.gatekeeper import DocAISignals
from docspine.services.anchors import match_tier1
from docspine.services.docai_signals import cross_validate
from docspine.services.structural import match_tier2


GateState = Literal["TIER1_CHECK", "TIER2_CHECK", "LLM_FALLBACK"]

GATE_ORDER: Tuple[GateState, ...] = ("TIER1_CHECK", "TIER2_CHECK", "LLM_FALLBACK")

TIER2_ACCEPT_THRESHOLD = 0.75

Tier1Matcher = Callable[[str], Union[Tier1Match, NoMatch]]
Tier2Matcher = Callable[[str], Union[Tier2Match, NoMatch]]


class GateDecision(BaseModel):
    """Outcome of the deterministic tiers for one document."""

    model_config = ConfigDict(frozen=True)

    state: GateState = Field(description="State the gate stopped in")
    match: TierMatch = Field(default_factory=NoMatch)
    trail: Tuple[GateState, ...] = Field(default=(), description="States visited, in order")
    rejected: Optional[Tier2Match] = Field(
        default=None,
        description="Tier 2 match that fell below the acceptance threshold"
    )

    @property
    def accepted(self) -> bool:
        return self.state != "LLM_FALLBACK"


def evaluate(
    text: Optional[str],
    tier1: Tier1Matcher = match_tier1,
    tier2: Tier2Matcher = match_tier2,
    docai: Optional[DocAISignals] = None,
) -> GateDecision:
    """Run the deterministic tiers in gate order and stop at the first acceptance."""
    text = text or ""
    trail = []

    trail.append("TIER1_CHECK")
    first = tier1(text)
    docai_match = cross_validate(first, docai, text)
    if docai_match is not None:
        return GateDecision(state="TIER1_CHECK", match=docai_match, trail=tuple(trail))
    if first.kind == "tier1":
        return GateDecision(state="TIER1_CHECK", match=first, trail=tuple(trail))

    trail.append("TIER2_CHECK")
    second = tier2(text)
    rejected = None
    if second.kind == "tier2":
        if second.confidence >= TIER2_ACCEPT_THRESHOLD:
            return GateDecision(state="TIER2_CHECK", match=second, trail=tuple(trail))
        rejected = second

    trail.append("LLM_FALLBACK")
    return GateDecision(
        state="LLM_FALLBACK",
        match=NoMatch(),
        trail=tuple(trail),
        rejected=rejected,
    )
