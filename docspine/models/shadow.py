"""Pydantic model for shadow routing comparisons."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Engine = Literal["DOC_AI", "GEMINI"]


class ShadowCompareResult(BaseModel):
    """Slot-based routing versus gatekeeper routing for one document.

    Observability only: nothing reads this back into a routing decision.
    """

    model_config = ConfigDict(frozen=True)

    slot_doc_type: Optional[str] = None
    gatekeeper_doc_type: Optional[str] = None
    slot_engine: Optional[Engine] = None
    gatekeeper_engine: Optional[Engine] = Field(
        default=None,
        description="None when the gatekeeper routed to NEEDS_REVIEW"
    )
    gatekeeper_confidence: Optional[float] = None
    divergent_doc_type: bool = False
    divergent_engine: bool = False
    reason: Optional[str] = None

    @property
    def divergent(self) -> bool:
        return self.divergent_doc_type or self.divergent_engine
