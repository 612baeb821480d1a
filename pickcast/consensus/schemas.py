"""
Consensus Engine Schemas.

Input: ``PickSourceRecord`` (one source's terminal opinion, owned by the
source). Output: ``ConsensusDecision`` inside a ``ConsensusEvaluation``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from pickcast.errors import ValidationFailedError


# ── Inputs ───────────────────────────────────────────────────────────────


class FactorCitation(BaseModel):
    """A factor a source leaned on, with its signed contribution."""

    key: str
    name: str = ""
    contribution: float = 0.0


class PickSourceRecord(BaseModel):
    """One source's opinion on one entity. Read-only to the engine."""

    source: str
    entity_id: str
    kind: str                        # total | spread | moneyline (+ _over/_under spellings)
    selection: str                   # "OVER 220.5", "LAL -4.5", "LAL"
    line: Optional[float] = None
    units: int = Field(ge=1, le=5)
    confidence: float = Field(default=0.0, ge=0.0, le=5.0)
    tier: Optional[str] = None       # Common … Legendary
    tier_score: float = Field(default=0.0, ge=0.0, le=12.0)
    track_record: float = 0.0        # source net units
    top_factors: list[FactorCitation] = Field(default_factory=list)


def parse_pick_record(data: dict) -> PickSourceRecord:
    """Validate a raw pick payload, raising VALIDATION_FAILED on bad input."""
    try:
        return PickSourceRecord.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailedError(
            f"Invalid pick record: {first.get('msg', str(e))}", field=loc or None,
        ) from e


# ── Outputs ──────────────────────────────────────────────────────────────


class ConflictClass(str, Enum):
    BLOCKED = "blocked"
    CONSENSUS_WITH_CONFLICT = "consensus_with_conflict"
    CLEAN_CONSENSUS = "clean_consensus"


class EvaluationStatus(str, Enum):
    DECISION = "DECISION"
    INSUFFICIENT_CONSENSUS = "INSUFFICIENT_CONSENSUS"


@dataclass(frozen=True)
class ConsensusDecision:
    """A fully populated consensus pick with its audit breakdown."""
    entity_id: str
    kind: str
    side: str
    selection: str
    line: Optional[float]
    units: int                       # 1-5
    confidence: float                # 0-5
    tier: str
    tier_score: float                # 0-12
    classification: ConflictClass
    reason: str
    agreeing_sources: list[str]
    disagreeing_sources: list[str]
    counter_thesis: Optional[dict]
    confluence: list[dict]
    sizing: dict
    grade: dict

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "side": self.side,
            "selection": self.selection,
            "line": self.line,
            "units": self.units,
            "confidence": self.confidence,
            "tier": self.tier,
            "tier_score": self.tier_score,
            "classification": self.classification.value,
            "reason": self.reason,
            "agreeing_sources": self.agreeing_sources,
            "disagreeing_sources": self.disagreeing_sources,
            "counter_thesis": self.counter_thesis,
            "confluence": self.confluence,
            "sizing": self.sizing,
            "grade": self.grade,
        }


@dataclass(frozen=True)
class GroupVerdict:
    """Conflict classification of one side of an entity."""
    side: str
    agreeing: int
    disagreeing: int
    classification: ConflictClass
    reason: str


@dataclass(frozen=True)
class ConsensusEvaluation:
    """Everything the engine concluded for one entity + kind."""
    entity_id: str
    kind: str
    status: EvaluationStatus
    reason: str
    verdicts: list[GroupVerdict] = field(default_factory=list)
    decision: Optional[ConsensusDecision] = None

    @property
    def is_pass(self) -> bool:
        return self.decision is None
