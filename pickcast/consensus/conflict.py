"""
Conflict classification and counter-thesis analysis.

Policy table (first match wins):

    agreeing < 2                     → blocked   (insufficient agreement)
    agreeing == 1, disagreeing ≥ 1   → blocked   (1vN split)
    agreeing == 2, disagreeing == 1  → blocked   (too close, skip)
    agreeing ≤ disagreeing           → blocked   (split consensus)
    disagreeing > 0                  → allowed   (consensus with conflict)
    otherwise                        → allowed   (clean consensus)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from pickcast.consensus.schemas import ConflictClass, PickSourceRecord
from pickcast.errors import ValidationFailedError

# ── Configuration ─────────────────────────────────────────────────────────

STRONG_COUNTER_TIER_SCORE: float = 7.0
MODERATE_COUNTER_TIER_SCORE: float = 5.0


@dataclass(frozen=True)
class ConflictAnalysis:
    agreeing: int
    disagreeing: int
    classification: ConflictClass
    reason: str

    @property
    def allowed(self) -> bool:
        return self.classification != ConflictClass.BLOCKED

    @property
    def has_conflict(self) -> bool:
        return self.disagreeing > 0


def classify(agreeing: int, disagreeing: int) -> ConflictAnalysis:
    """Classify an (agreeing, disagreeing) head count."""
    if agreeing < 0 or disagreeing < 0:
        raise ValidationFailedError("counts must be non-negative", value=(agreeing, disagreeing))

    def blocked(reason: str) -> ConflictAnalysis:
        return ConflictAnalysis(agreeing, disagreeing, ConflictClass.BLOCKED, reason)

    if agreeing < 2:
        return blocked(f"insufficient agreement: need at least 2 sources agreeing, only have {agreeing}")
    if agreeing == 1 and disagreeing >= 1:
        return blocked(f"1v{disagreeing} split")
    if agreeing == 2 and disagreeing == 1:
        return blocked("2v1 split: too close, skip")
    if agreeing <= disagreeing:
        return blocked(f"{agreeing}v{disagreeing} split consensus")
    if disagreeing > 0:
        return ConflictAnalysis(
            agreeing, disagreeing, ConflictClass.CONSENSUS_WITH_CONFLICT,
            f"{agreeing}v{disagreeing} consensus with conflict",
        )
    return ConflictAnalysis(
        agreeing, 0, ConflictClass.CLEAN_CONSENSUS, f"{agreeing}v0 clean consensus",
    )


# ── Counter-thesis ───────────────────────────────────────────────────────


class CounterStrength(str, Enum):
    STRONG = "STRONG"
    MODERATE = "MODERATE"
    WEAK = "WEAK"


@dataclass(frozen=True)
class CounterThesis:
    """The strongest opposing opinion."""
    source: str
    tier: str
    tier_score: float
    strength: CounterStrength
    top_factor: Optional[str]
    reason: str

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "tier": self.tier,
            "tier_score": self.tier_score,
            "strength": self.strength.value,
            "top_factor": self.top_factor,
            "reason": self.reason,
        }


def counter_strength(tier_score: float) -> CounterStrength:
    if tier_score >= STRONG_COUNTER_TIER_SCORE:
        return CounterStrength.STRONG
    if tier_score >= MODERATE_COUNTER_TIER_SCORE:
        return CounterStrength.MODERATE
    return CounterStrength.WEAK


def counter_thesis(disagreeing: Sequence[PickSourceRecord]) -> Optional[CounterThesis]:
    """
    Pick the dissenter with the highest tier score.

    Ties keep the first dissenter in input order. None when nobody dissents.
    """
    if not disagreeing:
        return None

    strongest = disagreeing[0]
    for record in disagreeing[1:]:
        if record.tier_score > strongest.tier_score:
            strongest = record

    strength = counter_strength(strongest.tier_score)
    tier = strongest.tier or "Common"
    if strength == CounterStrength.STRONG:
        reason = f"{tier} tier pick with high confidence"
    elif strength == CounterStrength.MODERATE:
        reason = f"{tier} tier pick with moderate confidence"
    else:
        reason = f"{tier} tier pick, lower confidence"

    top_factor = None
    if strongest.top_factors:
        top_factor = strongest.top_factors[0].name or strongest.top_factors[0].key
        reason += f" (driven by {top_factor})"

    return CounterThesis(
        source=strongest.source,
        tier=tier,
        tier_score=strongest.tier_score,
        strength=strength,
        top_factor=top_factor,
        reason=reason,
    )
