"""
Tier-weighted unit sizing for consensus decisions.

    combined_weight = tier_weight × 2 + min(track_record, cap) / 4
    units = round(Σ(units × w) / Σw × multiplier − penalty), clamped to [1, 5]

Tier carries two thirds of a member's influence; track record the rest. A
Legendary pick from a +5u source outweighs a Common pick from a +20u source.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from pickcast.consensus.conflict import CounterStrength, CounterThesis
from pickcast.consensus.schemas import PickSourceRecord

# ── Configuration ─────────────────────────────────────────────────────────

TIER_WEIGHTS: dict[str, int] = {
    "Legendary": 5,
    "Elite": 4,
    "Rare": 3,
    "Uncommon": 2,
    "Common": 1,
}

CONFLICT_PENALTIES: dict[CounterStrength, float] = {
    CounterStrength.STRONG: 2.0,
    CounterStrength.MODERATE: 1.0,
    CounterStrength.WEAK: 0.5,
}

TRACK_RECORD_CAP: float = 20.0
MIN_UNITS: int = 1
MAX_UNITS: int = 5
EMPTY_GROUP_CONFIDENCE: float = 5.0


def tier_weight(tier: Optional[str]) -> int:
    """Legendary 5 … Common 1; unknown or missing tiers count as Common."""
    return TIER_WEIGHTS.get(tier or "Common", 1)


def consensus_multiplier(agreeing_count: int) -> float:
    if agreeing_count >= 4:
        return 1.5
    if agreeing_count == 3:
        return 1.25
    return 1.0


def conflict_penalty(counter: Optional[CounterThesis]) -> float:
    if counter is None:
        return 0.0
    return CONFLICT_PENALTIES[counter.strength]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class UnitSizing:
    weighted_units: float
    tier_weighted_score: float
    multiplier: float
    penalty: float
    units: int
    confidence: float

    def to_dict(self) -> dict:
        return {
            "weighted_units": round(self.weighted_units, 4),
            "tier_weighted_score": round(self.tier_weighted_score, 4),
            "multiplier": self.multiplier,
            "penalty": self.penalty,
            "units": self.units,
            "confidence": round(self.confidence, 4),
        }


class UnitSizer:
    """Sizes an allowed consensus group."""

    def __init__(self, track_record_cap: float = TRACK_RECORD_CAP):
        self.track_record_cap = track_record_cap

    def combined_weight(self, record: PickSourceRecord) -> float:
        return tier_weight(record.tier) * 2 + min(record.track_record, self.track_record_cap) / 4

    def size(
        self,
        agreeing: Sequence[PickSourceRecord],
        counter: Optional[CounterThesis],
    ) -> UnitSizing:
        total_weight = 0.0
        units_sum = 0.0
        tier_sum = 0.0
        for record in agreeing:
            w = self.combined_weight(record)
            total_weight += w
            units_sum += record.units * w
            tier_sum += record.tier_score * w

        if total_weight > 0:
            weighted_units = units_sum / total_weight
            tier_weighted_score = tier_sum / total_weight
        else:
            weighted_units = 1.0
            tier_weighted_score = 0.0

        multiplier = consensus_multiplier(len(agreeing))
        penalty = conflict_penalty(counter)
        units = max(MIN_UNITS, min(MAX_UNITS, round_half_up(weighted_units * multiplier - penalty)))

        return UnitSizing(
            weighted_units=weighted_units,
            tier_weighted_score=tier_weighted_score,
            multiplier=multiplier,
            penalty=penalty,
            units=units,
            confidence=tier_weighted_confidence(agreeing),
        )


def tier_weighted_confidence(agreeing: Sequence[PickSourceRecord]) -> float:
    """Average member confidence weighted by tier weight alone."""
    total_weight = sum(tier_weight(r.tier) for r in agreeing)
    if total_weight <= 0:
        return EMPTY_GROUP_CONFIDENCE
    return sum(r.confidence * tier_weight(r.tier) for r in agreeing) / total_weight
