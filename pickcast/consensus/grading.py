"""
Consensus Tier Grading — a 5-signal, 12-point quality score.

    1. Consensus strength    (0-3)   how many sources agree
    2. Tier quality          (0-3)   average tier score of the agreeing picks
    3. Factor alignment      (0-3)   do they share the same top factor?
    4. Counter-thesis        (0-2)   how weak is the opposing case?
    5. Historical record     (0-1)   engine's own win rate on this kind

Tiers: Legendary ≥10, Elite ≥8, Rare ≥6, Uncommon ≥4, Common below.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from pickcast.consensus.confluence import FactorConfluence, factor_alignment_points
from pickcast.consensus.conflict import CounterStrength, CounterThesis
from pickcast.consensus.schemas import PickSourceRecord
from pickcast.store.base import OutcomeRecord

# ── Configuration ─────────────────────────────────────────────────────────

MIN_RECORD_SAMPLE: int = 10

TIER_THRESHOLDS: list[tuple[float, str]] = [
    (10.0, "Legendary"),
    (8.0, "Elite"),
    (6.0, "Rare"),
    (4.0, "Uncommon"),
]

COUNTER_THESIS_POINTS: dict[CounterStrength, float] = {
    CounterStrength.WEAK: 1.5,
    CounterStrength.MODERATE: 1.0,
    CounterStrength.STRONG: 0.0,
}


# ── Track record ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TrackRecord:
    """Resolved results for one source (or the engine) on one kind."""
    wins: int = 0
    losses: int = 0
    pushes: int = 0
    net_units: float = 0.0

    @property
    def resolved(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> Optional[float]:
        """Percentage of won among won + lost, None when nothing resolved."""
        if self.resolved == 0:
            return None
        return self.wins / self.resolved * 100.0

    def has_min_sample(self, minimum: int = MIN_RECORD_SAMPLE) -> bool:
        return self.resolved >= minimum

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[OutcomeRecord], kind: Optional[str] = None) -> "TrackRecord":
        wins = losses = pushes = 0
        net = 0.0
        for outcome in outcomes:
            if kind is not None and outcome.kind.lower() != kind.lower():
                continue
            if outcome.result == "won":
                wins += 1
            elif outcome.result == "lost":
                losses += 1
            elif outcome.result == "push":
                pushes += 1
            net += outcome.units_delta
        return cls(wins=wins, losses=losses, pushes=pushes, net_units=round(net, 4))


# ── Signal points ────────────────────────────────────────────────────────


def consensus_points(agreeing_count: int) -> float:
    if agreeing_count >= 4:
        return 3.0
    if agreeing_count == 3:
        return 2.0
    if agreeing_count == 2:
        return 1.0
    return 0.5


def average_tier_score(agreeing: Sequence[PickSourceRecord]) -> float:
    if not agreeing:
        return 0.0
    return sum(r.tier_score for r in agreeing) / len(agreeing)


def tier_quality_points(avg_tier_score: float) -> float:
    if avg_tier_score >= 7:
        return 3.0
    if avg_tier_score >= 6:
        return 2.5
    if avg_tier_score >= 5:
        return 2.0
    if avg_tier_score >= 4:
        return 1.0
    return 0.5


def counter_thesis_points(counter: Optional[CounterThesis]) -> float:
    if counter is None:
        return 2.0
    return COUNTER_THESIS_POINTS[counter.strength]


def record_points(record: TrackRecord, min_sample: int = MIN_RECORD_SAMPLE) -> float:
    if not record.has_min_sample(min_sample):
        return 0.0
    win_rate = record.win_rate or 0.0
    if win_rate >= 55:
        return 1.0
    if win_rate >= 52:
        return 0.5
    return 0.0


def tier_for_score(score: float) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return "Common"


# ── Grade ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TierGrade:
    score: float                  # 0-12, one decimal
    tier: str
    consensus_points: float
    tier_quality_points: float
    factor_alignment_points: float
    counter_thesis_points: float
    record_points: float
    avg_tier_score: float
    win_rate: Optional[float]
    record_sample: int

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "tier": self.tier,
            "consensus_points": self.consensus_points,
            "tier_quality_points": self.tier_quality_points,
            "factor_alignment_points": self.factor_alignment_points,
            "counter_thesis_points": self.counter_thesis_points,
            "record_points": self.record_points,
            "avg_tier_score": round(self.avg_tier_score, 1),
            "win_rate": round(self.win_rate, 2) if self.win_rate is not None else None,
            "record_sample": self.record_sample,
        }


class TierGrader:
    """Grades a consensus decision from its group, confluence and history."""

    def __init__(self, min_record_sample: int = MIN_RECORD_SAMPLE):
        self.min_record_sample = min_record_sample

    def grade(
        self,
        agreeing: Sequence[PickSourceRecord],
        confluence: Sequence[FactorConfluence],
        counter: Optional[CounterThesis],
        record: TrackRecord = TrackRecord(),
    ) -> TierGrade:
        avg_tier = average_tier_score(agreeing)
        points = (
            consensus_points(len(agreeing)),
            tier_quality_points(avg_tier),
            factor_alignment_points(confluence, len(agreeing)),
            counter_thesis_points(counter),
            record_points(record, self.min_record_sample),
        )
        total = sum(points)
        return TierGrade(
            score=round(total, 1),
            tier=tier_for_score(total),
            consensus_points=points[0],
            tier_quality_points=points[1],
            factor_alignment_points=points[2],
            counter_thesis_points=points[3],
            record_points=points[4],
            avg_tier_score=avg_tier,
            win_rate=record.win_rate,
            record_sample=record.resolved,
        )
