"""
Signal Aggregator — weighted factor contributions → one directional confidence.

Two scoring policies, chosen by configuration and never mixed:

signed_signal (default):
    w_i' = w_i / Σw                         (all 0 when Σw = 0)
    signed = Σ(w_i' × signal_i),  signal_i ∈ [-1, 1]
    confidence = clamp(|signed| × 5, 0, 5)
    direction = side A if signed ≥ 0 else side B

over_under (legacy-compatible):
    over = Σ over_score_i,  under = Σ under_score_i   (weights already embedded)
    direction = larger total, confidence = clamp(larger total, 0, 5)
    raw edge = over − under

Every result carries the per-factor breakdown used to produce it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional, Protocol

import structlog

from pickcast.config import settings
from pickcast.errors import ValidationFailedError

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

MAX_CONFIDENCE: float = 5.0
SIGNAL_RANGE: tuple[float, float] = (-1.0, 1.0)


class Direction(str, Enum):
    SIDE_A = "A"      # OVER for totals
    SIDE_B = "B"      # UNDER for totals
    NONE = "NONE"


@dataclass(frozen=True)
class FactorContribution:
    """One named, weighted signal. Inputs only; never mutated."""
    key: str
    name: str
    weight: float = 0.0                 # 0-100, source supplied
    signal: Optional[float] = None      # normalized, -1..1
    over_score: float = 0.0             # pre-weighted, ≥ 0
    under_score: float = 0.0
    cap_applied: bool = False
    cap_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "weight": self.weight,
            "signal": self.signal,
            "over_score": self.over_score,
            "under_score": self.under_score,
            "cap_applied": self.cap_applied,
            "cap_reason": self.cap_reason,
        }


@dataclass(frozen=True)
class ConfidenceResult:
    """Aggregator output. Recomputable from its inputs."""
    policy: str
    direction: Direction
    confidence: float               # 0-5
    raw_edge: float                 # signed sum, or over − under
    magnitude: float
    breakdown: list[dict] = field(default_factory=list)
    normalized_weights: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "policy": self.policy,
            "direction": self.direction.value,
            "confidence": round(self.confidence, 4),
            "raw_edge": round(self.raw_edge, 4),
            "magnitude": round(self.magnitude, 4),
            "breakdown": self.breakdown,
            "normalized_weights": self.normalized_weights,
        }


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def normalize_weights(weights: Mapping[str, float]) -> dict[str, float]:
    """
    Scale weights to sum to 1.0.

    Zero total weight → every normalized weight is 0 (no direction bias).
    """
    for key, w in weights.items():
        if w < 0:
            raise ValidationFailedError(f"Negative weight for factor '{key}'", field=key, value=w)
    total = sum(weights.values())
    if total <= 0:
        return {key: 0.0 for key in weights}
    return {key: w / total for key, w in weights.items()}


def validate_weights(
    weights: Mapping[str, float],
    expected_total: float = 100.0,
    epsilon: float = 0.01,
    max_weight: Optional[float] = None,
    known_keys: Optional[Iterable[str]] = None,
) -> None:
    """
    Accept a weight configuration only if it sums to ``expected_total``.

    Raises:
        ValidationFailedError: unknown key, negative / oversized weight, or a
        total outside ``expected_total ± epsilon``.
    """
    if known_keys is not None:
        unknown = sorted(set(weights) - set(known_keys))
        if unknown:
            raise ValidationFailedError(
                f"Unknown factor keys: {', '.join(unknown)}", field="weights", value=unknown,
            )
    for key, w in weights.items():
        if w < 0 or (max_weight is not None and w > max_weight):
            raise ValidationFailedError(
                f"Weight for '{key}' out of range: {w}", field=key, value=w,
            )
    total = sum(weights.values())
    if abs(total - expected_total) > epsilon:
        raise ValidationFailedError(
            f"Weights sum to {total:.4f}, expected {expected_total:.2f} (±{epsilon})",
            field="weights",
            value=total,
        )


# ── Policies ──────────────────────────────────────────────────────────────


class ScoringPolicy(Protocol):
    """Strategy turning factor contributions into a ConfidenceResult."""

    name: str

    def score(
        self,
        factors: list[FactorContribution],
        weights: Mapping[str, float],
    ) -> ConfidenceResult:
        ...


class SignedSignalPolicy:
    """Normalized-weight signed sum scaled to the 0-5 confidence range."""

    name = "signed_signal"

    def score(
        self,
        factors: list[FactorContribution],
        weights: Mapping[str, float],
    ) -> ConfidenceResult:
        raw = {f.key: weights.get(f.key, f.weight) for f in factors}
        normalized = normalize_weights(raw)

        signed_sum = 0.0
        breakdown: list[dict] = []
        for f in factors:
            if f.signal is None:
                raise ValidationFailedError(f"Factor '{f.key}' has no signal", field=f.key)
            if not SIGNAL_RANGE[0] <= f.signal <= SIGNAL_RANGE[1]:
                raise ValidationFailedError(
                    f"Signal for '{f.key}' outside [-1, 1]: {f.signal}", field=f.key, value=f.signal,
                )
            contribution = normalized[f.key] * f.signal
            signed_sum += contribution
            breakdown.append({
                "key": f.key,
                "name": f.name,
                "signal": f.signal,
                "weight": raw[f.key],
                "normalized_weight": round(normalized[f.key], 6),
                "contribution": round(contribution, 6),
            })

        if sum(raw.values()) <= 0:
            direction = Direction.NONE
        else:
            direction = Direction.SIDE_A if signed_sum >= 0 else Direction.SIDE_B

        return ConfidenceResult(
            policy=self.name,
            direction=direction,
            confidence=_clamp(abs(signed_sum) * MAX_CONFIDENCE, 0.0, MAX_CONFIDENCE),
            raw_edge=signed_sum,
            magnitude=abs(signed_sum),
            breakdown=breakdown,
            normalized_weights=normalized,
        )


class OverUnderEnsemblePolicy:
    """Additive over/under totals; factors already embed their weight."""

    name = "over_under"

    def score(
        self,
        factors: list[FactorContribution],
        weights: Mapping[str, float],
    ) -> ConfidenceResult:
        over_total = 0.0
        under_total = 0.0
        breakdown: list[dict] = []
        for f in factors:
            if f.over_score < 0 or f.under_score < 0:
                raise ValidationFailedError(
                    f"Negative over/under score for '{f.key}'", field=f.key,
                )
            over_total += f.over_score
            under_total += f.under_score
            breakdown.append({
                "key": f.key,
                "name": f.name,
                "over_score": f.over_score,
                "under_score": f.under_score,
                "contribution": round(f.over_score - f.under_score, 6),
            })

        if over_total > under_total:
            direction = Direction.SIDE_A
        elif under_total > over_total:
            direction = Direction.SIDE_B
        else:
            direction = Direction.NONE

        edge = over_total - under_total
        return ConfidenceResult(
            policy=self.name,
            direction=direction,
            confidence=_clamp(max(over_total, under_total), 0.0, MAX_CONFIDENCE),
            raw_edge=edge,
            magnitude=abs(edge),
            breakdown=breakdown,
        )


POLICIES: dict[str, type] = {
    SignedSignalPolicy.name: SignedSignalPolicy,
    OverUnderEnsemblePolicy.name: OverUnderEnsemblePolicy,
}


def build_policy(name: str) -> ScoringPolicy:
    """Instantiate the scoring policy registered under ``name``."""
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValidationFailedError(
            f"Unknown scoring policy '{name}'", field="scoring_policy", value=name,
        ) from None


class SignalAggregator:
    """Runs the configured scoring policy over a set of factors."""

    def __init__(self, policy: Optional[ScoringPolicy] = None):
        self.policy = policy or build_policy(settings.scoring_policy)

    def aggregate(
        self,
        factors: list[FactorContribution],
        weights: Optional[Mapping[str, float]] = None,
    ) -> ConfidenceResult:
        """Score ``factors``; ``weights`` override each factor's own weight."""
        result = self.policy.score(list(factors), weights or {})
        logger.debug(
            "signals_aggregated",
            policy=result.policy,
            n_factors=len(factors),
            direction=result.direction.value,
            confidence=round(result.confidence, 3),
        )
        return result
