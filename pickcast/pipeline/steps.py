"""
Pure step computations for the pick pipeline.

Nothing here touches storage or providers; the runner feeds these functions
and guards their results with the execution ledger.

    factors     signal clamp, profile weights, over/under derivation
    prediction  baseline + Σ(signal × max_points × weight/100), clamped
    market edge edge = predicted − market; factor = clamp(edge / 10, -1, 1)
    decision    confidence → units ladder (0 = PASS), selection text
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from pickcast.consensus.sides import OVER, SPREAD, TOTAL, UNDER, base_kind, format_selection
from pickcast.engine.aggregator import Direction, FactorContribution
from pickcast.pipeline.providers import FactorSignal, MarketSnapshot
from pickcast.pipeline.weights import WeightProfile

# ── Configuration ─────────────────────────────────────────────────────────

SIGNAL_MIN: float = -1.0
SIGNAL_MAX: float = 1.0
MAX_CONFIDENCE: float = 5.0

# (minimum confidence, units); below the last rung the decision is PASS
UNIT_LADDER: list[tuple[float, int]] = [
    (4.5, 5),
    (4.0, 3),
    (3.5, 2),
    (2.5, 1),
]

# Margin predictions (spread / moneyline) are clamped to ± this many points.
MARGIN_CAP: float = 40.0


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


# ── Step 3: factors ──────────────────────────────────────────────────────


def build_contributions(
    signals: Sequence[FactorSignal],
    profile: WeightProfile,
    max_points: float = 5.0,
) -> list[FactorContribution]:
    """
    Turn provider signals into weighted contributions.

    Raises ValidationFailedError for keys the profile does not know.
    """
    contributions: list[FactorContribution] = []
    for sig in signals:
        weight = profile.weight_for(sig.key)
        if sig.weight is not None and weight > 0:
            weight = sig.weight

        if sig.signal is None:
            contributions.append(FactorContribution(
                key=sig.key,
                name=sig.name or profile.name_for(sig.key),
                weight=weight,
                over_score=sig.over_score or 0.0,
                under_score=sig.under_score or 0.0,
            ))
            continue

        signal = _clamp(sig.signal, SIGNAL_MIN, SIGNAL_MAX)
        capped = signal != sig.signal
        scale = max_points * weight / 100.0
        contributions.append(FactorContribution(
            key=sig.key,
            name=sig.name or profile.name_for(sig.key),
            weight=weight,
            signal=signal,
            over_score=max(signal, 0.0) * scale,
            under_score=max(-signal, 0.0) * scale,
            cap_applied=capped,
            cap_reason=f"signal {sig.signal:+.3f} clamped to [-1, 1]" if capped else None,
        ))
    return contributions


# ── Step 4: prediction ───────────────────────────────────────────────────


@dataclass(frozen=True)
class PredictionBounds:
    baseline: float
    floor: float
    ceiling: float


def prediction_bounds(kind: str, snapshot: MarketSnapshot, settings) -> PredictionBounds:
    """Totals predict points scored; spreads / moneylines predict side A's margin."""
    if base_kind(kind) == TOTAL:
        baseline = snapshot.baseline if snapshot.baseline is not None else settings.prediction_baseline
        return PredictionBounds(baseline, settings.prediction_floor, settings.prediction_ceiling)
    baseline = snapshot.baseline if snapshot.baseline is not None else 0.0
    return PredictionBounds(baseline, -MARGIN_CAP, MARGIN_CAP)


def predict_value(
    contributions: Sequence[FactorContribution],
    bounds: PredictionBounds,
    max_points: float = 5.0,
) -> float:
    adjustment = sum(
        c.signal * max_points * (c.weight / 100.0)
        for c in contributions
        if c.signal is not None
    )
    return _clamp(bounds.baseline + adjustment, bounds.floor, bounds.ceiling)


def market_value(kind: str, line: float) -> float:
    """Market line on the prediction's scale (spread handicap → expected margin)."""
    if base_kind(kind) == SPREAD:
        return -line
    return line


# ── Step 5: market edge ──────────────────────────────────────────────────


@dataclass(frozen=True)
class MarketEdge:
    predicted: float
    market: float
    edge_pts: float
    edge_factor: float
    base_confidence: float
    adjusted_confidence: float

    def to_dict(self) -> dict:
        return {
            "predicted": round(self.predicted, 4),
            "market": self.market,
            "edge_pts": round(self.edge_pts, 4),
            "edge_factor": round(self.edge_factor, 4),
            "base_confidence": round(self.base_confidence, 4),
            "adjusted_confidence": round(self.adjusted_confidence, 4),
        }


def apply_market_edge(
    base_confidence: float,
    predicted: float,
    market: float,
    divisor: float = 10.0,
    edge_weight: float = 1.0,
) -> MarketEdge:
    edge_pts = predicted - market
    edge_factor = _clamp(edge_pts / divisor, -1.0, 1.0)
    adjusted = _clamp(base_confidence + edge_factor * edge_weight, 0.0, MAX_CONFIDENCE)
    return MarketEdge(
        predicted=predicted,
        market=market,
        edge_pts=edge_pts,
        edge_factor=edge_factor,
        base_confidence=base_confidence,
        adjusted_confidence=adjusted,
    )


# ── Step 6: decision ─────────────────────────────────────────────────────


def units_for_confidence(confidence: float) -> int:
    """Discrete units for a 0-5 confidence; 0 means PASS."""
    for threshold, units in UNIT_LADDER:
        if confidence >= threshold:
            return units
    return 0


def side_label(kind: str, direction: Direction, snapshot: MarketSnapshot) -> Optional[str]:
    """Human side for a direction: OVER/UNDER for totals, team for the rest."""
    if direction == Direction.NONE:
        return None
    if base_kind(kind) == TOTAL:
        return OVER if direction == Direction.SIDE_A else UNDER
    return snapshot.side_labels.get(direction.value, direction.value)


def selection_for(kind: str, direction: Direction, snapshot: MarketSnapshot, line: float) -> Optional[str]:
    side = side_label(kind, direction, snapshot)
    if side is None:
        return None
    if base_kind(kind) == SPREAD:
        return format_selection(kind, side, line if direction == Direction.SIDE_A else -line)
    return format_selection(kind, side, line)
