"""
Pipeline Step Computation Tests.
"""

from types import SimpleNamespace

import pytest

from pickcast.engine.aggregator import Direction
from pickcast.errors import ValidationFailedError
from pickcast.pipeline.providers import FactorSignal, MarketSnapshot
from pickcast.pipeline.steps import (
    MARGIN_CAP,
    PredictionBounds,
    apply_market_edge,
    build_contributions,
    market_value,
    predict_value,
    prediction_bounds,
    selection_for,
    units_for_confidence,
)
from pickcast.pipeline.weights import FactorSpec, WeightProfile

CONFIG = SimpleNamespace(prediction_baseline=225.0, prediction_floor=180.0, prediction_ceiling=280.0)


def _profile() -> WeightProfile:
    return WeightProfile([
        FactorSpec("pace", "Pace", 60.0),
        FactorSpec("rest", "Rest Days", 40.0),
        FactorSpec("travel", "Travel", 0.0, enabled=False),
    ])


def _snapshot(**overrides) -> MarketSnapshot:
    data = {
        "entity_id": "G1",
        "lines": {"total": 220.5, "spread": -4.5, "moneyline": 0.0},
        "side_labels": {"A": "LAL", "B": "BOS"},
    }
    data.update(overrides)
    return MarketSnapshot(**data)


class TestMarketEdge:

    def test_edge_clamped_to_one(self):
        """predicted 235 vs market 220 → 15 pts → factor 1.5 → clamped 1.0."""
        edge = apply_market_edge(base_confidence=3.2, predicted=235.0, market=220.0)
        assert edge.edge_pts == 15.0
        assert edge.edge_factor == 1.0
        assert edge.adjusted_confidence == pytest.approx(4.2)

    def test_adjusted_confidence_capped_at_five(self):
        edge = apply_market_edge(base_confidence=4.6, predicted=235.0, market=220.0)
        assert edge.adjusted_confidence == 5.0

    def test_negative_edge_floors_at_zero(self):
        edge = apply_market_edge(base_confidence=0.4, predicted=200.0, market=220.0)
        assert edge.edge_factor == -1.0
        assert edge.adjusted_confidence == 0.0

    def test_small_edge_scaled(self):
        edge = apply_market_edge(base_confidence=3.0, predicted=222.0, market=220.0)
        assert edge.edge_factor == pytest.approx(0.2)
        assert edge.adjusted_confidence == pytest.approx(3.2)

    def test_edge_weight(self):
        edge = apply_market_edge(3.0, 230.0, 220.0, divisor=10.0, edge_weight=0.5)
        assert edge.adjusted_confidence == pytest.approx(3.5)


class TestUnitsLadder:

    @pytest.mark.parametrize("confidence, units", [
        (5.0, 5), (4.5, 5), (4.49, 3), (4.0, 3), (3.5, 2), (3.0, 1), (2.5, 1), (2.49, 0), (0.0, 0),
    ])
    def test_ladder(self, confidence, units):
        assert units_for_confidence(confidence) == units


class TestContributions:

    def test_signal_scaled_by_weight(self):
        contributions = build_contributions(
            [FactorSignal(key="pace", name="Pace", signal=0.5)], _profile(), max_points=5.0,
        )
        c = contributions[0]
        assert c.weight == 60.0
        # 0.5 × 5 × 0.6
        assert c.over_score == pytest.approx(1.5)
        assert c.under_score == 0.0
        assert not c.cap_applied

    def test_signal_clamped_and_flagged(self):
        c = build_contributions([FactorSignal(key="rest", name="Rest", signal=-1.8)], _profile())[0]
        assert c.signal == -1.0
        assert c.cap_applied
        assert "clamped" in c.cap_reason
        assert c.under_score == pytest.approx(5.0 * 0.4)

    def test_disabled_factor_has_zero_weight(self):
        c = build_contributions(
            [FactorSignal(key="travel", name="Travel", signal=0.9, weight=30.0)], _profile(),
        )[0]
        assert c.weight == 0.0
        assert c.over_score == 0.0

    def test_over_under_pair_passes_through(self):
        c = build_contributions(
            [FactorSignal(key="pace", name="Pace", over_score=1.2, under_score=0.3)], _profile(),
        )[0]
        assert c.signal is None
        assert (c.over_score, c.under_score) == (1.2, 0.3)

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationFailedError):
            build_contributions([FactorSignal(key="ref_crew", name="Refs", signal=0.1)], _profile())

    def test_signal_required(self):
        with pytest.raises(ValueError):
            FactorSignal(key="pace", name="Pace")


class TestPrediction:

    def test_totals_use_baseline_and_bounds(self):
        bounds = prediction_bounds("total", _snapshot(), CONFIG)
        assert bounds == PredictionBounds(225.0, 180.0, 280.0)

    def test_snapshot_baseline_wins(self):
        bounds = prediction_bounds("total", _snapshot(baseline=231.0), CONFIG)
        assert bounds.baseline == 231.0

    def test_margin_bounds_for_spreads(self):
        bounds = prediction_bounds("spread", _snapshot(), CONFIG)
        assert bounds == PredictionBounds(0.0, -MARGIN_CAP, MARGIN_CAP)

    def test_predict_value(self):
        contributions = build_contributions([
            FactorSignal(key="pace", name="Pace", signal=1.0),
            FactorSignal(key="rest", name="Rest", signal=-0.5),
        ], _profile())
        # 225 + 1.0×5×0.6 − 0.5×5×0.4 = 227
        assert predict_value(contributions, PredictionBounds(225.0, 180.0, 280.0)) == pytest.approx(227.0)

    def test_predict_value_clamped(self):
        contributions = build_contributions([FactorSignal(key="pace", name="Pace", signal=1.0)], _profile())
        assert predict_value(contributions, PredictionBounds(279.0, 180.0, 280.0)) == 280.0

    def test_market_value(self):
        assert market_value("total", 220.5) == 220.5
        assert market_value("spread", -4.5) == 4.5


class TestSelection:

    def test_totals(self):
        assert selection_for("total", Direction.SIDE_A, _snapshot(), 220.5) == "OVER 220.5"
        assert selection_for("total", Direction.SIDE_B, _snapshot(), 220.5) == "UNDER 220.5"

    def test_spread_sides(self):
        assert selection_for("spread", Direction.SIDE_A, _snapshot(), -4.5) == "LAL -4.5"
        assert selection_for("spread", Direction.SIDE_B, _snapshot(), -4.5) == "BOS +4.5"

    def test_moneyline(self):
        assert selection_for("moneyline", Direction.SIDE_B, _snapshot(), 0.0) == "BOS"

    def test_no_direction(self):
        assert selection_for("total", Direction.NONE, _snapshot(), 220.5) is None

    def test_missing_line(self):
        with pytest.raises(ValidationFailedError):
            _snapshot(lines={}).line_for("total")


class TestWeightProfile:

    def test_weights_must_sum_to_budget(self):
        with pytest.raises(ValidationFailedError):
            WeightProfile([FactorSpec("pace", "Pace", 60.0), FactorSpec("rest", "Rest", 30.0)])

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ValidationFailedError):
            WeightProfile([FactorSpec("pace", "Pace", 50.0), FactorSpec("pace", "Pace", 50.0)])

    def test_disabled_factors_known_but_weightless(self):
        profile = _profile()
        assert "travel" in profile
        assert profile.weights()["travel"] == 0.0
        assert profile.name_for("rest") == "Rest Days"

    def test_from_settings(self):
        config = SimpleNamespace(weight_budget=10.0, weight_epsilon=0.01, max_factor_weight=10.0)
        profile = WeightProfile.from_settings([FactorSpec("pace", "Pace", 10.0)], config)
        assert profile.weight_for("pace") == 10.0
