"""
Factor weight profiles.

A profile registers every factor a source may use, with its weight (percent
of the budget) and whether it is enabled. Disabled factors stay known but
carry weight 0. Enabled weights must sum to the budget.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from pickcast.engine.aggregator import validate_weights
from pickcast.errors import ValidationFailedError


@dataclass(frozen=True)
class FactorSpec:
    key: str
    name: str
    weight: float
    enabled: bool = True


class WeightProfile:
    """Validated factor registry + weights for one source."""

    def __init__(
        self,
        specs: Iterable[FactorSpec],
        budget: float = 100.0,
        epsilon: float = 0.01,
        max_weight: Optional[float] = 100.0,
    ):
        self.specs: dict[str, FactorSpec] = {}
        for spec in specs:
            if spec.key in self.specs:
                raise ValidationFailedError(f"Duplicate factor key '{spec.key}'", field=spec.key)
            self.specs[spec.key] = spec
        self.budget = budget
        validate_weights(
            self.weights(),
            expected_total=budget,
            epsilon=epsilon,
            max_weight=max_weight,
        )

    @classmethod
    def from_settings(cls, specs: Iterable[FactorSpec], settings) -> "WeightProfile":
        return cls(
            specs,
            budget=settings.weight_budget,
            epsilon=settings.weight_epsilon,
            max_weight=settings.max_factor_weight,
        )

    def __contains__(self, key: str) -> bool:
        return key in self.specs

    def weights(self) -> dict[str, float]:
        """Effective weights (disabled factors → 0)."""
        return {key: spec.weight if spec.enabled else 0.0 for key, spec in self.specs.items()}

    def weight_for(self, key: str) -> float:
        spec = self.specs.get(key)
        if spec is None:
            raise ValidationFailedError(f"Unknown factor key '{key}'", field="key", value=key)
        return spec.weight if spec.enabled else 0.0

    def name_for(self, key: str) -> str:
        return self.specs[key].name if key in self.specs else key
