"""
Upstream provider contracts.

Providers are data sources only: they return values, never decisions, and
their transport (HTTP, cache, fixtures) is opaque to the pipeline. A provider
either returns within its own time budget or raises.
"""

from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel, Field, model_validator

from pickcast.errors import ValidationFailedError


class MarketSnapshot(BaseModel):
    """
    Market/reference lines for one entity at one point in time.

    ``lines`` is keyed by decision kind. Totals carry the posted total; spreads
    carry side A's handicap (``-4.5`` means side A gives 4.5).
    """

    entity_id: str
    lines: dict[str, float] = Field(default_factory=dict)
    side_labels: dict[str, str] = Field(default_factory=dict)   # "A"/"B" → team
    baseline: Optional[float] = None                             # matchup baseline
    captured_at: datetime = Field(default_factory=datetime.utcnow)

    def line_for(self, kind: str) -> float:
        try:
            return self.lines[kind]
        except KeyError:
            raise ValidationFailedError(
                f"Snapshot for {self.entity_id} has no {kind} line", field="lines", value=kind,
            ) from None


class FactorSignal(BaseModel):
    """One provider-computed factor: a signal or an over/under score pair."""

    key: str
    name: str
    signal: Optional[float] = None
    over_score: Optional[float] = Field(default=None, ge=0.0)
    under_score: Optional[float] = Field(default=None, ge=0.0)
    weight: Optional[float] = Field(default=None, ge=0.0)   # override, 0-100

    @model_validator(mode="after")
    def _has_value(self) -> "FactorSignal":
        if self.signal is None and (self.over_score is None or self.under_score is None):
            raise ValueError(f"factor '{self.key}' needs a signal or an over/under pair")
        return self


class SnapshotProvider(Protocol):
    """Source of market lines."""

    async def fetch(self, entity_id: str, kind: str) -> MarketSnapshot:
        ...


class FactorProvider(Protocol):
    """Computes factor signals for an entity given the active snapshot."""

    async def compute(self, entity_id: str, kind: str, snapshot: MarketSnapshot) -> list[FactorSignal]:
        ...
