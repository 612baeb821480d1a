"""
Source eligibility — only sources with a winning track record vote.

Track records are derived from graded outcomes and held in a TTL cache owned
by the filter, so a consensus sweep over many entities reads history once.
"""

from typing import Iterable, Optional

import structlog

from pickcast.consensus.grading import TrackRecord
from pickcast.consensus.schemas import PickSourceRecord
from pickcast.pipeline.cache import TTLCache, eligible_sources_key
from pickcast.store.base import OutcomeRecord, RecordStore

logger = structlog.get_logger(__name__)


def track_records_by_source(outcomes: Iterable[OutcomeRecord], kind: Optional[str] = None) -> dict[str, TrackRecord]:
    grouped: dict[str, list[OutcomeRecord]] = {}
    for outcome in outcomes:
        grouped.setdefault(outcome.source, []).append(outcome)
    return {
        source: TrackRecord.from_outcomes(items, kind)
        for source, items in grouped.items()
    }


class EligibilityFilter:
    """Decides which sources may contribute picks to a consensus."""

    def __init__(
        self,
        store: RecordStore,
        min_net_units: float = 0.0,
        cache: Optional[TTLCache] = None,
        excluded_sources: Iterable[str] = (),
    ):
        self.store = store
        self.min_net_units = min_net_units
        self.cache = cache or TTLCache()
        self.excluded_sources = frozenset(excluded_sources)

    async def track_records(self, kind: str) -> dict[str, TrackRecord]:
        async def load() -> dict[str, TrackRecord]:
            outcomes = await self.store.list_outcomes(kind=kind)
            records = track_records_by_source(outcomes, kind)
            logger.debug("track_records_loaded", kind=kind, sources=len(records))
            return records

        return await self.cache.get_or_compute(eligible_sources_key(kind), load)

    async def eligible_sources(self, kind: str) -> set[str]:
        records = await self.track_records(kind)
        return {
            source for source, record in records.items()
            if record.net_units > self.min_net_units and source not in self.excluded_sources
        }

    async def apply(self, picks: Iterable[PickSourceRecord], kind: str) -> list[PickSourceRecord]:
        """Drop ineligible picks and stamp each survivor with its net units."""
        records = await self.track_records(kind)
        eligible = await self.eligible_sources(kind)
        kept: list[PickSourceRecord] = []
        dropped = 0
        for pick in picks:
            if pick.source not in eligible:
                dropped += 1
                continue
            kept.append(pick.model_copy(update={"track_record": records[pick.source].net_units}))
        if dropped:
            logger.info("ineligible_picks_dropped", kind=kind, dropped=dropped, kept=len(kept))
        return kept
