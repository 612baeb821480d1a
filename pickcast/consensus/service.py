"""
Consensus Service — store-backed consensus sweep.

Flow for one kind:
  pending source decisions → eligibility filter → per-entity engine
  → append consensus DecisionRecord (skipping entities already decided)
"""

from typing import Iterable, Optional

import structlog

from pickcast.config import settings as default_settings
from pickcast.consensus.confluence import top_factors
from pickcast.consensus.eligibility import EligibilityFilter
from pickcast.consensus.engine import ConsensusEngine
from pickcast.consensus.grading import TierGrader, TrackRecord
from pickcast.consensus.schemas import ConsensusEvaluation, PickSourceRecord, parse_pick_record
from pickcast.consensus.sides import base_kind, matches_kind
from pickcast.consensus.sizing import UnitSizer
from pickcast.pipeline.cache import TTLCache
from pickcast.store.base import DecisionRecord, RecordStore

logger = structlog.get_logger(__name__)

CONSENSUS_SOURCE = "consensus"


def pick_from_decision(decision: DecisionRecord) -> PickSourceRecord:
    """View a stored source decision as a consensus input."""
    breakdown = decision.audit.get("confidence", {}).get("breakdown", [])
    return parse_pick_record({
        "source": decision.source,
        "entity_id": decision.entity_id,
        "kind": decision.kind,
        "selection": decision.selection or "",
        "line": decision.line,
        "units": decision.units,
        "confidence": decision.confidence,
        "tier": decision.tier,
        "tier_score": decision.tier_score or 0.0,
        "top_factors": [f.model_dump() for f in top_factors(breakdown)],
    })


class ConsensusService:
    """Runs the consensus engine over pending decisions in a record store."""

    def __init__(
        self,
        store: RecordStore,
        engine: Optional[ConsensusEngine] = None,
        eligibility: Optional[EligibilityFilter] = None,
        settings=default_settings,
    ):
        self.store = store
        self.settings = settings
        self.engine = engine or ConsensusEngine(
            sizer=UnitSizer(track_record_cap=settings.track_record_cap),
            grader=TierGrader(min_record_sample=settings.min_record_sample),
        )
        self.eligibility = eligibility or EligibilityFilter(
            store,
            min_net_units=settings.eligibility_min_net_units,
            cache=TTLCache(ttl_seconds=settings.eligibility_cache_ttl_seconds),
            excluded_sources=[CONSENSUS_SOURCE],
        )

    async def pending_picks(self, kind: str) -> list[PickSourceRecord]:
        """Non-PASS source decisions of ``kind`` that have no graded outcome yet."""
        graded = {o.decision_id for o in await self.store.list_outcomes()}
        picks = []
        for decision in await self.store.list_decisions():
            if decision.source == CONSENSUS_SOURCE or decision.is_pass:
                continue
            if not matches_kind(decision.kind, kind) or decision.decision_id in graded:
                continue
            picks.append(pick_from_decision(decision))
        return picks

    async def engine_record(self, kind: str) -> TrackRecord:
        outcomes = await self.store.list_outcomes(
            source=CONSENSUS_SOURCE, kind=kind, limit=self.settings.history_limit,
        )
        return TrackRecord.from_outcomes(outcomes, kind)

    async def run(self, kind: str, entity_ids: Optional[Iterable[str]] = None) -> list[ConsensusEvaluation]:
        """
        Resolve consensus for every entity with pending picks.

        Entities that already carry a consensus decision for ``kind`` are
        skipped. Blocked entities are returned with status
        INSUFFICIENT_CONSENSUS and nothing is written for them.
        """
        kind = base_kind(kind)
        wanted = set(entity_ids) if entity_ids is not None else None

        picks = await self.eligibility.apply(await self.pending_picks(kind), kind)
        if wanted is not None:
            picks = [p for p in picks if p.entity_id in wanted]

        decided = {
            d.entity_id
            for d in await self.store.list_decisions(source=CONSENSUS_SOURCE)
            if matches_kind(d.kind, kind)
        }
        record = await self.engine_record(kind)

        evaluations: list[ConsensusEvaluation] = []
        for evaluation in self.engine.resolve_all(
            [p for p in picks if p.entity_id not in decided], kind, record,
        ):
            evaluations.append(evaluation)
            decision = evaluation.decision
            if decision is None:
                continue
            await self.store.append_decision(DecisionRecord(
                entity_id=decision.entity_id,
                kind=decision.kind,
                source=CONSENSUS_SOURCE,
                selection=decision.selection,
                line=decision.line,
                units=decision.units,
                confidence=decision.confidence,
                tier=decision.tier,
                tier_score=decision.tier_score,
                audit=decision.to_dict(),
            ))

        logger.info(
            "consensus_sweep_complete",
            kind=kind,
            entities=len(evaluations),
            decisions=sum(1 for e in evaluations if e.decision is not None),
            skipped_existing=len(decided),
        )
        return evaluations
