"""
Consensus Engine — many sources' picks → one risk-bounded decision.

Per entity:
  1. Group picks by normalized side, pair each group with its opposition
  2. Classify agreement vs. conflict (blocked groups stop here)
  3. Counter-thesis: strongest dissenter
  4. Factor confluence across the agreeing group
  5. Tier-weighted unit sizing and confidence
  6. 12-point tier grade of the consensus itself

A blocked entity yields no decision; callers treat that exactly like PASS.
"""

from collections import Counter
from typing import Iterable, Optional, Sequence

import structlog

from pickcast.consensus.confluence import analyze_confluence
from pickcast.consensus.conflict import classify, counter_thesis
from pickcast.consensus.grading import TierGrader, TrackRecord
from pickcast.consensus.schemas import (
    ConsensusDecision,
    ConsensusEvaluation,
    EvaluationStatus,
    GroupVerdict,
    PickSourceRecord,
)
from pickcast.consensus.sides import ConsensusGroup, base_kind, format_selection, group_by_side, side_of
from pickcast.consensus.sizing import UnitSizer
from pickcast.errors import ValidationFailedError

logger = structlog.get_logger(__name__)


class ConsensusEngine:
    """Stateless resolver; safe to share across entities and tasks."""

    def __init__(
        self,
        sizer: Optional[UnitSizer] = None,
        grader: Optional[TierGrader] = None,
    ):
        self.sizer = sizer or UnitSizer()
        self.grader = grader or TierGrader()

    def resolve(
        self,
        records: Sequence[PickSourceRecord],
        kind: str,
        record: TrackRecord = TrackRecord(),
    ) -> Optional[ConsensusDecision]:
        """The consensus decision for one entity, or None when blocked."""
        return self.evaluate(records, kind, record).decision

    def resolve_all(
        self,
        records: Iterable[PickSourceRecord],
        kind: str,
        record: TrackRecord = TrackRecord(),
    ) -> list[ConsensusEvaluation]:
        """Evaluate every entity present in ``records`` (sorted by entity id)."""
        by_entity: dict[str, list[PickSourceRecord]] = {}
        for r in records:
            by_entity.setdefault(r.entity_id, []).append(r)
        return [self.evaluate(by_entity[e], kind, record) for e in sorted(by_entity)]

    def evaluate(
        self,
        records: Sequence[PickSourceRecord],
        kind: str,
        record: TrackRecord = TrackRecord(),
    ) -> ConsensusEvaluation:
        """Full evaluation of one entity, including why it was blocked."""
        kind = base_kind(kind)
        entity_ids = {r.entity_id for r in records}
        if len(entity_ids) > 1:
            raise ValidationFailedError(
                f"Consensus is resolved per entity, got {len(entity_ids)}",
                field="entity_id",
                value=sorted(entity_ids),
            )
        entity_id = next(iter(entity_ids), "")

        groups = group_by_side(records, kind)
        if not groups:
            return ConsensusEvaluation(
                entity_id=entity_id,
                kind=kind,
                status=EvaluationStatus.INSUFFICIENT_CONSENSUS,
                reason=f"no {kind} picks",
            )

        verdicts: list[GroupVerdict] = []
        allowed: list[ConsensusGroup] = []
        for group in groups:
            analysis = classify(len(group.agreeing), len(group.disagreeing))
            verdicts.append(GroupVerdict(
                side=group.side,
                agreeing=analysis.agreeing,
                disagreeing=analysis.disagreeing,
                classification=analysis.classification,
                reason=analysis.reason,
            ))
            if analysis.allowed:
                allowed.append(group)

        if not allowed:
            reason = "; ".join(f"{v.side}: {v.reason}" for v in verdicts)
            logger.info("consensus_blocked", entity_id=entity_id, kind=kind, reason=reason)
            return ConsensusEvaluation(
                entity_id=entity_id,
                kind=kind,
                status=EvaluationStatus.INSUFFICIENT_CONSENSUS,
                reason=reason,
                verdicts=verdicts,
            )

        # Allowed requires agreeing > disagreeing, so at most one side qualifies.
        group = max(allowed, key=lambda g: len(g.agreeing))
        verdict = next(v for v in verdicts if v.side == group.side)
        decision = self._decide(group, verdict, record)
        logger.info(
            "consensus_decided",
            entity_id=entity_id,
            kind=kind,
            selection=decision.selection,
            units=decision.units,
            tier=decision.tier,
            classification=decision.classification.value,
        )
        return ConsensusEvaluation(
            entity_id=entity_id,
            kind=kind,
            status=EvaluationStatus.DECISION,
            reason=decision.reason,
            verdicts=verdicts,
            decision=decision,
        )

    def _decide(self, group: ConsensusGroup, verdict: GroupVerdict, record: TrackRecord) -> ConsensusDecision:
        confluence = analyze_confluence(group.agreeing)
        counter = counter_thesis(group.disagreeing)
        sizing = self.sizer.size(group.agreeing, counter)
        grade = self.grader.grade(group.agreeing, confluence, counter, record)

        line = consensus_line(group)
        names = ", ".join(r.source for r in group.agreeing)
        reason = f"{verdict.reason} from {names}"
        top = confluence[0] if confluence else None
        if top is not None and top.mentions >= 2:
            reason += f" | factor alignment: {top.name} ({top.mentions}/{len(group.agreeing)} sources)"

        return ConsensusDecision(
            entity_id=group.entity_id,
            kind=group.kind,
            side=group.side,
            selection=format_selection(group.kind, group.side, line),
            line=line,
            units=sizing.units,
            confidence=round(sizing.confidence, 2),
            tier=grade.tier,
            tier_score=grade.score,
            classification=verdict.classification,
            reason=reason,
            agreeing_sources=[r.source for r in group.agreeing],
            disagreeing_sources=[r.source for r in group.disagreeing],
            counter_thesis=counter.to_dict() if counter else None,
            confluence=[c.to_dict() for c in confluence],
            sizing=sizing.to_dict(),
            grade=grade.to_dict(),
        )


def consensus_line(group: ConsensusGroup) -> Optional[float]:
    """Most common line among the agreeing picks (first seen wins ties)."""
    lines = [side_of(r).line for r in group.agreeing]
    lines = [line for line in lines if line is not None]
    if not lines:
        return group.line
    return Counter(lines).most_common(1)[0][0]
