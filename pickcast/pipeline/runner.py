"""
Pick Pipeline — one source's decision for one (entity, kind).

Steps:
  1. intake       reject COMPLETE runs, reopen FAILED, resume IN_PROGRESS, else create
  2. snapshot     capture market lines; exactly one active snapshot per run
  3. factors      provider signals → weighted contributions
  4. predict      aggregator confidence + raw prediction
  5. market_edge  confidence adjusted by predicted − market
  6. decide       confidence → units (0 = PASS) + selection
  7. audit        immutable decision record; run → COMPLETE

Steps 2-7 run through the execution ledger under the caller's idempotency
key, so re-running a run replays finished steps instead of recomputing them.
Each guarded computation is side-effect free. Snapshot, factor and decision
rows are written after the ledger returns, from the recorded body, with
store operations that ignore repeats; a caller that lost the ledger race
writes the same rows as the winner. A failing step marks the run FAILED;
earlier step records stay valid and a retry reopens the run.
"""

import asyncio
import hashlib
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Type, TypeVar

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from pickcast.config import settings as default_settings
from pickcast.engine.aggregator import Direction, FactorContribution, SignalAggregator, build_policy
from pickcast.errors import DuplicateRunError, RunStateError, StoreConflictError, ValidationFailedError
from pickcast.ledger.execution import ExecutionLedger, StepResult
from pickcast.pipeline.cache import TTLCache, snapshot_key
from pickcast.pipeline.providers import FactorProvider, FactorSignal, MarketSnapshot, SnapshotProvider
from pickcast.pipeline.steps import (
    apply_market_edge,
    build_contributions,
    market_value,
    predict_value,
    prediction_bounds,
    selection_for,
    units_for_confidence,
)
from pickcast.pipeline.weights import WeightProfile
from pickcast.store.base import (
    DecisionRecord,
    FactorRecord,
    RecordStore,
    RunRecord,
    RunState,
    SnapshotRecord,
)

logger = structlog.get_logger(__name__)

STEP_SNAPSHOT = "snapshot"
STEP_FACTORS = "factors"
STEP_PREDICT = "predict"
STEP_MARKET_EDGE = "market_edge"
STEP_DECIDE = "decide"
STEP_AUDIT = "audit"

GUARDED_STEPS: tuple[str, ...] = (
    STEP_SNAPSHOT,
    STEP_FACTORS,
    STEP_PREDICT,
    STEP_MARKET_EDGE,
    STEP_DECIDE,
    STEP_AUDIT,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def run_token(entity_id: str, kind: str, source: str) -> str:
    """Stable run identifier: one run per (entity, kind, source)."""
    return hashlib.sha256(f"{source}|{kind}|{entity_id}".encode("utf-8")).hexdigest()[:32]


def _coerce(model: Type[ModelT], value: Any) -> ModelT:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationFailedError(f"Invalid {model.__name__}: {e.errors()[0]['msg']}") from e


@dataclass(frozen=True)
class PipelineResult:
    run_id: str
    entity_id: str
    kind: str
    source: str
    selection: Optional[str]
    units: int
    confidence: float
    decision_id: str
    audit: dict

    @property
    def is_pass(self) -> bool:
        return self.units == 0


class PickPipeline:
    """Runs the fixed step sequence for one source."""

    def __init__(
        self,
        store: RecordStore,
        snapshot_provider: SnapshotProvider,
        factor_providers: Sequence[FactorProvider],
        profile: WeightProfile,
        source: str,
        ledger: Optional[ExecutionLedger] = None,
        aggregator: Optional[SignalAggregator] = None,
        snapshot_cache: Optional[TTLCache] = None,
        settings=default_settings,
    ):
        self.store = store
        self.snapshot_provider = snapshot_provider
        self.factor_providers = list(factor_providers)
        self.profile = profile
        self.source = source
        self.settings = settings
        self.ledger = ledger or ExecutionLedger.from_settings(store, settings)
        self.aggregator = aggregator or SignalAggregator(build_policy(settings.scoring_policy))
        self.snapshot_cache = snapshot_cache

    # ── 1. Intake ────────────────────────────────────────────────────────

    async def intake(self, entity_id: str, kind: str, write_allowed: bool = True) -> RunRecord:
        """Return the run to work on, or raise DuplicateRunError for a completed one."""
        existing = await self.store.find_runs(entity_id, kind, self.source)
        for run in existing:
            if run.state == RunState.COMPLETE:
                raise DuplicateRunError(entity_id, kind, self.source, run.run_id, run.state.value)
        for run in existing:
            return await self._resume(run, write_allowed)

        run = RunRecord(
            run_id=run_token(entity_id, kind, self.source),
            entity_id=entity_id,
            kind=kind,
            source=self.source,
        )
        if not write_allowed:
            return run

        try:
            await self.store.insert_run(run)
        except StoreConflictError:
            # A concurrent intake created it first.
            current = await self.store.get_run(run.run_id)
            if current is None:
                raise
            if current.state == RunState.COMPLETE:
                raise DuplicateRunError(entity_id, kind, self.source, current.run_id, current.state.value)
            return await self._resume(current, write_allowed)

        logger.info("run_created", run_id=run.run_id, entity_id=entity_id, kind=kind, source=self.source)
        return run

    async def _resume(self, run: RunRecord, write_allowed: bool) -> RunRecord:
        if run.state != RunState.FAILED or not write_allowed:
            logger.info("run_resumed", run_id=run.run_id, entity_id=run.entity_id, kind=run.kind)
            return run
        try:
            reopened = await self.store.reopen_run(run.run_id)
        except RunStateError:
            # Another retry reopened it first.
            current = await self.store.get_run(run.run_id)
            if current is not None and current.state == RunState.COMPLETE:
                raise DuplicateRunError(run.entity_id, run.kind, self.source, run.run_id, current.state.value)
            if current is None or current.state != RunState.IN_PROGRESS:
                raise
            return current
        logger.info("run_reopened", run_id=run.run_id, previous_error=run.error_message)
        return reopened

    # ── 2. Snapshot ──────────────────────────────────────────────────────

    async def take_snapshot(self, run: RunRecord, key: str, write_allowed: bool = True) -> StepResult:
        async def compute() -> StepResult:
            snapshot = await self._fetch_snapshot(run.entity_id, run.kind)
            return {
                "snapshot_id": uuid.uuid4().hex,
                "entity_id": snapshot.entity_id,
                "kind": run.kind,
                "line": snapshot.line_for(run.kind),
                "lines": snapshot.lines,
                "side_labels": snapshot.side_labels,
                "baseline": snapshot.baseline,
                "captured_at": snapshot.captured_at,
            }, 200

        body, status = await self.ledger.execute(run.run_id, STEP_SNAPSHOT, key, write_allowed, compute)
        if write_allowed:
            # Keyed by the returned body; a repeat activation is a no-op.
            await self.store.activate_snapshot(SnapshotRecord(
                snapshot_id=body["snapshot_id"],
                run_id=run.run_id,
                lines=dict(body.get("lines", {})),
                captured_at=_snapshot_from_body(body).captured_at,
            ))
        return body, status

    async def _fetch_snapshot(self, entity_id: str, kind: str) -> MarketSnapshot:
        async def fetch() -> MarketSnapshot:
            return _coerce(MarketSnapshot, await self.snapshot_provider.fetch(entity_id, kind))

        if self.snapshot_cache is None:
            return await fetch()
        return await self.snapshot_cache.get_or_compute(snapshot_key(entity_id, kind), fetch)

    # ── 3. Factors ───────────────────────────────────────────────────────

    async def compute_factors(
        self,
        run: RunRecord,
        key: str,
        snapshot: dict,
        write_allowed: bool = True,
    ) -> StepResult:
        async def compute() -> StepResult:
            market = _snapshot_from_body(snapshot)
            batches = await asyncio.gather(*(
                provider.compute(run.entity_id, run.kind, market)
                for provider in self.factor_providers
            ))
            signals = [_coerce(FactorSignal, s) for batch in batches for s in batch]

            seen: set[str] = set()
            for sig in signals:
                if sig.key in seen:
                    raise ValidationFailedError(f"Factor '{sig.key}' reported twice", field=sig.key)
                seen.add(sig.key)

            contributions = build_contributions(
                signals, self.profile, max_points=self.settings.signal_max_points,
            )
            return {
                "snapshot_id": snapshot.get("snapshot_id"),
                "factors": [c.to_dict() for c in contributions],
            }, 200

        body, status = await self.ledger.execute(run.run_id, STEP_FACTORS, key, write_allowed, compute)
        if write_allowed:
            await self.store.append_factors([
                FactorRecord(
                    run_id=run.run_id,
                    key=c.key,
                    name=c.name,
                    signal=c.signal,
                    over_score=c.over_score,
                    under_score=c.under_score,
                    weight_applied=c.weight,
                    cap_applied=c.cap_applied,
                    cap_reason=c.cap_reason,
                )
                for c in _contributions_from_body(body)
            ])
        return body, status

    # ── 4. Predict ───────────────────────────────────────────────────────

    async def predict(
        self,
        run: RunRecord,
        key: str,
        snapshot: dict,
        factors: dict,
        write_allowed: bool = True,
    ) -> StepResult:
        async def compute() -> StepResult:
            contributions = _contributions_from_body(factors)
            result = self.aggregator.aggregate(contributions)
            bounds = prediction_bounds(run.kind, _snapshot_from_body(snapshot), self.settings)
            predicted = predict_value(contributions, bounds, self.settings.signal_max_points)
            return {
                "confidence": result.to_dict(),
                "predicted": round(predicted, 4),
                "baseline": bounds.baseline,
            }, 200

        return await self.ledger.execute(run.run_id, STEP_PREDICT, key, write_allowed, compute)

    # ── 5. Market edge ───────────────────────────────────────────────────

    async def market_edge(
        self,
        run: RunRecord,
        key: str,
        snapshot: dict,
        prediction: dict,
        write_allowed: bool = True,
    ) -> StepResult:
        async def compute() -> StepResult:
            line = snapshot["line"]
            edge = apply_market_edge(
                base_confidence=prediction["confidence"]["confidence"],
                predicted=prediction["predicted"],
                market=market_value(run.kind, line),
                divisor=self.settings.edge_divisor,
                edge_weight=self.settings.edge_weight,
            )
            return {"line": line, **edge.to_dict()}, 200

        return await self.ledger.execute(run.run_id, STEP_MARKET_EDGE, key, write_allowed, compute)

    # ── 6. Decide ────────────────────────────────────────────────────────

    async def decide(
        self,
        run: RunRecord,
        key: str,
        snapshot: dict,
        prediction: dict,
        edge: dict,
        write_allowed: bool = True,
    ) -> StepResult:
        async def compute() -> StepResult:
            direction = Direction(prediction["confidence"]["direction"])
            line = snapshot["line"]
            selection = selection_for(run.kind, direction, _snapshot_from_body(snapshot), line)
            confidence = edge["adjusted_confidence"]
            units = units_for_confidence(confidence) if selection else 0
            return {
                "direction": direction.value,
                "selection": selection,
                "line": line,
                "confidence": confidence,
                "units": units,
                "decision": "PICK" if units else "PASS",
            }, 200

        return await self.ledger.execute(run.run_id, STEP_DECIDE, key, write_allowed, compute)

    # ── 7. Audit ─────────────────────────────────────────────────────────

    async def audit(
        self,
        run: RunRecord,
        key: str,
        snapshot: dict,
        factors: dict,
        prediction: dict,
        edge: dict,
        decision: dict,
        write_allowed: bool = True,
    ) -> StepResult:
        async def compute() -> StepResult:
            audit = {
                "run": {
                    "run_id": run.run_id,
                    "entity_id": run.entity_id,
                    "kind": run.kind,
                    "source": run.source,
                },
                "snapshot": snapshot,
                "factors": factors.get("factors", []),
                "confidence": prediction["confidence"],
                "prediction": {
                    "predicted": prediction["predicted"],
                    "baseline": prediction["baseline"],
                },
                "market_edge": edge,
                "decision": decision,
            }
            return {"decision_id": str(uuid.uuid4()), "audit": audit}, 200

        body, status = await self.ledger.execute(run.run_id, STEP_AUDIT, key, write_allowed, compute)
        if write_allowed:
            await self._record_decision(run, body)
        return body, status

    async def _record_decision(self, run: RunRecord, body: dict) -> None:
        decision = body["audit"]["decision"]
        record = DecisionRecord(
            decision_id=uuid.UUID(body["decision_id"]),
            run_id=run.run_id,
            entity_id=run.entity_id,
            kind=run.kind,
            source=run.source,
            selection=decision.get("selection"),
            line=decision.get("line"),
            units=decision["units"],
            confidence=decision["confidence"],
            audit=body["audit"],
        )
        try:
            await self.store.append_decision(record)
        except StoreConflictError:
            logger.info("decision_already_recorded", run_id=run.run_id, decision_id=body["decision_id"])

        try:
            await self.store.update_run(
                run.run_id,
                RunState.COMPLETE,
                confidence=record.confidence,
                units=record.units,
                selection=record.selection,
            )
        except RunStateError:
            current = await self.store.get_run(run.run_id)
            if current is None or current.state != RunState.COMPLETE:
                raise
            logger.info("run_already_complete", run_id=run.run_id)

    # ── Full run ─────────────────────────────────────────────────────────

    async def run(
        self,
        entity_id: str,
        kind: str,
        idempotency_key: str,
        write_allowed: bool = True,
    ) -> PipelineResult:
        """Execute every step; safe to repeat with the same idempotency key."""
        run = await self.intake(entity_id, kind, write_allowed)
        logger.info("run_started", run_id=run.run_id, key=idempotency_key, dry_run=not write_allowed)
        try:
            snapshot, _ = await self.take_snapshot(run, idempotency_key, write_allowed)
            factors, _ = await self.compute_factors(run, idempotency_key, snapshot, write_allowed)
            prediction, _ = await self.predict(run, idempotency_key, snapshot, factors, write_allowed)
            edge, _ = await self.market_edge(run, idempotency_key, snapshot, prediction, write_allowed)
            decision, _ = await self.decide(run, idempotency_key, snapshot, prediction, edge, write_allowed)
            audited, _ = await self.audit(
                run, idempotency_key, snapshot, factors, prediction, edge, decision, write_allowed,
            )
        except Exception as e:
            if write_allowed:
                await self._mark_failed(run, e)
            raise

        logger.info(
            "run_completed",
            run_id=run.run_id,
            selection=decision.get("selection"),
            units=decision["units"],
            confidence=decision["confidence"],
        )
        return PipelineResult(
            run_id=run.run_id,
            entity_id=run.entity_id,
            kind=run.kind,
            source=run.source,
            selection=decision.get("selection"),
            units=decision["units"],
            confidence=decision["confidence"],
            decision_id=audited["decision_id"],
            audit=audited["audit"],
        )

    async def _mark_failed(self, run: RunRecord, error: Exception) -> None:
        try:
            await self.store.update_run(run.run_id, RunState.FAILED, error_message=str(error)[:1000])
        except RunStateError:
            logger.warning("run_already_terminal", run_id=run.run_id)
            return
        logger.error("run_failed", run_id=run.run_id, error=str(error), error_type=type(error).__name__)


def _snapshot_from_body(body: dict) -> MarketSnapshot:
    return _coerce(MarketSnapshot, {
        "entity_id": body["entity_id"],
        "lines": body.get("lines", {}),
        "side_labels": body.get("side_labels", {}),
        "baseline": body.get("baseline"),
        "captured_at": body["captured_at"],
    })


def _contributions_from_body(body: dict) -> list[FactorContribution]:
    return [FactorContribution(**f) for f in body.get("factors", [])]
