"""
In-memory record store.

Holds state in plain dicts guarded by one ``asyncio.Lock``; the lock makes the
idempotency insert a true insert-if-absent for coroutines sharing a loop.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

import structlog

from pickcast.errors import RunStateError, StoreConflictError
from pickcast.store.base import (
    DecisionRecord,
    FactorRecord,
    IdempotencyRecord,
    OutcomeRecord,
    RunRecord,
    RunState,
    SnapshotRecord,
)

logger = structlog.get_logger(__name__)


class InMemoryRecordStore:
    """Dict-backed ``RecordStore``. One instance per test or per process."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._idempotency: dict[tuple[str, str, str], IdempotencyRecord] = {}
        self._runs: dict[str, RunRecord] = {}
        self._snapshots: dict[str, list[SnapshotRecord]] = {}
        self._factors: dict[str, list[FactorRecord]] = {}
        self._decisions: list[DecisionRecord] = []
        self._outcomes: list[OutcomeRecord] = []

    # ── Idempotency ledger ───────────────────────────────────────────────

    async def get_idempotency(self, run_id: str, step: str, key: str) -> Optional[IdempotencyRecord]:
        return self._idempotency.get((run_id, step, key))

    async def insert_idempotency(self, record: IdempotencyRecord) -> None:
        ident = (record.run_id, record.step, record.key)
        async with self._lock:
            if ident in self._idempotency:
                raise StoreConflictError(
                    f"Idempotency key exists: {record.run_id}/{record.step}/{record.key}"
                )
            self._idempotency[ident] = record

    async def count_idempotency(self) -> int:
        return len(self._idempotency)

    # ── Runs ─────────────────────────────────────────────────────────────

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    async def find_runs(self, entity_id: str, kind: str, source: str) -> list[RunRecord]:
        return [
            r for r in self._runs.values()
            if r.entity_id == entity_id and r.kind == kind and r.source == source
        ]

    async def insert_run(self, run: RunRecord) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                raise StoreConflictError(f"Run exists: {run.run_id}")
            self._runs[run.run_id] = run

    async def update_run(self, run_id: str, state: RunState, **fields) -> RunRecord:
        async with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise KeyError(run_id)
            if current.is_terminal:
                raise RunStateError(run_id, current.state.value)
            updated = replace(current, state=state, **fields)
            self._runs[run_id] = updated
            return updated

    async def reopen_run(self, run_id: str) -> RunRecord:
        async with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise KeyError(run_id)
            if current.state != RunState.FAILED:
                raise RunStateError(run_id, current.state.value)
            reopened = replace(current, state=RunState.IN_PROGRESS, error_message=None)
            self._runs[run_id] = reopened
            return reopened

    # ── Snapshots & factors ──────────────────────────────────────────────

    async def activate_snapshot(self, snapshot: SnapshotRecord) -> None:
        async with self._lock:
            previous = self._snapshots.get(snapshot.run_id, [])
            if any(s.snapshot_id == snapshot.snapshot_id and s.is_active for s in previous):
                return
            others = [replace(s, is_active=False) for s in previous if s.snapshot_id != snapshot.snapshot_id]
            self._snapshots[snapshot.run_id] = others + [replace(snapshot, is_active=True)]

    async def get_active_snapshot(self, run_id: str) -> Optional[SnapshotRecord]:
        for snap in self._snapshots.get(run_id, []):
            if snap.is_active:
                return snap
        return None

    async def list_snapshots(self, run_id: str) -> list[SnapshotRecord]:
        return list(self._snapshots.get(run_id, []))

    async def append_factors(self, factors: Sequence[FactorRecord]) -> None:
        async with self._lock:
            for factor in factors:
                rows = self._factors.setdefault(factor.run_id, [])
                if all(r.key != factor.key for r in rows):
                    rows.append(factor)

    async def list_factors(self, run_id: str) -> list[FactorRecord]:
        return list(self._factors.get(run_id, []))

    # ── Decisions & outcomes ─────────────────────────────────────────────

    async def append_decision(self, record: DecisionRecord) -> None:
        async with self._lock:
            if record.run_id is not None and any(d.run_id == record.run_id for d in self._decisions):
                raise StoreConflictError(f"Decision exists for run: {record.run_id}")
            self._decisions.append(record)
        logger.debug("decision_appended", decision_id=str(record.decision_id), source=record.source)

    async def list_decisions(
        self,
        kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[DecisionRecord]:
        return [
            d for d in self._decisions
            if (kind is None or d.kind == kind)
            and (entity_id is None or d.entity_id == entity_id)
            and (source is None or d.source == source)
        ]

    async def append_outcome(self, record: OutcomeRecord) -> None:
        async with self._lock:
            self._outcomes.append(record)

    async def list_outcomes(
        self,
        source: Optional[str] = None,
        kind: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[OutcomeRecord]:
        matching = [
            o for o in self._outcomes
            if (source is None or o.source == source) and (kind is None or o.kind == kind)
        ]
        matching.sort(key=lambda o: o.recorded_at or datetime.min, reverse=True)
        return matching[:limit] if limit is not None else matching
