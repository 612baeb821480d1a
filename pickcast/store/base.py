"""
Record Store Contract.

The pipeline, ledger and consensus engine only talk to storage through
``RecordStore``. Two implementations ship: ``InMemoryRecordStore`` (tests,
dry tooling) and ``SqlRecordStore`` (async SQLAlchemy).

Guarantees every implementation must provide:
- ``insert_idempotency`` is a single conditional insert; a duplicate key raises
  ``StoreConflictError`` and leaves the stored row untouched.
- COMPLETE runs are immutable (``RunStateError``). A FAILED run only moves
  back to IN_PROGRESS through ``reopen_run``.
- Decisions and outcomes are append-only; a run has at most one decision.
- Exactly one snapshot per run is active; re-activating a stored snapshot is
  a no-op.
- Factor rows are unique per (run_id, key); the first write wins.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, Sequence


class RunState(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({RunState.COMPLETE, RunState.FAILED})


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    entity_id: str
    kind: str
    source: str
    state: RunState = RunState.IN_PROGRESS
    confidence: Optional[float] = None
    units: Optional[int] = None
    selection: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class SnapshotRecord:
    snapshot_id: str
    run_id: str
    lines: dict
    captured_at: datetime
    is_active: bool = True


@dataclass(frozen=True)
class FactorRecord:
    run_id: str
    key: str
    name: str
    signal: Optional[float]
    over_score: float
    under_score: float
    weight_applied: float
    cap_applied: bool = False
    cap_reason: Optional[str] = None


@dataclass(frozen=True)
class IdempotencyRecord:
    """Stored result of one guarded step. ``body`` is canonical JSON text."""
    run_id: str
    step: str
    key: str
    body: str
    status_code: int
    content_hash: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class DecisionRecord:
    entity_id: str
    kind: str
    source: str
    selection: Optional[str]
    units: int
    confidence: float
    line: Optional[float] = None
    tier: Optional[str] = None
    tier_score: Optional[float] = None
    audit: dict = field(default_factory=dict)
    run_id: Optional[str] = None
    decision_id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_pass(self) -> bool:
        return self.units == 0


@dataclass(frozen=True)
class OutcomeRecord:
    decision_id: uuid.UUID
    source: str
    kind: str
    result: str              # won | lost | push
    units_delta: float = 0.0
    recorded_at: datetime = field(default_factory=datetime.utcnow)


class RecordStore(Protocol):
    """Durable store used by the decision core."""

    # ── Idempotency ledger ───────────────────────────────────────────────
    async def get_idempotency(self, run_id: str, step: str, key: str) -> Optional[IdempotencyRecord]:
        ...

    async def insert_idempotency(self, record: IdempotencyRecord) -> None:
        """Insert if absent. Raises StoreConflictError when the key exists."""
        ...

    async def count_idempotency(self) -> int:
        ...

    # ── Runs ─────────────────────────────────────────────────────────────
    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        ...

    async def find_runs(self, entity_id: str, kind: str, source: str) -> list[RunRecord]:
        ...

    async def insert_run(self, run: RunRecord) -> None:
        ...

    async def update_run(self, run_id: str, state: RunState, **fields) -> RunRecord:
        ...

    async def reopen_run(self, run_id: str) -> RunRecord:
        """Move a FAILED run back to IN_PROGRESS. Raises RunStateError otherwise."""
        ...

    # ── Snapshots & factors ──────────────────────────────────────────────
    async def activate_snapshot(self, snapshot: SnapshotRecord) -> None:
        """Store ``snapshot`` as the run's only active snapshot. Idempotent per snapshot_id."""
        ...

    async def get_active_snapshot(self, run_id: str) -> Optional[SnapshotRecord]:
        ...

    async def list_snapshots(self, run_id: str) -> list[SnapshotRecord]:
        ...

    async def append_factors(self, factors: Sequence[FactorRecord]) -> None:
        """Insert-if-absent per (run_id, key)."""
        ...

    async def list_factors(self, run_id: str) -> list[FactorRecord]:
        ...

    # ── Decisions & outcomes (append-only) ───────────────────────────────
    async def append_decision(self, record: DecisionRecord) -> None:
        """Raises StoreConflictError when the run already has a decision."""
        ...

    async def list_decisions(
        self,
        kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[DecisionRecord]:
        ...

    async def append_outcome(self, record: OutcomeRecord) -> None:
        ...

    async def list_outcomes(
        self,
        source: Optional[str] = None,
        kind: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[OutcomeRecord]:
        """Most recent first."""
        ...
