"""Record stores for runs, ledger entries, decisions and outcomes."""

from pickcast.store.base import (
    TERMINAL_STATES,
    DecisionRecord,
    FactorRecord,
    IdempotencyRecord,
    OutcomeRecord,
    RecordStore,
    RunRecord,
    RunState,
    SnapshotRecord,
)
from pickcast.store.memory import InMemoryRecordStore
from pickcast.store.sql import SqlRecordStore

__all__ = [
    "DecisionRecord",
    "FactorRecord",
    "IdempotencyRecord",
    "InMemoryRecordStore",
    "OutcomeRecord",
    "RecordStore",
    "RunRecord",
    "RunState",
    "SnapshotRecord",
    "SqlRecordStore",
    "TERMINAL_STATES",
]
