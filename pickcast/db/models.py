"""
PickCast SQLAlchemy Models.

Runs, market snapshots, factor rows, idempotency keys, and the append-only
decision / outcome records. Uses compatibility types for SQLite (tests) and
PostgreSQL (prod).
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pickcast.db.compat import GUID, JSONType
from pickcast.db.engine import Base


def _genuuid():
    return uuid.uuid4()


# ──────────────────────────────────────────────────────────────────────────────
# Runs & step state
# ──────────────────────────────────────────────────────────────────────────────


class Run(Base):
    """
    One attempt to produce a decision for (entity, kind, source).

    State: IN_PROGRESS → COMPLETE | FAILED. COMPLETE rows are never updated;
    a FAILED row may be reopened to IN_PROGRESS for a retry.
    """

    __tablename__ = "pc_runs"
    __table_args__ = (
        Index("ix_runs_entity_kind_source", "entity_id", "kind", "source"),
    )

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="IN_PROGRESS")
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    units: Mapped[Optional[int]] = mapped_column(Integer)
    selection: Mapped[Optional[str]] = mapped_column(String(64))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class OddsSnapshot(Base):
    """Market lines captured for a run. Exactly one row per run is active."""

    __tablename__ = "pc_odds_snapshots"
    __table_args__ = (
        Index("ix_odds_snapshots_run_active", "run_id", "is_active"),
    )

    snapshot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("pc_runs.run_id"), nullable=False)
    lines: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class FactorRow(Base):
    """One computed factor contribution for a run (write once per key)."""

    __tablename__ = "pc_factors"
    __table_args__ = (
        UniqueConstraint("run_id", "factor_key", name="uq_factors_run_key"),
        Index("ix_factors_run_id", "run_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("pc_runs.run_id"), nullable=False)
    factor_key: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    signal: Mapped[Optional[float]] = mapped_column(Float)
    over_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    under_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    weight_applied: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    cap_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cap_reason: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class IdempotencyKey(Base):
    """
    Ledger of guarded step results.

    CRITICAL: first writer wins. Rows are inserted with ON CONFLICT DO NOTHING
    and are never updated.
    """

    __tablename__ = "pc_idempotency_keys"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    step: Mapped[str] = mapped_column(String(32), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Append-only decisions & outcomes
# ──────────────────────────────────────────────────────────────────────────────


class DecisionRecordRow(Base):
    """
    Immutable decision/audit record for a run or a consensus resolution.

    NO UPDATE, NO DELETE on this table.
    """

    __tablename__ = "pc_decisions"
    __table_args__ = (
        Index("ix_decisions_entity_kind", "entity_id", "kind"),
        UniqueConstraint("run_id", name="uq_decisions_run_id"),
        Index("ix_decisions_source", "source"),
    )

    decision_id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    run_id: Mapped[Optional[str]] = mapped_column(String(64))
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    selection: Mapped[Optional[str]] = mapped_column(String(64))
    line: Mapped[Optional[float]] = mapped_column(Float)
    units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tier: Mapped[Optional[str]] = mapped_column(String(20))
    tier_score: Mapped[Optional[float]] = mapped_column(Float)
    audit: Mapped[dict] = mapped_column(JSONType(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class OutcomeRow(Base):
    """Graded result of a decision. Append-only."""

    __tablename__ = "pc_outcomes"
    __table_args__ = (
        Index("ix_outcomes_source_kind", "source", "kind"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=_genuuid)
    decision_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("pc_decisions.decision_id"), nullable=False,
    )
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(10), nullable=False)
    units_delta: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
