"""
SQL record store (async SQLAlchemy).

Each operation runs in its own short transaction from the injected session
factory. The idempotency insert is a single ``INSERT ... ON CONFLICT DO
NOTHING`` on PostgreSQL and SQLite; other dialects fall back to a plain insert
and translate the unique-violation into ``StoreConflictError``. Factor rows use
the same conditional insert keyed on (run_id, factor_key).
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pickcast.db.models import (
    DecisionRecordRow,
    FactorRow,
    IdempotencyKey,
    OddsSnapshot,
    OutcomeRow,
    Run,
)
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

_CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SqlRecordStore:
    """``RecordStore`` backed by the PickCast ORM models."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Idempotency ledger ───────────────────────────────────────────────

    async def get_idempotency(self, run_id: str, step: str, key: str) -> Optional[IdempotencyRecord]:
        async with self.session_factory() as session:
            row = await session.get(IdempotencyKey, (run_id, step, key))
            return _idempotency_from_row(row) if row else None

    async def insert_idempotency(self, record: IdempotencyRecord) -> None:
        values = dict(
            run_id=record.run_id,
            step=record.step,
            key=record.key,
            body=record.body,
            status_code=record.status_code,
            content_hash=record.content_hash,
            created_at=record.created_at,
        )
        async with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            conflict_insert = _CONFLICT_INSERTS.get(dialect)
            if conflict_insert is not None:
                stmt = conflict_insert(IdempotencyKey).values(**values).on_conflict_do_nothing(
                    index_elements=["run_id", "step", "key"],
                )
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount == 0:
                    raise StoreConflictError(
                        f"Idempotency key exists: {record.run_id}/{record.step}/{record.key}"
                    )
                return
            try:
                await session.execute(insert(IdempotencyKey).values(**values))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StoreConflictError(
                    f"Idempotency key exists: {record.run_id}/{record.step}/{record.key}",
                    cause=e,
                ) from e

    async def count_idempotency(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count()).select_from(IdempotencyKey))
            return int(result.scalar_one())

    # ── Runs ─────────────────────────────────────────────────────────────

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        async with self.session_factory() as session:
            row = await session.get(Run, run_id)
            return _run_from_row(row) if row else None

    async def find_runs(self, entity_id: str, kind: str, source: str) -> list[RunRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Run).where(
                    Run.entity_id == entity_id,
                    Run.kind == kind,
                    Run.source == source,
                ).order_by(Run.created_at)
            )
            return [_run_from_row(r) for r in result.scalars().all()]

    async def insert_run(self, run: RunRecord) -> None:
        async with self.session_factory() as session:
            session.add(Run(
                run_id=run.run_id,
                entity_id=run.entity_id,
                kind=run.kind,
                source=run.source,
                state=run.state.value,
                created_at=run.created_at,
                updated_at=run.created_at,
            ))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StoreConflictError(f"Run exists: {run.run_id}", cause=e) from e

    async def update_run(self, run_id: str, state: RunState, **fields) -> RunRecord:
        async with self.session_factory() as session:
            # Conditional update: only a non-terminal row can change.
            result = await session.execute(
                update(Run)
                .where(Run.run_id == run_id, Run.state == RunState.IN_PROGRESS.value)
                .values(state=state.value, updated_at=datetime.utcnow(), **fields)
            )
            await session.commit()
            if result.rowcount == 0:
                row = await session.get(Run, run_id)
                if row is None:
                    raise KeyError(run_id)
                raise RunStateError(run_id, row.state)
            row = await session.get(Run, run_id, populate_existing=True)
            return _run_from_row(row)

    async def reopen_run(self, run_id: str) -> RunRecord:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Run)
                .where(Run.run_id == run_id, Run.state == RunState.FAILED.value)
                .values(state=RunState.IN_PROGRESS.value, error_message=None, updated_at=datetime.utcnow())
            )
            await session.commit()
            row = await session.get(Run, run_id, populate_existing=True)
            if row is None:
                raise KeyError(run_id)
            if result.rowcount == 0:
                raise RunStateError(run_id, row.state)
            return _run_from_row(row)

    # ── Snapshots & factors ──────────────────────────────────────────────

    async def activate_snapshot(self, snapshot: SnapshotRecord) -> None:
        async with self.session_factory() as session:
            existing = await session.get(OddsSnapshot, snapshot.snapshot_id)
            if existing is not None and existing.is_active:
                return
            await session.execute(
                update(OddsSnapshot)
                .where(
                    OddsSnapshot.run_id == snapshot.run_id,
                    OddsSnapshot.is_active.is_(True),
                    OddsSnapshot.snapshot_id != snapshot.snapshot_id,
                )
                .values(is_active=False)
            )
            if existing is None:
                session.add(OddsSnapshot(
                    snapshot_id=snapshot.snapshot_id,
                    run_id=snapshot.run_id,
                    lines=snapshot.lines,
                    captured_at=snapshot.captured_at,
                    is_active=True,
                ))
            else:
                existing.is_active = True
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent writer stored and activated the same snapshot.
                await session.rollback()
                logger.debug("snapshot_already_active", snapshot_id=snapshot.snapshot_id)

    async def get_active_snapshot(self, run_id: str) -> Optional[SnapshotRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OddsSnapshot).where(
                    OddsSnapshot.run_id == run_id,
                    OddsSnapshot.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
            return _snapshot_from_row(row) if row else None

    async def list_snapshots(self, run_id: str) -> list[SnapshotRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OddsSnapshot)
                .where(OddsSnapshot.run_id == run_id)
                .order_by(OddsSnapshot.captured_at)
            )
            return [_snapshot_from_row(r) for r in result.scalars().all()]

    async def append_factors(self, factors: Sequence[FactorRecord]) -> None:
        if not factors:
            return
        rows = [
            dict(
                id=uuid.uuid4(),
                run_id=f.run_id,
                factor_key=f.key,
                name=f.name,
                signal=f.signal,
                over_score=f.over_score,
                under_score=f.under_score,
                weight_applied=f.weight_applied,
                cap_applied=f.cap_applied,
                cap_reason=f.cap_reason,
                created_at=datetime.utcnow(),
            )
            for f in factors
        ]
        async with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            conflict_insert = _CONFLICT_INSERTS.get(dialect)
            if conflict_insert is not None:
                await session.execute(
                    conflict_insert(FactorRow).values(rows).on_conflict_do_nothing(
                        index_elements=["run_id", "factor_key"],
                    )
                )
            else:
                result = await session.execute(
                    select(FactorRow.run_id, FactorRow.factor_key).where(
                        FactorRow.run_id.in_(sorted({r["run_id"] for r in rows})),
                    )
                )
                stored = {(r.run_id, r.factor_key) for r in result}
                missing = [r for r in rows if (r["run_id"], r["factor_key"]) not in stored]
                if missing:
                    await session.execute(insert(FactorRow).values(missing))
            await session.commit()

    async def list_factors(self, run_id: str) -> list[FactorRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactorRow).where(FactorRow.run_id == run_id).order_by(FactorRow.created_at)
            )
            return [
                FactorRecord(
                    run_id=r.run_id,
                    key=r.factor_key,
                    name=r.name,
                    signal=r.signal,
                    over_score=r.over_score,
                    under_score=r.under_score,
                    weight_applied=r.weight_applied,
                    cap_applied=r.cap_applied,
                    cap_reason=r.cap_reason,
                )
                for r in result.scalars().all()
            ]

    # ── Decisions & outcomes ─────────────────────────────────────────────

    async def append_decision(self, record: DecisionRecord) -> None:
        async with self.session_factory() as session:
            session.add(DecisionRecordRow(
                decision_id=record.decision_id,
                run_id=record.run_id,
                entity_id=record.entity_id,
                kind=record.kind,
                source=record.source,
                selection=record.selection,
                line=record.line,
                units=record.units,
                confidence=record.confidence,
                tier=record.tier,
                tier_score=record.tier_score,
                audit=record.audit,
                created_at=record.created_at,
            ))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StoreConflictError(f"Decision exists for run: {record.run_id}", cause=e) from e
        logger.debug("decision_appended", decision_id=str(record.decision_id), source=record.source)

    async def list_decisions(
        self,
        kind: Optional[str] = None,
        entity_id: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[DecisionRecord]:
        stmt = select(DecisionRecordRow).order_by(DecisionRecordRow.created_at)
        if kind is not None:
            stmt = stmt.where(DecisionRecordRow.kind == kind)
        if entity_id is not None:
            stmt = stmt.where(DecisionRecordRow.entity_id == entity_id)
        if source is not None:
            stmt = stmt.where(DecisionRecordRow.source == source)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_decision_from_row(r) for r in result.scalars().all()]

    async def append_outcome(self, record: OutcomeRecord) -> None:
        async with self.session_factory() as session:
            session.add(OutcomeRow(
                decision_id=record.decision_id,
                source=record.source,
                kind=record.kind,
                result=record.result,
                units_delta=record.units_delta,
                recorded_at=record.recorded_at,
            ))
            await session.commit()

    async def list_outcomes(
        self,
        source: Optional[str] = None,
        kind: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[OutcomeRecord]:
        stmt = select(OutcomeRow).order_by(OutcomeRow.recorded_at.desc())
        if source is not None:
            stmt = stmt.where(OutcomeRow.source == source)
        if kind is not None:
            stmt = stmt.where(OutcomeRow.kind == kind)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                OutcomeRecord(
                    decision_id=r.decision_id,
                    source=r.source,
                    kind=r.kind,
                    result=r.result,
                    units_delta=r.units_delta,
                    recorded_at=r.recorded_at,
                )
                for r in result.scalars().all()
            ]


# ── Row → record helpers ─────────────────────────────────────────────────


def _idempotency_from_row(row: IdempotencyKey) -> IdempotencyRecord:
    return IdempotencyRecord(
        run_id=row.run_id,
        step=row.step,
        key=row.key,
        body=row.body,
        status_code=row.status_code,
        content_hash=row.content_hash,
        created_at=row.created_at,
    )


def _run_from_row(row: Run) -> RunRecord:
    return RunRecord(
        run_id=row.run_id,
        entity_id=row.entity_id,
        kind=row.kind,
        source=row.source,
        state=RunState(row.state),
        confidence=row.confidence,
        units=row.units,
        selection=row.selection,
        error_message=row.error_message,
        created_at=row.created_at,
    )


def _snapshot_from_row(row: OddsSnapshot) -> SnapshotRecord:
    return SnapshotRecord(
        snapshot_id=row.snapshot_id,
        run_id=row.run_id,
        lines=dict(row.lines or {}),
        captured_at=row.captured_at,
        is_active=row.is_active,
    )


def _decision_from_row(row: DecisionRecordRow) -> DecisionRecord:
    return DecisionRecord(
        decision_id=row.decision_id,
        run_id=row.run_id,
        entity_id=row.entity_id,
        kind=row.kind,
        source=row.source,
        selection=row.selection,
        line=row.line,
        units=row.units,
        confidence=row.confidence,
        tier=row.tier,
        tier_score=row.tier_score,
        audit=dict(row.audit or {}),
        created_at=row.created_at,
    )
