"""
Pick Pipeline Tests.

End-to-end runs over the in-memory store, plus one run against SQLite.
"""

import asyncio
import json
from datetime import datetime

import pytest

from pickcast.errors import DuplicateRunError, StepExecutionError, ValidationFailedError
from pickcast.pipeline.cache import TTLCache
from pickcast.pipeline.providers import FactorSignal, MarketSnapshot
from pickcast.pipeline.runner import GUARDED_STEPS, PickPipeline, run_token
from pickcast.pipeline.weights import FactorSpec, WeightProfile
from pickcast.store import RunRecord, RunState

CAPTURED_AT = datetime(2026, 3, 1, 12, 0, 0)


class StaticSnapshotProvider:
    def __init__(self, lines=None):
        self.lines = lines if lines is not None else {"total": 220.5, "spread": -4.5}
        self.calls = 0

    async def fetch(self, entity_id, kind):
        self.calls += 1
        return MarketSnapshot(
            entity_id=entity_id,
            lines=self.lines,
            side_labels={"A": "LAL", "B": "BOS"},
            captured_at=CAPTURED_AT,
        )


class StaticFactorProvider:
    def __init__(self, signals):
        self.signals = signals
        self.calls = 0

    async def compute(self, entity_id, kind, snapshot):
        self.calls += 1
        return list(self.signals)


class FailingFactorProvider:
    async def compute(self, entity_id, kind, snapshot):
        raise RuntimeError("stats feed unavailable")


class FlakyFactorProvider(StaticFactorProvider):
    """Fails on the first call only."""

    async def compute(self, entity_id, kind, snapshot):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("stats feed timed out")
        return list(self.signals)


class SlowSnapshotProvider(StaticSnapshotProvider):
    """Each call sleeps for the next delay in ``delays``."""

    def __init__(self, delays):
        super().__init__()
        self.delays = list(delays)

    async def fetch(self, entity_id, kind):
        await asyncio.sleep(self.delays.pop(0))
        return await super().fetch(entity_id, kind)


class SlowFactorProvider(StaticFactorProvider):
    async def compute(self, entity_id, kind, snapshot):
        await asyncio.sleep(0.01)
        return await super().compute(entity_id, kind, snapshot)


def _profile() -> WeightProfile:
    return WeightProfile([FactorSpec("pace", "Pace", 60.0), FactorSpec("rest", "Rest", 40.0)])


def _pipeline(store, providers=None, snapshots=None, **kwargs) -> PickPipeline:
    if providers is None:
        providers = [StaticFactorProvider([
            FactorSignal(key="pace", name="Pace", signal=0.8),
            FactorSignal(key="rest", name="Rest", signal=0.5),
        ])]
    return PickPipeline(
        store=store,
        snapshot_provider=snapshots or StaticSnapshotProvider(),
        factor_providers=providers,
        profile=_profile(),
        source="alpha",
        **kwargs,
    )


class TestRunToken:

    def test_deterministic(self):
        assert run_token("G1", "total", "alpha") == run_token("G1", "total", "alpha")

    def test_distinct_per_source_and_kind(self):
        tokens = {
            run_token("G1", "total", "alpha"),
            run_token("G1", "total", "beta"),
            run_token("G1", "spread", "alpha"),
        }
        assert len(tokens) == 3


class TestFullRun:

    @pytest.mark.asyncio
    async def test_total_pick(self, store):
        result = await _pipeline(store).run("G1", "total", "K1")

        # signed 0.68 → 3.4; predicted 228.4 vs 220.5 → +0.79
        assert result.selection == "OVER 220.5"
        assert result.confidence == pytest.approx(4.19)
        assert result.units == 3
        assert not result.is_pass

        run = await store.get_run(result.run_id)
        assert run.state == RunState.COMPLETE
        assert run.units == 3
        assert run.selection == "OVER 220.5"

    @pytest.mark.asyncio
    async def test_persists_every_artifact(self, store):
        result = await _pipeline(store).run("G1", "total", "K1")

        assert await store.count_idempotency() == len(GUARDED_STEPS)
        assert (await store.get_active_snapshot(result.run_id)).lines["total"] == 220.5
        assert {f.key for f in await store.list_factors(result.run_id)} == {"pace", "rest"}

        decisions = await store.list_decisions(source="alpha")
        assert len(decisions) == 1
        assert str(decisions[0].decision_id) == result.decision_id
        breakdown = decisions[0].audit["confidence"]["breakdown"]
        assert [b["key"] for b in breakdown] == ["pace", "rest"]

    @pytest.mark.asyncio
    async def test_spread_pick(self, store):
        result = await _pipeline(store).run("G1", "spread", "K1")
        # margin 3.4 vs market 4.5 → edge −1.1 → 3.4 − 0.11
        assert result.selection == "LAL -4.5"
        assert result.confidence == pytest.approx(3.29)
        assert result.units == 1

    @pytest.mark.asyncio
    async def test_weak_signal_is_pass(self, store):
        providers = [StaticFactorProvider([
            FactorSignal(key="pace", name="Pace", signal=0.1),
            FactorSignal(key="rest", name="Rest", signal=-0.1),
        ])]
        snapshots = StaticSnapshotProvider({"total": 225.0})
        result = await _pipeline(store, providers, snapshots).run("G1", "total", "K1")

        assert result.is_pass
        decisions = await store.list_decisions()
        assert decisions[0].is_pass
        assert (await store.get_run(result.run_id)).state == RunState.COMPLETE

    @pytest.mark.asyncio
    async def test_runs_on_sql_store(self, sql_store):
        result = await _pipeline(sql_store).run("G1", "total", "K1")

        assert result.units == 3
        run = await sql_store.get_run(result.run_id)
        assert run.state == RunState.COMPLETE
        decisions = await sql_store.list_decisions(entity_id="G1")
        assert decisions[0].selection == "OVER 220.5"
        assert await sql_store.count_idempotency() == len(GUARDED_STEPS)


class TestIdempotentSteps:

    @pytest.mark.asyncio
    async def test_factor_step_replays(self, store):
        """Same run, same key, twice → same response, no second insert."""
        provider = StaticFactorProvider([
            FactorSignal(key="pace", name="Pace", signal=0.8),
            FactorSignal(key="rest", name="Rest", signal=0.5),
        ])
        pipeline = _pipeline(store, [provider])
        run = await pipeline.intake("G1", "total")
        snapshot, _ = await pipeline.take_snapshot(run, "K1")

        first = await pipeline.compute_factors(run, "K1", snapshot)
        second = await pipeline.compute_factors(run, "K1", snapshot)

        assert first == second
        assert first[1] == 200
        assert provider.calls == 1
        assert len(await store.list_factors(run.run_id)) == 2

    @pytest.mark.asyncio
    async def test_new_key_recomputes(self, store):
        provider = StaticFactorProvider([FactorSignal(key="pace", name="Pace", signal=0.8)])
        pipeline = _pipeline(store, [provider])
        run = await pipeline.intake("G1", "total")
        snapshot, _ = await pipeline.take_snapshot(run, "K1")

        await pipeline.compute_factors(run, "K1", snapshot)
        await pipeline.compute_factors(run, "K2", snapshot)

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_duplicate_factor_keys_rejected(self, store):
        signal = FactorSignal(key="pace", name="Pace", signal=0.8)
        pipeline = _pipeline(store, [StaticFactorProvider([signal]), StaticFactorProvider([signal])])
        run = await pipeline.intake("G1", "total")
        snapshot, _ = await pipeline.take_snapshot(run, "K1")

        with pytest.raises(ValidationFailedError):
            await pipeline.compute_factors(run, "K1", snapshot)


class TestConcurrentRuns:

    @pytest.mark.asyncio
    async def test_racing_runs_write_once(self, store):
        signals = [
            FactorSignal(key="pace", name="Pace", signal=0.8),
            FactorSignal(key="rest", name="Rest", signal=0.5),
        ]
        first = _pipeline(store, [SlowFactorProvider(signals)])
        second = _pipeline(store, [SlowFactorProvider(signals)])

        a, b = await asyncio.gather(
            first.run("G1", "total", "K1"),
            second.run("G1", "total", "K1"),
        )

        assert a == b
        assert len(await store.list_decisions()) == 1
        assert len(await store.list_factors(a.run_id)) == 2
        assert len(await store.list_snapshots(a.run_id)) == 1
        assert await store.count_idempotency() == len(GUARDED_STEPS)

    @pytest.mark.asyncio
    async def test_active_snapshot_is_the_recorded_one(self, store):
        # the first caller's fetch finishes last, so the second caller's snapshot is recorded
        snapshots = SlowSnapshotProvider([0.03, 0.01])
        first = _pipeline(store, snapshots=snapshots)
        second = _pipeline(store, snapshots=snapshots)

        result, _ = await asyncio.gather(
            first.run("G1", "total", "K1"),
            second.run("G1", "total", "K1"),
        )

        recorded = await store.get_idempotency(result.run_id, "snapshot", "K1")
        active = await store.get_active_snapshot(result.run_id)
        assert active.snapshot_id == json.loads(recorded.body)["snapshot_id"]
        assert [s.snapshot_id for s in await store.list_snapshots(result.run_id)] == [active.snapshot_id]
        assert result.audit["snapshot"]["snapshot_id"] == active.snapshot_id

    @pytest.mark.asyncio
    async def test_replayed_steps_write_once_on_sql_store(self, sql_store):
        pipeline = _pipeline(sql_store)
        run = await pipeline.intake("G1", "total")

        snapshot, _ = await pipeline.take_snapshot(run, "K1")
        again, _ = await pipeline.take_snapshot(run, "K1")
        await pipeline.compute_factors(run, "K1", snapshot)
        await pipeline.compute_factors(run, "K1", snapshot)

        assert again == snapshot
        assert [s.snapshot_id for s in await sql_store.list_snapshots(run.run_id)] == [snapshot["snapshot_id"]]
        assert len(await sql_store.list_factors(run.run_id)) == 2


class TestRunLifecycle:

    @pytest.mark.asyncio
    async def test_completed_run_rejected(self, store):
        pipeline = _pipeline(store)
        await pipeline.run("G1", "total", "K1")

        with pytest.raises(DuplicateRunError) as exc_info:
            await pipeline.run("G1", "total", "K2")
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_in_progress_run_resumed(self, store):
        run_id = run_token("G1", "total", "alpha")
        await store.insert_run(RunRecord(run_id=run_id, entity_id="G1", kind="total", source="alpha"))

        run = await _pipeline(store).intake("G1", "total")
        assert run.run_id == run_id

    @pytest.mark.asyncio
    async def test_intake_race_rereads(self, store):
        run_id = run_token("G1", "total", "alpha")
        await store.insert_run(RunRecord(run_id=run_id, entity_id="G1", kind="total", source="alpha"))

        async def nothing_yet(entity_id, kind, source):
            return []

        store.find_runs = nothing_yet
        run = await _pipeline(store).intake("G1", "total")
        assert run.run_id == run_id
        assert run.state == RunState.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_failed_step_marks_run_failed(self, store):
        pipeline = _pipeline(store, [FailingFactorProvider()])

        with pytest.raises(StepExecutionError) as exc_info:
            await pipeline.run("G1", "total", "K1")
        assert exc_info.value.step == "factors"

        run = await store.get_run(run_token("G1", "total", "alpha"))
        assert run.state == RunState.FAILED
        assert "stats feed unavailable" in run.error_message
        # the snapshot step finished before the failure and stays recorded
        assert await store.count_idempotency() == 1
        assert await store.list_decisions() == []

    @pytest.mark.asyncio
    async def test_failed_run_retried_with_same_key(self, store):
        provider = FlakyFactorProvider([
            FactorSignal(key="pace", name="Pace", signal=0.8),
            FactorSignal(key="rest", name="Rest", signal=0.5),
        ])
        snapshots = StaticSnapshotProvider()
        pipeline = _pipeline(store, [provider], snapshots)

        with pytest.raises(StepExecutionError):
            await pipeline.run("G1", "total", "K1")
        result = await pipeline.run("G1", "total", "K1")

        assert result.selection == "OVER 220.5"
        assert result.units == 3
        # the recorded snapshot step is replayed, not refetched
        assert snapshots.calls == 1
        run = await store.get_run(result.run_id)
        assert run.state == RunState.COMPLETE
        assert run.error_message is None
        assert len(await store.list_decisions()) == 1

    @pytest.mark.asyncio
    async def test_failed_run_retried_on_sql_store(self, sql_store):
        provider = FlakyFactorProvider([
            FactorSignal(key="pace", name="Pace", signal=0.8),
            FactorSignal(key="rest", name="Rest", signal=0.5),
        ])
        pipeline = _pipeline(sql_store, [provider])

        with pytest.raises(StepExecutionError):
            await pipeline.run("G1", "total", "K1")
        result = await pipeline.run("G1", "total", "K1")

        assert (await sql_store.get_run(result.run_id)).state == RunState.COMPLETE
        with pytest.raises(DuplicateRunError):
            await pipeline.run("G1", "total", "K2")

    @pytest.mark.asyncio
    async def test_missing_line_fails_validation(self, store):
        pipeline = _pipeline(store, snapshots=StaticSnapshotProvider({"spread": -3.0}))

        with pytest.raises(ValidationFailedError):
            await pipeline.run("G1", "total", "K1")
        run = await store.get_run(run_token("G1", "total", "alpha"))
        assert run.state == RunState.FAILED


class TestDryRun:

    @pytest.mark.asyncio
    async def test_nothing_persisted(self, store):
        result = await _pipeline(store).run("G1", "total", "K1", write_allowed=False)

        assert result.units == 3
        assert await store.get_run(result.run_id) is None
        assert await store.count_idempotency() == 0
        assert await store.list_decisions() == []
        assert await store.list_snapshots(result.run_id) == []

    @pytest.mark.asyncio
    async def test_dry_run_then_real_run(self, store):
        pipeline = _pipeline(store)
        dry = await pipeline.run("G1", "total", "K1", write_allowed=False)
        real = await pipeline.run("G1", "total", "K1")

        assert dry.selection == real.selection
        assert dry.units == real.units

    @pytest.mark.asyncio
    async def test_snapshot_cache_shared_across_runs(self, store, clock):
        snapshots = StaticSnapshotProvider()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        pipeline = _pipeline(store, snapshots=snapshots, snapshot_cache=cache)

        await pipeline.run("G1", "total", "K1", write_allowed=False)
        await pipeline.run("G1", "total", "K2", write_allowed=False)
        assert snapshots.calls == 1

        clock.advance(60)
        await pipeline.run("G1", "total", "K3", write_allowed=False)
        assert snapshots.calls == 2
