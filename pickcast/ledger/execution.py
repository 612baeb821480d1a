"""
Execution Ledger — exactly-once results for guarded pipeline steps.

Flow for ``execute(run_id, step, key, write_allowed, compute)``:
  1. Replay: a stored record for (run_id, step, key) is returned verbatim and
     ``compute`` is not called (skipped for always-recompute steps).
  2. Compute: run the step.
  3. Dry-run: ``write_allowed=False`` returns the result, nothing persisted.
  4. Record: canonicalize + hash, single conditional insert.
  5. Conflict: a concurrent caller won; re-read and return the winner.

Every caller for one key receives the body decoded from the same canonical
text, so responses are byte-identical across retries and racing callers.
"""

import json
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping, Optional

import structlog

from pickcast.errors import PickcastError, StepExecutionError, StoreConflictError
from pickcast.ledger.canonical import canonical_json, content_hash
from pickcast.store.base import IdempotencyRecord, RecordStore

logger = structlog.get_logger(__name__)

StepResult = tuple[dict, int]
ComputeFn = Callable[[], Awaitable[StepResult]]


@dataclass(frozen=True)
class StepPolicy:
    """Per-step ledger behaviour."""
    always_recompute: bool = False


DEFAULT_POLICY = StepPolicy()


class ExecutionLedger:
    """Idempotency guard around step computations."""

    def __init__(
        self,
        store: RecordStore,
        policies: Optional[Mapping[str, StepPolicy]] = None,
        volatile_keys: Iterable[str] = (),
    ):
        self.store = store
        self.policies = dict(policies or {})
        self.volatile_keys = frozenset(volatile_keys)

    @classmethod
    def from_settings(cls, store: RecordStore, settings) -> "ExecutionLedger":
        """Build a ledger using the configured always-recompute steps."""
        return cls(
            store,
            policies={
                step: StepPolicy(always_recompute=True)
                for step in settings.ledger_always_recompute_steps
            },
            volatile_keys=settings.ledger_volatile_keys,
        )

    def policy_for(self, step: str) -> StepPolicy:
        return self.policies.get(step, DEFAULT_POLICY)

    async def lookup(self, run_id: str, step: str, key: str) -> Optional[StepResult]:
        """Stored (body, status) for a key, or None."""
        record = await self.store.get_idempotency(run_id, step, key)
        return _decode(record) if record else None

    async def execute(
        self,
        run_id: str,
        step: str,
        idempotency_key: str,
        write_allowed: bool,
        compute: ComputeFn,
    ) -> StepResult:
        """
        Run ``compute`` at most once per (run_id, step, idempotency_key).

        Returns:
            (body, status_code)

        Raises:
            StepExecutionError: compute failed; nothing was persisted.
            ValidationFailedError: compute rejected its input (propagated as is).
        """
        policy = self.policy_for(step)

        if not policy.always_recompute:
            existing = await self.store.get_idempotency(run_id, step, idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger_replay",
                    run_id=run_id,
                    step=step,
                    key=idempotency_key,
                    content_hash=existing.content_hash,
                )
                return _decode(existing)

        body, status_code = await self._compute(run_id, step, compute)
        canonical = canonical_json(body, self.volatile_keys)

        if not write_allowed:
            logger.info("ledger_dry_run", run_id=run_id, step=step, status_code=status_code)
            return json.loads(canonical), status_code

        if not 200 <= status_code < 300:
            logger.warning(
                "ledger_not_recorded",
                run_id=run_id,
                step=step,
                status_code=status_code,
            )
            return json.loads(canonical), status_code

        record = IdempotencyRecord(
            run_id=run_id,
            step=step,
            key=idempotency_key,
            body=canonical,
            status_code=status_code,
            content_hash=content_hash(canonical),
        )
        try:
            await self.store.insert_idempotency(record)
        except StoreConflictError:
            if policy.always_recompute:
                logger.info("ledger_record_retained", run_id=run_id, step=step, key=idempotency_key)
                return json.loads(canonical), status_code
            winner = await self.store.get_idempotency(run_id, step, idempotency_key)
            if winner is None:
                raise StepExecutionError(
                    "Ledger conflict without a stored record",
                    run_id=run_id,
                    step=step,
                )
            logger.info(
                "ledger_conflict_resolved",
                run_id=run_id,
                step=step,
                key=idempotency_key,
                discarded_hash=record.content_hash,
                winner_hash=winner.content_hash,
            )
            return _decode(winner)

        logger.info(
            "ledger_recorded",
            run_id=run_id,
            step=step,
            key=idempotency_key,
            content_hash=record.content_hash,
        )
        return json.loads(canonical), status_code

    async def _compute(self, run_id: str, step: str, compute: ComputeFn) -> StepResult:
        try:
            body, status_code = await compute()
        except StepExecutionError as e:
            e.run_id = e.run_id or run_id
            e.step = e.step or step
            logger.error("ledger_step_failed", run_id=run_id, step=step, error=str(e))
            raise
        except PickcastError as e:
            if e.status_code < 500:
                raise
            logger.error("ledger_step_failed", run_id=run_id, step=step, error=str(e))
            raise StepExecutionError(str(e.message), run_id=run_id, step=step, cause=e) from e
        except Exception as e:
            logger.error("ledger_step_failed", run_id=run_id, step=step, error=str(e))
            raise StepExecutionError(
                f"Step {step} failed: {e}", run_id=run_id, step=step, cause=e,
            ) from e
        return body, int(status_code)


def _decode(record: IdempotencyRecord) -> StepResult:
    return json.loads(record.body), record.status_code
