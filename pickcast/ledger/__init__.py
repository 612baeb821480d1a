"""Execution ledger: canonical encoding and the idempotency guard."""

from pickcast.ledger.canonical import canonical_json, content_hash
from pickcast.ledger.execution import ExecutionLedger, StepPolicy

__all__ = ["ExecutionLedger", "StepPolicy", "canonical_json", "content_hash"]
