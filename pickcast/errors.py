"""
Custom exceptions for PickCast.

Structured errors with stable codes. Only the ledger resolves an error locally
(an insert conflict is answered by re-reading the winning record); everything
else propagates to the caller.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for PickCast."""
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INSUFFICIENT_CONSENSUS = "INSUFFICIENT_CONSENSUS"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    STORE_CONFLICT = "STORE_CONFLICT"


class PickcastError(Exception):
    """
    Base exception for PickCast.

    All custom exceptions inherit from this class.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.EXECUTION_ERROR,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.cause = cause
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/responses."""
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "status_code": self.status_code,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ValidationFailedError(PickcastError):
    """Malformed or out-of-range input. Never retried automatically."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None, **kwargs):
        super().__init__(message=message, error_code=ErrorCode.VALIDATION_FAILED, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        return result


class DuplicateRunError(ValidationFailedError):
    """A completed run already exists for (entity, kind, source)."""

    status_code = 409

    def __init__(self, entity_id: str, kind: str, source: str, run_id: str, state: str):
        super().__init__(
            f"Run {run_id} for {entity_id}/{kind}/{source} is already {state}",
            field="entity_id",
            value=entity_id,
        )
        self.run_id = run_id
        self.state = state


class StepExecutionError(PickcastError):
    """A guarded step failed. No ledger record was written; retry is safe."""

    status_code = 500

    def __init__(self, message: str, run_id: str = "", step: str = "", **kwargs):
        super().__init__(message=message, error_code=ErrorCode.EXECUTION_ERROR, **kwargs)
        self.run_id = run_id
        self.step = step

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["run_id"] = self.run_id
        result["step"] = self.step
        return result


class RunStateError(PickcastError):
    """Attempt to change a run that is already terminal."""

    def __init__(self, run_id: str, state: str):
        super().__init__(
            f"Run {run_id} is terminal ({state}) and cannot change",
            error_code=ErrorCode.EXECUTION_ERROR,
        )
        self.run_id = run_id
        self.state = state


class StoreConflictError(PickcastError):
    """Conditional insert lost a race. Internal only."""

    status_code = 409

    def __init__(self, message: str, **kwargs):
        super().__init__(message=message, error_code=ErrorCode.STORE_CONFLICT, **kwargs)
