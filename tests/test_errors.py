"""
Error Hierarchy Tests.
"""

from pickcast.errors import (
    DuplicateRunError,
    ErrorCode,
    PickcastError,
    StepExecutionError,
    StoreConflictError,
    ValidationFailedError,
)


class TestErrors:

    def test_validation_error(self):
        err = ValidationFailedError("bad weight", field="pace", value=-1)
        assert err.status_code == 400
        assert err.error_code == ErrorCode.VALIDATION_FAILED
        assert err.to_dict()["field"] == "pace"
        assert str(err) == "[VALIDATION_FAILED] bad weight"

    def test_duplicate_run_is_a_409_validation_error(self):
        err = DuplicateRunError("G1", "total", "alpha", "R1", "COMPLETE")
        assert isinstance(err, ValidationFailedError)
        assert err.status_code == 409
        assert err.error_code == ErrorCode.VALIDATION_FAILED

    def test_step_error_carries_location(self):
        err = StepExecutionError("provider down", run_id="R1", step="factors")
        data = err.to_dict()
        assert data["run_id"] == "R1"
        assert data["step"] == "factors"
        assert data["status_code"] == 500

    def test_store_conflict(self):
        err = StoreConflictError("exists")
        assert err.status_code == 409
        assert err.error_code == ErrorCode.STORE_CONFLICT
        assert isinstance(err, PickcastError)
