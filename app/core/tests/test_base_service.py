"""
Tests for BaseService.retry_on_conflict.
"""

from unittest.mock import Mock

import pytest

from core.exceptions import ConflictError
from core.services import BaseService


class GaveUpError(Exception):
    pass


class TestRetryOnConflict:
    def test_returns_first_success(self):
        operation = Mock(side_effect=[ConflictError("stale"), "done"])

        result = BaseService.retry_on_conflict(operation, retry_on=(ConflictError,), max_attempts=3)

        assert result == "done"
        assert operation.call_count == 2

    def test_reraises_last_conflict_when_exhausted(self):
        errors = [ConflictError("first"), ConflictError("second")]
        operation = Mock(side_effect=errors)

        with pytest.raises(ConflictError) as exc_info:
            BaseService.retry_on_conflict(operation, retry_on=(ConflictError,), max_attempts=2)

        assert exc_info.value is errors[1]
        assert operation.call_count == 2

    def test_give_up_builds_final_error(self):
        last = ConflictError("still stale")
        operation = Mock(side_effect=[ConflictError("stale"), ConflictError("stale"), last])

        with pytest.raises(GaveUpError) as exc_info:
            BaseService.retry_on_conflict(
                operation,
                retry_on=(ConflictError,),
                max_attempts=3,
                give_up=lambda error, attempts: GaveUpError(f"{attempts}: {error.message}"),
            )

        assert str(exc_info.value) == "3: still stale"
        assert exc_info.value.__cause__ is last

    def test_zero_attempts_still_runs_once(self):
        operation = Mock(side_effect=ConflictError("stale"))

        with pytest.raises(ConflictError):
            BaseService.retry_on_conflict(operation, retry_on=(ConflictError,), max_attempts=0)

        assert operation.call_count == 1

    def test_other_errors_propagate_without_retry(self):
        operation = Mock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            BaseService.retry_on_conflict(operation, retry_on=(ConflictError,), max_attempts=3)

        assert operation.call_count == 1
