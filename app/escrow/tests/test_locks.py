"""
Tests for DistributedLock.

Redis is mocked; these tests pin the commands the lock issues and its
acquire/release semantics.
"""

import itertools

import pytest

from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock, payout_lock_key, transaction_lock_key


class TestLockKeys:
    def test_payout_key_is_per_seller(self):
        assert payout_lock_key(42) == "escrow:payout:seller:42"

    def test_transaction_key(self):
        assert transaction_lock_key("abc") == "escrow:transaction:abc"


class TestDistributedLock:
    def test_acquire_sets_key_with_ttl(self, mock_redis):
        lock = DistributedLock("escrow:payout:seller:1", ttl=15)

        assert lock.acquire() is True
        assert lock.is_held

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lock:escrow:payout:seller:1"
        assert kwargs == {"nx": True, "ex": 15}

    def test_release_runs_token_checked_script(self, mock_redis):
        lock = DistributedLock("key")
        lock.acquire()
        token = mock_redis.set.call_args[0][1]

        assert lock.release() is True
        assert not lock.is_held
        mock_redis.eval.assert_called_once_with(DistributedLock.RELEASE_SCRIPT, 1, "lock:key", token)

    def test_release_without_acquire_is_noop(self, mock_redis):
        assert DistributedLock("key").release() is False
        mock_redis.eval.assert_not_called()

    def test_non_blocking_fails_fast_when_held(self, mock_redis):
        mock_redis.set.return_value = None
        lock = DistributedLock("key", blocking=False)

        with pytest.raises(LockAcquisitionError, match="already held"):
            lock.acquire()

        assert not lock.is_held
        assert mock_redis.set.call_count == 1

    def test_blocking_polls_until_free(self, mock_redis, mocker):
        mocker.patch("escrow.locks.time.sleep")
        mock_redis.set.side_effect = [None, None, True]

        lock = DistributedLock("key", timeout=5)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3

    def test_blocking_times_out(self, mock_redis, mocker):
        mocker.patch("escrow.locks.time.sleep")
        mocker.patch("escrow.locks.time.monotonic", side_effect=itertools.count(0.0, 0.6))
        mock_redis.set.return_value = None

        lock = DistributedLock("key", timeout=1.0)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "within 1.0s" in exc_info.value.message
        assert exc_info.value.details["key"] == "lock:key"

    def test_context_manager_releases_on_error(self, mock_redis):
        with pytest.raises(RuntimeError):
            with DistributedLock("key"):
                raise RuntimeError("boom")

        mock_redis.eval.assert_called_once()

    def test_extend_uses_original_ttl_by_default(self, mock_redis):
        lock = DistributedLock("key", ttl=20)
        lock.acquire()
        token = mock_redis.set.call_args[0][1]

        assert lock.extend() is True
        mock_redis.eval.assert_called_with(DistributedLock.EXTEND_SCRIPT, 1, "lock:key", token, 20)

    def test_release_of_expired_lock_reports_false(self, mock_redis):
        """Another owner took the key after expiry; the script deletes nothing."""
        lock = DistributedLock("key")
        lock.acquire()
        mock_redis.eval.return_value = 0

        assert lock.release() is False
