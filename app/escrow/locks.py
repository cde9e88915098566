"""
Concurrency control for escrow writes.

Two mechanisms, used together:

1. **Optimistic locking** (check_version)
   Every escrow write follows read → validate → lock-if-unchanged → write.
   check_version locks the row only if its version still equals the
   version the caller read; otherwise the caller's view is stale and it
   must re-run the whole operation.

2. **Distributed locks** (DistributedLock)
   Redis SET NX with a TTL and an owner token. Used where the unit of
   work spans several rows (a seller's payout claim) or an external call
   (gateway transfers, refund execution, sweep items).

Usage:
    from escrow.locks import DistributedLock, check_version

    with transaction.atomic():
        txn = check_version(EscrowTransaction, txn_id, expected_version=read.version)
        txn.ship(tracking_number="TRK-1")
        txn.save()

    with DistributedLock(payout_lock_key(seller.pk), ttl=30):
        ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction
from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from escrow.exceptions import ConcurrentModificationError, LockAcquisitionError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


def payout_lock_key(seller_id: Any) -> str:
    return f"escrow:payout:seller:{seller_id}"


def transaction_lock_key(transaction_id: Any) -> str:
    return f"escrow:transaction:{transaction_id}"


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL and owner token.

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds before the lock expires on its own
        blocking: Wait for the lock instead of failing immediately
        timeout: Maximum wait in blocking mode

    Raises:
        LockAcquisitionError: From acquire()/__enter__ when the lock is held
            elsewhere (immediately, or after ``timeout`` when blocking)

    Note:
        Release and extend run as Lua scripts that compare the stored
        token first, so a process can never free a lock that expired and
        was taken by someone else.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def _try_acquire(self) -> bool:
        return bool(self._get_redis().set(self.key, self._token, nx=True, ex=self.ttl))

    def acquire(self) -> bool:
        self._token = str(uuid_module.uuid4())

        if not self.blocking:
            if self._try_acquire():
                return True
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )

        deadline = time.monotonic() + self.timeout
        while True:
            if self._try_acquire():
                return True
            if time.monotonic() >= deadline:
                break
            time.sleep(self.POLL_INTERVAL)

        self._token = None
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """Release the lock if this instance owns it. Safe to call twice."""
        if self._token is None:
            return False
        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the remaining TTL (to ``ttl`` or the original TTL)."""
        if self._token is None:
            return False
        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
    not_found_error: type[NotFoundError] = NotFoundError,
) -> T:
    """
    Lock a row for update only if it is still at the expected version.

    Args:
        model_class: Model with a ``version`` field (core VersionedMixin)
        pk: Primary key of the row
        expected_version: Version the caller based its decision on
        not_found_error: Exception class raised when the row is missing

    Returns:
        The locked instance; the lock is held until the surrounding
        transaction ends

    Raises:
        ConcurrentModificationError: Row exists at a different version
        NotFoundError (or ``not_found_error``): Row does not exist

    Example:
        with transaction.atomic():
            dispute = check_version(Dispute, dispute_id, read.version)
            dispute.start_review(actor)
            dispute.save()  # version + 1
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        model_name = model_class.__name__
        current_version = (
            model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        )
        if current_version is None:
            raise not_found_error(
                f"{model_name} {pk} not found",
                details={"pk": str(pk)},
            )

        raise ConcurrentModificationError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current_version})",
            details={
                "model": model_name,
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
    "payout_lock_key",
    "transaction_lock_key",
]
