"""
Auto-confirm worker: advances transactions the buyer left waiting.

Tasks:
- process_auto_confirmations: Periodic scan (celery-beat, every
  ESCROW_AUTO_CONFIRM_SWEEP_MINUTES) that queues due transactions
- auto_advance_transaction: Applies one system transition under a
  per-transaction distributed lock

Windows:
- SHIPPED for ESCROW_AUTO_CONFIRM_DELIVERY_DAYS  -> confirm_delivery
- DELIVERED for ESCROW_AUTO_RELEASE_DAYS         -> confirm_satisfaction

A transaction that was disputed (or otherwise moved) in the meantime is
skipped: the task re-checks eligibility under the lock, and the
transition contract rejects anything that is no longer allowed.

Usage:
    from escrow.workers import process_auto_confirmations

    process_auto_confirmations.delay()
    auto_advance_transaction.delay(str(txn.id), "confirm_delivery")
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from escrow.actors import Actor
from escrow.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    LockAcquisitionError,
    TransactionNotFoundError,
)
from escrow.locks import DistributedLock, transaction_lock_key
from escrow.models import EscrowTransaction
from escrow.state_machines import EscrowEventName, EscrowStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum transactions queued per window per scan
BATCH_SIZE = 100

# Lock TTL for one auto transition (seconds)
ADVANCE_LOCK_TTL = 60

# Lock timeout for blocking acquisition (seconds)
ADVANCE_LOCK_TIMEOUT = 10.0


def _windows() -> dict[str, tuple[str, str, timedelta]]:
    """event -> (source status, timestamp field, age)"""
    return {
        EscrowEventName.CONFIRM_DELIVERY: (
            EscrowStatus.SHIPPED,
            "shipped_at",
            timedelta(days=settings.ESCROW_AUTO_CONFIRM_DELIVERY_DAYS),
        ),
        EscrowEventName.CONFIRM_SATISFACTION: (
            EscrowStatus.DELIVERED,
            "delivered_at",
            timedelta(days=settings.ESCROW_AUTO_RELEASE_DAYS),
        ),
    }


def is_due(txn: EscrowTransaction, event: str, now=None) -> bool:
    """Whether ``txn`` has waited long enough for the automatic ``event``."""
    window = _windows().get(event)
    if window is None:
        return False
    status, timestamp_field, age = window
    timestamp = getattr(txn, timestamp_field)
    now = now or timezone.now()
    return txn.status == status and timestamp is not None and timestamp <= now - age


# =============================================================================
# Periodic Task: Scan for Due Transactions
# =============================================================================


@shared_task(bind=True)
def process_auto_confirmations(self) -> dict:
    """
    Queue auto-confirm and auto-release transitions that are due.

    Idempotent: auto_advance_transaction re-checks the status under a lock,
    so queuing the same transaction twice advances it once.

    Returns:
        Dict with queued counts per event
    """
    now = timezone.now()
    logger.info("Starting auto-confirmation scan")

    queued: dict[str, int] = {}
    for event, (status, timestamp_field, age) in _windows().items():
        due_ids = (
            EscrowTransaction.objects.filter(
                status=status,
                **{f"{timestamp_field}__lte": now - age},
            )
            .order_by(timestamp_field)
            .values_list("id", flat=True)[:BATCH_SIZE]
        )

        queued[str(event)] = 0
        for transaction_id in due_ids:
            auto_advance_transaction.delay(str(transaction_id), str(event))
            queued[str(event)] += 1

    logger.info(
        "Auto-confirmation scan complete",
        extra={"queued": queued},
    )
    return {"queued": queued}


# =============================================================================
# Individual Transition Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(ConcurrentModificationError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def auto_advance_transaction(self, transaction_id: str, event: str) -> dict:
    """
    Apply one automatic transition as the system actor.

    Returns:
        Dict with status: "advanced", "not_due", "not_found", "rejected"
        or "lock_failed"

    Raises:
        ConcurrentModificationError: Re-raised to trigger Celery retry
    """
    from escrow.services import TransactionService

    lock_key = transaction_lock_key(transaction_id)
    try:
        with DistributedLock(lock_key, ttl=ADVANCE_LOCK_TTL, timeout=ADVANCE_LOCK_TIMEOUT):
            txn = EscrowTransaction.objects.filter(pk=transaction_id).first()
            if txn is None:
                logger.warning("Transaction not found for auto transition", extra={"transaction_id": transaction_id})
                return {"status": "not_found", "transaction_id": transaction_id}

            if not is_due(txn, event):
                logger.info(
                    "Transaction no longer due, skipping",
                    extra={"transaction_id": transaction_id, "event": event, "status": txn.status},
                )
                return {"status": "not_due", "transaction_id": transaction_id, "current_status": txn.status}

            try:
                result = TransactionService.transition(txn.id, event, Actor.system())
            except (InvalidTransitionError, TransactionNotFoundError) as e:
                logger.info(
                    "Auto transition rejected",
                    extra={"transaction_id": transaction_id, "event": event, "error": str(e)},
                )
                return {"status": "rejected", "transaction_id": transaction_id, "error_code": e.error_code}

    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire lock for auto transition: {e}",
            extra={"transaction_id": transaction_id, "lock_key": lock_key},
        )
        return {"status": "lock_failed", "transaction_id": transaction_id}

    logger.info(
        "Auto transition applied",
        extra={
            "transaction_id": transaction_id,
            "event": event,
            "status": result.transaction.status,
        },
    )
    return {"status": "advanced", "transaction_id": transaction_id, "new_status": result.transaction.status}


__all__ = [
    "auto_advance_transaction",
    "is_due",
    "process_auto_confirmations",
]
