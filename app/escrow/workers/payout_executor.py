"""
Payout executor worker for gateway transfers to sellers.

Tasks:
- process_pending_payouts: Periodic scan that queues PENDING payouts of
  sellers with an enabled PayoutAccount (only when
  ESCROW_AUTO_EXECUTE_PAYOUTS is on)
- execute_single_payout: Executes one payout through PayoutService
- auto_payout_transaction: Requests a payout for a transaction that just
  completed (ESCROW_AUTO_PAYOUT_ON_COMPLETION)

Usage:
    from escrow.workers import execute_single_payout

    execute_single_payout.delay(str(payout.id))
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings

from escrow.exceptions import (
    LockAcquisitionError,
    PayoutNotFoundError,
    StripeAPIUnavailableError,
    StripeRateLimitError,
    StripeTimeoutError,
    TransactionNotFoundError,
)
from escrow.models import PayoutRequest
from escrow.state_machines import PayoutStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum payouts to queue per scan
BATCH_SIZE = 100

# Maximum Celery retries for transient gateway errors
MAX_RETRY_ATTEMPTS = 5


# =============================================================================
# Periodic Task: Scan for Pending Payouts
# =============================================================================


@shared_task(bind=True)
def process_pending_payouts(self) -> dict:
    """
    Queue execution for pending payouts, oldest first.

    Returns:
        Dict with queued_count (and skipped=True when auto execution is off)
    """
    if not settings.ESCROW_AUTO_EXECUTE_PAYOUTS:
        logger.debug("Automatic payout execution disabled, skipping scan")
        return {"queued_count": 0, "skipped": True}

    pending_ids = (
        PayoutRequest.objects.filter(
            status=PayoutStatus.PENDING,
            seller__escrow_payout_account__payouts_enabled=True,
        )
        .order_by("requested_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )

    queued_count = 0
    for payout_id in pending_ids:
        execute_single_payout.delay(str(payout_id))
        queued_count += 1

    logger.info(
        f"Pending payout scan complete: queued {queued_count} payouts",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


# =============================================================================
# Individual Execution Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(StripeRateLimitError, StripeAPIUnavailableError, StripeTimeoutError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_RETRY_ATTEMPTS},
    acks_late=True,
)
def execute_single_payout(self, payout_id: str) -> dict:
    """
    Execute a single payout.

    Returns:
        Dict with status: the payout's status after the attempt, or
        "not_found" / "lock_failed"

    Raises:
        StripeRateLimitError / StripeAPIUnavailableError / StripeTimeoutError:
            Re-raised to trigger Celery retry
    """
    from escrow.services import PayoutService

    logger.info(
        "Processing payout execution",
        extra={"payout_id": payout_id, "celery_retries": self.request.retries},
    )

    try:
        payout = PayoutService.execute_payout(payout_id)
    except PayoutNotFoundError:
        logger.warning("Payout not found", extra={"payout_id": payout_id})
        return {"status": "not_found", "payout_id": payout_id}
    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire lock for payout execution: {e}",
            extra={"payout_id": payout_id},
        )
        return {"status": "lock_failed", "payout_id": payout_id}

    return {
        "status": payout.status,
        "payout_id": payout_id,
        "transaction_reference": payout.transaction_reference,
    }


# =============================================================================
# Auto Payout on Completion
# =============================================================================


@shared_task(bind=True, acks_late=True)
def auto_payout_transaction(self, transaction_id: str) -> dict:
    """
    Request a payout for one just-completed transaction.

    Queued on commit by PayoutService.schedule_auto_payout.

    Returns:
        Dict with status: "queued" (with payout_id), "skipped",
        "not_found" or "lock_failed"
    """
    from escrow.services import PayoutService

    try:
        payout = PayoutService.initiate_auto_payout(transaction_id)
    except TransactionNotFoundError:
        logger.warning("Transaction not found for auto payout", extra={"transaction_id": transaction_id})
        return {"status": "not_found", "transaction_id": transaction_id}
    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire seller lock for auto payout: {e}",
            extra={"transaction_id": transaction_id},
        )
        return {"status": "lock_failed", "transaction_id": transaction_id}

    if payout is None:
        return {"status": "skipped", "transaction_id": transaction_id}
    return {"status": "queued", "transaction_id": transaction_id, "payout_id": str(payout.id)}


__all__ = [
    "auto_payout_transaction",
    "execute_single_payout",
    "process_pending_payouts",
]
