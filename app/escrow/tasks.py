"""
Celery tasks for the escrow engine.

This module provides async tasks for:
- Verifying gateway payments (queued by the webhook or the verify API)
- Executing dispute refunds
- Re-exporting the worker tasks so Celery autodiscovery registers them

Usage:
    from escrow.tasks import verify_payment_reference, process_refund

    verify_payment_reference.delay("pi_3Nk...")
    process_refund.delay(str(refund.id))
"""

from __future__ import annotations

import logging

from celery import shared_task

from escrow.exceptions import (
    ConcurrentModificationError,
    GatewayUnavailableError,
    LockAcquisitionError,
    PaymentPendingError,
    RefundNotFoundError,
    StripeAPIUnavailableError,
    StripeRateLimitError,
    StripeTimeoutError,
)
from escrow.workers import (
    auto_advance_transaction,
    auto_payout_transaction,
    execute_single_payout,
    process_auto_confirmations,
    process_pending_payouts,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_VERIFY_RETRIES = 5
MAX_REFUND_RETRIES = 5

RETRYABLE_GATEWAY_ERRORS = (
    StripeRateLimitError,
    StripeAPIUnavailableError,
    StripeTimeoutError,
)


# =============================================================================
# Payment Verification
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(GatewayUnavailableError, ConcurrentModificationError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_VERIFY_RETRIES},
    acks_late=True,
)
def verify_payment_reference(self, reference: str) -> dict:
    """
    Verify a gateway payment reference in the background.

    PaymentPendingError is a GatewayUnavailableError, so a payment that has
    not settled yet is retried with backoff too. Permanent outcomes
    (mismatch, decline, reused reference) are logged and returned.

    Returns:
        Dict with status "verified", "already_verified" or "rejected"
    """
    from core.exceptions import BaseApplicationError
    from escrow.services import PaymentService

    logger.info(
        "Verifying payment reference",
        extra={"reference": reference, "celery_retries": self.request.retries},
    )

    try:
        result = PaymentService.verify(reference)
    except (GatewayUnavailableError, ConcurrentModificationError) as e:
        level = logging.INFO if isinstance(e, PaymentPendingError) else logging.WARNING
        logger.log(level, "Payment verification will retry", extra={"reference": reference, "error": str(e)})
        raise
    except BaseApplicationError as e:
        logger.warning(
            "Payment verification rejected",
            extra={"reference": reference, "error_code": e.error_code, "error": e.message},
        )
        return {"status": "rejected", "reference": reference, "error_code": e.error_code}

    return {
        "status": "already_verified" if result.already_verified else "verified",
        "reference": reference,
        "transaction_id": result.transaction_id,
        "amount_paid": result.amount_paid,
    }


# =============================================================================
# Refund Execution
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=RETRYABLE_GATEWAY_ERRORS,
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_REFUND_RETRIES},
    acks_late=True,
)
def process_refund(self, refund_id: str) -> dict:
    """
    Execute one dispute refund at the gateway.

    Returns:
        Dict with the refund's status after the attempt, or "not_found" /
        "lock_failed"

    Raises:
        Transient Stripe errors: Re-raised to trigger Celery retry
    """
    from escrow.services import RefundService

    logger.info(
        "Processing refund",
        extra={"refund_id": refund_id, "celery_retries": self.request.retries},
    )

    try:
        refund = RefundService.execute_refund(refund_id)
    except RefundNotFoundError:
        logger.warning("Refund not found", extra={"refund_id": refund_id})
        return {"status": "not_found", "refund_id": refund_id}
    except LockAcquisitionError as e:
        logger.warning(f"Could not acquire lock for refund: {e}", extra={"refund_id": refund_id})
        return {"status": "lock_failed", "refund_id": refund_id}

    return {
        "status": refund.status,
        "refund_id": refund_id,
        "gateway_refund_id": refund.gateway_refund_id,
    }


__all__ = [
    "auto_advance_transaction",
    "auto_payout_transaction",
    "execute_single_payout",
    "process_auto_confirmations",
    "process_pending_payouts",
    "process_refund",
    "verify_payment_reference",
]
