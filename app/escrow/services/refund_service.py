"""
Refund service: executes dispute refunds against the gateway.

Follows the same three phases as payout execution:
1. Phase 1: REQUESTED/FAILED -> PROCESSING, committed
2. Phase 2: gateway refund, outside any database transaction, with the
   idempotency key ``refund:<id>`` so a retried call cannot refund twice
3. Phase 3: PROCESSING -> COMPLETED (or FAILED for permanent errors)

Transient gateway errors are raised with the refund left in PROCESSING;
the process_refund task retries and resumes at phase 2.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError

from core.exceptions import BaseApplicationError
from escrow import events
from escrow.exceptions import InvalidTransitionError, RefundNotFoundError
from escrow.locks import DistributedLock, check_version
from escrow.models import Refund
from escrow.services.base import EscrowService
from escrow.state_machines import EscrowStatus, RefundStatus

if TYPE_CHECKING:
    from typing import Any

    from escrow.adapters import RefundResult


# Distributed lock TTL for refund execution (seconds)
REFUND_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
REFUND_LOCK_TIMEOUT = 10.0


class RefundService(EscrowService):
    """Service for executing Refund rows created by dispute resolution."""

    @classmethod
    def get_refund(cls, refund_id: Any) -> Refund:
        try:
            return Refund.objects.select_related("transaction", "dispute").get(pk=refund_id)
        except (Refund.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise RefundNotFoundError(
                f"Refund {refund_id} not found",
                details={"refund_id": str(refund_id)},
            ) from e

    @classmethod
    def execute_refund(cls, refund_id: Any) -> Refund:
        """
        Send a refund to the buyer through the gateway.

        Idempotent: a COMPLETED refund is returned as is.

        Returns:
            The refund after this attempt (COMPLETED or FAILED)

        Raises:
            RefundNotFoundError: Unknown refund
            LockAcquisitionError: Another worker is executing it
            StripeError subclass with is_retryable: Transient; refund stays
                PROCESSING for a retry
        """
        with DistributedLock(f"escrow:refund:{refund_id}", ttl=REFUND_LOCK_TTL, timeout=REFUND_LOCK_TIMEOUT):
            return cls._execute_with_lock(refund_id)

    @classmethod
    def _execute_with_lock(cls, refund_id: Any) -> Refund:
        logger = cls.get_logger()
        refund = cls.get_refund(refund_id)
        log_context = {"refund_id": str(refund.id), "transaction_id": str(refund.transaction_id)}

        if refund.status == RefundStatus.COMPLETED:
            logger.info("Refund already completed", extra=log_context)
            return refund

        # Phase 1
        if refund.status in (RefundStatus.REQUESTED, RefundStatus.FAILED):
            with cls.atomic():
                refund = check_version(Refund, refund.pk, refund.version, not_found_error=RefundNotFoundError)
                refund.process()
                refund.save()
            logger.info("Refund processing", extra=log_context)
        elif refund.status != RefundStatus.PROCESSING:
            raise InvalidTransitionError(
                f"Refund {refund.id} is {refund.status} and cannot be executed",
                details={**log_context, "status": refund.status},
            )

        txn = refund.transaction

        # Phase 2
        try:
            result = cls.get_gateway().create_refund(
                reference=txn.payment_reference,
                amount=refund.amount,
                idempotency_key=f"refund:{refund.id}",
                metadata={
                    "escrow_transaction_id": str(txn.id),
                    "dispute_id": str(refund.dispute_id),
                    "refund_id": str(refund.id),
                },
            )
        except BaseApplicationError as e:
            if getattr(e, "is_retryable", False):
                logger.warning(
                    f"Transient gateway error during refund, will retry: {type(e).__name__}",
                    extra={**log_context, "error": str(e)},
                )
                raise
            logger.error(
                f"Refund rejected by gateway: {type(e).__name__}",
                extra={**log_context, "error": str(e)},
            )
            return cls._fail(refund, str(e))

        # Phase 3
        return cls._complete(refund, result)

    @classmethod
    def _complete(cls, refund: Refund, result: RefundResult) -> Refund:
        with cls.atomic():
            locked = Refund.objects.select_for_update().select_related("transaction", "dispute").get(pk=refund.pk)
            locked.complete(result.id)
            locked.save()
            events.refund_completed(locked)
            if locked.transaction.status == EscrowStatus.CANCELLED:
                events.item_relist_requested(locked.transaction)

        cls.get_logger().info(
            "Refund completed",
            extra={"refund_id": str(refund.id), "gateway_refund_id": result.id, "amount": refund.amount},
        )
        return locked

    @classmethod
    def _fail(cls, refund: Refund, reason: str) -> Refund:
        with cls.atomic():
            locked = Refund.objects.select_for_update().select_related("transaction", "dispute").get(pk=refund.pk)
            locked.fail(reason)
            locked.save()
            events.refund_failed(locked)
        return locked

    @classmethod
    def retry_refund(cls, refund_id: Any, actor) -> Refund:
        """
        Arbiter re-queues a FAILED refund.

        Raises:
            InvalidTransitionError: Refund is not FAILED, or actor is not an
                arbiter (ACTOR_NOT_PERMITTED)
        """
        from escrow.tasks import process_refund

        refund = cls.get_refund(refund_id)
        if not actor.can_arbitrate(refund.transaction):
            raise cls.actor_not_permitted(
                "Only an arbiter can retry a refund",
                refund_id=refund.id,
                actor=actor.label,
            )
        if refund.status != RefundStatus.FAILED:
            raise InvalidTransitionError(
                f"Refund {refund.id} is {refund.status}; only failed refunds can be retried",
                details={"refund_id": str(refund.id), "status": refund.status},
            )
        process_refund.delay(str(refund.id))
        cls.get_logger().info("Refund retry queued", extra={"refund_id": str(refund.id), "actor": actor.label})
        return refund
