"""
Payment service: starting buyer payments and verifying them.

verify() is the only path from PENDING to PAID. It asks the gateway what
actually happened to a payment, checks it against the stored transaction,
and binds the reference exactly once:

    gateway lookup (retried on transient errors)
        -> settled?            no  -> PaymentPendingError / PaymentFailedError
        -> known transaction?  no  -> ReferenceNotFoundError
        -> already bound here?     -> already_verified=True
        -> bound elsewhere?        -> ReferenceAlreadyUsedError
        -> amount & currency?  no  -> flag for review, AmountMismatchError
        -> pay transition (system actor, version-checked)

Verification is safe to call repeatedly and concurrently for the same
reference: the caller that loses the race observes the bound reference and
reports already_verified.

Usage:
    from escrow.services import PaymentService

    result = PaymentService.verify("pi_3Nk...")
    if result.already_verified:
        ...
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError

from escrow import events
from escrow.actors import Actor
from escrow.adapters import CreatePaymentParams, GatewayPaymentStatus, backoff_delay
from escrow.exceptions import (
    AmountMismatchError,
    ConcurrentModificationError,
    GatewayUnavailableError,
    InvalidTransitionError,
    PaymentFailedError,
    PaymentPendingError,
    ReferenceAlreadyUsedError,
    ReferenceNotFoundError,
    StripeInvalidRequestError,
)
from escrow.models import EscrowTransaction
from escrow.services.base import EscrowService
from escrow.services.transaction_service import TransactionService
from escrow.state_machines import EscrowEventName, EscrowStatus
from escrow.types import PaymentInitiation, VerificationResult

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any, TypeVar

    from escrow.adapters import GatewayPayment

    T = TypeVar("T")


TRANSACTION_ALREADY_PAID = "TRANSACTION_ALREADY_PAID"

# Base delay for gateway retry backoff (seconds)
GATEWAY_RETRY_BASE_DELAY = 0.5

SUCCEEDED_WEBHOOK_EVENT = "payment_intent.succeeded"


class PaymentService(EscrowService):
    """
    Service for escrow payments.

    Methods:
        initiate_payment: Create the gateway payment the buyer completes
        verify: Confirm a payment with the gateway and bind it
        handle_webhook: Verify a gateway webhook and queue verification
    """

    # =========================================================================
    # Initiation
    # =========================================================================

    @classmethod
    def initiate_payment(cls, transaction_id: Any, actor: Actor) -> PaymentInitiation:
        """
        Create (or fetch, through the idempotency key) the gateway payment
        for a PENDING transaction.

        The returned reference is not bound to the transaction; that only
        happens in verify().

        Raises:
            TransactionNotFoundError: Unknown transaction
            InvalidTransitionError: Not PENDING, or actor is not the buyer
            GatewayUnavailableError: Gateway kept failing transiently
        """
        txn = TransactionService.get_transaction(transaction_id)

        if not actor.is_buyer_of(txn):
            raise cls.actor_not_permitted(
                "Only the buyer can pay for this transaction",
                transaction_id=txn.id,
                actor=actor.label,
            )
        if txn.status != EscrowStatus.PENDING or txn.payment_reference:
            raise InvalidTransitionError(
                f"Transaction {txn.id} is {txn.status} and cannot be paid",
                details={"transaction_id": str(txn.id), "status": txn.status, "event": "pay"},
            )

        gateway = cls.get_gateway()
        payment = cls._call_gateway(
            "create_payment",
            lambda: gateway.create_payment(
                CreatePaymentParams(
                    amount=txn.amount,
                    currency=txn.currency,
                    idempotency_key=f"escrow_payment:{txn.id}",
                    metadata={
                        "escrow_transaction_id": str(txn.id),
                        "item_id": txn.item_id,
                        "buyer_id": str(txn.buyer_id),
                    },
                )
            ),
            log_context={"transaction_id": str(txn.id)},
        )

        cls.get_logger().info(
            "Escrow payment initiated",
            extra={"transaction_id": str(txn.id), "reference": payment.reference},
        )
        return PaymentInitiation(
            transaction_id=str(txn.id),
            reference=payment.reference,
            client_secret=payment.client_secret,
            amount=txn.amount,
            currency=txn.currency,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    @classmethod
    def verify(cls, reference: str) -> VerificationResult:
        """
        Verify a gateway payment and move its transaction to PAID.

        Args:
            reference: Gateway payment reference

        Returns:
            VerificationResult; already_verified is True when the reference
            had been bound to the transaction before this call

        Raises:
            GatewayUnavailableError: Gateway unreachable after retries
            PaymentPendingError: Gateway has not settled the payment yet
            PaymentFailedError: Gateway declined or cancelled the payment
            ReferenceNotFoundError: Gateway or escrow does not know it
            ReferenceAlreadyUsedError: Reference paid for another transaction
            AmountMismatchError: Collected amount or currency differs; the
                transaction stays PENDING and is flagged for review
            InvalidTransitionError: Transaction already paid with another
                reference (TRANSACTION_ALREADY_PAID) or no longer payable
        """
        logger = cls.get_logger()
        if not reference or not isinstance(reference, str):
            raise ReferenceNotFoundError(
                "A payment reference is required",
                details={"reference": reference},
            )

        payment = cls._retrieve_payment(reference)
        log_context = {"reference": reference, "gateway_status": payment.raw_status}

        if payment.status == GatewayPaymentStatus.PENDING:
            raise PaymentPendingError(
                f"Payment {reference} has not settled yet",
                details={"reference": reference, "gateway_status": payment.raw_status},
            )
        if payment.status == GatewayPaymentStatus.FAILED:
            logger.info("Gateway reports payment failed", extra=log_context)
            raise PaymentFailedError(
                f"Payment {reference} failed: {payment.failure_reason}",
                details={"reference": reference, "failure_reason": payment.failure_reason},
            )

        txn = cls._transaction_for_payment(payment)
        log_context["transaction_id"] = str(txn.id)

        if txn.payment_reference == reference:
            logger.info("Payment already verified", extra=log_context)
            return cls._already_verified(txn, payment)

        cls._check_reference_unused(txn, reference)

        if txn.payment_reference:
            cls._flag_for_review(
                txn,
                f"Second payment {reference} received for a transaction already paid "
                f"with {txn.payment_reference}",
                {"reference": reference, "bound_reference": txn.payment_reference},
            )
            raise InvalidTransitionError(
                f"Transaction {txn.id} is already paid with another reference",
                error_code=TRANSACTION_ALREADY_PAID,
                details={"transaction_id": str(txn.id), "reference": reference},
            )

        if txn.status != EscrowStatus.PENDING:
            cls._flag_for_review(
                txn,
                f"Payment {reference} received for a {txn.status} transaction",
                {"reference": reference},
            )
            raise InvalidTransitionError(
                f"Transaction {txn.id} is {txn.status} and cannot be paid",
                details={"transaction_id": str(txn.id), "status": txn.status, "event": "pay"},
            )

        if payment.amount != txn.amount or payment.currency.lower() != txn.currency.lower():
            mismatch = {
                "reference": reference,
                "expected_amount": txn.amount,
                "paid_amount": payment.amount,
                "expected_currency": txn.currency,
                "paid_currency": payment.currency,
            }
            cls._flag_for_review(
                txn,
                f"Paid {payment.amount} {payment.currency} for a "
                f"{txn.amount} {txn.currency} transaction",
                mismatch,
            )
            logger.warning("Payment amount mismatch", extra={**log_context, **mismatch})
            raise AmountMismatchError(
                f"Payment {reference} amount {payment.amount} {payment.currency} does not match "
                f"transaction {txn.id} amount {txn.amount} {txn.currency}",
                details=mismatch,
            )

        try:
            result = TransactionService.transition(
                txn.id,
                EscrowEventName.PAY,
                Actor.system(),
                reference=reference,
            )
        except IntegrityError as e:
            # Unique payment_reference: another transaction bound it first.
            raise ReferenceAlreadyUsedError(
                f"Payment reference {reference} is already bound to another transaction",
                details={"reference": reference},
            ) from e
        except (InvalidTransitionError, ConcurrentModificationError):
            current = TransactionService.get_transaction(txn.id)
            if current.payment_reference == reference:
                logger.info("Lost verification race; reference already bound", extra=log_context)
                return cls._already_verified(current, payment)
            raise

        logger.info(
            "Payment verified",
            extra={**log_context, "amount": payment.amount, "version": result.transaction.version},
        )
        return VerificationResult(
            success=True,
            transaction_id=str(result.transaction.id),
            amount_paid=payment.amount,
            already_verified=False,
        )

    @staticmethod
    def _already_verified(txn: EscrowTransaction, payment: GatewayPayment) -> VerificationResult:
        return VerificationResult(
            success=True,
            transaction_id=str(txn.id),
            amount_paid=payment.amount,
            already_verified=True,
        )

    @classmethod
    def _retrieve_payment(cls, reference: str) -> GatewayPayment:
        gateway = cls.get_gateway()
        try:
            return cls._call_gateway(
                "retrieve_payment",
                lambda: gateway.retrieve_payment(reference),
                log_context={"reference": reference},
            )
        except StripeInvalidRequestError as e:
            if e.is_missing_resource:
                raise ReferenceNotFoundError(
                    f"Gateway has no payment {reference}",
                    details={"reference": reference},
                ) from e
            raise

    @classmethod
    def _transaction_for_payment(cls, payment: GatewayPayment) -> EscrowTransaction:
        transaction_id = payment.transaction_id
        txn = None
        if transaction_id:
            txn = EscrowTransaction.objects.filter(pk=transaction_id).first()
        if txn is None:
            raise ReferenceNotFoundError(
                f"Payment {payment.reference} does not belong to a known escrow transaction",
                details={"reference": payment.reference, "transaction_id": transaction_id},
            )
        return txn

    @classmethod
    def _check_reference_unused(cls, txn: EscrowTransaction, reference: str) -> None:
        other = (
            EscrowTransaction.objects.filter(payment_reference=reference)
            .exclude(pk=txn.pk)
            .values_list("pk", flat=True)
            .first()
        )
        if other is not None:
            cls.get_logger().warning(
                "Payment reference reused",
                extra={"reference": reference, "transaction_id": str(txn.id), "bound_to": str(other)},
            )
            raise ReferenceAlreadyUsedError(
                f"Payment reference {reference} is already bound to transaction {other}",
                details={"reference": reference},
            )

    @classmethod
    def _flag_for_review(cls, txn: EscrowTransaction, reason: str, details: dict[str, Any]) -> None:
        """
        Mark a transaction for manual review and tell the admin channel.

        Commits on its own: the flag must survive the error the caller is
        about to raise. Flagging twice for the same reason records nothing.
        """
        with cls.atomic():
            locked = EscrowTransaction.objects.select_for_update().get(pk=txn.pk)
            if locked.requires_review and locked.review_reason == reason:
                return
            locked.requires_review = True
            locked.review_reason = reason
            locked.save(update_fields=["requires_review", "review_reason", "version", "updated_at"])
            events.payment_flagged(locked, reason, details)

        cls.get_logger().warning(
            "Transaction flagged for review",
            extra={"transaction_id": str(txn.id), "reason": reason},
        )

    # =========================================================================
    # Gateway calls
    # =========================================================================

    @classmethod
    def _call_gateway(
        cls,
        operation: str,
        func: Callable[[], T],
        log_context: dict[str, Any],
    ) -> T:
        """
        Call the gateway, retrying transient failures with backoff.

        Raises:
            GatewayUnavailableError: Still failing after
                ESCROW_GATEWAY_MAX_RETRIES retries
            Any non-retryable gateway error, unchanged
        """
        logger = cls.get_logger()
        max_retries = settings.ESCROW_GATEWAY_MAX_RETRIES
        last_error: Exception | None = None

        for attempt in range(max_retries + 1):
            try:
                return func()
            except Exception as e:
                if not getattr(e, "is_retryable", False):
                    raise
                last_error = e
                logger.warning(
                    "Transient gateway error",
                    extra={
                        **log_context,
                        "operation": operation,
                        "attempt": attempt + 1,
                        "error": str(e),
                    },
                )
                if attempt < max_retries:
                    time.sleep(backoff_delay(attempt, base=GATEWAY_RETRY_BASE_DELAY))

        raise GatewayUnavailableError(
            f"Gateway {operation} failed after {max_retries + 1} attempts",
            details={**log_context, "operation": operation, "error": str(last_error)},
        ) from last_error

    # =========================================================================
    # Webhooks
    # =========================================================================

    @classmethod
    def handle_webhook(cls, payload: bytes, signature: str) -> str | None:
        """
        Verify a gateway webhook and queue verification for settled payments.

        Returns:
            The queued payment reference, or None for ignored event types

        Raises:
            StripeInvalidRequestError: Bad signature or payload
        """
        from escrow.tasks import verify_payment_reference

        event = cls.get_gateway().verify_webhook_signature(payload, signature)
        event_type = event.get("type")
        if event_type != SUCCEEDED_WEBHOOK_EVENT:
            cls.get_logger().debug("Ignoring webhook event", extra={"event_type": event_type})
            return None

        reference = event["data"]["object"]["id"]
        verify_payment_reference.delay(reference)
        cls.get_logger().info(
            "Queued payment verification from webhook",
            extra={"event_id": event.get("id"), "reference": reference},
        )
        return reference
