"""
Payout service: seller payout requests and their execution.

Claiming:
    A payout request claims completed, unclaimed transactions of one
    seller by pointing their payout_request at it. Claims are serialised
    per seller with a Redis lock (escrow:payout:seller:<id>), the eligible
    rows are locked FOR UPDATE, and the claim itself is a conditional
    UPDATE ... WHERE payout_request IS NULL whose row count must match.
    A transaction can therefore be claimed by at most one request.

Execution (execute_payout) uses the two-phase pattern:
1. Phase 1: PENDING -> PROCESSING, committed
2. Phase 2: gateway transfer outside any database transaction, keyed by
   ``payout:<id>:<attempt>``
3. Phase 3: PROCESSING -> COMPLETED, or FAILED for permanent errors

Usage:
    from escrow.services import PayoutService

    payout = PayoutService.request_payout(seller.pk, Actor.from_user(seller))
    balance = PayoutService.seller_balance(seller.pk)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction as db_transaction
from django.db.models import F, Sum
from django.utils import timezone
from django_fsm import can_proceed

from core.exceptions import BaseApplicationError
from escrow import events
from escrow.exceptions import (
    ConcurrentModificationError,
    EscrowValidationError,
    InsufficientPayoutBalanceError,
    InvalidTransitionError,
    PayoutNotFoundError,
    TransactionNotFoundError,
)
from escrow.locks import DistributedLock, check_version, payout_lock_key
from escrow.models import EscrowTransaction, PayoutAccount, PayoutRequest
from escrow.services.base import EscrowService
from escrow.state_machines import EscrowStatus, PayoutStatus
from escrow.types import SellerBalance

if TYPE_CHECKING:
    from typing import Any

    from escrow.actors import Actor


# Distributed lock TTL for payout claims (seconds)
PAYOUT_CLAIM_LOCK_TTL = 30

# Distributed lock TTL for payout execution (seconds)
PAYOUT_EXECUTE_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
PAYOUT_LOCK_TIMEOUT = 10.0


class PayoutService(EscrowService):
    """
    Service for seller payouts.

    Methods:
        request_payout: Claim eligible transactions into a PENDING request
        mark_processed: Arbiter records the outcome of a manual transfer
        retry_payout: Arbiter moves a FAILED request back to PENDING
        cancel_payout: Seller or arbiter cancels and releases the claims
        schedule_auto_payout / initiate_auto_payout: Pay out a transaction
            as soon as it completes
        execute_payout: Transfer a PENDING request through the gateway
        seller_balance: Totals for a seller's dashboard
    """

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def get_payout(cls, payout_id: Any) -> PayoutRequest:
        try:
            return PayoutRequest.objects.get(pk=payout_id)
        except (PayoutRequest.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise PayoutNotFoundError(
                f"Payout {payout_id} not found",
                details={"payout_id": str(payout_id)},
            ) from e

    @staticmethod
    def eligible_transactions(seller_id: Any, currency: str | None = None):
        """Completed, unclaimed transactions owing the seller something, oldest first."""
        return EscrowTransaction.objects.filter(
            seller_id=seller_id,
            status=EscrowStatus.COMPLETED,
            payout_request__isnull=True,
            seller_amount__gt=0,
            currency=(currency or settings.ESCROW_CURRENCY).lower(),
        ).order_by("completed_at", "created_at")

    @classmethod
    def _lock_payout(cls, payout: PayoutRequest) -> PayoutRequest:
        return check_version(PayoutRequest, payout.pk, payout.version, not_found_error=PayoutNotFoundError)

    @classmethod
    def _ensure_arbiter(cls, payout: PayoutRequest, actor: Actor, action: str) -> None:
        # Staff never process their own payouts.
        if not actor.is_arbiter or actor.user_id == payout.seller_id:
            raise cls.actor_not_permitted(
                f"Only an arbiter can {action} a payout",
                payout_id=payout.id,
                actor=actor.label,
            )

    @classmethod
    def _ensure_can(cls, payout: PayoutRequest, method_name: str) -> None:
        if not can_proceed(getattr(payout, method_name)):
            raise InvalidTransitionError(
                f"Cannot {method_name} payout {payout.id} in status {payout.status}",
                details={"payout_id": str(payout.id), "status": payout.status, "event": method_name},
            )

    # =========================================================================
    # Requesting
    # =========================================================================

    @classmethod
    def request_payout(
        cls,
        seller_id: Any,
        actor: Actor,
        amount: int | None = None,
        currency: str | None = None,
    ) -> PayoutRequest:
        """
        Create a payout request for a seller's eligible balance.

        Args:
            seller_id: Seller to pay
            actor: The seller, or an arbiter acting for them
            amount: Optional cap; the oldest transactions are claimed until
                the cap is reached without exceeding it
            currency: Currency of the transactions to claim (defaults to
                ESCROW_CURRENCY); a payout never mixes currencies

        Returns:
            The PENDING PayoutRequest

        Raises:
            InvalidTransitionError: Actor not permitted (ACTOR_NOT_PERMITTED)
            EscrowValidationError: amount is not a positive integer, or the
                currency is not a 3-letter code
            InsufficientPayoutBalanceError: Nothing eligible, or amount is
                above the eligible total, or no transaction fits under it
            LockAcquisitionError: Another request for this seller is running
            ConcurrentModificationError: Claim count mismatch
        """
        logger = cls.get_logger()
        if not (actor.user_id == seller_id or actor.is_arbiter) or actor.is_system:
            raise cls.actor_not_permitted(
                "Only the seller or an arbiter can request a payout",
                seller_id=seller_id,
                actor=actor.label,
            )
        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
            raise EscrowValidationError(
                "amount must be a positive integer",
                details={"amount": ["Must be a positive integer in minor units."]},
            )
        currency = cls._payout_currency(currency)

        with DistributedLock(payout_lock_key(seller_id), ttl=PAYOUT_CLAIM_LOCK_TTL, timeout=PAYOUT_LOCK_TIMEOUT):
            with cls.atomic():
                payout = cls._claim(seller_id, amount, currency)

                if settings.ESCROW_AUTO_EXECUTE_PAYOUTS:
                    cls._queue_execution(payout)

        logger.info(
            "Payout requested",
            extra={
                "payout_id": str(payout.id),
                "seller_id": seller_id,
                "amount": payout.amount,
                "currency": payout.currency,
                "actor": actor.label,
            },
        )
        return payout

    @staticmethod
    def _payout_currency(currency: str | None) -> str:
        if currency is None:
            return settings.ESCROW_CURRENCY.lower()
        if not isinstance(currency, str) or len(currency.strip()) != 3:
            raise EscrowValidationError(
                "currency must be a 3-letter ISO 4217 code",
                details={"currency": ["Must be a 3-letter ISO 4217 code."]},
            )
        return currency.strip().lower()

    @staticmethod
    def _queue_execution(payout: PayoutRequest) -> None:
        from escrow.tasks import execute_single_payout

        payout_id = str(payout.id)
        db_transaction.on_commit(lambda: execute_single_payout.delay(payout_id))

    @classmethod
    def _claim(
        cls,
        seller_id: Any,
        amount: int | None,
        currency: str,
        transaction_ids: list[Any] | None = None,
    ) -> PayoutRequest:
        queryset = cls.eligible_transactions(seller_id, currency)
        if transaction_ids is not None:
            queryset = queryset.filter(pk__in=transaction_ids)
        eligible = list(queryset.select_for_update().values_list("pk", "seller_amount"))
        total = sum(seller_amount for _, seller_amount in eligible)

        if total == 0:
            raise InsufficientPayoutBalanceError(
                f"Seller {seller_id} has no completed {currency.upper()} transactions to pay out",
                details={"seller_id": str(seller_id), "currency": currency, "available": 0},
            )
        if amount is not None and amount > total:
            raise InsufficientPayoutBalanceError(
                f"Requested {amount} but only {total} is available",
                details={"seller_id": str(seller_id), "requested": amount, "available": total},
            )

        selected = eligible
        if amount is not None:
            selected = []
            running = 0
            for pk, seller_amount in eligible:
                if running + seller_amount > amount:
                    break
                selected.append((pk, seller_amount))
                running += seller_amount
            if not selected:
                raise InsufficientPayoutBalanceError(
                    f"No completed transaction fits within {amount}",
                    details={"seller_id": str(seller_id), "requested": amount, "available": total},
                )

        ids = [pk for pk, _ in selected]
        payout = PayoutRequest.objects.create(
            seller_id=seller_id,
            amount=sum(seller_amount for _, seller_amount in selected),
            currency=currency,
        )

        claimed = EscrowTransaction.objects.filter(
            pk__in=ids,
            status=EscrowStatus.COMPLETED,
            payout_request__isnull=True,
        ).update(payout_request=payout, version=F("version") + 1, updated_at=timezone.now())
        if claimed != len(ids):
            raise ConcurrentModificationError(
                f"Claimed {claimed} of {len(ids)} transactions for seller {seller_id}",
                details={"seller_id": str(seller_id), "expected": len(ids), "claimed": claimed},
            )

        events.payout_requested(payout)
        return payout

    # =========================================================================
    # Automatic payout on completion
    # =========================================================================

    @classmethod
    def schedule_auto_payout(cls, txn: EscrowTransaction) -> None:
        """
        Queue an automatic payout for a transaction that just completed.

        Must be called inside the database transaction that completed it;
        the task is queued on commit. No-op unless
        ESCROW_AUTO_PAYOUT_ON_COMPLETION is on.
        """
        if not settings.ESCROW_AUTO_PAYOUT_ON_COMPLETION or txn.seller_amount <= 0:
            return

        from escrow.tasks import auto_payout_transaction

        transaction_id = str(txn.id)
        db_transaction.on_commit(lambda: auto_payout_transaction.delay(transaction_id))

    @classmethod
    def initiate_auto_payout(cls, transaction_id: Any) -> PayoutRequest | None:
        """
        Create and queue a payout for one completed transaction.

        Sellers without an enabled PayoutAccount are skipped; their balance
        stays available for a manual request. A transaction already claimed
        by another request is skipped too.

        Returns:
            The PENDING PayoutRequest, or None when skipped

        Raises:
            TransactionNotFoundError: Unknown transaction
            LockAcquisitionError: Another request for this seller is running
        """
        logger = cls.get_logger()
        try:
            txn = EscrowTransaction.objects.get(pk=transaction_id)
        except (EscrowTransaction.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise TransactionNotFoundError(
                f"Escrow transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            ) from e
        log_context = {"transaction_id": str(txn.id), "seller_id": txn.seller_id}

        if not PayoutAccount.objects.filter(seller_id=txn.seller_id, payouts_enabled=True).exists():
            logger.info("Seller has no enabled payout account; auto payout skipped", extra=log_context)
            return None

        with DistributedLock(payout_lock_key(txn.seller_id), ttl=PAYOUT_CLAIM_LOCK_TTL, timeout=PAYOUT_LOCK_TIMEOUT):
            with cls.atomic():
                if not cls.eligible_transactions(txn.seller_id, txn.currency).filter(pk=txn.pk).exists():
                    logger.info("Transaction not eligible for payout; auto payout skipped", extra=log_context)
                    return None
                payout = cls._claim(txn.seller_id, None, txn.currency, transaction_ids=[txn.pk])
                cls._queue_execution(payout)

        logger.info(
            "Auto payout requested",
            extra={**log_context, "payout_id": str(payout.id), "amount": payout.amount},
        )
        return payout

    # =========================================================================
    # Manual processing
    # =========================================================================

    @classmethod
    def mark_processed(
        cls,
        payout_id: Any,
        success: bool,
        actor: Actor,
        reference: str | None = None,
        failure_reason: str | None = None,
    ) -> PayoutRequest:
        """
        Record the outcome of a payout processed outside the gateway.

        Failed payouts keep their claimed transactions, so they can be
        retried or cancelled later.

        Raises:
            EscrowValidationError: Missing reference (success) or reason (failure)
            InvalidTransitionError: Payout not pending/processing, or actor
                is not an arbiter (ACTOR_NOT_PERMITTED)
        """
        if success and not (reference and reference.strip()):
            raise EscrowValidationError(
                "A transfer reference is required for a successful payout",
                details={"reference": ["This field is required."]},
            )
        if not success and not (failure_reason and failure_reason.strip()):
            raise EscrowValidationError(
                "A failure reason is required for a failed payout",
                details={"failure_reason": ["This field is required."]},
            )
        method_name = "complete" if success else "fail"

        def operation() -> PayoutRequest:
            payout = cls.get_payout(payout_id)
            cls._ensure_arbiter(payout, actor, "process")
            cls._ensure_can(payout, method_name)
            with cls.atomic():
                locked = cls._lock_payout(payout)
                if success:
                    locked.complete(reference.strip())
                    locked.save()
                    events.payout_processed(locked)
                else:
                    locked.fail(failure_reason.strip())
                    locked.save()
                    events.payout_failed(locked)
            return locked

        payout = cls.with_conflict_retry(
            operation,
            log_context={"payout_id": str(payout_id), "actor": actor.label},
        )
        cls.get_logger().info(
            "Payout processed manually",
            extra={"payout_id": str(payout.id), "status": payout.status, "actor": actor.label},
        )
        return payout

    @classmethod
    def retry_payout(cls, payout_id: Any, actor: Actor) -> PayoutRequest:
        """Arbiter moves a FAILED payout back to PENDING, keeping its claims."""

        def operation() -> PayoutRequest:
            payout = cls.get_payout(payout_id)
            cls._ensure_arbiter(payout, actor, "retry")
            cls._ensure_can(payout, "retry")
            with cls.atomic():
                locked = cls._lock_payout(payout)
                locked.retry()
                locked.save()
                if settings.ESCROW_AUTO_EXECUTE_PAYOUTS:
                    cls._queue_execution(locked)
            return locked

        payout = cls.with_conflict_retry(
            operation,
            log_context={"payout_id": str(payout_id), "actor": actor.label},
        )
        cls.get_logger().info("Payout retry", extra={"payout_id": str(payout.id), "actor": actor.label})
        return payout

    @classmethod
    def cancel_payout(cls, payout_id: Any, actor: Actor, reason: str | None = None) -> PayoutRequest:
        """
        Cancel a PENDING or FAILED payout and release its transactions.

        Raises:
            InvalidTransitionError: Wrong status, or actor is neither the
                seller nor an arbiter (ACTOR_NOT_PERMITTED)
        """

        def operation() -> PayoutRequest:
            payout = cls.get_payout(payout_id)
            if actor.user_id != payout.seller_id and not actor.is_arbiter:
                raise cls.actor_not_permitted(
                    "Only the seller or an arbiter can cancel a payout",
                    payout_id=payout.id,
                    actor=actor.label,
                )
            cls._ensure_can(payout, "cancel")
            with cls.atomic():
                locked = cls._lock_payout(payout)
                locked.cancel(reason)
                locked.save()
                released = EscrowTransaction.objects.filter(payout_request=locked).update(
                    payout_request=None,
                    version=F("version") + 1,
                    updated_at=timezone.now(),
                )
                events.payout_cancelled(locked)
            cls.get_logger().info(
                "Payout cancelled",
                extra={"payout_id": str(locked.id), "released": released, "actor": actor.label},
            )
            return locked

        return cls.with_conflict_retry(
            operation,
            log_context={"payout_id": str(payout_id), "actor": actor.label},
        )

    # =========================================================================
    # Execution
    # =========================================================================

    @classmethod
    def execute_payout(cls, payout_id: Any) -> PayoutRequest:
        """
        Transfer a PENDING payout to the seller's PayoutAccount.

        Payouts without an enabled account stay PENDING for manual
        processing. A payout found PROCESSING (an earlier attempt hit a
        transient error) resumes at the transfer with the same key.

        Raises:
            PayoutNotFoundError: Unknown payout
            LockAcquisitionError: Another worker is executing it
            StripeError subclass with is_retryable: Transient; payout stays
                PROCESSING for a retry
        """
        with DistributedLock(
            f"escrow:payout:execute:{payout_id}",
            ttl=PAYOUT_EXECUTE_LOCK_TTL,
            timeout=PAYOUT_LOCK_TIMEOUT,
        ):
            return cls._execute_with_lock(payout_id)

    @classmethod
    def _execute_with_lock(cls, payout_id: Any) -> PayoutRequest:
        logger = cls.get_logger()
        payout = cls.get_payout(payout_id)
        log_context = {"payout_id": str(payout.id), "seller_id": payout.seller_id}

        if payout.status not in PayoutStatus.in_flight():
            logger.info("Payout not executable, skipping", extra={**log_context, "status": payout.status})
            return payout

        account = PayoutAccount.objects.filter(seller_id=payout.seller_id, payouts_enabled=True).first()
        if account is None:
            logger.warning("Seller has no enabled payout account; left for manual processing", extra=log_context)
            return payout

        # Phase 1
        if payout.status == PayoutStatus.PENDING:
            with cls.atomic():
                payout = cls._lock_payout(payout)
                payout.start_processing()
                payout.save()
            logger.info("Phase 1: payout processing", extra={**log_context, "attempt": payout.attempt_count})

        # Phase 2
        try:
            transfer = cls.get_gateway().create_transfer(
                destination=account.stripe_account_id,
                amount=payout.amount,
                currency=payout.currency,
                idempotency_key=f"payout:{payout.id}:{payout.attempt_count}",
                metadata={"payout_id": str(payout.id), "seller_id": str(payout.seller_id)},
            )
        except BaseApplicationError as e:
            if getattr(e, "is_retryable", False):
                logger.warning(
                    f"Transient gateway error during payout, will retry: {type(e).__name__}",
                    extra={**log_context, "error": str(e)},
                )
                raise
            logger.error(
                f"Payout rejected by gateway: {type(e).__name__}",
                extra={**log_context, "error": str(e)},
            )
            with cls.atomic():
                locked = PayoutRequest.objects.select_for_update().get(pk=payout.pk)
                locked.fail(str(e))
                locked.save()
                events.payout_failed(locked)
            return locked

        # Phase 3
        with cls.atomic():
            locked = PayoutRequest.objects.select_for_update().get(pk=payout.pk)
            if locked.status != PayoutStatus.PROCESSING:
                logger.warning(
                    "Payout changed state during transfer",
                    extra={**log_context, "status": locked.status, "transfer_id": transfer.id},
                )
                return locked
            locked.complete(transfer.id)
            locked.save()
            events.payout_processed(locked)

        logger.info("Payout completed", extra={**log_context, "transfer_id": transfer.id})
        return locked

    # =========================================================================
    # Balances
    # =========================================================================

    @classmethod
    def seller_balance(cls, seller_id: Any, currency: str | None = None) -> SellerBalance:
        currency = (currency or settings.ESCROW_CURRENCY).lower()
        completed = EscrowTransaction.objects.filter(
            seller_id=seller_id,
            status=EscrowStatus.COMPLETED,
            currency=currency,
        )
        payouts = PayoutRequest.objects.filter(seller_id=seller_id, currency=currency)

        def total(queryset, field: str = "amount") -> int:
            return queryset.aggregate(total=Sum(field))["total"] or 0

        return SellerBalance(
            total_earnings=total(completed, "seller_amount"),
            available_balance=total(cls.eligible_transactions(seller_id, currency), "seller_amount"),
            pending_payouts=total(payouts.filter(status__in=PayoutStatus.in_flight())),
            completed_payouts=total(payouts.filter(status=PayoutStatus.COMPLETED)),
            failed_payouts=total(payouts.filter(status=PayoutStatus.FAILED)),
            currency=currency,
        )
