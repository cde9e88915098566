"""
Transaction service: creation and the escrow state machine contract.

Every status change of an EscrowTransaction goes through
TransactionService.transition(), which:

1. Reads the transaction (TransactionNotFoundError if missing)
2. Returns it unchanged when a buyer/seller event is repeated after it
   already took effect (idempotent re-entry)
3. Validates the source status (InvalidTransitionError) and the actor
   (InvalidTransitionError with code ACTOR_NOT_PERMITTED)
4. Locks the row at the version it read, applies the django-fsm
   transition, saves, and records outbox events in the same database
   transaction
5. Starts over from step 1 when the version moved underneath it, at most
   ESCROW_MAX_CONCURRENCY_RETRIES times

Usage:
    from escrow.actors import Actor
    from escrow.services import TransactionService

    txn = TransactionService.mark_shipped(txn_id, Actor.from_user(seller), "TRK-1")
    TransactionService.transition(txn_id, EscrowEventName.CONFIRM_DELIVERY, Actor.system())
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django_fsm import can_proceed, has_transition_perm

from escrow import events
from escrow.commission import CommissionCalculator
from escrow.exceptions import (
    EscrowValidationError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from escrow.locks import check_version
from escrow.models import EscrowTransaction
from escrow.services.base import EscrowService
from escrow.services.payout_service import PayoutService
from escrow.state_machines import EscrowEventName, EscrowStatus, PaymentMethod
from escrow.types import CreateTransactionParams, TransitionResult, parse_delivery_details

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from escrow.actors import Actor


# Events that buyers and sellers may repeat safely: if the transaction is
# already in the target status, the repeat is a no-op.
REENTRANT_TARGETS = {
    EscrowEventName.CANCEL: EscrowStatus.CANCELLED,
    EscrowEventName.SHIP: EscrowStatus.SHIPPED,
    EscrowEventName.CONFIRM_DELIVERY: EscrowStatus.DELIVERED,
    EscrowEventName.CONFIRM_SATISFACTION: EscrowStatus.COMPLETED,
}


def _notify_delivery(txn: EscrowTransaction, actor: Actor) -> None:
    events.delivery_confirmed(txn, automatic=actor.is_system)


def _notify_release(txn: EscrowTransaction, actor: Actor) -> None:
    events.funds_released(txn, automatic=actor.is_system)


# Outbox events recorded for each event. Dispute events are recorded by
# DisputeService, which knows the dispute.
EVENT_NOTIFIERS: dict[str, Callable[[EscrowTransaction, Actor], None]] = {
    EscrowEventName.PAY: lambda txn, actor: events.payment_received(txn),
    EscrowEventName.CANCEL: lambda txn, actor: events.transaction_cancelled(txn),
    EscrowEventName.SHIP: lambda txn, actor: events.item_shipped(txn),
    EscrowEventName.CONFIRM_DELIVERY: _notify_delivery,
    EscrowEventName.CONFIRM_SATISFACTION: _notify_release,
}


class TransactionService(EscrowService):
    """
    Service for escrow transaction creation and lifecycle transitions.

    Methods:
        create_transaction: Open a new PENDING transaction for a buyer
        get_transaction: Load one transaction or raise
        transition: The state machine contract, with conflict retry
        transition_once: One attempt of transition (for callers that run
            their own retry loop around a larger operation)
        mark_shipped / confirm_delivery / confirm_satisfaction / cancel:
            Convenience wrappers over transition()
    """

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def create_transaction(
        cls,
        params: CreateTransactionParams,
        actor: Actor,
    ) -> EscrowTransaction:
        """
        Create a PENDING escrow transaction.

        The commission is computed here, once, from ESCROW_COMMISSION_RATE
        and stored with the rate.

        Args:
            params: Item, parties, price and delivery details
            actor: Must be the buyer

        Returns:
            The created EscrowTransaction

        Raises:
            InvalidTransitionError: Actor is not the buyer (ACTOR_NOT_PERMITTED)
            EscrowValidationError: Bad amount, payment method, parties or
                delivery details
        """
        logger = cls.get_logger()

        if actor.is_system or actor.user_id is None or actor.user_id != params.buyer_id:
            raise cls.actor_not_permitted(
                "Only the buyer can open an escrow transaction",
                actor=actor.label,
                buyer_id=params.buyer_id,
            )

        cls._validate_new_transaction(params)
        delivery = parse_delivery_details(params.delivery_details)
        currency = (params.currency or settings.ESCROW_CURRENCY).lower()
        split = CommissionCalculator.from_settings().compute(params.amount)

        with cls.atomic():
            txn = EscrowTransaction.objects.create(
                item_id=params.item_id,
                buyer_id=params.buyer_id,
                seller_id=params.seller_id,
                amount=split.amount,
                currency=currency,
                commission=split.commission,
                commission_rate=split.rate,
                seller_amount=split.seller_amount,
                payment_method=params.payment_method,
                delivery_details=delivery.to_dict(),
            )
            events.transaction_created(txn)

        logger.info(
            "Escrow transaction created",
            extra={
                "transaction_id": str(txn.id),
                "item_id": txn.item_id,
                "amount": txn.amount,
                "commission": txn.commission,
                "buyer_id": txn.buyer_id,
                "seller_id": txn.seller_id,
            },
        )
        return txn

    @classmethod
    def _validate_new_transaction(cls, params: CreateTransactionParams) -> None:
        errors: dict[str, list[str]] = {}

        if not params.item_id or not str(params.item_id).strip():
            errors["item_id"] = ["This field is required."]

        amount = params.amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            errors["amount"] = ["Must be a positive integer in minor currency units."]

        if params.payment_method not in PaymentMethod.values:
            errors["payment_method"] = [f"Must be one of: {', '.join(PaymentMethod.values)}."]

        if params.currency is not None and len(params.currency) != 3:
            errors["currency"] = ["Must be a 3-letter ISO 4217 code."]

        if params.buyer_id == params.seller_id:
            errors["seller_id"] = ["Buyer and seller must be different users."]
        elif not get_user_model().objects.filter(pk=params.seller_id, is_active=True).exists():
            errors["seller_id"] = ["Seller not found."]

        if errors:
            raise EscrowValidationError(
                "Invalid escrow transaction",
                details=errors,
            )

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def get_transaction(cls, transaction_id: Any) -> EscrowTransaction:
        try:
            return EscrowTransaction.objects.get(pk=transaction_id)
        except (EscrowTransaction.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise TransactionNotFoundError(
                f"Escrow transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            ) from e

    # =========================================================================
    # State machine
    # =========================================================================

    @classmethod
    def transition(
        cls,
        transaction_id: Any,
        event: str,
        actor: Actor,
        on_applied: Callable[[EscrowTransaction], None] | None = None,
        **params: Any,
    ) -> TransitionResult:
        """
        Apply ``event`` to a transaction, retrying on version conflicts.

        Args:
            transaction_id: EscrowTransaction id
            event: EscrowEventName value
            actor: Who triggers the event
            on_applied: Extra writes to commit with the transition; called
                with the saved transaction inside the database transaction
            **params: Arguments for the transition method (e.g. reference,
                tracking_number)

        Returns:
            TransitionResult; ``changed`` is False for an idempotent re-entry

        Raises:
            TransactionNotFoundError: Unknown transaction
            InvalidTransitionError: Status does not allow the event, or the
                actor may not trigger it (ACTOR_NOT_PERMITTED)
            ConcurrentModificationError: Still conflicting after the last retry
        """
        return cls.with_conflict_retry(
            lambda: cls.transition_once(transaction_id, event, actor, on_applied, **params),
            log_context={
                "transaction_id": str(transaction_id),
                "event": str(event),
                "actor": actor.label,
            },
        )

    @classmethod
    def transition_once(
        cls,
        transaction_id: Any,
        event: str,
        actor: Actor,
        on_applied: Callable[[EscrowTransaction], None] | None = None,
        **params: Any,
    ) -> TransitionResult:
        """Single read-validate-lock-write attempt of transition()."""
        logger = cls.get_logger()
        event = cls._parse_event(event)
        txn = cls.get_transaction(transaction_id)

        reentrant_target = REENTRANT_TARGETS.get(event)
        if reentrant_target is not None and txn.status == reentrant_target and txn.actor_may(event, actor):
            if event == EscrowEventName.SHIP:
                cls._ensure_same_tracking_number(txn, params.get("tracking_number"))
            logger.info(
                "Transition already applied, nothing to do",
                extra={
                    "transaction_id": str(txn.id),
                    "event": str(event),
                    "status": txn.status,
                    "actor": actor.label,
                },
            )
            return TransitionResult(transaction=txn, changed=False)

        cls.ensure_allowed(txn, event, actor)
        from_status = txn.status

        with cls.atomic():
            locked = check_version(
                EscrowTransaction,
                txn.pk,
                txn.version,
                not_found_error=TransactionNotFoundError,
            )
            getattr(locked, event)(**params)
            locked.save()

            notifier = EVENT_NOTIFIERS.get(event)
            if notifier is not None:
                notifier(locked, actor)
            if on_applied is not None:
                on_applied(locked)
            if locked.status == EscrowStatus.COMPLETED:
                PayoutService.schedule_auto_payout(locked)

        logger.info(
            "Escrow transition applied",
            extra={
                "transaction_id": str(locked.id),
                "event": str(event),
                "from_status": from_status,
                "to_status": locked.status,
                "version": locked.version,
                "actor": actor.label,
            },
        )
        return TransitionResult(transaction=locked, changed=True)

    @classmethod
    def ensure_allowed(cls, txn: EscrowTransaction, event: str, actor: Actor) -> None:
        """
        Raise unless ``actor`` may apply ``event`` to ``txn`` as read.

        Raises:
            InvalidTransitionError: Status (or a transition condition) does
                not allow the event, or the actor is not permitted
        """
        method = getattr(txn, event)
        context = {
            "transaction_id": str(txn.id),
            "status": txn.status,
            "event": str(event),
        }

        if not can_proceed(method):
            cls.get_logger().warning("Rejected escrow transition", extra={**context, "actor": actor.label})
            raise InvalidTransitionError(
                f"Cannot {event} transaction {txn.id} in status {txn.status}",
                details=context,
            )

        if not has_transition_perm(method, actor):
            cls.get_logger().warning(
                "Actor not permitted for escrow transition",
                extra={**context, "actor": actor.label},
            )
            raise cls.actor_not_permitted(
                f"{actor.label} may not {event} transaction {txn.id}",
                **context,
                actor=actor.label,
            )

    @staticmethod
    def _ensure_same_tracking_number(txn: EscrowTransaction, tracking_number: str | None) -> None:
        # Tracking numbers are fixed once the transaction has shipped.
        recorded = (txn.delivery_details or {}).get("tracking_number")
        if tracking_number and tracking_number != recorded:
            raise InvalidTransitionError(
                f"Transaction {txn.id} has already shipped; its tracking number cannot be changed",
                details={
                    "transaction_id": str(txn.id),
                    "status": txn.status,
                    "event": str(EscrowEventName.SHIP),
                    "tracking_number": recorded,
                },
            )

    @staticmethod
    def _parse_event(event: str) -> EscrowEventName:
        try:
            return EscrowEventName(event)
        except ValueError as e:
            raise EscrowValidationError(
                f"Unknown escrow event: {event!r}",
                details={"event": [f"Must be one of: {', '.join(EscrowEventName.values)}."]},
            ) from e

    # =========================================================================
    # Convenience operations
    # =========================================================================

    @classmethod
    def mark_shipped(
        cls,
        transaction_id: Any,
        actor: Actor,
        tracking_number: str | None = None,
    ) -> EscrowTransaction:
        """Seller marks a PAID transaction as shipped."""
        return cls.transition(
            transaction_id,
            EscrowEventName.SHIP,
            actor,
            tracking_number=tracking_number,
        ).transaction

    @classmethod
    def confirm_delivery(cls, transaction_id: Any, actor: Actor) -> EscrowTransaction:
        return cls.transition(transaction_id, EscrowEventName.CONFIRM_DELIVERY, actor).transaction

    @classmethod
    def confirm_satisfaction(cls, transaction_id: Any, actor: Actor) -> EscrowTransaction:
        """Buyer accepts the item; the seller amount becomes payable."""
        return cls.transition(transaction_id, EscrowEventName.CONFIRM_SATISFACTION, actor).transaction

    @classmethod
    def cancel(cls, transaction_id: Any, actor: Actor) -> EscrowTransaction:
        """Buyer or seller cancels a PENDING transaction with no payment bound."""
        return cls.transition(transaction_id, EscrowEventName.CANCEL, actor).transaction
