"""
Read-side queries for the escrow API, dashboards and collaborators.

Visibility rules:
- Buyers and sellers see their own transactions, disputes and payouts
- Arbiters (staff) see everything
- A record the caller may not see is reported as not found
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Count, Q, Sum

from escrow.exceptions import (
    DisputeNotFoundError,
    EscrowValidationError,
    PayoutNotFoundError,
    TransactionNotFoundError,
)
from escrow.models import Dispute, EscrowTransaction, PayoutRequest
from escrow.services.base import EscrowService
from escrow.state_machines import DisputeStatus, EscrowStatus, PayoutStatus
from escrow.types import EscrowStats

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import QuerySet

    from escrow.actors import Actor


ROLES = ("buyer", "seller")


class EscrowQueryService(EscrowService):
    """Read-only escrow queries."""

    # =========================================================================
    # Transactions
    # =========================================================================

    @classmethod
    def transactions_for_user(
        cls,
        user_id: Any,
        role: str | None = None,
        status: str | None = None,
    ) -> QuerySet[EscrowTransaction]:
        """
        A user's transactions, newest first.

        Args:
            user_id: Buyer or seller
            role: "buyer", "seller", or None for both
            status: Optional EscrowStatus filter
        """
        if role is not None and role not in ROLES:
            raise EscrowValidationError(
                f"Unknown role: {role!r}",
                details={"role": ["Must be buyer or seller."]},
            )
        if status is not None and status not in EscrowStatus.values:
            raise EscrowValidationError(
                f"Unknown status: {status!r}",
                details={"status": [f"Must be one of: {', '.join(EscrowStatus.values)}."]},
            )

        if role == "buyer":
            query = Q(buyer_id=user_id)
        elif role == "seller":
            query = Q(seller_id=user_id)
        else:
            query = Q(buyer_id=user_id) | Q(seller_id=user_id)

        queryset = EscrowTransaction.objects.filter(query)
        if status is not None:
            queryset = queryset.filter(status=status)
        return queryset.order_by("-created_at")

    @classmethod
    def transaction_detail(cls, transaction_id: Any, actor: Actor) -> EscrowTransaction:
        try:
            txn = EscrowTransaction.objects.select_related("payout_request").get(pk=transaction_id)
        except (EscrowTransaction.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise TransactionNotFoundError(
                f"Escrow transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            ) from e

        if not (actor.is_party_to(txn) or actor.is_arbiter or actor.is_system):
            raise TransactionNotFoundError(
                f"Escrow transaction {transaction_id} not visible to {actor.label}",
                details={"transaction_id": str(transaction_id)},
            )
        return txn

    @classmethod
    def chat_summary(cls, transaction_id: Any, actor: Actor) -> dict[str, Any]:
        """Compact transaction view for the messaging collaborator."""
        txn = cls.transaction_detail(transaction_id, actor)
        return {
            "transaction_id": str(txn.id),
            "item_id": txn.item_id,
            "amount": txn.amount,
            "currency": txn.currency,
            "buyer_id": txn.buyer_id,
            "seller_id": txn.seller_id,
            "status": txn.status,
        }

    # =========================================================================
    # Disputes
    # =========================================================================

    @classmethod
    def disputes_for_user(cls, user_id: Any) -> QuerySet[Dispute]:
        """Disputes on transactions the user bought or sold, newest first."""
        return (
            Dispute.objects.filter(Q(transaction__buyer_id=user_id) | Q(transaction__seller_id=user_id))
            .select_related("transaction")
            .order_by("-created_at")
        )

    @classmethod
    def disputes_by_status(cls, status: str | None, actor: Actor) -> QuerySet[Dispute]:
        """Arbiter queue; oldest first so nothing waits forever."""
        cls._ensure_arbiter(actor)
        queryset = Dispute.objects.select_related("transaction")
        if status is not None:
            if status not in DisputeStatus.values:
                raise EscrowValidationError(
                    f"Unknown dispute status: {status!r}",
                    details={"status": [f"Must be one of: {', '.join(DisputeStatus.values)}."]},
                )
            queryset = queryset.filter(status=status)
        return queryset.order_by("created_at")

    @classmethod
    def dispute_detail(cls, dispute_id: Any, actor: Actor) -> Dispute:
        try:
            dispute = (
                Dispute.objects.select_related("transaction")
                .prefetch_related("evidence")
                .get(pk=dispute_id)
            )
        except (Dispute.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise DisputeNotFoundError(
                f"Dispute {dispute_id} not found",
                details={"dispute_id": str(dispute_id)},
            ) from e

        if not (actor.is_party_to(dispute.transaction) or actor.is_arbiter):
            raise DisputeNotFoundError(
                f"Dispute {dispute_id} not visible to {actor.label}",
                details={"dispute_id": str(dispute_id)},
            )
        return dispute

    # =========================================================================
    # Payouts
    # =========================================================================

    @classmethod
    def payout_history(cls, seller_id: Any) -> QuerySet[PayoutRequest]:
        return PayoutRequest.objects.filter(seller_id=seller_id).order_by("-requested_at")

    @classmethod
    def payout_detail(cls, payout_id: Any, actor: Actor) -> PayoutRequest:
        try:
            payout = PayoutRequest.objects.filter(pk=payout_id).first()
        except (DjangoValidationError, ValueError, TypeError):
            payout = None
        if payout is None or not (actor.user_id == payout.seller_id or actor.is_arbiter):
            raise PayoutNotFoundError(
                f"Payout {payout_id} not found",
                details={"payout_id": str(payout_id)},
            )
        return payout

    @classmethod
    def pending_payouts(cls, actor: Actor) -> QuerySet[PayoutRequest]:
        """Arbiter queue of payouts still waiting for money to move."""
        cls._ensure_arbiter(actor)
        return PayoutRequest.objects.filter(
            status__in=[*PayoutStatus.in_flight(), PayoutStatus.FAILED]
        ).order_by("requested_at")

    # =========================================================================
    # Dashboard
    # =========================================================================

    @classmethod
    def escrow_stats(cls, actor: Actor) -> EscrowStats:
        cls._ensure_arbiter(actor)
        totals = EscrowTransaction.objects.aggregate(
            total_transactions=Count("id"),
            total_volume=Sum("amount", filter=~Q(status=EscrowStatus.CANCELLED)),
            total_commission=Sum("commission", filter=Q(status=EscrowStatus.COMPLETED)),
            pending_transactions=Count("id", filter=Q(status=EscrowStatus.PENDING)),
            completed_transactions=Count("id", filter=Q(status=EscrowStatus.COMPLETED)),
            disputed_transactions=Count("id", filter=Q(status=EscrowStatus.DISPUTED)),
            flagged_transactions=Count("id", filter=Q(requires_review=True)),
        )
        return EscrowStats(**{key: value or 0 for key, value in totals.items()})

    @classmethod
    def _ensure_arbiter(cls, actor: Actor) -> None:
        if not actor.is_arbiter:
            raise cls.actor_not_permitted("Arbiter access required", actor=actor.label)
