"""
EscrowTransaction model: one purchase held in escrow.

The status field is a protected django-fsm field: it only changes through
the @transition methods below, each of which declares its source states,
target state and the actor allowed to trigger it. Services call these
methods on a row locked by escrow.locks.check_version and then save(),
which bumps the version.

State Flow:
    PENDING → PAID → SHIPPED → DELIVERED → COMPLETED
    PENDING → CANCELLED                      (no payment bound)
    PAID/SHIPPED/DELIVERED → DISPUTED
    DISPUTED → COMPLETED                     (release, partial refund)
    DISPUTED → CANCELLED                     (full refund)

Usage:
    from django_fsm import can_proceed, has_transition_perm

    if can_proceed(txn.ship) and has_transition_perm(txn.ship, actor):
        txn.ship(tracking_number="TRK-1")
        txn.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel
from escrow.state_machines import EscrowEventName, EscrowStatus, PaymentMethod

# =============================================================================
# Transition permissions (django-fsm ``permission`` callables)
# =============================================================================


def _system_only(instance, actor) -> bool:
    return actor.is_system


def _buyer_or_seller(instance, actor) -> bool:
    return actor.is_party_to(instance)


def _seller_only(instance, actor) -> bool:
    return actor.is_seller_of(instance)


def _buyer_or_system(instance, actor) -> bool:
    return actor.is_system or actor.is_buyer_of(instance)


def _arbiter_only(instance, actor) -> bool:
    return actor.can_arbitrate(instance)


def _no_payment_bound(instance) -> bool:
    return not instance.payment_reference


# Who may trigger each event; shared by the @transition declarations below
# and by idempotent re-entry checks in TransactionService.
EVENT_PERMISSIONS = {
    EscrowEventName.PAY: _system_only,
    EscrowEventName.CANCEL: _buyer_or_seller,
    EscrowEventName.SHIP: _seller_only,
    EscrowEventName.CONFIRM_DELIVERY: _buyer_or_system,
    EscrowEventName.CONFIRM_SATISFACTION: _buyer_or_system,
    EscrowEventName.OPEN_DISPUTE: _buyer_or_seller,
    EscrowEventName.RESOLVE_RELEASE: _arbiter_only,
    EscrowEventName.RESOLVE_REFUND: _arbiter_only,
    EscrowEventName.RESOLVE_PARTIAL: _arbiter_only,
}


class EscrowTransaction(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A purchase whose funds are held by the platform until release.

    Fields:
        item_id: Opaque reference to the item in the marketplace
        buyer / seller: Parties to the purchase
        amount: Item price in minor currency units
        commission: Platform share, fixed at creation
        commission_rate: Rate in force when the commission was computed
        seller_amount: What the seller is owed
        refunded_amount: What dispute resolution returned to the buyer
        status: FSM state (protected)
        payment_method: How the buyer pays
        payment_reference: Gateway reference, bound once on verification
        delivery_details: Validated delivery variant (see serializers)
        dispute_reason: Copied from the dispute that froze the transaction
        requires_review / review_reason: Manual review flag set by the
            payment verifier
        payout_request: The payout request that claimed this transaction
        paid_at .. cancelled_at: Lifecycle timestamps
        version: Optimistic locking version

    Invariants (database check constraints):
        seller_amount + commission + refunded_amount == amount,
        unless the transaction was cancelled by a full refund
        refunded_amount <= amount
    """

    # ==========================================================================
    # Parties & Item
    # ==========================================================================

    item_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Marketplace item being purchased",
    )

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_purchases",
    )

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_sales",
    )

    # ==========================================================================
    # Money (integer minor units)
    # ==========================================================================

    amount = models.PositiveBigIntegerField(
        help_text="Item price in smallest currency unit",
    )

    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code (lowercase)",
    )

    commission = models.PositiveBigIntegerField(
        help_text="Platform commission, computed once at creation",
    )

    commission_rate = models.DecimalField(
        max_digits=6,
        decimal_places=4,
        help_text="Commission rate in force at creation",
    )

    seller_amount = models.PositiveBigIntegerField(
        help_text="Amount owed to the seller",
    )

    refunded_amount = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount refunded to the buyer by dispute resolution",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=EscrowStatus.PENDING,
        choices=EscrowStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current escrow status (managed by FSM)",
    )

    # ==========================================================================
    # Payment
    # ==========================================================================

    payment_method = models.CharField(
        max_length=32,
        choices=PaymentMethod.choices,
    )

    payment_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway payment reference, immutable once bound",
    )

    requires_review = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Flagged for manual review by the payment verifier",
    )

    review_reason = models.TextField(
        blank=True,
        default="",
    )

    # ==========================================================================
    # Delivery & Dispute
    # ==========================================================================

    delivery_details = models.JSONField(
        default=dict,
        help_text="Delivery option and its details (validated at the API boundary)",
    )

    dispute_reason = models.TextField(
        null=True,
        blank=True,
    )

    # ==========================================================================
    # Payout
    # ==========================================================================

    payout_request = models.ForeignKey(
        "escrow.PayoutRequest",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Payout request that claimed this transaction's seller amount",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Transaction"
        verbose_name_plural = "Escrow Transactions"
        indexes = [
            models.Index(fields=["buyer", "status"], name="escrow_escr_buyer_i_0f9a41_idx"),
            models.Index(fields=["seller", "status"], name="escrow_escr_seller__7e2b58_idx"),
            models.Index(fields=["status", "shipped_at"], name="escrow_escr_status_c41d9e_idx"),
            models.Index(fields=["status", "delivered_at"], name="escrow_escr_status_3a8f06_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="escrow_transaction_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(refunded_amount__lte=F("amount")),
                name="escrow_transaction_refund_within_amount",
            ),
            models.CheckConstraint(
                condition=(
                    Q(amount=F("seller_amount") + F("commission") + F("refunded_amount"))
                    | Q(status=EscrowStatus.CANCELLED, refunded_amount=F("amount"))
                ),
                name="escrow_transaction_amounts_balance",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowTransaction({self.id}, {self.status}, {self.amount} {self.currency.upper()})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.PAID,
        permission=EVENT_PERMISSIONS[EscrowEventName.PAY],
    )
    def pay(self, reference: str) -> None:
        """
        Bind the verified payment reference.

        Transition: PENDING -> PAID. Only the payment verifier (system) may
        trigger it.
        """
        self.payment_reference = reference
        self.paid_at = timezone.now()

    @transition(
        field=status,
        source=EscrowStatus.PENDING,
        target=EscrowStatus.CANCELLED,
        conditions=[_no_payment_bound],
        permission=EVENT_PERMISSIONS[EscrowEventName.CANCEL],
    )
    def cancel(self) -> None:
        """Transition: PENDING -> CANCELLED. Nothing was paid, nothing to undo."""
        self.cancelled_at = timezone.now()

    @transition(
        field=status,
        source=EscrowStatus.PAID,
        target=EscrowStatus.SHIPPED,
        permission=EVENT_PERMISSIONS[EscrowEventName.SHIP],
    )
    def ship(self, tracking_number: str | None = None) -> None:
        """Transition: PAID -> SHIPPED. Starts the auto-confirm window."""
        self.shipped_at = timezone.now()
        if tracking_number:
            self.delivery_details = {
                **(self.delivery_details or {}),
                "tracking_number": tracking_number,
            }

    @transition(
        field=status,
        source=EscrowStatus.SHIPPED,
        target=EscrowStatus.DELIVERED,
        permission=EVENT_PERMISSIONS[EscrowEventName.CONFIRM_DELIVERY],
    )
    def confirm_delivery(self) -> None:
        """Transition: SHIPPED -> DELIVERED. Buyer, or the auto-confirm sweep."""
        self.delivered_at = timezone.now()

    @transition(
        field=status,
        source=EscrowStatus.DELIVERED,
        target=EscrowStatus.COMPLETED,
        permission=EVENT_PERMISSIONS[EscrowEventName.CONFIRM_SATISFACTION],
    )
    def confirm_satisfaction(self) -> None:
        """Transition: DELIVERED -> COMPLETED. Seller amount becomes payable."""
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=[EscrowStatus.PAID, EscrowStatus.SHIPPED, EscrowStatus.DELIVERED],
        target=EscrowStatus.DISPUTED,
        permission=EVENT_PERMISSIONS[EscrowEventName.OPEN_DISPUTE],
    )
    def open_dispute(self, reason: str) -> None:
        """Freeze the transaction. Only arbiter events apply afterwards."""
        self.dispute_reason = reason

    @transition(
        field=status,
        source=EscrowStatus.DISPUTED,
        target=EscrowStatus.COMPLETED,
        permission=EVENT_PERMISSIONS[EscrowEventName.RESOLVE_RELEASE],
    )
    def resolve_release(self) -> None:
        """Transition: DISPUTED -> COMPLETED with the original seller amount."""
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=EscrowStatus.DISPUTED,
        target=EscrowStatus.CANCELLED,
        permission=EVENT_PERMISSIONS[EscrowEventName.RESOLVE_REFUND],
    )
    def resolve_refund(self) -> None:
        """
        Transition: DISPUTED -> CANCELLED with a full refund.

        The stored commission and seller amount are kept for the record;
        a cancelled transaction is never payable.
        """
        self.refunded_amount = self.amount
        self.cancelled_at = timezone.now()

    @transition(
        field=status,
        source=EscrowStatus.DISPUTED,
        target=EscrowStatus.COMPLETED,
        permission=EVENT_PERMISSIONS[EscrowEventName.RESOLVE_PARTIAL],
    )
    def resolve_partial(self, refund_amount: int, commission: int, seller_amount: int) -> None:
        """Transition: DISPUTED -> COMPLETED with a reduced seller amount."""
        self.refunded_amount = refund_amount
        self.commission = commission
        self.seller_amount = seller_amount
        self.completed_at = timezone.now()

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def actor_may(self, event: str, actor) -> bool:
        """Whether ``actor`` is allowed to trigger ``event`` on this transaction."""
        check = EVENT_PERMISSIONS.get(event)
        return bool(check and check(self, actor))

    @property
    def is_terminal(self) -> bool:
        return self.status in EscrowStatus.terminal()

    @property
    def is_payable(self) -> bool:
        """Completed, unclaimed, and owes the seller something."""
        return (
            self.status == EscrowStatus.COMPLETED
            and self.payout_request_id is None
            and self.seller_amount > 0
        )
