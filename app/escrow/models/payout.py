"""
Payout models: seller payout requests and their destination accounts.

A PayoutRequest aggregates the seller amounts of completed transactions.
Each transaction is claimed by at most one request through
EscrowTransaction.payout_request; a request keeps its claims while it is
pending, processing or failed, and only gives them back when cancelled.

State Flow:
    PENDING -> PROCESSING -> COMPLETED
    PENDING/PROCESSING -> COMPLETED | FAILED   (manual processing by admin)
    FAILED -> PENDING                          (retry)
    PENDING/FAILED -> CANCELLED                (releases claimed transactions)

Usage:
    payout.start_processing()
    payout.save()

    payout.complete(reference="tr_123")
    payout.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel
from escrow.state_machines import PayoutStatus


class PayoutRequest(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A request to transfer a seller's earned escrow funds out.

    Fields:
        seller: Recipient
        amount: Sum of the claimed transactions' seller amounts
        currency: ISO 4217 currency code
        status: FSM state (protected)
        transaction_reference: Gateway transfer id or admin-entered reference
        requested_at / processed_at: Lifecycle timestamps
        failure_reason: Last failure, kept for retry decisions
        attempt_count: Number of execution attempts
    """

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_payout_requests",
    )

    amount = models.PositiveBigIntegerField(
        help_text="Payout amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3)

    status = FSMField(
        default=PayoutStatus.PENDING,
        choices=PayoutStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current payout status (managed by FSM)",
    )

    transaction_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Gateway transfer id or manual transfer reference",
    )

    requested_at = models.DateTimeField(default=timezone.now)
    processed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(null=True, blank=True)
    attempt_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["-requested_at"]
        verbose_name = "Payout Request"
        verbose_name_plural = "Payout Requests"
        indexes = [
            models.Index(fields=["seller", "status"], name="escrow_payo_seller__a1c3e2_idx"),
            models.Index(fields=["status", "requested_at"], name="escrow_payo_status_5b7d10_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="escrow_payout_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PayoutRequest({self.id}, {self.status}, {self.amount} {self.currency.upper()})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=PayoutStatus.PENDING, target=PayoutStatus.PROCESSING)
    def start_processing(self) -> None:
        """Transition: PENDING -> PROCESSING, before the gateway transfer call."""
        self.attempt_count += 1

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.COMPLETED,
    )
    def complete(self, reference: str) -> None:
        self.transaction_reference = reference
        self.failure_reason = None
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.FAILED,
    )
    def fail(self, reason: str) -> None:
        self.failure_reason = reason
        self.processed_at = timezone.now()

    @transition(field=status, source=PayoutStatus.FAILED, target=PayoutStatus.PENDING)
    def retry(self) -> None:
        """Transition: FAILED -> PENDING. The claimed transactions stay claimed."""
        self.processed_at = None

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.FAILED],
        target=PayoutStatus.CANCELLED,
    )
    def cancel(self, reason: str | None = None) -> None:
        """Transition: PENDING/FAILED -> CANCELLED. Caller releases the claims."""
        if reason:
            self.failure_reason = reason
        self.processed_at = timezone.now()


class PayoutAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    Where a seller's payouts are transferred by the automatic executor.

    Fields:
        seller: Account owner (one account per seller)
        stripe_account_id: Stripe Connect account (acct_xxx)
        payouts_enabled: Whether transfers to this account are allowed
    """

    seller = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="escrow_payout_account",
    )

    stripe_account_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Connect account id (acct_xxx)",
    )

    payouts_enabled = models.BooleanField(default=False)

    class Meta:
        verbose_name = "Payout Account"
        verbose_name_plural = "Payout Accounts"

    def __str__(self) -> str:
        return f"PayoutAccount({self.seller_id}, {self.stripe_account_id})"
