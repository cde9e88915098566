"""
Dispute and evidence models.

A Dispute freezes its EscrowTransaction until an arbiter resolves it.
Evidence is stored per submitting party, so buyer and seller can each add
to the record while the dispute is active.

State Flow:
    OPEN -> UNDER_REVIEW -> RESOLVED -> CLOSED
    OPEN -> RESOLVED

Usage:
    dispute.start_review(actor)
    dispute.resolve(outcome, refund_amount, resolution, actor)
    dispute.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel
from escrow.state_machines import DisputeOutcome, DisputeParty, DisputeReason, DisputeStatus


def _arbiter_only(instance, actor) -> bool:
    return actor.can_arbitrate(instance.transaction)


class Dispute(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    A formal disagreement over an escrow transaction.

    Fields:
        transaction: The frozen transaction
        raised_by: Buyer or seller who opened it
        reason: Categorised reason
        description: Free-text account from the opener
        status: FSM state (protected)
        outcome: Arbiter's decision
        resolution: Arbiter's explanation shown to both parties
        refund_amount: Amount returned to the buyer (0..transaction.amount)
        admin_notes: Internal arbiter notes (never shown to parties)
        resolved_by: Arbiter who resolved it
        resolved_at / closed_at: Lifecycle timestamps
    """

    transaction = models.ForeignKey(
        "escrow.EscrowTransaction",
        on_delete=models.PROTECT,
        related_name="disputes",
    )

    raised_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="escrow_disputes_raised",
    )

    reason = models.CharField(
        max_length=32,
        choices=DisputeReason.choices,
    )

    description = models.TextField()

    status = FSMField(
        default=DisputeStatus.OPEN,
        choices=DisputeStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current dispute status (managed by FSM)",
    )

    # ==========================================================================
    # Resolution
    # ==========================================================================

    outcome = models.CharField(
        max_length=32,
        choices=DisputeOutcome.choices,
        null=True,
        blank=True,
    )

    resolution = models.TextField(blank=True, default="")

    refund_amount = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount refunded to the buyer in smallest currency unit",
    )

    admin_notes = models.TextField(blank=True, default="")

    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="escrow_disputes_resolved",
    )

    resolved_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Dispute"
        verbose_name_plural = "Disputes"
        indexes = [
            models.Index(fields=["status", "created_at"], name="escrow_disp_status_9d2e47_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["transaction"],
                condition=Q(status__in=[DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW]),
                name="escrow_dispute_one_active_per_transaction",
            ),
        ]

    def __str__(self) -> str:
        return f"Dispute({self.id}, {self.status}, transaction={self.transaction_id})"

    @property
    def is_active(self) -> bool:
        return self.status in DisputeStatus.active()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=DisputeStatus.OPEN,
        target=DisputeStatus.UNDER_REVIEW,
        permission=_arbiter_only,
    )
    def start_review(self) -> None:
        pass

    @transition(
        field=status,
        source=[DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW],
        target=DisputeStatus.RESOLVED,
        permission=_arbiter_only,
    )
    def resolve(self, outcome: str, refund_amount: int, resolution: str, resolved_by_id) -> None:
        self.outcome = outcome
        self.refund_amount = refund_amount
        self.resolution = resolution
        self.resolved_by_id = resolved_by_id
        self.resolved_at = timezone.now()

    @transition(
        field=status,
        source=DisputeStatus.RESOLVED,
        target=DisputeStatus.CLOSED,
        permission=_arbiter_only,
    )
    def close(self) -> None:
        """Administrative bookkeeping; no financial effect."""
        self.closed_at = timezone.now()


class DisputeEvidence(UUIDPrimaryKeyMixin, BaseModel):
    """
    Evidence submitted by one party to a dispute.

    Photos and documents are references into the external file store;
    the engine never holds file contents.
    """

    dispute = models.ForeignKey(
        Dispute,
        on_delete=models.CASCADE,
        related_name="evidence",
    )

    submitted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="+",
    )

    party = models.CharField(
        max_length=16,
        choices=DisputeParty.choices,
    )

    description = models.TextField(blank=True, default="")
    photos = models.JSONField(default=list, blank=True)
    documents = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Dispute Evidence"
        verbose_name_plural = "Dispute Evidence"

    def __str__(self) -> str:
        return f"DisputeEvidence({self.id}, {self.party}, dispute={self.dispute_id})"
