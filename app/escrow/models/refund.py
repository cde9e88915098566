"""
Refund model for money returned to a buyer by dispute resolution.

Exactly one Refund exists per refunding resolution: the row is created in
the same database transaction that resolves the dispute, and the
OneToOne link to the dispute makes a second one impossible. Execution
against the gateway happens afterwards, in a Celery task.

State Flow:
    REQUESTED -> PROCESSING -> COMPLETED
    REQUESTED -> PROCESSING -> FAILED -> PROCESSING (retry)
"""

from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone
from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin
from core.models import BaseModel
from escrow.state_machines import RefundStatus


class Refund(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    transaction = models.ForeignKey(
        "escrow.EscrowTransaction",
        on_delete=models.PROTECT,
        related_name="refunds",
    )

    dispute = models.OneToOneField(
        "escrow.Dispute",
        on_delete=models.PROTECT,
        related_name="refund",
    )

    amount = models.PositiveBigIntegerField(
        help_text="Refund amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3)

    status = FSMField(
        default=RefundStatus.REQUESTED,
        choices=RefundStatus.choices,
        db_index=True,
        protected=True,
    )

    gateway_refund_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway refund id (re_xxx)",
    )

    failure_reason = models.TextField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="escrow_refund_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Refund({self.id}, {self.status}, {self.amount} {self.currency.upper()})"

    @transition(
        field=status,
        source=[RefundStatus.REQUESTED, RefundStatus.FAILED],
        target=RefundStatus.PROCESSING,
    )
    def process(self) -> None:
        self.failure_reason = None

    @transition(field=status, source=RefundStatus.PROCESSING, target=RefundStatus.COMPLETED)
    def complete(self, gateway_refund_id: str) -> None:
        self.gateway_refund_id = gateway_refund_id
        self.completed_at = timezone.now()

    @transition(field=status, source=RefundStatus.PROCESSING, target=RefundStatus.FAILED)
    def fail(self, reason: str) -> None:
        self.failure_reason = reason
