"""
EscrowEvent: the outbound event outbox.

Every committed transition and dispute or payout event writes one row per
recipient in the same database transaction as the state change. The
notification collaborator polls undispatched rows (or listens to the
escrow_event_committed signal, fired after commit) and marks them
dispatched. A row with no user is addressed to the admin channel.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import EventType


class EscrowEvent(UUIDPrimaryKeyMixin, BaseModel):
    event_type = models.CharField(
        max_length=64,
        choices=EventType.choices,
        db_index=True,
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="escrow_events",
        help_text="Recipient; empty means the admin channel",
    )

    transaction = models.ForeignKey(
        "escrow.EscrowTransaction",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="events",
    )

    dispute = models.ForeignKey(
        "escrow.Dispute",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="events",
    )

    payout_request = models.ForeignKey(
        "escrow.PayoutRequest",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="events",
    )

    message = models.CharField(max_length=500)
    payload = models.JSONField(default=dict, blank=True)

    dispatched_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the notification collaborator picked the event up",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Escrow Event"
        verbose_name_plural = "Escrow Events"
        indexes = [
            models.Index(fields=["user", "created_at"], name="escrow_escr_user_id_b6e0d3_idx"),
        ]

    def __str__(self) -> str:
        return f"EscrowEvent({self.event_type}, user={self.user_id})"

    def as_message(self) -> dict:
        """Wire shape consumed by notification subscribers."""
        return {
            "id": str(self.id),
            "type": self.event_type,
            "user_id": self.user_id,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "message": self.message,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
