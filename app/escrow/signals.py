"""
Django signals for the escrow app.

escrow_event_committed is the push side of the event outbox: it is sent
once per EscrowEvent after the database transaction that wrote it has
committed, never for rolled-back work. Notification and messaging
collaborators connect receivers to it; the escrow app only logs.

Usage:
    from django.dispatch import receiver
    from escrow.signals import escrow_event_committed

    @receiver(escrow_event_committed)
    def push_notification(sender, event, **kwargs):
        send_push(event.user_id, event.message)
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent with: sender=EscrowEvent, event=<EscrowEvent>
escrow_event_committed = Signal()


@receiver(escrow_event_committed)
def log_committed_event(sender, event, **kwargs):
    logger.info(
        "Escrow event committed",
        extra={
            "event_id": str(event.id),
            "event_type": event.event_type,
            "user_id": event.user_id,
            "transaction_id": str(event.transaction_id) if event.transaction_id else None,
        },
    )
