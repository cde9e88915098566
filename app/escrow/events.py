"""
Outbound escrow events for the notification collaborator.

Each function records the EscrowEvent rows for one domain occurrence.
They must be called inside the database transaction that performs the
state change, so the events commit or roll back with it. After commit the
escrow_event_committed signal is sent for each row.

Usage:
    with transaction.atomic():
        txn.ship(tracking_number)
        txn.save()
        events.item_shipped(txn)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from django.db import transaction as db_transaction

from escrow.models import EscrowEvent
from escrow.signals import escrow_event_committed
from escrow.state_machines import DisputeOutcome, EventType

if TYPE_CHECKING:
    from typing import Any

    from escrow.models import Dispute, EscrowTransaction, PayoutRequest, Refund

logger = logging.getLogger(__name__)

# Admin channel recipient
ADMINS = None


def format_money(amount: int, currency: str) -> str:
    """Render minor units for humans, e.g. 980000 ngn -> 'NGN 9800.00'."""
    major = (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{currency.upper()} {major}"


def record_event(
    event_type: str,
    user_id: Any,
    message: str,
    transaction: EscrowTransaction | None = None,
    dispute: Dispute | None = None,
    payout_request: PayoutRequest | None = None,
    payload: dict[str, Any] | None = None,
) -> EscrowEvent:
    """
    Write one outbox row and schedule its post-commit signal.

    Args:
        event_type: EventType value
        user_id: Recipient, or ADMINS (None) for the admin channel
        message: Human-readable text for the recipient
        transaction / dispute / payout_request: Related records
        payload: Extra machine-readable fields

    Returns:
        The created EscrowEvent
    """
    event = EscrowEvent.objects.create(
        event_type=event_type,
        user_id=user_id,
        transaction=transaction,
        dispute=dispute,
        payout_request=payout_request,
        message=message[:500],
        payload=payload or {},
    )

    db_transaction.on_commit(
        lambda: escrow_event_committed.send(sender=EscrowEvent, event=event)
    )

    logger.debug(
        "Escrow event recorded",
        extra={
            "event_type": event_type,
            "user_id": user_id,
            "transaction_id": str(transaction.id) if transaction else None,
        },
    )
    return event


def _txn_payload(txn: EscrowTransaction) -> dict[str, Any]:
    return {
        "transaction_id": str(txn.id),
        "item_id": txn.item_id,
        "status": txn.status,
        "amount": txn.amount,
        "currency": txn.currency,
    }


# =============================================================================
# Transaction lifecycle
# =============================================================================


def transaction_created(txn: EscrowTransaction) -> None:
    record_event(
        EventType.TRANSACTION_CREATED,
        txn.seller_id,
        f"New order for item {txn.item_id}: {format_money(txn.amount, txn.currency)}.",
        transaction=txn,
        payload=_txn_payload(txn),
    )


def payment_received(txn: EscrowTransaction) -> None:
    payload = _txn_payload(txn)
    record_event(
        EventType.PAYMENT_RECEIVED,
        txn.seller_id,
        f"Payment of {format_money(txn.amount, txn.currency)} received and held in escrow. "
        "Please ship the item.",
        transaction=txn,
        payload=payload,
    )
    record_event(
        EventType.PAYMENT_RECEIVED,
        txn.buyer_id,
        "Your payment was confirmed. The seller has been asked to ship your item.",
        transaction=txn,
        payload=payload,
    )


def payment_flagged(txn: EscrowTransaction, reason: str, details: dict[str, Any]) -> None:
    record_event(
        EventType.PAYMENT_FLAGGED,
        ADMINS,
        f"Transaction {txn.id} flagged for manual review: {reason}",
        transaction=txn,
        payload={**_txn_payload(txn), **details, "reason": reason},
    )


def transaction_cancelled(txn: EscrowTransaction) -> None:
    payload = _txn_payload(txn)
    for user_id in (txn.buyer_id, txn.seller_id):
        record_event(
            EventType.TRANSACTION_CANCELLED,
            user_id,
            f"The order for item {txn.item_id} was cancelled.",
            transaction=txn,
            payload=payload,
        )


def item_shipped(txn: EscrowTransaction) -> None:
    tracking = (txn.delivery_details or {}).get("tracking_number")
    suffix = f" Tracking number: {tracking}." if tracking else ""
    record_event(
        EventType.ITEM_SHIPPED,
        txn.buyer_id,
        f"Your item has been shipped.{suffix} Confirm delivery once you receive it.",
        transaction=txn,
        payload={**_txn_payload(txn), "tracking_number": tracking},
    )


def delivery_confirmed(txn: EscrowTransaction, automatic: bool) -> None:
    how = "automatically confirmed" if automatic else "confirmed by the buyer"
    record_event(
        EventType.DELIVERY_CONFIRMED,
        txn.seller_id,
        f"Delivery of item {txn.item_id} was {how}.",
        transaction=txn,
        payload={**_txn_payload(txn), "automatic": automatic},
    )


def funds_released(txn: EscrowTransaction, automatic: bool = False) -> None:
    record_event(
        EventType.FUNDS_RELEASED,
        txn.seller_id,
        f"{format_money(txn.seller_amount, txn.currency)} has been released to your balance.",
        transaction=txn,
        payload={
            **_txn_payload(txn),
            "seller_amount": txn.seller_amount,
            "commission": txn.commission,
            "automatic": automatic,
        },
    )


# =============================================================================
# Disputes
# =============================================================================


def _dispute_payload(dispute: Dispute) -> dict[str, Any]:
    return {
        "dispute_id": str(dispute.id),
        "transaction_id": str(dispute.transaction_id),
        "status": dispute.status,
        "reason": dispute.reason,
    }


def _other_party(txn: EscrowTransaction, user_id: Any) -> Any:
    return txn.seller_id if user_id == txn.buyer_id else txn.buyer_id


def dispute_opened(dispute: Dispute) -> None:
    txn = dispute.transaction
    payload = _dispute_payload(dispute)
    record_event(
        EventType.DISPUTE_OPENED,
        _other_party(txn, dispute.raised_by_id),
        f"A dispute was opened on the order for item {txn.item_id}: "
        f"{dispute.get_reason_display()}.",
        transaction=txn,
        dispute=dispute,
        payload=payload,
    )
    record_event(
        EventType.DISPUTE_OPENED,
        ADMINS,
        f"Dispute {dispute.id} opened on transaction {txn.id}.",
        transaction=txn,
        dispute=dispute,
        payload=payload,
    )


def dispute_evidence_added(dispute: Dispute, submitted_by_id: Any, party: str) -> None:
    txn = dispute.transaction
    payload = {**_dispute_payload(dispute), "party": party}
    record_event(
        EventType.DISPUTE_EVIDENCE_ADDED,
        _other_party(txn, submitted_by_id),
        f"The {party} added evidence to the dispute on item {txn.item_id}.",
        transaction=txn,
        dispute=dispute,
        payload=payload,
    )
    record_event(
        EventType.DISPUTE_EVIDENCE_ADDED,
        ADMINS,
        f"New {party} evidence on dispute {dispute.id}.",
        transaction=txn,
        dispute=dispute,
        payload=payload,
    )


def dispute_under_review(dispute: Dispute) -> None:
    txn = dispute.transaction
    for user_id in (txn.buyer_id, txn.seller_id):
        record_event(
            EventType.DISPUTE_UNDER_REVIEW,
            user_id,
            f"The dispute on item {txn.item_id} is now under review.",
            transaction=txn,
            dispute=dispute,
            payload=_dispute_payload(dispute),
        )


def dispute_resolved(dispute: Dispute) -> None:
    txn = dispute.transaction
    if dispute.outcome == DisputeOutcome.RELEASE_TO_SELLER:
        summary = "Funds were released to the seller."
    elif dispute.outcome == DisputeOutcome.REFUND_TO_BUYER:
        summary = f"A full refund of {format_money(dispute.refund_amount, txn.currency)} was issued."
    else:
        summary = (
            f"A partial refund of {format_money(dispute.refund_amount, txn.currency)} was issued "
            "and the remainder released to the seller."
        )
    payload = {
        **_dispute_payload(dispute),
        "outcome": dispute.outcome,
        "refund_amount": dispute.refund_amount,
    }
    for user_id in (txn.buyer_id, txn.seller_id):
        record_event(
            EventType.DISPUTE_RESOLVED,
            user_id,
            f"The dispute on item {txn.item_id} was resolved. {summary}",
            transaction=txn,
            dispute=dispute,
            payload=payload,
        )


# =============================================================================
# Refunds
# =============================================================================


def refund_completed(refund: Refund) -> None:
    txn = refund.transaction
    record_event(
        EventType.REFUND_COMPLETED,
        txn.buyer_id,
        f"Your refund of {format_money(refund.amount, refund.currency)} has been processed.",
        transaction=txn,
        dispute=refund.dispute,
        payload={"refund_id": str(refund.id), "amount": refund.amount},
    )


def refund_failed(refund: Refund) -> None:
    record_event(
        EventType.REFUND_FAILED,
        ADMINS,
        f"Refund {refund.id} failed: {refund.failure_reason}",
        transaction=refund.transaction,
        dispute=refund.dispute,
        payload={"refund_id": str(refund.id), "amount": refund.amount},
    )


def item_relist_requested(txn: EscrowTransaction) -> None:
    record_event(
        EventType.ITEM_RELIST_REQUESTED,
        txn.seller_id,
        f"Item {txn.item_id} was refunded and can be listed again.",
        transaction=txn,
        payload={"item_id": txn.item_id, "transaction_id": str(txn.id)},
    )


# =============================================================================
# Payouts
# =============================================================================


def _payout_payload(payout: PayoutRequest) -> dict[str, Any]:
    return {
        "payout_id": str(payout.id),
        "amount": payout.amount,
        "currency": payout.currency,
        "status": payout.status,
    }


def payout_requested(payout: PayoutRequest) -> None:
    record_event(
        EventType.PAYOUT_REQUESTED,
        payout.seller_id,
        f"Your payout of {format_money(payout.amount, payout.currency)} was requested.",
        payout_request=payout,
        payload=_payout_payload(payout),
    )
    record_event(
        EventType.PAYOUT_REQUESTED,
        ADMINS,
        f"Payout {payout.id} of {format_money(payout.amount, payout.currency)} awaits processing.",
        payout_request=payout,
        payload=_payout_payload(payout),
    )


def payout_processed(payout: PayoutRequest) -> None:
    record_event(
        EventType.PAYOUT_PROCESSED,
        payout.seller_id,
        f"Your payout of {format_money(payout.amount, payout.currency)} has been sent.",
        payout_request=payout,
        payload={**_payout_payload(payout), "reference": payout.transaction_reference},
    )


def payout_failed(payout: PayoutRequest) -> None:
    record_event(
        EventType.PAYOUT_FAILED,
        payout.seller_id,
        f"Your payout of {format_money(payout.amount, payout.currency)} failed. "
        "Our team will retry it.",
        payout_request=payout,
        payload={**_payout_payload(payout), "failure_reason": payout.failure_reason},
    )


def payout_cancelled(payout: PayoutRequest) -> None:
    record_event(
        EventType.PAYOUT_CANCELLED,
        payout.seller_id,
        f"Your payout of {format_money(payout.amount, payout.currency)} was cancelled. "
        "The funds are available again.",
        payout_request=payout,
        payload=_payout_payload(payout),
    )
