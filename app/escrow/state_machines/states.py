"""
State and choice enums for escrow models.

These are Django TextChoices for database storage and admin integration.
Values are lowercase strings and are part of the public API.

State Machines Overview:

EscrowTransaction States:
    pending → paid → shipped → delivered → completed
    pending → cancelled (no payment bound)
    paid/shipped/delivered → disputed
    disputed → completed (release or partial refund)
    disputed → cancelled (full refund)

Dispute States:
    open → under_review → resolved → closed
    open → resolved (arbiter may resolve without a review step)

PayoutRequest States:
    pending → processing → completed
    pending/processing → failed → pending (retry)
    pending/failed → cancelled

Refund States:
    requested → processing → completed
    requested → processing → failed → processing (retry)
"""

from django.db import models


class EscrowStatus(models.TextChoices):
    """
    States for the EscrowTransaction lifecycle.

    Terminal states: COMPLETED, CANCELLED
    PENDING is never re-entered once left.
    """

    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    SHIPPED = "shipped", "Shipped"
    DELIVERED = "delivered", "Delivered"
    COMPLETED = "completed", "Completed"
    DISPUTED = "disputed", "Disputed"
    CANCELLED = "cancelled", "Cancelled"

    @classmethod
    def terminal(cls) -> frozenset[str]:
        return frozenset({cls.COMPLETED, cls.CANCELLED})

    @classmethod
    def disputable(cls) -> frozenset[str]:
        """States from which either party may open a dispute."""
        return frozenset({cls.PAID, cls.SHIPPED, cls.DELIVERED})


class EscrowEventName(models.TextChoices):
    """Transition events accepted by the escrow state machine."""

    PAY = "pay", "Payment verified"
    CANCEL = "cancel", "Cancel"
    SHIP = "ship", "Mark shipped"
    CONFIRM_DELIVERY = "confirm_delivery", "Confirm delivery"
    CONFIRM_SATISFACTION = "confirm_satisfaction", "Confirm satisfaction"
    OPEN_DISPUTE = "open_dispute", "Open dispute"
    RESOLVE_RELEASE = "resolve_release", "Resolve: release to seller"
    RESOLVE_REFUND = "resolve_refund", "Resolve: refund to buyer"
    RESOLVE_PARTIAL = "resolve_partial", "Resolve: partial refund"


class PaymentMethod(models.TextChoices):
    CARD = "card", "Card"
    BANK_TRANSFER = "bank_transfer", "Bank Transfer"
    MOBILE_MONEY = "mobile_money", "Mobile Money"


class DeliveryOption(models.TextChoices):
    """
    How the item reaches the buyer.

    FACE_TO_FACE requires a meeting point; SELLER_DELIVERY requires an
    address.
    """

    FACE_TO_FACE = "face_to_face", "Face to Face"
    SELLER_DELIVERY = "seller_delivery", "Seller Delivery"


class DisputeStatus(models.TextChoices):
    """
    States for the Dispute lifecycle.

    OPEN and UNDER_REVIEW are "active": at most one active dispute per
    transaction.
    """

    OPEN = "open", "Open"
    UNDER_REVIEW = "under_review", "Under Review"
    RESOLVED = "resolved", "Resolved"
    CLOSED = "closed", "Closed"

    @classmethod
    def active(cls) -> frozenset[str]:
        return frozenset({cls.OPEN, cls.UNDER_REVIEW})


class DisputeReason(models.TextChoices):
    ITEM_NOT_RECEIVED = "item_not_received", "Item Not Received"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described", "Item Not As Described"
    DAMAGED_ITEM = "damaged_item", "Damaged Item"
    WRONG_ITEM = "wrong_item", "Wrong Item"
    SELLER_UNRESPONSIVE = "seller_unresponsive", "Seller Unresponsive"
    BUYER_UNRESPONSIVE = "buyer_unresponsive", "Buyer Unresponsive"
    OTHER = "other", "Other"


class DisputeOutcome(models.TextChoices):
    RELEASE_TO_SELLER = "release_to_seller", "Release to Seller"
    REFUND_TO_BUYER = "refund_to_buyer", "Refund to Buyer"
    PARTIAL = "partial", "Partial Refund"


class DisputeParty(models.TextChoices):
    BUYER = "buyer", "Buyer"
    SELLER = "seller", "Seller"


class PayoutStatus(models.TextChoices):
    """
    States for the PayoutRequest lifecycle.

    PENDING, PROCESSING and FAILED keep their claimed transactions; only
    CANCELLED releases them.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"

    @classmethod
    def in_flight(cls) -> frozenset[str]:
        return frozenset({cls.PENDING, cls.PROCESSING})


class RefundStatus(models.TextChoices):
    REQUESTED = "requested", "Requested"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class CommissionRefundPolicy(models.TextChoices):
    """
    How commission is treated when a dispute ends in a partial refund.

    RETAIN: the platform keeps the full commission; the refund comes out
        of the seller's share.
    PROPORTIONAL: commission is scaled down to the share of the amount the
        seller keeps.
    """

    RETAIN = "retain", "Retain"
    PROPORTIONAL = "proportional", "Proportional"


class EventType(models.TextChoices):
    """Outbound event types consumed by the notification collaborator."""

    TRANSACTION_CREATED = "transaction_created", "Transaction Created"
    PAYMENT_RECEIVED = "payment_received", "Payment Received"
    PAYMENT_FLAGGED = "payment_flagged", "Payment Flagged For Review"
    TRANSACTION_CANCELLED = "transaction_cancelled", "Transaction Cancelled"
    ITEM_SHIPPED = "item_shipped", "Item Shipped"
    DELIVERY_CONFIRMED = "delivery_confirmed", "Delivery Confirmed"
    FUNDS_RELEASED = "funds_released", "Funds Released"
    DISPUTE_OPENED = "dispute_opened", "Dispute Opened"
    DISPUTE_EVIDENCE_ADDED = "dispute_evidence_added", "Dispute Evidence Added"
    DISPUTE_UNDER_REVIEW = "dispute_under_review", "Dispute Under Review"
    DISPUTE_RESOLVED = "dispute_resolved", "Dispute Resolved"
    REFUND_COMPLETED = "refund_completed", "Refund Completed"
    REFUND_FAILED = "refund_failed", "Refund Failed"
    ITEM_RELIST_REQUESTED = "item_relist_requested", "Item Relist Requested"
    PAYOUT_REQUESTED = "payout_requested", "Payout Requested"
    PAYOUT_PROCESSED = "payout_processed", "Payout Processed"
    PAYOUT_FAILED = "payout_failed", "Payout Failed"
    PAYOUT_CANCELLED = "payout_cancelled", "Payout Cancelled"
