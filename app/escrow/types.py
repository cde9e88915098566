"""
Typed values exchanged with the escrow services.

Delivery details and dispute evidence arrive as loosely-shaped JSON from
clients. They are parsed here into tagged dataclasses (one per delivery
option) and validated before anything is stored; the stored JSON is
always the output of ``to_dict()``.

Usage:
    from escrow.types import CreateTransactionParams, parse_delivery_details

    details = parse_delivery_details({"option": "face_to_face", "meeting_point": "Gate B"})
    params = CreateTransactionParams(
        item_id="item-42",
        buyer_id=buyer.pk,
        seller_id=seller.pk,
        amount=10000,
        payment_method="card",
        delivery_details=details,
    )
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Union

from escrow.exceptions import EscrowValidationError
from escrow.state_machines import DeliveryOption

if TYPE_CHECKING:
    from escrow.models import EscrowTransaction

MAX_EVIDENCE_ATTACHMENTS = 10


def _clean_text(value: Any, field_name: str, required: bool = False, max_length: int = 1000) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise EscrowValidationError(
                f"{field_name} is required",
                details={field_name: ["This field is required."]},
            )
        return None
    if not isinstance(value, str):
        raise EscrowValidationError(
            f"{field_name} must be a string",
            details={field_name: ["Must be a string."]},
        )
    value = value.strip()
    if len(value) > max_length:
        raise EscrowValidationError(
            f"{field_name} is too long",
            details={field_name: [f"At most {max_length} characters."]},
        )
    return value


# =============================================================================
# Delivery details (tagged variant)
# =============================================================================


@dataclass(frozen=True)
class FaceToFaceDelivery:
    """Buyer and seller meet; a meeting point is required."""

    meeting_point: str
    notes: str | None = None
    tracking_number: str | None = None
    option: str = field(default=DeliveryOption.FACE_TO_FACE, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class SellerDelivery:
    """Seller ships or delivers to the buyer; an address is required."""

    address: str
    notes: str | None = None
    tracking_number: str | None = None
    option: str = field(default=DeliveryOption.SELLER_DELIVERY, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


DeliveryDetails = Union[FaceToFaceDelivery, SellerDelivery]


def parse_delivery_details(data: Any) -> DeliveryDetails:
    """
    Validate raw delivery details into the variant for their option.

    Raises:
        EscrowValidationError: Unknown option or missing required field
    """
    if isinstance(data, (FaceToFaceDelivery, SellerDelivery)):
        return data
    if not isinstance(data, dict):
        raise EscrowValidationError(
            "delivery_details must be an object",
            details={"delivery_details": ["Must be an object."]},
        )

    option = data.get("option")
    notes = _clean_text(data.get("notes"), "notes")
    tracking_number = _clean_text(data.get("tracking_number"), "tracking_number", max_length=255)

    if option == DeliveryOption.FACE_TO_FACE:
        return FaceToFaceDelivery(
            meeting_point=_clean_text(data.get("meeting_point"), "meeting_point", required=True),
            notes=notes,
            tracking_number=tracking_number,
        )
    if option == DeliveryOption.SELLER_DELIVERY:
        return SellerDelivery(
            address=_clean_text(data.get("address"), "address", required=True),
            notes=notes,
            tracking_number=tracking_number,
        )

    raise EscrowValidationError(
        f"Unknown delivery option: {option!r}",
        details={"option": [f"Must be one of: {', '.join(DeliveryOption.values)}."]},
    )


# =============================================================================
# Dispute evidence
# =============================================================================


@dataclass(frozen=True)
class Evidence:
    """
    One party's evidence submission.

    Attributes:
        description: What happened, in the party's words
        photos: Photo references in the external file store
        documents: Document references (receipts, chat screenshots)
        notes: Anything else
    """

    description: str = ""
    photos: tuple[str, ...] = ()
    documents: tuple[str, ...] = ()
    notes: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.description or self.photos or self.documents or self.notes)


def _clean_references(value: Any, field_name: str) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(item, str) and item.strip() for item in value
    ):
        raise EscrowValidationError(
            f"{field_name} must be a list of file references",
            details={field_name: ["Must be a list of non-empty strings."]},
        )
    if len(value) > MAX_EVIDENCE_ATTACHMENTS:
        raise EscrowValidationError(
            f"Too many {field_name}",
            details={field_name: [f"At most {MAX_EVIDENCE_ATTACHMENTS} items."]},
        )
    return tuple(item.strip() for item in value)


def parse_evidence(data: Any) -> Evidence:
    """
    Validate raw evidence.

    Raises:
        EscrowValidationError: Wrong shapes or an entirely empty submission
    """
    if isinstance(data, Evidence):
        evidence = data
    elif data is None:
        evidence = Evidence()
    elif isinstance(data, dict):
        evidence = Evidence(
            description=_clean_text(data.get("description"), "description", max_length=5000) or "",
            photos=_clean_references(data.get("photos"), "photos"),
            documents=_clean_references(data.get("documents"), "documents"),
            notes=_clean_text(data.get("notes"), "notes", max_length=5000) or "",
        )
    else:
        raise EscrowValidationError(
            "evidence must be an object",
            details={"evidence": ["Must be an object."]},
        )
    return evidence


# =============================================================================
# Service parameters & results
# =============================================================================


@dataclass
class CreateTransactionParams:
    item_id: str
    buyer_id: Any
    seller_id: Any
    amount: int
    payment_method: str
    delivery_details: Any
    currency: str | None = None


@dataclass
class TransitionResult:
    """
    Outcome of a state machine transition.

    Attributes:
        transaction: The transaction after the call
        changed: False for an idempotent re-entry (nothing written)
    """

    transaction: EscrowTransaction
    changed: bool = True


@dataclass
class VerificationResult:
    """
    Outcome of payment verification.

    Attributes:
        success: The payment is bound and the transaction is paid
        transaction_id: Transaction the reference belongs to
        amount_paid: Amount the gateway collected (minor units)
        already_verified: This reference had been verified before; no side
            effects were repeated
    """

    success: bool
    transaction_id: str
    amount_paid: int
    already_verified: bool = False


@dataclass
class PaymentInitiation:
    transaction_id: str
    reference: str
    client_secret: str | None
    amount: int
    currency: str


@dataclass
class SellerBalance:
    """
    A seller's escrow position, all in minor units.

    Attributes:
        total_earnings: Seller amounts of all completed transactions
        available_balance: Completed and not yet claimed by a payout
        pending_payouts: Pending or processing payout requests
        completed_payouts: Paid out
        failed_payouts: Failed requests awaiting retry or cancellation
    """

    total_earnings: int
    available_balance: int
    pending_payouts: int
    completed_payouts: int
    failed_payouts: int
    currency: str


@dataclass
class EscrowStats:
    total_transactions: int
    total_volume: int
    total_commission: int
    pending_transactions: int
    completed_transactions: int
    disputed_transactions: int
    flagged_transactions: int
