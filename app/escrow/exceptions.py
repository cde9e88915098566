"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for escrow domain, BaseApplicationError)
    ├── AmountMismatchError - Paid amount differs from transaction amount
    ├── PaymentFailedError - Gateway reported an explicit decline
    └── InsufficientPayoutBalanceError - Nothing (or not enough) to pay out

    NotFoundError
    ├── TransactionNotFoundError
    ├── DisputeNotFoundError
    ├── PayoutNotFoundError
    ├── RefundNotFoundError
    └── ReferenceNotFoundError - Gateway does not know the reference

    ValidationError
    └── EscrowValidationError - Business-rule validation failures

    ConflictError
    ├── InvalidTransitionError - Status or actor does not permit the event
    ├── ConcurrentModificationError - Optimistic locking conflict (retryable)
    ├── LockAcquisitionError - Distributed lock timeout (retryable)
    ├── ReferenceAlreadyUsedError - Reference bound to another transaction
    └── DisputeAlreadyOpenError - Transaction already has an active dispute

    ExternalServiceError
    ├── GatewayUnavailableError - Transient gateway failure (retryable)
    │   └── PaymentPendingError - Gateway has not settled the payment yet
    └── StripeError - Translated Stripe SDK errors
        ├── StripeCardDeclinedError (permanent)
        ├── StripeInvalidRequestError (permanent)
        ├── StripeInvalidAccountError (permanent)
        ├── StripeRateLimitError (transient, retry)
        ├── StripeAPIUnavailableError (transient, retry)
        └── StripeTimeoutError (transient, retry)

Every class carries a user_message: buyers and sellers get that reason
string, admins get the raw error code, message and details.

Usage:
    from escrow.exceptions import InvalidTransitionError

    raise InvalidTransitionError(
        f"Cannot ship transaction {txn.id} in status {txn.status}",
        details={"transaction_id": str(txn.id), "status": txn.status, "event": "ship"},
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


class EscrowError(BaseApplicationError):
    """Base exception for escrow domain errors without a more specific family."""

    default_error_code: str = "ESCROW_ERROR"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------


class TransactionNotFoundError(NotFoundError):
    default_error_code: str = "TRANSACTION_NOT_FOUND"
    user_message: str = "This transaction does not exist."


class DisputeNotFoundError(NotFoundError):
    default_error_code: str = "DISPUTE_NOT_FOUND"
    user_message: str = "This dispute does not exist."


class PayoutNotFoundError(NotFoundError):
    default_error_code: str = "PAYOUT_NOT_FOUND"
    user_message: str = "This payout does not exist."


class RefundNotFoundError(NotFoundError):
    default_error_code: str = "REFUND_NOT_FOUND"


class ReferenceNotFoundError(NotFoundError):
    """
    Raised when the payment gateway has no payment for a reference, or the
    payment carries no escrow transaction we know.
    """

    default_error_code: str = "REFERENCE_NOT_FOUND"
    user_message: str = "We could not find that payment. Please check the reference."


class EscrowValidationError(ValidationError):
    default_error_code: str = "ESCROW_VALIDATION_ERROR"


# -----------------------------------------------------------------------------
# Conflicts
# -----------------------------------------------------------------------------


class InvalidTransitionError(ConflictError):
    """
    Raised when the requested event is not permitted.

    Covers both a status that does not allow the event and an actor that
    may not trigger it (error_code ACTOR_NOT_PERMITTED).
    """

    default_error_code: str = "INVALID_TRANSITION"
    user_message: str = "This action is not available for the transaction in its current state."


class ConcurrentModificationError(ConflictError):
    """
    Raised when a record changed between read and write.

    Services retry the whole operation a bounded number of times before
    letting this surface.

    Example:
        raise ConcurrentModificationError(
            f"EscrowTransaction {pk} was modified by another process",
            details={"pk": str(pk), "expected_version": 3, "current_version": 5},
        )
    """

    default_error_code: str = "CONCURRENT_MODIFICATION"
    user_message: str = "This transaction was updated by someone else. Please try again."
    is_retryable: bool = True


class LockAcquisitionError(ConflictError):
    """Raised when a distributed lock cannot be acquired within the timeout."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"
    user_message: str = "Another request is being processed. Please try again."
    is_retryable: bool = True


class ReferenceAlreadyUsedError(ConflictError):
    default_error_code: str = "REFERENCE_ALREADY_USED"
    user_message: str = "This payment has already been used for another purchase."


class DisputeAlreadyOpenError(ConflictError):
    default_error_code: str = "DISPUTE_ALREADY_OPEN"
    user_message: str = "A dispute is already open for this transaction."


# -----------------------------------------------------------------------------
# Payment and payout outcomes
# -----------------------------------------------------------------------------


class AmountMismatchError(EscrowError):
    """
    Raised when the amount the gateway collected differs from the stored
    transaction amount. The transaction stays pending and is flagged for
    manual review; this is never retried automatically.
    """

    default_error_code: str = "AMOUNT_MISMATCH"
    http_status: int = 422
    user_message: str = (
        "The amount paid does not match the price. Our team will review the payment."
    )


class PaymentFailedError(EscrowError):
    default_error_code: str = "PAYMENT_FAILED"
    http_status: int = 402
    user_message: str = "The payment was declined. Please try again with a new payment."


class InsufficientPayoutBalanceError(EscrowError):
    default_error_code: str = "INSUFFICIENT_PAYOUT_BALANCE"
    http_status: int = 422
    user_message: str = "You have no completed sales available for payout."


# -----------------------------------------------------------------------------
# Gateway
# -----------------------------------------------------------------------------


class GatewayUnavailableError(ExternalServiceError):
    """Transient gateway failure; nothing was changed, the caller may retry."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    user_message: str = "The payment provider is not responding. Please try again."
    is_retryable: bool = True


class PaymentPendingError(GatewayUnavailableError):
    default_error_code: str = "PAYMENT_PENDING"
    user_message: str = "Your payment is still being processed. Please check again shortly."


class StripeError(ExternalServiceError):
    """
    Base exception for errors translated from the Stripe SDK.

    Attributes:
        stripe_code: Stripe's internal error code
        decline_code: Card decline code (if applicable)
        is_retryable: Whether the operation can be retried
    """

    default_error_code: str = "STRIPE_ERROR"
    http_status: int = 502
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


class StripeCardDeclinedError(StripeError):
    default_error_code: str = "CARD_DECLINED"


class StripeInvalidRequestError(StripeError):
    """Invalid parameters, unknown object, or bad webhook signature."""

    default_error_code: str = "STRIPE_INVALID_REQUEST"

    @property
    def is_missing_resource(self) -> bool:
        return self.stripe_code == "resource_missing"


class StripeInvalidAccountError(StripeError):
    default_error_code: str = "STRIPE_INVALID_ACCOUNT"


class StripeRateLimitError(StripeError):
    default_error_code: str = "STRIPE_RATE_LIMIT"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    default_error_code: str = "STRIPE_API_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True
