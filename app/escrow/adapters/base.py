"""
Payment gateway contract and result types.

The escrow engine talks to the payment gateway only through the
PaymentGateway protocol. The shipped implementation is StripeAdapter;
tests substitute a MagicMock or any object with the same methods.

Usage:
    from escrow.adapters import get_gateway

    gateway = get_gateway()
    payment = gateway.retrieve_payment("pi_123")
    if payment.status == GatewayPaymentStatus.SUCCEEDED:
        ...
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from django.conf import settings
from django.utils.module_loading import import_string

if TYPE_CHECKING:
    from typing import Any


class GatewayPaymentStatus:
    """Gateway payment states, normalised across providers."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class CreatePaymentParams:
    """
    Parameters for starting a gateway payment.

    Attributes:
        amount: Amount in smallest currency unit
        currency: ISO 4217 currency code
        idempotency_key: Unique key for idempotent creation
        metadata: Key-value pairs attached to the payment; must carry
            escrow_transaction_id
        payment_method_types: Allowed methods at the gateway
    """

    amount: int
    currency: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    payment_method_types: list[str] = field(default_factory=lambda: ["card"])

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if not self.currency:
            raise ValueError("currency is required")


@dataclass
class GatewayPayment:
    """
    A payment as reported by the gateway.

    Attributes:
        reference: Gateway payment id (the escrow payment reference)
        status: GatewayPaymentStatus value
        amount: Amount actually collected, smallest currency unit
        currency: Currency code (lowercase)
        metadata: Metadata attached at creation
        client_secret: Secret for client-side confirmation, when available
        failure_reason: Gateway's decline message for failed payments
        raw_status: Provider-specific status, for logs
    """

    reference: str
    status: str
    amount: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None
    failure_reason: str | None = None
    raw_status: str | None = None

    @property
    def transaction_id(self) -> str | None:
        return self.metadata.get("escrow_transaction_id")


@dataclass
class RefundResult:
    id: str
    amount: int
    currency: str
    status: str
    payment_reference: str


@dataclass
class TransferResult:
    id: str
    amount: int
    currency: str
    destination: str


@runtime_checkable
class PaymentGateway(Protocol):
    """Operations the escrow engine needs from a payment gateway."""

    def create_payment(self, params: CreatePaymentParams) -> GatewayPayment: ...

    def retrieve_payment(self, reference: str) -> GatewayPayment: ...

    def create_refund(
        self,
        reference: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult: ...

    def create_transfer(
        self,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult: ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict[str, Any]: ...


def get_gateway() -> PaymentGateway:
    """Instantiate the gateway configured in ESCROW_PAYMENT_GATEWAY."""
    return import_string(settings.ESCROW_PAYMENT_GATEWAY)()


def is_retryable_gateway_error(error: Exception) -> bool:
    return bool(getattr(error, "is_retryable", False))


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff with 0-25% jitter.

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)
