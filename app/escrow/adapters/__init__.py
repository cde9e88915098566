"""
Payment gateway adapters for the escrow engine.

- PaymentGateway: Protocol every gateway implements
- StripeAdapter: Stripe PaymentIntents, Refunds and Connect Transfers
- get_gateway(): Gateway configured by ESCROW_PAYMENT_GATEWAY
"""

from escrow.adapters.base import (
    CreatePaymentParams,
    GatewayPayment,
    GatewayPaymentStatus,
    PaymentGateway,
    RefundResult,
    TransferResult,
    backoff_delay,
    get_gateway,
    is_retryable_gateway_error,
)
from escrow.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "CreatePaymentParams",
    "GatewayPayment",
    "GatewayPaymentStatus",
    "PaymentGateway",
    "RefundResult",
    "StripeAdapter",
    "TransferResult",
    "backoff_delay",
    "get_gateway",
    "is_retryable_gateway_error",
]
