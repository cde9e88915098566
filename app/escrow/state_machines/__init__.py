"""
State machine enums for escrow models.

The transitions themselves live on the models (django-fsm); this package
only defines the states and choice enums they move between.
"""

from escrow.state_machines.states import (
    CommissionRefundPolicy,
    DeliveryOption,
    DisputeOutcome,
    DisputeParty,
    DisputeReason,
    DisputeStatus,
    EscrowEventName,
    EscrowStatus,
    EventType,
    PaymentMethod,
    PayoutStatus,
    RefundStatus,
)

__all__ = [
    "CommissionRefundPolicy",
    "DeliveryOption",
    "DisputeOutcome",
    "DisputeParty",
    "DisputeReason",
    "DisputeStatus",
    "EscrowEventName",
    "EscrowStatus",
    "EventType",
    "PaymentMethod",
    "PayoutStatus",
    "RefundStatus",
]
