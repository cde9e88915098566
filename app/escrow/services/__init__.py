"""
Escrow services.

- TransactionService: creation and the state machine contract
- PaymentService: payment initiation, verification and webhooks
- DisputeService: disputes, evidence and arbitration
- RefundService: executes dispute refunds at the gateway
- PayoutService: payout requests, processing and execution
- EscrowQueryService: read-side queries and dashboard stats
- EventService: polling and acknowledging outbox events
"""

from escrow.services.base import EscrowService
from escrow.services.dispute_service import DisputeService
from escrow.services.event_service import EventService
from escrow.services.payment_service import PaymentService
from escrow.services.payout_service import PayoutService
from escrow.services.query_service import EscrowQueryService
from escrow.services.refund_service import RefundService
from escrow.services.transaction_service import TransactionService

__all__ = [
    "DisputeService",
    "EscrowQueryService",
    "EscrowService",
    "EventService",
    "PaymentService",
    "PayoutService",
    "RefundService",
    "TransactionService",
]
