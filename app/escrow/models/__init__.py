"""
Escrow domain models.

- EscrowTransaction: a purchase held in escrow, with its FSM lifecycle
- Dispute / DisputeEvidence: disagreements and per-party evidence
- PayoutRequest / PayoutAccount: seller payouts and their destinations
- Refund: money returned to a buyer by dispute resolution
- EscrowEvent: outbound event outbox for the notification collaborator
"""

from escrow.models.dispute import Dispute, DisputeEvidence
from escrow.models.event import EscrowEvent
from escrow.models.payout import PayoutAccount, PayoutRequest
from escrow.models.refund import Refund
from escrow.models.transaction import EscrowTransaction

__all__ = [
    "Dispute",
    "DisputeEvidence",
    "EscrowEvent",
    "EscrowTransaction",
    "PayoutAccount",
    "PayoutRequest",
    "Refund",
]
