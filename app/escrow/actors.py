"""
Explicit actor identity for escrow operations.

Every engine call receives the acting party as an Actor value instead of
reading request or session state. The API layer builds one from
``request.user``; scheduled sweeps and the payment verifier use
``Actor.system()``.

Usage:
    from escrow.actors import Actor

    actor = Actor.from_user(request.user)
    TransactionService.mark_shipped(txn_id, actor=actor)

    TransactionService.transition(txn_id, EscrowEventName.CONFIRM_DELIVERY, Actor.system())
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from escrow.models import EscrowTransaction


@dataclass(frozen=True)
class Actor:
    """
    The party performing an escrow operation.

    Attributes:
        user_id: Primary key of the acting user (None for the system)
        is_arbiter: Staff users act as dispute arbiters and payout admins
        is_system: Scheduled sweeps and gateway reconciliation
    """

    user_id: Any = None
    is_arbiter: bool = False
    is_system: bool = False

    @classmethod
    def from_user(cls, user) -> Actor:
        return cls(user_id=user.pk, is_arbiter=bool(user.is_staff))

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id=None, is_system=True)

    def is_buyer_of(self, transaction: EscrowTransaction) -> bool:
        return self.user_id is not None and self.user_id == transaction.buyer_id

    def is_seller_of(self, transaction: EscrowTransaction) -> bool:
        return self.user_id is not None and self.user_id == transaction.seller_id

    def is_party_to(self, transaction: EscrowTransaction) -> bool:
        return self.is_buyer_of(transaction) or self.is_seller_of(transaction)

    def can_arbitrate(self, transaction: EscrowTransaction) -> bool:
        """Arbiters never rule on a transaction they are a party to."""
        return self.is_arbiter and not self.is_party_to(transaction)

    def role_for(self, transaction: EscrowTransaction) -> str | None:
        if self.is_system:
            return "system"
        if self.is_buyer_of(transaction):
            return "buyer"
        if self.is_seller_of(transaction):
            return "seller"
        if self.is_arbiter:
            return "arbiter"
        return None

    @property
    def label(self) -> str:
        """Short identity for logs and audit payloads."""
        if self.is_system:
            return "system"
        return f"user:{self.user_id}"
