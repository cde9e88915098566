"""
Workers for background escrow processing.

- AutoConfirm: advances shipped and delivered transactions after their
  waiting windows
- PayoutExecutor: executes pending payouts through the gateway and
  requests payouts for just-completed transactions

Usage:
    from escrow.workers import (
        auto_advance_transaction,
        execute_single_payout,
        process_auto_confirmations,
        process_pending_payouts,
    )
"""

from escrow.workers.auto_confirm import (
    auto_advance_transaction,
    process_auto_confirmations,
)
from escrow.workers.payout_executor import (
    auto_payout_transaction,
    execute_single_payout,
    process_pending_payouts,
)

__all__ = [
    # Auto Confirm
    "auto_advance_transaction",
    "process_auto_confirmations",
    # Payout Executor
    "auto_payout_transaction",
    "execute_single_payout",
    "process_pending_payouts",
]
