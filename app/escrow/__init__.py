"""
Escrow app: holds buyer funds between payment and delivery.

This app handles:
- The escrow transaction lifecycle (pending → paid → shipped → delivered → completed)
- Payment verification against the payment gateway
- Commission and seller payout computation
- Dispute lifecycle and arbitration
- Seller payout requests and execution

Related collaborators (outside this app):
    - Buy flow: creates transactions
    - Notifications: consume EscrowEvent rows / escrow_event_committed signal
    - Messaging: reads transaction summaries to seed chat context

Usage:
    from escrow.services import TransactionService, PaymentService

    txn = TransactionService.create_transaction(params, actor=Actor.from_user(buyer))
    PaymentService.verify(reference="pi_123")
"""
