"""
ViewSets for the escrow API.

URL Structure:
    /api/v1/escrow/transactions/                                 GET, POST
    /api/v1/escrow/transactions/{id}/                            GET
    /api/v1/escrow/transactions/{id}/payment/                    POST
    /api/v1/escrow/transactions/{id}/cancel/                     POST
    /api/v1/escrow/transactions/{id}/ship/                       POST
    /api/v1/escrow/transactions/{id}/confirm-delivery/           POST
    /api/v1/escrow/transactions/{id}/confirm-satisfaction/       POST
    /api/v1/escrow/transactions/{id}/disputes/                   POST
    /api/v1/escrow/transactions/{id}/chat-summary/               GET
    /api/v1/escrow/disputes/                                     GET
    /api/v1/escrow/disputes/{id}/                                GET
    /api/v1/escrow/disputes/{id}/evidence|review|notes|resolve|close/  POST
    /api/v1/escrow/payouts/                                      GET, POST
    /api/v1/escrow/payouts/balance/                              GET
    /api/v1/escrow/payouts/pending/                              GET (staff)
    /api/v1/escrow/payouts/{id}/                                 GET
    /api/v1/escrow/payouts/{id}/processed|retry|cancel/          POST
    /api/v1/escrow/refunds/{id}/retry/                           POST (staff)
    /api/v1/escrow/payments/verify/                              POST
    /api/v1/escrow/webhooks/stripe/                              POST (no auth)
    /api/v1/escrow/admin/stats/                                  GET (staff)
    /api/v1/escrow/events/                                       GET
    /api/v1/escrow/events/acknowledge/                           POST

Design Decisions:
    - Views translate HTTP into service calls with an explicit Actor; all
      permission and state checks happen in the services
    - Service errors are rendered by core.exception_handler (reason
      strings for users, raw taxonomy for staff)
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from escrow.actors import Actor
from escrow.exceptions import StripeInvalidRequestError
from escrow.serializers import (
    DisputeCreateSerializer,
    DisputeEvidenceSerializer,
    DisputeListSerializer,
    DisputeNotesSerializer,
    DisputeResolveSerializer,
    DisputeSerializer,
    EscrowEventSerializer,
    EscrowStatsSerializer,
    EventAcknowledgeSerializer,
    EvidenceCreateSerializer,
    PaymentInitiationSerializer,
    PaymentVerifySerializer,
    PayoutCancelSerializer,
    PayoutCreateSerializer,
    PayoutProcessedSerializer,
    PayoutSerializer,
    RefundSerializer,
    SellerBalanceSerializer,
    TransactionCreateSerializer,
    TransactionSerializer,
    TransactionShipSerializer,
    VerificationResultSerializer,
)
from escrow.services import (
    DisputeService,
    EscrowQueryService,
    EventService,
    PaymentService,
    PayoutService,
    RefundService,
    TransactionService,
)

logger = logging.getLogger(__name__)

UUID_LOOKUP_REGEX = "[0-9a-fA-F-]{36}"


def actor_for(request) -> Actor:
    return Actor.from_user(request.user)


# =============================================================================
# Transactions
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrow_transactions",
        summary="List my escrow transactions",
        tags=["Escrow - Transactions"],
        parameters=[
            OpenApiParameter("role", str, enum=["buyer", "seller"]),
            OpenApiParameter("status", str),
        ],
    ),
    create=extend_schema(
        operation_id="create_escrow_transaction",
        summary="Open an escrow transaction",
        tags=["Escrow - Transactions"],
        request=TransactionCreateSerializer,
        responses={201: TransactionSerializer},
    ),
    retrieve=extend_schema(
        operation_id="get_escrow_transaction",
        summary="Get escrow transaction",
        tags=["Escrow - Transactions"],
    ),
)
class TransactionViewSet(viewsets.GenericViewSet):
    """
    Escrow transactions of the current user.

    list:
        Transactions the user bought or sold, newest first. Filter with
        ?role=buyer|seller and ?status=<status>.

    create:
        Open a PENDING transaction as the buyer.

    payment:
        Start (or fetch) the gateway payment the buyer completes.

    cancel / ship / confirm_delivery / confirm_satisfaction:
        Lifecycle events; repeating one that already took effect is a no-op.

    disputes:
        Open a dispute and freeze the transaction.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = TransactionSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX

    def get_queryset(self):
        return EscrowQueryService.transactions_for_user(
            self.request.user.pk,
            role=self.request.query_params.get("role") or None,
            status=self.request.query_params.get("status") or None,
        )

    def list(self, request):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = self.get_serializer(page, many=True)
            return self.get_paginated_response(serializer.data)
        return Response(self.get_serializer(queryset, many=True).data)

    def create(self, request):
        serializer = TransactionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        txn = TransactionService.create_transaction(
            serializer.to_params(buyer_id=request.user.pk),
            actor=actor_for(request),
        )
        return Response(self.get_serializer(txn).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        txn = EscrowQueryService.transaction_detail(pk, actor_for(request))
        return Response(self.get_serializer(txn).data)

    @extend_schema(
        operation_id="initiate_escrow_payment",
        summary="Start payment",
        tags=["Escrow - Transactions"],
        request=None,
        responses={201: PaymentInitiationSerializer},
    )
    @action(detail=True, methods=["post"])
    def payment(self, request, pk=None):
        initiation = PaymentService.initiate_payment(pk, actor_for(request))
        return Response(PaymentInitiationSerializer(initiation).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="cancel_escrow_transaction",
        summary="Cancel unpaid transaction",
        tags=["Escrow - Transactions"],
        request=None,
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        txn = TransactionService.cancel(pk, actor_for(request))
        return Response(self.get_serializer(txn).data)

    @extend_schema(
        operation_id="ship_escrow_transaction",
        summary="Mark shipped",
        tags=["Escrow - Transactions"],
        request=TransactionShipSerializer,
    )
    @action(detail=True, methods=["post"])
    def ship(self, request, pk=None):
        serializer = TransactionShipSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        txn = TransactionService.mark_shipped(
            pk,
            actor_for(request),
            tracking_number=serializer.validated_data.get("tracking_number") or None,
        )
        return Response(self.get_serializer(txn).data)

    @extend_schema(
        operation_id="confirm_escrow_delivery",
        summary="Confirm delivery",
        tags=["Escrow - Transactions"],
        request=None,
    )
    @action(detail=True, methods=["post"], url_path="confirm-delivery")
    def confirm_delivery(self, request, pk=None):
        txn = TransactionService.confirm_delivery(pk, actor_for(request))
        return Response(self.get_serializer(txn).data)

    @extend_schema(
        operation_id="confirm_escrow_satisfaction",
        summary="Confirm satisfaction and release funds",
        tags=["Escrow - Transactions"],
        request=None,
    )
    @action(detail=True, methods=["post"], url_path="confirm-satisfaction")
    def confirm_satisfaction(self, request, pk=None):
        txn = TransactionService.confirm_satisfaction(pk, actor_for(request))
        return Response(self.get_serializer(txn).data)

    @extend_schema(
        operation_id="open_escrow_dispute",
        summary="Open dispute",
        tags=["Escrow - Disputes"],
        request=DisputeCreateSerializer,
        responses={201: DisputeSerializer},
    )
    @action(detail=True, methods=["post"])
    def disputes(self, request, pk=None):
        serializer = DisputeCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        dispute = DisputeService.open_dispute(
            pk,
            actor_for(request),
            reason=data["reason"],
            description=data["description"],
            evidence=data.get("evidence"),
        )
        return Response(
            DisputeSerializer(dispute, context={"request": request}).data,
            status=status.HTTP_201_CREATED,
        )

    @extend_schema(
        operation_id="get_escrow_chat_summary",
        summary="Transaction summary for chat context",
        tags=["Escrow - Transactions"],
    )
    @action(detail=True, methods=["get"], url_path="chat-summary")
    def chat_summary(self, request, pk=None):
        return Response(EscrowQueryService.chat_summary(pk, actor_for(request)))


# =============================================================================
# Disputes
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrow_disputes",
        summary="List disputes",
        description="Parties see their own disputes; staff see the arbitration queue.",
        tags=["Escrow - Disputes"],
        parameters=[OpenApiParameter("status", str)],
    ),
    retrieve=extend_schema(
        operation_id="get_escrow_dispute",
        summary="Get dispute",
        tags=["Escrow - Disputes"],
    ),
)
class DisputeViewSet(viewsets.GenericViewSet):
    """
    Disputes and arbitration.

    evidence:
        Either party adds evidence while the dispute is open or under review.

    review / notes / resolve / close:
        Arbiter (staff) actions.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = DisputeSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX

    def get_queryset(self):
        if self.request.user.is_staff:
            return EscrowQueryService.disputes_by_status(
                self.request.query_params.get("status") or None,
                actor_for(self.request),
            )
        return EscrowQueryService.disputes_for_user(self.request.user.pk)

    def list(self, request):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)
        context = self.get_serializer_context()
        if page is not None:
            return self.get_paginated_response(DisputeListSerializer(page, many=True, context=context).data)
        return Response(DisputeListSerializer(queryset, many=True, context=context).data)

    def retrieve(self, request, pk=None):
        dispute = EscrowQueryService.dispute_detail(pk, actor_for(request))
        return Response(self.get_serializer(dispute).data)

    @extend_schema(
        operation_id="submit_escrow_dispute_evidence",
        summary="Submit evidence",
        tags=["Escrow - Disputes"],
        request=EvidenceCreateSerializer,
        responses={201: DisputeEvidenceSerializer},
    )
    @action(detail=True, methods=["post"])
    def evidence(self, request, pk=None):
        serializer = EvidenceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        record = DisputeService.submit_evidence(pk, actor_for(request), serializer.validated_data["evidence"])
        return Response(DisputeEvidenceSerializer(record).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="start_escrow_dispute_review",
        summary="Start review",
        tags=["Escrow - Arbitration"],
        request=None,
    )
    @action(detail=True, methods=["post"])
    def review(self, request, pk=None):
        dispute = DisputeService.start_review(pk, actor_for(request))
        return Response(self.get_serializer(dispute).data)

    @extend_schema(
        operation_id="add_escrow_dispute_notes",
        summary="Add internal notes",
        tags=["Escrow - Arbitration"],
        request=DisputeNotesSerializer,
    )
    @action(detail=True, methods=["post"])
    def notes(self, request, pk=None):
        serializer = DisputeNotesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        dispute = DisputeService.add_admin_notes(pk, actor_for(request), serializer.validated_data["notes"])
        return Response(self.get_serializer(dispute).data)

    @extend_schema(
        operation_id="resolve_escrow_dispute",
        summary="Resolve dispute",
        tags=["Escrow - Arbitration"],
        request=DisputeResolveSerializer,
    )
    @action(detail=True, methods=["post"])
    def resolve(self, request, pk=None):
        serializer = DisputeResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        dispute = DisputeService.resolve(
            pk,
            outcome=data["outcome"],
            refund_amount=data.get("refund_amount"),
            admin_notes=data["admin_notes"],
            actor=actor_for(request),
            resolution=data["resolution"],
        )
        return Response(self.get_serializer(dispute).data)

    @extend_schema(
        operation_id="close_escrow_dispute",
        summary="Close resolved dispute",
        tags=["Escrow - Arbitration"],
        request=None,
    )
    @action(detail=True, methods=["post"])
    def close(self, request, pk=None):
        dispute = DisputeService.close(pk, actor_for(request))
        return Response(self.get_serializer(dispute).data)


# =============================================================================
# Payouts
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrow_payouts",
        summary="Payout history",
        tags=["Escrow - Payouts"],
    ),
    create=extend_schema(
        operation_id="request_escrow_payout",
        summary="Request payout",
        tags=["Escrow - Payouts"],
        request=PayoutCreateSerializer,
        responses={201: PayoutSerializer},
    ),
    retrieve=extend_schema(
        operation_id="get_escrow_payout",
        summary="Get payout",
        tags=["Escrow - Payouts"],
    ),
)
class PayoutViewSet(viewsets.GenericViewSet):
    """
    Seller payouts.

    create:
        Claim completed, unpaid sales into a payout request. Staff may pass
        seller_id to request on a seller's behalf.

    balance:
        Earnings, available balance and payout totals.

    pending / processed / retry:
        Staff processing queue and actions.

    cancel:
        Seller or staff cancels a pending or failed payout; its sales become
        available again.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = PayoutSerializer
    lookup_value_regex = UUID_LOOKUP_REGEX

    def get_queryset(self):
        return EscrowQueryService.payout_history(self.request.user.pk)

    def list(self, request):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)

    def create(self, request):
        serializer = PayoutCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        seller_id = data.get("seller_id") if request.user.is_staff else None
        payout = PayoutService.request_payout(
            seller_id or request.user.pk,
            actor_for(request),
            amount=data.get("amount"),
            currency=data.get("currency"),
        )
        return Response(self.get_serializer(payout).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        payout = EscrowQueryService.payout_detail(pk, actor_for(request))
        return Response(self.get_serializer(payout).data)

    @extend_schema(
        operation_id="get_escrow_seller_balance",
        summary="Seller balance",
        tags=["Escrow - Payouts"],
        responses={200: SellerBalanceSerializer},
    )
    @action(detail=False, methods=["get"])
    def balance(self, request):
        balance = PayoutService.seller_balance(request.user.pk, currency=request.query_params.get("currency"))
        return Response(SellerBalanceSerializer(balance).data)

    @extend_schema(
        operation_id="list_escrow_pending_payouts",
        summary="Payout processing queue",
        tags=["Escrow - Arbitration"],
    )
    @action(detail=False, methods=["get"])
    def pending(self, request):
        queryset = EscrowQueryService.pending_payouts(actor_for(request))
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)

    @extend_schema(
        operation_id="mark_escrow_payout_processed",
        summary="Record manual payout outcome",
        tags=["Escrow - Arbitration"],
        request=PayoutProcessedSerializer,
    )
    @action(detail=True, methods=["post"])
    def processed(self, request, pk=None):
        serializer = PayoutProcessedSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        payout = PayoutService.mark_processed(
            pk,
            success=data["success"],
            actor=actor_for(request),
            reference=data.get("reference"),
            failure_reason=data.get("failure_reason"),
        )
        return Response(self.get_serializer(payout).data)

    @extend_schema(
        operation_id="retry_escrow_payout",
        summary="Retry failed payout",
        tags=["Escrow - Arbitration"],
        request=None,
    )
    @action(detail=True, methods=["post"])
    def retry(self, request, pk=None):
        payout = PayoutService.retry_payout(pk, actor_for(request))
        return Response(self.get_serializer(payout).data)

    @extend_schema(
        operation_id="cancel_escrow_payout",
        summary="Cancel payout",
        tags=["Escrow - Payouts"],
        request=PayoutCancelSerializer,
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = PayoutCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payout = PayoutService.cancel_payout(
            pk,
            actor_for(request),
            reason=serializer.validated_data.get("reason") or None,
        )
        return Response(self.get_serializer(payout).data)


# =============================================================================
# Refunds, payments, webhooks & stats
# =============================================================================


class RefundRetryView(APIView):
    """
    Re-queue a failed dispute refund.

    POST /api/v1/escrow/refunds/{id}/retry/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="retry_escrow_refund",
        summary="Retry failed refund",
        tags=["Escrow - Arbitration"],
        request=None,
        responses={202: RefundSerializer},
    )
    def post(self, request, refund_id):
        refund = RefundService.retry_refund(refund_id, actor_for(request))
        return Response(RefundSerializer(refund).data, status=status.HTTP_202_ACCEPTED)


class PaymentVerifyView(APIView):
    """
    Verify a payment with the gateway and bind it to its transaction.

    POST /api/v1/escrow/payments/verify/

    Request body:
        {"reference": "pi_3Nk..."}

    Returns:
        {"success": true, "transaction_id": "...", "amount_paid": 10000,
         "already_verified": false}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="verify_escrow_payment",
        summary="Verify payment",
        tags=["Escrow - Payments"],
        request=PaymentVerifySerializer,
        responses={200: VerificationResultSerializer},
    )
    def post(self, request):
        serializer = PaymentVerifySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = PaymentService.verify(serializer.validated_data["reference"])
        return Response(VerificationResultSerializer(result).data)


class StripeWebhookView(APIView):
    """
    Stripe webhook endpoint.

    POST /api/v1/escrow/webhooks/stripe/

    Verifies the Stripe-Signature header and queues verification for
    payment_intent.succeeded. Always answers quickly; the work happens in
    the verify_payment_reference task.
    """

    permission_classes = [AllowAny]
    authentication_classes: list = []

    @extend_schema(exclude=True)
    def post(self, request):
        signature = request.META.get("HTTP_STRIPE_SIGNATURE", "")
        try:
            reference = PaymentService.handle_webhook(request.body, signature)
        except StripeInvalidRequestError as e:
            logger.warning("Rejected Stripe webhook", extra={"error": str(e)})
            return Response({"error": "Invalid webhook"}, status=status.HTTP_400_BAD_REQUEST)

        return Response({"received": True, "queued": reference is not None})


class EscrowStatsView(APIView):
    """
    Platform-wide escrow dashboard numbers (staff only).

    GET /api/v1/escrow/admin/stats/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_escrow_stats",
        summary="Escrow statistics",
        tags=["Escrow - Arbitration"],
        responses={200: EscrowStatsSerializer},
    )
    def get(self, request):
        stats = EscrowQueryService.escrow_stats(actor_for(request))
        return Response(EscrowStatsSerializer(stats).data)


# =============================================================================
# Outbox events
# =============================================================================


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrow_events",
        summary="Undispatched events",
        tags=["Escrow - Events"],
    ),
)
class EventViewSet(viewsets.GenericViewSet):
    """
    Polling access to the event outbox.

    list:
        Events addressed to the caller that have not been acknowledged,
        oldest first. Staff also receive the admin channel.

    acknowledge:
        Mark delivered events as dispatched.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = EscrowEventSerializer

    def get_queryset(self):
        return EventService.pending_events(actor_for(self.request))

    def list(self, request):
        queryset = self.get_queryset()
        page = self.paginate_queryset(queryset)
        if page is not None:
            return self.get_paginated_response(self.get_serializer(page, many=True).data)
        return Response(self.get_serializer(queryset, many=True).data)

    @extend_schema(
        operation_id="acknowledge_escrow_events",
        summary="Acknowledge events",
        tags=["Escrow - Events"],
        request=EventAcknowledgeSerializer,
    )
    @action(detail=False, methods=["post"])
    def acknowledge(self, request):
        serializer = EventAcknowledgeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        acknowledged = EventService.acknowledge(serializer.validated_data["event_ids"], actor_for(request))
        return Response({"acknowledged": acknowledged})
