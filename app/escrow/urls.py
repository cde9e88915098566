"""
URL configuration for the escrow API.

URL Structure:
    Transactions:
        /transactions/                               GET, POST
        /transactions/{id}/                          GET
        /transactions/{id}/payment/                  POST
        /transactions/{id}/cancel/                   POST
        /transactions/{id}/ship/                     POST
        /transactions/{id}/confirm-delivery/         POST
        /transactions/{id}/confirm-satisfaction/     POST
        /transactions/{id}/disputes/                 POST
        /transactions/{id}/chat-summary/             GET

    Disputes:
        /disputes/                                   GET
        /disputes/{id}/                              GET
        /disputes/{id}/evidence/                     POST
        /disputes/{id}/review/                       POST
        /disputes/{id}/notes/                        POST
        /disputes/{id}/resolve/                      POST
        /disputes/{id}/close/                        POST

    Payouts:
        /payouts/                                    GET, POST
        /payouts/balance/                            GET
        /payouts/pending/                            GET
        /payouts/{id}/                               GET
        /payouts/{id}/processed/                     POST
        /payouts/{id}/retry/                         POST
        /payouts/{id}/cancel/                        POST

    Events:
        /events/                                     GET
        /events/acknowledge/                         POST

    Other:
        /refunds/{id}/retry/                         POST
        /payments/verify/                            POST
        /webhooks/stripe/                            POST
        /admin/stats/                                GET

All URLs are prefixed with /api/v1/escrow/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from escrow.views import (
    DisputeViewSet,
    EscrowStatsView,
    EventViewSet,
    PaymentVerifyView,
    PayoutViewSet,
    RefundRetryView,
    StripeWebhookView,
    TransactionViewSet,
)

router = DefaultRouter()
router.register(r"transactions", TransactionViewSet, basename="transaction")
router.register(r"disputes", DisputeViewSet, basename="dispute")
router.register(r"payouts", PayoutViewSet, basename="payout")
router.register(r"events", EventViewSet, basename="event")

app_name = "escrow"

urlpatterns = [
    path("", include(router.urls)),
    path("refunds/<uuid:refund_id>/retry/", RefundRetryView.as_view(), name="refund-retry"),
    path("payments/verify/", PaymentVerifyView.as_view(), name="payment-verify"),
    # Stripe webhook (no auth, signature verified)
    path("webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("admin/stats/", EscrowStatsView.as_view(), name="stats"),
]
