"""
URL configuration for the escrow service.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/auth/token/            - Obtain JWT pair
    /api/v1/auth/token/refresh/    - Refresh access token
    /api/v1/escrow/                - Escrow endpoints (see escrow/urls.py)
        transactions/              - Escrow transactions and lifecycle actions
        disputes/                  - Disputes, evidence and arbitration
        payouts/                   - Seller payouts and balance
        refunds/{id}/retry/        - Retry a failed refund
        payments/verify/           - Verify a gateway payment
        webhooks/stripe/           - Stripe webhook endpoint (POST)
        admin/stats/               - Escrow dashboard statistics

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("auth/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("escrow/", include("escrow.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Escrow Admin"
admin.site.site_title = "Escrow Admin Portal"
admin.site.index_title = "Transactions, disputes and payouts"
