"""
URL configuration for the Django application.

The `urlpatterns` list routes URLs to views. This is the root URL configuration
that includes all app-specific routes.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/auth/                  - JWT token endpoints (simplejwt)
        token/                     - Obtain access/refresh pair
        token/refresh/             - Refresh access token
    /api/v1/escrow/                - Escrow endpoints
        entries/{id}/              - Entry detail with disputes and timeline
        entries/{id}/confirm/      - Renter/owner completion confirmation
        entries/{id}/dispute/      - Open a dispute
        admin/entries/{id}/release/          - Administrator release
        admin/entries/{id}/reject-release/   - Administrator rejection
        admin/entries/{id}/dispute/review/   - Move dispute under review
        admin/entries/{id}/dispute/resolve/  - Resolve dispute
        admin/entries/{id}/dispute/cancel/   - Cancel dispute
        admin/payouts/{id}/retry/  - Requeue a failed payout
        admin/refunds/{id}/retry/  - Requeue a failed refund
        reports/summary/           - Counts per status
        reports/pending-release/   - Entries due for auto-release
        reports/failed-settlements/ - Failed payouts and refunds
        reports/earnings/          - Owner lifetime earnings
        rentals/{id}/status/       - Escrow status for a rental
        webhooks/gateway/          - Payment gateway webhook endpoint (POST)

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
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Authentication (simplejwt)
    path("auth/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    # Escrow
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
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Rental Escrow Admin"
admin.site.site_title = "Escrow Admin Portal"
admin.site.index_title = "Escrow custody and settlement"
