"""
URL configuration for the escrow app.

All routes are prefixed with /api/v1/escrow/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("escrow/", include("escrow.urls")),
    ]
"""

from django.urls import path

from escrow import views
from escrow.webhooks.views import gateway_webhook

app_name = "escrow"

urlpatterns = [
    # Party endpoints
    path("entries/<uuid:entry_id>/", views.EscrowEntryDetailView.as_view(), name="entry-detail"),
    path(
        "entries/<uuid:entry_id>/confirm/",
        views.ConfirmCompletionView.as_view(),
        name="entry-confirm",
    ),
    path(
        "entries/<uuid:entry_id>/dispute/",
        views.OpenDisputeView.as_view(),
        name="entry-dispute",
    ),
    # Administrator endpoints
    path(
        "admin/entries/<uuid:entry_id>/release/",
        views.AdminReleaseView.as_view(),
        name="admin-release",
    ),
    path(
        "admin/entries/<uuid:entry_id>/reject-release/",
        views.AdminRejectReleaseView.as_view(),
        name="admin-reject-release",
    ),
    path(
        "admin/entries/<uuid:entry_id>/dispute/review/",
        views.AdminDisputeReviewView.as_view(),
        name="admin-dispute-review",
    ),
    path(
        "admin/entries/<uuid:entry_id>/dispute/resolve/",
        views.AdminResolveDisputeView.as_view(),
        name="admin-dispute-resolve",
    ),
    path(
        "admin/entries/<uuid:entry_id>/dispute/cancel/",
        views.AdminCancelDisputeView.as_view(),
        name="admin-dispute-cancel",
    ),
    path(
        "admin/payouts/<uuid:leg_id>/retry/",
        views.AdminRetryPayoutView.as_view(),
        name="admin-payout-retry",
    ),
    path(
        "admin/refunds/<uuid:leg_id>/retry/",
        views.AdminRetryRefundView.as_view(),
        name="admin-refund-retry",
    ),
    # Reporting
    path("reports/summary/", views.EscrowSummaryView.as_view(), name="report-summary"),
    path(
        "reports/pending-release/",
        views.PendingReleaseView.as_view(),
        name="report-pending-release",
    ),
    path(
        "reports/failed-settlements/",
        views.FailedSettlementsView.as_view(),
        name="report-failed-settlements",
    ),
    path("reports/earnings/", views.OwnerEarningsView.as_view(), name="report-earnings"),
    # Collaborators
    path(
        "rentals/<uuid:rental_id>/status/",
        views.RentalEscrowStatusView.as_view(),
        name="rental-status",
    ),
    # Webhook endpoints
    path("webhooks/gateway/", gateway_webhook, name="gateway-webhook"),
]
