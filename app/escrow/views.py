"""
DRF views for the escrow app.

Endpoints:
    Parties (renter or owner of the entry):
        GET  /api/v1/escrow/entries/{id}/                 Entry detail
        POST /api/v1/escrow/entries/{id}/confirm/         Confirm completion
        POST /api/v1/escrow/entries/{id}/dispute/         Open a dispute

    Administrators (is_staff):
        POST /api/v1/escrow/admin/entries/{id}/release/          Release to owner
        POST /api/v1/escrow/admin/entries/{id}/reject-release/   Refuse release
        POST /api/v1/escrow/admin/entries/{id}/dispute/review/   Mark under review
        POST /api/v1/escrow/admin/entries/{id}/dispute/resolve/  Resolve dispute
        POST /api/v1/escrow/admin/entries/{id}/dispute/cancel/   Cancel dispute
        POST /api/v1/escrow/admin/payouts/{id}/retry/            Retry failed payout
        POST /api/v1/escrow/admin/refunds/{id}/retry/            Retry failed refund

    Reporting:
        GET /api/v1/escrow/reports/summary/               Totals (admin)
        GET /api/v1/escrow/reports/pending-release/       Awaiting admin (admin)
        GET /api/v1/escrow/reports/failed-settlements/    Failed legs (admin)
        GET /api/v1/escrow/reports/earnings/              Owner lifetime earnings

    Collaborators:
        GET /api/v1/escrow/rentals/{rental_id}/status/    Escrow status of a rental

Domain errors raised by the services are translated by error_response():
404 not found, 409 state conflict, 400 validation, 502 gateway.
"""

from __future__ import annotations

import logging

from django.contrib.auth import get_user_model
from django.shortcuts import get_object_or_404
from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationError,
)

from escrow.exceptions import AlreadyReleasedError
from escrow.models import EscrowEntry, Payout, Refund
from escrow.permissions import IsEntryParty, IsEntryPartyOrAdmin, party_for
from escrow.serializers import (
    AdminNoteSerializer,
    ConfirmCompletionSerializer,
    DisputeSerializer,
    EarningsQuerySerializer,
    EscrowEntryDetailSerializer,
    EscrowEntrySerializer,
    EscrowSummarySerializer,
    OpenDisputeSerializer,
    OwnerEarningsSerializer,
    PayoutSerializer,
    RefundSerializer,
    RejectReleaseSerializer,
    ReleaseSerializer,
    RentalStatusSerializer,
    ResolveDisputeSerializer,
)
from escrow.services import (
    ConfirmationService,
    DisputeService,
    EscrowLedgerService,
    EscrowReportingService,
    SettlementService,
)

logger = logging.getLogger(__name__)

User = get_user_model()

ERROR_STATUS_CODES = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
]


def error_response(exc: BaseApplicationError) -> Response:
    """Translate a domain error into an error response."""
    for exc_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_class):
            return Response(exc.to_dict(), status=status_code)
    return Response(exc.to_dict(), status=status.HTTP_400_BAD_REQUEST)


class EscrowAPIView(APIView):
    """
    Base view for escrow endpoints.

    Domain errors are answered through error_response(); everything else
    goes to DRF's default handling.
    """

    permission_classes = [IsAuthenticated]

    def handle_exception(self, exc):
        if isinstance(exc, BaseApplicationError):
            logger.info(
                f"Escrow request rejected: {exc.error_code}",
                extra={
                    "view": type(self).__name__,
                    "error_code": exc.error_code,
                    "user_id": getattr(self.request.user, "pk", None),
                },
            )
            return error_response(exc)
        return super().handle_exception(exc)

    def get_entry(self, entry_id) -> EscrowEntry:
        """Load the entry and run object permissions against it."""
        entry = EscrowLedgerService.get_entry(entry_id)
        self.check_object_permissions(self.request, entry)
        return entry


# =============================================================================
# Party Endpoints
# =============================================================================


class EscrowEntryDetailView(EscrowAPIView):
    """
    GET /api/v1/escrow/entries/{id}/

    Entry with settlement legs, disputes and timeline. Visible to both
    parties and to staff.
    """

    permission_classes = [IsAuthenticated, IsEntryPartyOrAdmin]

    @extend_schema(
        operation_id="get_escrow_entry",
        summary="Get escrow entry",
        responses={200: EscrowEntryDetailSerializer},
        tags=["Escrow"],
    )
    def get(self, request, entry_id):
        entry = self.get_entry(entry_id)
        return Response(EscrowEntryDetailSerializer(entry).data)


class ConfirmCompletionView(EscrowAPIView):
    """
    POST /api/v1/escrow/entries/{id}/confirm/

    Records the caller's completion confirmation. Which flag is set is
    decided by the caller's side of the rental.

    Request body:
        {"note": "Returned in good condition"}
    """

    permission_classes = [IsAuthenticated, IsEntryParty]

    @extend_schema(
        operation_id="confirm_escrow_completion",
        summary="Confirm rental completion",
        request=ConfirmCompletionSerializer,
        responses={
            200: EscrowEntrySerializer,
            400: OpenApiResponse(description="Note too short"),
            409: OpenApiResponse(description="Entry not held or disputed"),
        },
        tags=["Escrow"],
    )
    def post(self, request, entry_id):
        entry = self.get_entry(entry_id)
        serializer = ConfirmCompletionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry = ConfirmationService.confirm_by_party(
            entry.id,
            party=party_for(entry, request.user),
            note=serializer.validated_data["note"],
            actor=request.user,
        )
        return Response(EscrowEntrySerializer(entry).data)


class OpenDisputeView(EscrowAPIView):
    """
    POST /api/v1/escrow/entries/{id}/dispute/

    Request body:
        {"reason": "The camera lens was cracked on return"}
    """

    permission_classes = [IsAuthenticated, IsEntryParty]

    @extend_schema(
        operation_id="open_escrow_dispute",
        summary="Open a dispute",
        request=OpenDisputeSerializer,
        responses={
            201: EscrowEntrySerializer,
            400: OpenApiResponse(description="Reason too short"),
            409: OpenApiResponse(description="Entry not held"),
        },
        tags=["Escrow"],
    )
    def post(self, request, entry_id):
        entry = self.get_entry(entry_id)
        serializer = OpenDisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry = DisputeService.open_dispute(
            entry.id,
            opened_by=request.user,
            reason=serializer.validated_data["reason"],
        )
        return Response(EscrowEntrySerializer(entry).data, status=status.HTTP_201_CREATED)


# =============================================================================
# Administrator Endpoints
# =============================================================================


class AdminReleaseView(EscrowAPIView):
    """
    POST /api/v1/escrow/admin/entries/{id}/release/

    A release that loses to a concurrent release is answered with 200 and
    {"status": "already_handled"}.
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="admin_release_escrow",
        summary="Release escrow to owner",
        request=ReleaseSerializer,
        responses={
            200: EscrowEntrySerializer,
            400: OpenApiResponse(description="Note too short"),
            409: OpenApiResponse(description="Not held, disputed, or not confirmed"),
        },
        tags=["Escrow - Admin"],
    )
    def post(self, request, entry_id):
        serializer = ReleaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            entry = EscrowLedgerService.release(
                entry_id,
                actor=request.user,
                note=serializer.validated_data["note"],
                override_confirmation_gate=serializer.validated_data[
                    "override_confirmation_gate"
                ],
            )
        except AlreadyReleasedError:
            return Response({"status": "already_handled"})

        return Response(EscrowEntrySerializer(entry).data)


class AdminRejectReleaseView(EscrowAPIView):
    """POST /api/v1/escrow/admin/entries/{id}/reject-release/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="admin_reject_escrow_release",
        summary="Refuse release",
        request=RejectReleaseSerializer,
        responses={200: EscrowEntrySerializer},
        tags=["Escrow - Admin"],
    )
    def post(self, request, entry_id):
        serializer = RejectReleaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry = EscrowLedgerService.reject_release(
            entry_id,
            admin=request.user,
            reason=serializer.validated_data["reason"],
        )
        return Response(EscrowEntrySerializer(entry).data)


class AdminDisputeReviewView(EscrowAPIView):
    """POST /api/v1/escrow/admin/entries/{id}/dispute/review/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="admin_review_escrow_dispute",
        summary="Mark dispute under review",
        request=None,
        responses={200: DisputeSerializer},
        tags=["Escrow - Admin"],
    )
    def post(self, request, entry_id):
        dispute = DisputeService.mark_under_review(entry_id, admin=request.user)
        return Response(DisputeSerializer(dispute).data)


class AdminResolveDisputeView(EscrowAPIView):
    """
    POST /api/v1/escrow/admin/entries/{id}/dispute/resolve/

    Request body:
        {
            "outcome": "split",
            "resolution": "Damage confirmed by photos, shared liability",
            "refund_amount_cents": 4000,
            "release_amount_cents": 6000
        }
    """

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="admin_resolve_escrow_dispute",
        summary="Resolve dispute",
        request=ResolveDisputeSerializer,
        responses={
            200: EscrowEntrySerializer,
            400: OpenApiResponse(description="Resolution too short or amounts mismatch"),
            409: OpenApiResponse(description="Entry not disputed"),
        },
        tags=["Escrow - Admin"],
    )
    def post(self, request, entry_id):
        serializer = ResolveDisputeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        entry = DisputeService.resolve(
            entry_id,
            admin=request.user,
            outcome=data["outcome"],
            resolution=data["resolution"],
            refund_amount_cents=data.get("refund_amount_cents"),
            release_amount_cents=data.get("release_amount_cents"),
        )
        return Response(EscrowEntrySerializer(entry).data)


class AdminCancelDisputeView(EscrowAPIView):
    """POST /api/v1/escrow/admin/entries/{id}/dispute/cancel/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="admin_cancel_escrow_dispute",
        summary="Cancel dispute",
        request=AdminNoteSerializer,
        responses={200: EscrowEntrySerializer},
        tags=["Escrow - Admin"],
    )
    def post(self, request, entry_id):
        serializer = AdminNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry = DisputeService.cancel_dispute(
            entry_id,
            admin=request.user,
            note=serializer.validated_data["note"],
        )
        return Response(EscrowEntrySerializer(entry).data)


class AdminRetrySettlementView(EscrowAPIView):
    """
    POST /api/v1/escrow/admin/payouts/{id}/retry/
    POST /api/v1/escrow/admin/refunds/{id}/retry/

    Requeues a FAILED leg. Subclasses pick the leg model.
    """

    permission_classes = [IsAdminUser]
    leg_model = Payout
    leg_serializer_class = PayoutSerializer

    def post(self, request, leg_id):
        serializer = AdminNoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        leg = SettlementService.retry_failed(
            self.leg_model,
            leg_id,
            admin=request.user,
            note=serializer.validated_data["note"],
        )
        return Response(self.leg_serializer_class(leg).data)


@extend_schema(
    operation_id="admin_retry_payout",
    summary="Retry failed payout",
    request=AdminNoteSerializer,
    responses={200: PayoutSerializer},
    tags=["Escrow - Admin"],
)
class AdminRetryPayoutView(AdminRetrySettlementView):
    leg_model = Payout
    leg_serializer_class = PayoutSerializer


@extend_schema(
    operation_id="admin_retry_refund",
    summary="Retry failed refund",
    request=AdminNoteSerializer,
    responses={200: RefundSerializer},
    tags=["Escrow - Admin"],
)
class AdminRetryRefundView(AdminRetrySettlementView):
    leg_model = Refund
    leg_serializer_class = RefundSerializer


# =============================================================================
# Reporting
# =============================================================================


class EscrowSummaryView(EscrowAPIView):
    """GET /api/v1/escrow/reports/summary/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="escrow_summary",
        summary="Escrow totals",
        responses={200: EscrowSummarySerializer},
        tags=["Escrow - Reports"],
    )
    def get(self, request):
        return Response(EscrowSummarySerializer(EscrowReportingService.summary()).data)


class PendingReleaseView(EscrowAPIView):
    """GET /api/v1/escrow/reports/pending-release/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="escrow_pending_release",
        summary="Entries awaiting administrator release",
        responses={200: EscrowEntrySerializer(many=True)},
        tags=["Escrow - Reports"],
    )
    def get(self, request):
        entries = EscrowReportingService.pending_release()
        return Response(EscrowEntrySerializer(entries, many=True).data)


class FailedSettlementsView(EscrowAPIView):
    """GET /api/v1/escrow/reports/failed-settlements/"""

    permission_classes = [IsAdminUser]

    @extend_schema(
        operation_id="escrow_failed_settlements",
        summary="Failed payouts and refunds",
        tags=["Escrow - Reports"],
    )
    def get(self, request):
        failed = EscrowReportingService.failed_settlements()
        return Response(
            {
                "payouts": PayoutSerializer(failed["payouts"], many=True).data,
                "refunds": RefundSerializer(failed["refunds"], many=True).data,
            }
        )


class OwnerEarningsView(EscrowAPIView):
    """
    GET /api/v1/escrow/reports/earnings/

    Owners see their own total. Staff may pass ?payee_id= for any owner.
    """

    @extend_schema(
        operation_id="escrow_owner_earnings",
        summary="Owner lifetime earnings",
        parameters=[EarningsQuerySerializer],
        responses={200: OwnerEarningsSerializer},
        tags=["Escrow - Reports"],
    )
    def get(self, request):
        query = EarningsQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        payee = request.user
        payee_id = query.validated_data.get("payee_id")
        if payee_id and request.user.is_staff:
            payee = get_object_or_404(User, pk=payee_id)

        data = {
            "payee_id": payee.pk,
            "lifetime_earnings_cents": EscrowReportingService.owner_lifetime_earnings(payee),
        }
        return Response(OwnerEarningsSerializer(data).data)


class RentalEscrowStatusView(EscrowAPIView):
    """
    GET /api/v1/escrow/rentals/{rental_id}/status/

    Status is null when the rental has no escrow entry.
    """

    @extend_schema(
        operation_id="rental_escrow_status",
        summary="Escrow status of a rental",
        responses={200: RentalStatusSerializer},
        tags=["Escrow"],
    )
    def get(self, request, rental_id):
        data = {
            "rental_id": rental_id,
            "status": EscrowLedgerService.status_for_rental(rental_id),
        }
        return Response(RentalStatusSerializer(data).data)
