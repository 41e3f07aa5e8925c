"""
DRF serializers for the escrow app.

Read serializers render entries, disputes, settlement legs and the
timeline. Request serializers only validate shape; length and amount
rules are enforced by the services so every caller gets the same errors.

Usage:
    serializer = ConfirmCompletionSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    entry = ConfirmationService.confirm_by_party(
        entry_id, party=party, note=serializer.validated_data["note"]
    )
    return Response(EscrowEntrySerializer(entry).data)
"""

from __future__ import annotations

from rest_framework import serializers

from escrow.models import Dispute, EscrowEntry, EscrowTimelineEvent, Payout, Refund
from escrow.state_machines import DisputeOutcome


# =============================================================================
# Read Serializers
# =============================================================================


class DisputeSerializer(serializers.ModelSerializer):
    class Meta:
        model = Dispute
        fields = [
            "id",
            "status",
            "opened_by",
            "opened_at",
            "reason",
            "outcome",
            "refund_amount_cents",
            "release_amount_cents",
            "resolution_note",
            "resolved_by",
            "resolved_at",
        ]
        read_only_fields = fields


class PayoutSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payout
        fields = [
            "id",
            "status",
            "amount_cents",
            "fee_cents",
            "currency",
            "transaction_ref",
            "failure_reason",
            "attempts",
            "next_attempt_at",
            "retry_count",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = [
            "id",
            "status",
            "amount_cents",
            "currency",
            "transaction_ref",
            "failure_reason",
            "attempts",
            "next_attempt_at",
            "retry_count",
            "refunded_at",
            "created_at",
        ]
        read_only_fields = fields


class TimelineEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscrowTimelineEvent
        fields = ["id", "kind", "actor", "note", "occurred_at"]
        read_only_fields = fields


class EscrowEntrySerializer(serializers.ModelSerializer):
    """
    Escrow entry with its settlement legs.

    Payout and refund are null until the entry is released or resolved.
    """

    payout = serializers.SerializerMethodField()
    refund = serializers.SerializerMethodField()
    has_open_dispute = serializers.BooleanField(read_only=True)

    class Meta:
        model = EscrowEntry
        fields = [
            "id",
            "rental_id",
            "payer",
            "payee",
            "status",
            "amount_cents",
            "currency",
            "fee_percentage",
            "fee_cents",
            "renter_confirmed",
            "renter_confirmed_at",
            "renter_note",
            "owner_confirmed",
            "owner_confirmed_at",
            "owner_note",
            "admin_verified",
            "admin_verified_at",
            "admin_note",
            "auto_release_enabled",
            "auto_release_scheduled_at",
            "has_open_dispute",
            "payout",
            "refund",
            "held_at",
            "disputed_at",
            "released_at",
            "refunded_at",
            "cancelled_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_payout(self, obj: EscrowEntry) -> dict | None:
        payout = Payout.objects.filter(entry=obj).first()
        return PayoutSerializer(payout).data if payout else None

    def get_refund(self, obj: EscrowEntry) -> dict | None:
        refund = Refund.objects.filter(entry=obj).first()
        return RefundSerializer(refund).data if refund else None


class EscrowEntryDetailSerializer(EscrowEntrySerializer):
    """Entry plus disputes and the full timeline."""

    disputes = DisputeSerializer(many=True, read_only=True)
    timeline = TimelineEventSerializer(many=True, read_only=True)

    class Meta(EscrowEntrySerializer.Meta):
        fields = EscrowEntrySerializer.Meta.fields + ["disputes", "timeline"]
        read_only_fields = fields


# =============================================================================
# Request Serializers
# =============================================================================


class ConfirmCompletionSerializer(serializers.Serializer):
    note = serializers.CharField(
        allow_blank=True,
        trim_whitespace=True,
        help_text="What the party observed at hand-back (min 10 characters)",
    )


class OpenDisputeSerializer(serializers.Serializer):
    reason = serializers.CharField(
        allow_blank=True,
        help_text="Why the party disputes the rental (min 20 characters)",
    )


class ReleaseSerializer(serializers.Serializer):
    note = serializers.CharField(
        allow_blank=True,
        help_text="Administrator verification note (min 10 characters)",
    )
    override_confirmation_gate = serializers.BooleanField(
        default=False,
        help_text="Release without both party confirmations",
    )


class RejectReleaseSerializer(serializers.Serializer):
    reason = serializers.CharField(
        allow_blank=True,
        help_text="Why the release is refused (min 20 characters)",
    )


class ResolveDisputeSerializer(serializers.Serializer):
    """
    Dispute resolution request.

    refund_amount_cents and release_amount_cents are required for the
    partial_refund and split outcomes and ignored otherwise.
    """

    outcome = serializers.ChoiceField(choices=DisputeOutcome.choices)
    resolution = serializers.CharField(
        allow_blank=True,
        help_text="Resolution reasoning (min 20 characters)",
    )
    refund_amount_cents = serializers.IntegerField(required=False, allow_null=True)
    release_amount_cents = serializers.IntegerField(required=False, allow_null=True)


class AdminNoteSerializer(serializers.Serializer):
    note = serializers.CharField(required=False, allow_blank=True, default="")


# =============================================================================
# Reporting Serializers
# =============================================================================


class EscrowSummarySerializer(serializers.Serializer):
    total_held_by_currency = serializers.DictField(child=serializers.IntegerField())
    pending_release = serializers.IntegerField()
    pending_count = serializers.IntegerField()
    held_count = serializers.IntegerField()
    released_count = serializers.IntegerField()
    disputed_count = serializers.IntegerField()
    refunded_count = serializers.IntegerField()
    cancelled_count = serializers.IntegerField()


class EarningsQuerySerializer(serializers.Serializer):
    """Query parameters for the earnings report."""

    payee_id = serializers.IntegerField(required=False, min_value=1)


class OwnerEarningsSerializer(serializers.Serializer):
    payee_id = serializers.IntegerField()
    lifetime_earnings_cents = serializers.IntegerField()


class RentalStatusSerializer(serializers.Serializer):
    rental_id = serializers.UUIDField()
    status = serializers.CharField(allow_null=True)
