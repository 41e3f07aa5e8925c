"""
Escrow admin configuration.

Admin screens are read-mostly: status fields are FSM-protected and every
state change goes through the service layer. Nothing can be deleted.
"""

from django.contrib import admin, messages

from core.exceptions import BaseApplicationError

from escrow.models import (
    Dispute,
    EscrowEntry,
    EscrowTimelineEvent,
    GatewayWebhookEvent,
    Payout,
    Refund,
)
from escrow.services import SettlementService

__all__ = [
    "DisputeAdmin",
    "EscrowEntryAdmin",
    "GatewayWebhookEventAdmin",
    "PayoutAdmin",
    "RefundAdmin",
]


def _amount_display(amount_cents: int, currency: str) -> str:
    return f"${amount_cents / 100:.2f} {currency.upper()}"


class TimelineInline(admin.TabularInline):
    model = EscrowTimelineEvent
    extra = 0
    can_delete = False
    fields = ["occurred_at", "kind", "actor", "note"]
    readonly_fields = fields
    ordering = ["occurred_at", "id"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class DisputeInline(admin.TabularInline):
    model = Dispute
    extra = 0
    can_delete = False
    fields = ["status", "opened_by", "opened_at", "outcome", "resolved_by", "resolved_at"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(EscrowEntry)
class EscrowEntryAdmin(admin.ModelAdmin):
    """
    Admin configuration for EscrowEntry.

    Release, dispute resolution and cancellation are API operations; the
    admin only shows state and history.
    """

    list_display = [
        "id",
        "rental_id",
        "payer",
        "payee",
        "amount_display",
        "status",
        "renter_confirmed",
        "owner_confirmed",
        "auto_release_scheduled_at",
        "created_at",
    ]
    list_filter = ["status", "renter_confirmed", "owner_confirmed", "currency", "created_at"]
    search_fields = ["id", "rental_id", "gateway_ref", "payer__email", "payee__email"]
    readonly_fields = [
        "id",
        "rental_id",
        "payer",
        "payee",
        "status",
        "amount_cents",
        "currency",
        "gateway_ref",
        "fee_percentage",
        "fee_cents",
        "fee_deducted_at",
        "renter_confirmed",
        "renter_confirmed_at",
        "renter_note",
        "owner_confirmed",
        "owner_confirmed_at",
        "owner_note",
        "admin_verified",
        "admin_verified_at",
        "admin_verified_by",
        "admin_note",
        "auto_release_scheduled_at",
        "held_at",
        "disputed_at",
        "released_at",
        "refunded_at",
        "cancelled_at",
        "version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [DisputeInline, TimelineInline]

    fieldsets = (
        (None, {"fields": ("id", "rental_id", "payer", "payee", "status")}),
        (
            "Amount",
            {"fields": ("amount_cents", "currency", "fee_percentage", "fee_cents", "fee_deducted_at")},
        ),
        ("Gateway", {"fields": ("gateway_ref", "payee_gateway_account")}),
        (
            "Confirmations",
            {
                "fields": (
                    "renter_confirmed",
                    "renter_confirmed_at",
                    "renter_note",
                    "owner_confirmed",
                    "owner_confirmed_at",
                    "owner_note",
                    "admin_verified",
                    "admin_verified_at",
                    "admin_verified_by",
                    "admin_note",
                ),
            },
        ),
        (
            "Auto-release",
            {
                "fields": (
                    "auto_release_enabled",
                    "auto_release_window_days",
                    "auto_release_scheduled_at",
                ),
            },
        ),
        (
            "State Timestamps",
            {
                "fields": ("held_at", "disputed_at", "released_at", "refunded_at", "cancelled_at"),
                "classes": ("collapse",),
            },
        ),
        ("Timestamps", {"fields": ("version", "created_at", "updated_at")}),
    )

    def amount_display(self, obj: EscrowEntry) -> str:
        return _amount_display(obj.amount_cents, obj.currency)

    amount_display.short_description = "Amount"

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ["id", "entry", "status", "outcome", "opened_by", "opened_at", "resolved_at"]
    list_filter = ["status", "outcome"]
    search_fields = ["id", "entry__id", "entry__rental_id"]
    readonly_fields = [
        "id",
        "entry",
        "status",
        "opened_by",
        "opened_at",
        "reason",
        "outcome",
        "refund_amount_cents",
        "release_amount_cents",
        "resolved_by",
        "resolved_at",
        "resolution_note",
        "created_at",
        "updated_at",
    ]
    ordering = ["-opened_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


class SettlementLegAdmin(admin.ModelAdmin):
    """Shared configuration for payout and refund legs."""

    list_filter = ["status", "currency", "created_at"]
    search_fields = ["id", "transaction_ref", "entry__id", "entry__rental_id"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["retry_failed"]

    def amount_display(self, obj) -> str:
        return _amount_display(obj.amount_cents, obj.currency)

    amount_display.short_description = "Amount"

    @admin.action(description="Retry selected failed settlements")
    def retry_failed(self, request, queryset):
        retried = 0
        for leg in queryset:
            try:
                SettlementService.retry_failed(self.model, leg.id, admin=request.user)
                retried += 1
            except BaseApplicationError as e:
                self.message_user(request, f"{leg.id}: {e.message}", level=messages.WARNING)
        self.message_user(request, f"Requeued {retried} settlement(s).")

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Payout)
class PayoutAdmin(SettlementLegAdmin):
    list_display = [
        "id",
        "entry",
        "amount_display",
        "status",
        "attempts",
        "transaction_ref",
        "paid_at",
        "created_at",
    ]
    readonly_fields = [
        "id",
        "entry",
        "status",
        "amount_cents",
        "fee_cents",
        "currency",
        "destination_account",
        "transaction_ref",
        "failure_reason",
        "attempts",
        "next_attempt_at",
        "retry_count",
        "paid_at",
        "version",
        "created_at",
        "updated_at",
    ]


@admin.register(Refund)
class RefundAdmin(SettlementLegAdmin):
    list_display = [
        "id",
        "entry",
        "amount_display",
        "status",
        "attempts",
        "transaction_ref",
        "refunded_at",
        "created_at",
    ]
    readonly_fields = [
        "id",
        "entry",
        "status",
        "amount_cents",
        "currency",
        "transaction_ref",
        "failure_reason",
        "attempts",
        "next_attempt_at",
        "retry_count",
        "refunded_at",
        "version",
        "created_at",
        "updated_at",
    ]


@admin.register(GatewayWebhookEvent)
class GatewayWebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for GatewayWebhookEvent.

    Webhook events are immutable once received.
    """

    list_display = [
        "id",
        "event_id",
        "kind",
        "gateway_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "kind", "gateway_type", "created_at"]
    search_fields = ["id", "event_id", "kind"]
    readonly_fields = [
        "id",
        "event_id",
        "kind",
        "gateway_type",
        "status",
        "payload",
        "processed_at",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False
