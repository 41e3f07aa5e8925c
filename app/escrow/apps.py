"""
Escrow app configuration.

This app holds rental payments in custody and settles them:
- Escrow ledger with a guarded state machine
- Two-party confirmations and administrator disputes
- Gateway webhooks, auto-release and payout workers
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

    def ready(self):
        from escrow.signals import register_signals

        register_signals()
