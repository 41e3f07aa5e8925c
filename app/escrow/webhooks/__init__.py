"""
Gateway webhook handling for the escrow app.

Webhooks are verified, stored idempotently, and processed asynchronously
via Celery tasks.

Usage:
    # In urls.py
    from escrow.webhooks import gateway_webhook

    urlpatterns = [
        path("webhooks/gateway/", gateway_webhook, name="gateway-webhook"),
    ]
"""

from escrow.webhooks.handlers import dispatch_webhook, register_handler
from escrow.webhooks.views import gateway_webhook

__all__ = [
    "dispatch_webhook",
    "gateway_webhook",
    "register_handler",
]
