"""
Append-only audit timeline for escrow entries.

Every transition, confirmation and administrator note lands here as a new
row. Rows are never updated or deleted.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from escrow.state_machines import TimelineEventKind


class EscrowTimelineEvent(models.Model):
    """
    One immutable step in an entry's history.

    Fields:
        entry: The escrow entry
        kind: What happened
        actor: User who caused it (null for system actions)
        note: Free text supplied with the action
        occurred_at: When it happened
    """

    id = models.BigAutoField(primary_key=True)

    entry = models.ForeignKey(
        "escrow.EscrowEntry",
        on_delete=models.PROTECT,
        related_name="timeline",
    )
    kind = models.CharField(max_length=32, choices=TimelineEventKind.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    note = models.TextField(blank=True, default="")
    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["occurred_at", "id"]
        verbose_name = "Timeline Event"
        verbose_name_plural = "Timeline Events"

    def __str__(self) -> str:
        return f"{self.kind} @ {self.occurred_at:%Y-%m-%d %H:%M:%S}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Timeline events are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Timeline events are append-only")
