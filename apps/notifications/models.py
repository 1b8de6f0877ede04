"""
Notification outbox for the woofpay platform.
One row per user-facing notification; delivery happens in a django-q worker.
"""

from __future__ import annotations

import uuid
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.utils.translation import gettext_lazy as _


class NotificationLog(models.Model):
    """Durable record of a notification request and its delivery status."""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("queued", _("Queued")),  # Waiting for a worker
        ("sent", _("Sent")),  # Handed to the mail backend
        ("failed", _("Failed")),  # Delivery raised
        ("skipped", _("Skipped")),  # No address or unknown template
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="notification_logs",
    )
    template_type = models.CharField(max_length=100, db_index=True)
    payload = models.JSONField(default=dict, blank=True)
    recipient = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="queued")
    error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "notification_log"
        verbose_name = _("Notification")
        verbose_name_plural = _("Notifications")
        ordering = ("-created_at",)
        indexes = (models.Index(fields=["user", "-created_at"]),)

    def __str__(self) -> str:
        return f"{self.template_type} to {self.recipient or self.user_id} ({self.status})"
