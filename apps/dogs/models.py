"""
Dog profiles for the woofpay platform.
Only the fields the payment engine touches are modelled here.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

logger = logging.getLogger(__name__)


class Dog(models.Model):
    """A dog profile owned by a platform user."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="dogs")
    name = models.CharField(max_length=100)
    breed = models.CharField(max_length=100, blank=True)

    # Digital Dog ID
    has_premium_id = models.BooleanField(default=False)
    premium_id_activated_at = models.DateTimeField(null=True, blank=True)
    premium_id_expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "dogs"
        verbose_name = _("Dog")
        verbose_name_plural = _("Dogs")
        ordering = ("name",)

    def __str__(self) -> str:
        return self.name

    @property
    def premium_id_active(self) -> bool:
        return (
            self.has_premium_id
            and self.premium_id_expires_at is not None
            and self.premium_id_expires_at > timezone.now()
        )

    def activate_premium_id(self, validity_days: int) -> None:
        """Flip the premium Digital ID flag with a fixed expiry from now."""
        now = timezone.now()
        self.has_premium_id = True
        self.premium_id_activated_at = now
        self.premium_id_expires_at = now + timedelta(days=validity_days)
        self.save(update_fields=["has_premium_id", "premium_id_activated_at", "premium_id_expires_at", "updated_at"])
        logger.info(f"🐕 [Dogs] Premium ID active for {self.id} until {self.premium_id_expires_at:%Y-%m-%d}")
