"""
Revenue ledger models for the woofpay platform.
Append-only record of completed charges and refunds, grouped by revenue stream.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.types import from_minor_units

logger = logging.getLogger(__name__)


# ===============================================================================
# REVENUE STREAM MODEL
# ===============================================================================


class RevenueStream(models.Model):
    """Named reporting bucket; one per payment type, auto-created on first use."""

    name = models.CharField(max_length=100, unique=True)
    payment_type = models.CharField(max_length=30, db_index=True)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "revenue_streams"
        verbose_name = _("Revenue Stream")
        verbose_name_plural = _("Revenue Streams")
        ordering = ("name",)

    def __str__(self) -> str:
        return self.name


# ===============================================================================
# TRANSACTION MODEL
# ===============================================================================


class Transaction(models.Model):
    """
    Ledger entry created alongside a completed order or a refund.
    Rows are never updated once written; refunds are separate negative entries.
    """

    ENTRY_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("charge", _("Charge")),
        ("refund", _("Refund")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("completed", _("Completed")),
        ("refunded", _("Refunded")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    revenue_stream = models.ForeignKey(RevenueStream, on_delete=models.PROTECT, related_name="transactions")
    payment_order = models.ForeignKey(
        "billing.PaymentOrder",
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
    )
    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )
    dog = models.ForeignKey(
        "dogs.Dog",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="ledger_entries",
    )

    entry_type = models.CharField(max_length=10, choices=ENTRY_TYPE_CHOICES, default="charge")
    transaction_type = models.CharField(max_length=30, help_text=_("Payment type of the originating order"))
    amount_cents = models.BigIntegerField(help_text=_("Negative for refunds"))
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="completed")
    payment_method = models.CharField(max_length=30, default="razorpay")
    external_id = models.CharField(max_length=100, blank=True, help_text=_("Gateway payment or refund id"))
    original_transaction = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="refund_entries",
    )
    description = models.CharField(max_length=255, blank=True)
    meta = models.JSONField(default=dict, blank=True)

    processed_at = models.DateTimeField(default=timezone.now, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "revenue_transactions"
        verbose_name = _("Revenue Transaction")
        verbose_name_plural = _("Revenue Transactions")
        ordering = ("-processed_at",)
        indexes = (
            models.Index(fields=["revenue_stream", "processed_at"]),
            models.Index(fields=["user", "-processed_at"]),
        )
        constraints: ClassVar[list] = [
            models.UniqueConstraint(
                fields=["payment_order", "entry_type"],
                name="one_ledger_entry_per_order_and_type",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.entry_type} {self.amount_cents} {self.currency} ({self.revenue_stream_id})"

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValidationError(_("Ledger entries are immutable once recorded"))
        super().save(*args, **kwargs)
