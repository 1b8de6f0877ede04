"""
Partner models for the woofpay platform
Veterinarians and corporate partners, their platform subscriptions,
commissions earned and payouts.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.types import from_minor_units

# ===============================================================================
# PARTNER MODEL
# ===============================================================================


class Partner(models.Model):
    PARTNER_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("veterinarian", _("Veterinarian")),
        ("corporate", _("Corporate")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending Verification")),
        ("active", _("Active")),
        ("suspended", _("Suspended")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="partner_profile",
    )
    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True)
    partner_type = models.CharField(max_length=20, choices=PARTNER_TYPE_CHOICES, default="veterinarian")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "partners"
        verbose_name = _("Partner")
        verbose_name_plural = _("Partners")
        ordering = ("name",)

    def __str__(self) -> str:
        return f"{self.name} ({self.partner_type})"

    @property
    def is_active(self) -> bool:
        return self.status == "active"


# ===============================================================================
# PARTNER SUBSCRIPTION MODEL
# ===============================================================================


class PartnerSubscription(models.Model):
    """Platform subscription paid by a partner; one row per partner, upserted on payment."""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("expired", _("Expired")),
        ("cancelled", _("Cancelled")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    partner = models.OneToOneField(Partner, on_delete=models.CASCADE, related_name="subscription")
    tier = models.CharField(max_length=20, default="basic")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    monthly_rate_cents = models.BigIntegerField(default=0)
    commission_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal("5"))
    features = models.JSONField(default=list, blank=True)

    starts_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    last_payment_order = models.ForeignKey(
        "billing.PaymentOrder",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "partner_subscriptions"
        verbose_name = _("Partner Subscription")
        verbose_name_plural = _("Partner Subscriptions")

    def __str__(self) -> str:
        return f"{self.partner_id} {self.tier} ({self.status})"


# ===============================================================================
# COMMISSION MODELS
# ===============================================================================


class CommissionPayout(models.Model):
    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("processing", _("Processing")),
        ("paid", _("Paid")),
        ("failed", _("Failed")),
    )

    METHOD_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("bank_transfer", _("Bank Transfer")),
        ("upi", _("UPI")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    partner = models.ForeignKey(Partner, on_delete=models.PROTECT, related_name="payouts")
    amount_cents = models.BigIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    method = models.CharField(max_length=20, choices=METHOD_CHOICES, default="bank_transfer")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="processing", db_index=True)
    reference = models.CharField(max_length=100, blank=True, help_text=_("Bank/UPI transfer reference"))
    commission_count = models.PositiveIntegerField(default=0)

    processed_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "partner_commission_payouts"
        verbose_name = _("Commission Payout")
        verbose_name_plural = _("Commission Payouts")
        ordering = ("-processed_at",)

    def __str__(self) -> str:
        return f"Payout {self.id} to {self.partner_id} ({self.status})"

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)


class PartnerCommission(models.Model):
    """
    Commission earned by a partner on one transaction.
    Amounts are fixed at creation; only the status moves.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending")),
        ("processing", _("Processing")),
        ("paid", _("Paid")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    partner = models.ForeignKey(Partner, on_delete=models.PROTECT, related_name="commissions")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    service_type = models.CharField(max_length=50)
    service_reference = models.CharField(max_length=100, help_text=_("Consultation, subscription or order id"))

    base_amount_cents = models.BigIntegerField()
    commission_rate = models.DecimalField(max_digits=7, decimal_places=2)
    commission_amount_cents = models.BigIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True)

    payout = models.ForeignKey(
        CommissionPayout,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commissions",
    )
    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "partner_commissions"
        verbose_name = _("Partner Commission")
        verbose_name_plural = _("Partner Commissions")
        ordering = ("-created_at",)
        indexes = (models.Index(fields=["partner", "status"]),)
        constraints: ClassVar[list] = [
            models.UniqueConstraint(
                fields=["service_type", "service_reference"],
                name="one_commission_per_transaction",
            ),
            models.CheckConstraint(
                condition=Q(commission_amount_cents__gte=0),
                name="commission_amount_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.service_type} {self.commission_amount_cents} for {self.partner_id} ({self.status})"

    @property
    def commission_amount(self) -> Decimal:
        return from_minor_units(self.commission_amount_cents)
