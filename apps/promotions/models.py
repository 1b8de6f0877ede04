"""
Promotions and Coupons models for the woofpay platform.

Supports:
- Percentage, fixed amount and free trial extension coupons
- Minimum order and maximum discount bounds
- Global and per-user usage limits
- Date windows, plan restrictions and first-time-subscriber coupons
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.types import from_minor_units

logger = logging.getLogger(__name__)

# ===============================================================================
# Constants
# ===============================================================================

MAX_DISCOUNT_PERCENT = Decimal("100.00")
MAX_TRIAL_EXTENSION_DAYS = 365


# ===============================================================================
# Coupon
# ===============================================================================


class Coupon(models.Model):
    """Promo code granting a discount or extra trial days."""

    COUPON_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("percentage", _("Percentage")),
        ("fixed_amount", _("Fixed Amount")),
        ("free_trial_extension", _("Free Trial Extension")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True, help_text=_("Stored upper-case"))
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)

    coupon_type = models.CharField(max_length=30, choices=COUPON_TYPE_CHOICES)
    value = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0"))],
        help_text=_("Percent, major-unit amount or number of trial days depending on type"),
    )
    minimum_order_amount_cents = models.BigIntegerField(null=True, blank=True)
    maximum_discount_amount_cents = models.BigIntegerField(null=True, blank=True)

    usage_limit = models.PositiveIntegerField(null=True, blank=True, help_text=_("Empty = unlimited"))
    usage_limit_per_user = models.PositiveIntegerField(default=1)
    total_uses = models.PositiveIntegerField(default=0)
    total_discount_cents = models.BigIntegerField(default=0)

    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True)

    applicable_plans = models.JSONField(default=list, blank=True, help_text=_("Empty = every plan"))
    first_time_only = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    is_public = models.BooleanField(default=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupons"
        verbose_name = _("Coupon")
        verbose_name_plural = _("Coupons")
        ordering = ("-created_at",)
        indexes = (models.Index(fields=["is_active", "valid_from", "valid_until"]),)

    def __str__(self) -> str:
        return f"{self.code} ({self.coupon_type})"

    def clean(self) -> None:
        super().clean()
        if self.coupon_type == "percentage" and self.value > MAX_DISCOUNT_PERCENT:
            raise ValidationError({"value": _("Percentage cannot exceed 100")})
        if self.coupon_type == "free_trial_extension" and self.value > MAX_TRIAL_EXTENSION_DAYS:
            raise ValidationError({"value": _("Trial extension cannot exceed one year")})
        if self.valid_until and self.valid_from and self.valid_from >= self.valid_until:
            raise ValidationError(_("Valid from must be before valid until"))

    @property
    def is_expired(self) -> bool:
        return self.valid_until is not None and timezone.now() > self.valid_until

    @property
    def is_not_yet_valid(self) -> bool:
        return timezone.now() < self.valid_from

    @property
    def minimum_order_amount(self) -> Decimal | None:
        if self.minimum_order_amount_cents is None:
            return None
        return from_minor_units(self.minimum_order_amount_cents)

    @property
    def maximum_discount_amount(self) -> Decimal | None:
        if self.maximum_discount_amount_cents is None:
            return None
        return from_minor_units(self.maximum_discount_amount_cents)

    def applied_uses(self) -> int:
        return self.usages.filter(status="applied").count()

    def applied_uses_for(self, user: Any) -> int:
        return self.usages.filter(user=user, status="applied").count()


# ===============================================================================
# Coupon Usage
# ===============================================================================


class CouponUsage(models.Model):
    """Append-only redemption ledger; only applied rows count toward limits."""

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("applied", _("Applied")),
        ("refunded", _("Refunded")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="usages")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="coupon_usages")
    payment_order = models.ForeignKey(
        "billing.PaymentOrder",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="coupon_usages",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="coupon_usages",
    )

    amount_before_cents = models.BigIntegerField()
    discount_cents = models.BigIntegerField()
    amount_after_cents = models.BigIntegerField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="applied", db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "coupon_usages"
        verbose_name = _("Coupon Usage")
        verbose_name_plural = _("Coupon Usages")
        ordering = ("-created_at",)
        indexes = (models.Index(fields=["coupon", "user", "status"]),)

    def __str__(self) -> str:
        return f"{self.coupon_id} by {self.user_id} ({self.status})"

    def mark_refunded(self) -> None:
        if self.status != "applied":
            return
        self.status = "refunded"
        self.refunded_at = timezone.now()
        self.save(update_fields=["status", "refunded_at"])
        Coupon.objects.filter(pk=self.coupon_id).update(
            total_uses=F("total_uses") - 1,
            total_discount_cents=F("total_discount_cents") - self.discount_cents,
        )
