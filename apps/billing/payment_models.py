"""
Payment models for the woofpay platform.
Checkout orders, settled/attempted charges, retry attempts and dunning campaigns.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.types import from_minor_units

from .validators import log_security_event, validate_financial_amount, validate_order_metadata

logger = logging.getLogger(__name__)


# ===============================================================================
# PAYMENT ORDER MODEL
# ===============================================================================


class PaymentOrder(models.Model):
    """
    Checkout order mirrored on the payment gateway.

    Created in `created` status when checkout starts and flipped to `completed`
    exactly once by a signature-verified callback. A failed attempt marks the
    order `failed` but the gateway order stays payable, so a later capture still
    completes it. Only a refund may touch a completed order afterwards.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("created", _("Created")),
        ("completed", _("Completed")),
        ("failed", _("Failed")),
        ("refunded", _("Refunded")),
    )

    PAYMENT_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("subscription", _("Subscription")),
        ("premium_service", _("Premium Service")),
        ("dog_id", _("Digital Dog ID")),
        ("appointment", _("Appointment")),
        ("partner_subscription", _("Partner Subscription")),
        ("commission_payout", _("Commission Payout")),
    )

    BILLING_PERIOD_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("monthly", _("Monthly")),
        ("yearly", _("Yearly")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payment_orders",
    )
    payment_type = models.CharField(max_length=30, choices=PAYMENT_TYPE_CHOICES, db_index=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="created", db_index=True)

    # Amounts (minor units)
    base_amount_cents = models.BigIntegerField(help_text=_("Requested amount before tax and discounts"))
    tax_cents = models.BigIntegerField(default=0)
    discount_cents = models.BigIntegerField(default=0)
    amount_cents = models.BigIntegerField(help_text=_("Final amount charged through the gateway"))
    currency = models.CharField(max_length=3, default="INR")

    # Gateway references
    gateway = models.CharField(max_length=30, default="razorpay")
    gateway_order_id = models.CharField(max_length=100, unique=True)
    gateway_payment_id = models.CharField(max_length=100, blank=True, db_index=True)
    receipt = models.CharField(max_length=64, unique=True)

    # Subject references
    plan_id = models.CharField(max_length=50, blank=True)
    service_id = models.CharField(max_length=50, blank=True)
    billing_period = models.CharField(max_length=10, choices=BILLING_PERIOD_CHOICES, default="monthly")
    dog = models.ForeignKey(
        "dogs.Dog",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_orders",
    )
    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payment_orders",
    )
    reference = models.CharField(
        max_length=100,
        blank=True,
        help_text=_("Appointment id or payout id the order pays for"),
    )
    coupon_code = models.CharField(max_length=50, blank=True)

    # Refund tracking
    refund_id = models.CharField(max_length=100, blank=True)
    refunded_amount_cents = models.BigIntegerField(default=0)
    refund_reason = models.CharField(max_length=255, blank=True)

    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payment_orders"
        verbose_name = _("Payment Order")
        verbose_name_plural = _("Payment Orders")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["user", "-created_at"]),
            models.Index(fields=["status", "created_at"]),
        )
        constraints: ClassVar[list] = [
            models.CheckConstraint(condition=Q(amount_cents__gt=0), name="payment_order_amount_positive"),
        ]

    def __str__(self) -> str:
        return f"{self.receipt} {self.payment_type} ({self.status})"

    def clean(self) -> None:
        validate_financial_amount(self.amount_cents, "Order amount")
        validate_order_metadata(self.meta, "Order metadata")

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    def mark_completed(self, gateway_payment_id: str) -> None:
        """Flip created or failed -> completed. Callers hold a row lock on the order."""
        self.status = "completed"
        self.gateway_payment_id = gateway_payment_id
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "gateway_payment_id", "completed_at", "updated_at"])

        log_security_event(
            event_type="payment_order_completed",
            details={
                "payment_order_id": str(self.id),
                "payment_type": self.payment_type,
                "amount_cents": self.amount_cents,
                "critical_financial_operation": True,
            },
        )

    def mark_failed(self, reason: str = "") -> None:
        self.status = "failed"
        self.failed_at = timezone.now()
        if reason:
            self.meta = {**self.meta, "failure_reason": reason}
        self.save(update_fields=["status", "failed_at", "meta", "updated_at"])

    def mark_refunded(self, refund_id: str, amount_cents: int, reason: str = "") -> None:
        self.status = "refunded"
        self.refund_id = refund_id
        self.refunded_amount_cents = amount_cents
        self.refund_reason = reason[:255]
        self.refunded_at = timezone.now()
        self.save(
            update_fields=[
                "status",
                "refund_id",
                "refunded_amount_cents",
                "refund_reason",
                "refunded_at",
                "updated_at",
            ]
        )

        log_security_event(
            event_type="payment_order_refunded",
            details={
                "payment_order_id": str(self.id),
                "refund_id": refund_id,
                "amount_cents": amount_cents,
                "critical_financial_operation": True,
            },
        )


# ===============================================================================
# PAYMENT MODEL
# ===============================================================================


class Payment(models.Model):
    """
    A settled or attempted charge.

    Tied either to a checkout PaymentOrder or to a subscription billing cycle.
    Proration entries carry a signed amount (negative = credit).
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("pending", _("Pending")),
        ("paid", _("Paid")),
        ("failed", _("Failed")),
        ("retry_pending", _("Retry Pending")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payments",
    )
    payment_order = models.ForeignKey(
        PaymentOrder,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )
    original_payment = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="retry_payments",
        help_text=_("Failed payment this charge retries"),
    )

    amount_cents = models.BigIntegerField(help_text=_("Signed amount: positive = charge, negative = credit"))
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending", db_index=True)
    payment_method = models.CharField(max_length=50, blank=True)
    gateway_txn_id = models.CharField(max_length=100, blank=True, db_index=True)
    invoice_number = models.CharField(max_length=50, blank=True)

    failure_code = models.CharField(max_length=50, blank=True)
    failure_reason = models.TextField(blank=True)

    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payments"
        verbose_name = _("Payment")
        verbose_name_plural = _("Payments")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["subscription", "status"]),
            models.Index(fields=["user", "-created_at"]),
        )

    def __str__(self) -> str:
        return f"Payment {self.id} {self.amount_cents} {self.currency} ({self.status})"

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)

    def mark_paid(self, gateway_txn_id: str = "") -> None:
        self.status = "paid"
        self.paid_at = timezone.now()
        if gateway_txn_id:
            self.gateway_txn_id = gateway_txn_id
        self.save(update_fields=["status", "paid_at", "gateway_txn_id", "updated_at"])

    def mark_failed(self, code: str, reason: str) -> None:
        self.status = "failed"
        self.failure_code = code[:50]
        self.failure_reason = reason
        self.save(update_fields=["status", "failure_code", "failure_reason", "updated_at"])


# ===============================================================================
# PAYMENT RETRY MODEL
# ===============================================================================


class PaymentRetry(models.Model):
    """
    One scheduled retry of a failed recurring payment.
    Append-only audit trail for a failure episode; the status field guards re-entry.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("scheduled", _("Scheduled")),
        ("attempting", _("Attempting")),
        ("succeeded", _("Succeeded")),
        ("failed", _("Failed")),
    )

    RETRY_METHOD_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("same_payment_method", _("Same Payment Method")),
        ("alternative_method", _("Alternative Method")),
        ("manual_intervention", _("Manual Intervention")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.CASCADE,
        related_name="payment_retries",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.CASCADE,
        related_name="retries",
        help_text=_("Original failed payment"),
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="payment_retries",
    )

    attempt_number = models.PositiveSmallIntegerField()
    scheduled_at = models.DateTimeField(db_index=True)
    attempted_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="scheduled")
    retry_method = models.CharField(max_length=30, choices=RETRY_METHOD_CHOICES)

    error_code = models.CharField(max_length=50, blank=True)
    failure_reason = models.TextField(blank=True)
    needs_review = models.BooleanField(
        default=False,
        help_text=_("Error code was neither on the retryable nor the non-retryable list"),
    )
    new_payment = models.ForeignKey(
        Payment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payment_retries"
        verbose_name = _("Payment Retry")
        verbose_name_plural = _("Payment Retries")
        ordering = ("subscription", "attempt_number")
        indexes = (
            models.Index(fields=["status", "scheduled_at"]),
            models.Index(fields=["subscription", "-created_at"]),
        )
        constraints: ClassVar[list] = [
            models.UniqueConstraint(fields=["payment", "attempt_number"], name="unique_retry_attempt_per_payment"),
        ]

    def __str__(self) -> str:
        return f"Retry #{self.attempt_number} for {self.payment_id} ({self.status})"

    @property
    def is_due(self) -> bool:
        return self.status == "scheduled" and self.scheduled_at <= timezone.now()


# ===============================================================================
# DUNNING CAMPAIGN MODEL
# ===============================================================================


class DunningCampaign(models.Model):
    """Customer communication sequence running alongside payment retries."""

    CAMPAIGN_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("payment_failed", _("Payment Failed")),
        ("payment_retry", _("Payment Retry")),
        ("grace_period", _("Grace Period")),
        ("final_notice", _("Final Notice")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("completed", _("Completed")),
        ("cancelled", _("Cancelled")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="dunning_campaigns",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.CASCADE,
        related_name="dunning_campaigns",
    )
    campaign_type = models.CharField(max_length=30, choices=CAMPAIGN_TYPE_CHOICES)
    current_step = models.PositiveSmallIntegerField(default=1)
    total_steps = models.PositiveSmallIntegerField()
    next_action_date = models.DateTimeField(null=True, blank=True)
    communications_sent = models.PositiveIntegerField(default=0)
    response_received = models.BooleanField(default=False)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active", db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "dunning_campaigns"
        verbose_name = _("Dunning Campaign")
        verbose_name_plural = _("Dunning Campaigns")
        ordering = ("-created_at",)
        constraints: ClassVar[list] = [
            models.UniqueConstraint(
                fields=["subscription"],
                condition=Q(status="active"),
                name="one_active_dunning_campaign_per_subscription",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.campaign_type} step {self.current_step}/{self.total_steps} ({self.status})"

    def close(self, status: str) -> None:
        self.status = status
        self.completed_at = timezone.now()
        self.next_action_date = None
        self.save(update_fields=["status", "completed_at", "next_action_date", "updated_at"])
