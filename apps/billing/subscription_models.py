"""
Subscription models for the woofpay platform
Recurring premium plans with trials, plan changes, pauses and dunning states.

States:
- trialing -> active <-> past_due -> (suspended | active)
- active -> cancelling -> cancelled
- active <-> paused (pausable plans only)
- payment_failed once the grace period has lapsed, payment_method_required
  when the card on file can no longer be charged
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from apps.common.types import from_minor_units, to_minor_units

from .config import cycle_days_for
from .validators import log_security_event, validate_financial_amount

if TYPE_CHECKING:
    from .plans import SubscriptionPlan

logger = logging.getLogger(__name__)

# ===============================================================================
# CONSTANTS
# ===============================================================================

# Statuses that count as "the" subscription of a user for a product line
OPEN_STATUSES = (
    "trialing",
    "active",
    "past_due",
    "payment_failed",
    "payment_method_required",
    "paused",
    "cancelling",
)

# Statuses from which the subscriber still has access
ACCESS_STATUSES = ("trialing", "active", "past_due", "cancelling")

TERMINAL_STATUSES = ("cancelled", "suspended")

METADATA_SCHEMA_VERSION = 1


# ===============================================================================
# TYPED METADATA
# ===============================================================================


@dataclass(frozen=True)
class SubscriptionMetadata:
    """Versioned subscription metadata, parsed once from the JSON column."""

    version: int = METADATA_SCHEMA_VERSION
    plan_id: str = ""
    family_members: int = 1
    features: tuple[str, ...] = ()
    coupon_code: str = ""
    extra_trial_days: int = 0
    payment_retry_active: bool = False
    last_proration_cents: int = 0
    tags: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> SubscriptionMetadata:
        data = data or {}
        return cls(
            version=int(data.get("version", METADATA_SCHEMA_VERSION)),
            plan_id=str(data.get("plan_id", "")),
            family_members=int(data.get("family_members", 1)),
            features=tuple(data.get("features", ())),
            coupon_code=str(data.get("coupon_code", "")),
            extra_trial_days=int(data.get("extra_trial_days", 0)),
            payment_retry_active=bool(data.get("payment_retry_active", False)),
            last_proration_cents=int(data.get("last_proration_cents", 0)),
            tags=dict(data.get("tags", {})),
        )

    @classmethod
    def for_plan(cls, plan: SubscriptionPlan, **kwargs: Any) -> SubscriptionMetadata:
        return cls(
            plan_id=plan.id,
            family_members=plan.limits.family_members,
            features=plan.features,
            **kwargs,
        )

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["features"] = list(self.features)
        return data


# ===============================================================================
# SUBSCRIPTION MODEL
# ===============================================================================


class Subscription(models.Model):
    """
    A user's subscription to a premium plan.

    At most one open subscription exists per user and product line; historical
    (cancelled/suspended) subscriptions are retained.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("trialing", _("Trialing")),
        ("active", _("Active")),
        ("past_due", _("Past Due")),
        ("payment_failed", _("Payment Failed")),
        ("payment_method_required", _("Payment Method Required")),
        ("paused", _("Paused")),
        ("cancelling", _("Cancelling")),
        ("cancelled", _("Cancelled")),
        ("suspended", _("Suspended")),
    )

    BILLING_CYCLE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("monthly", _("Monthly")),
        ("yearly", _("Yearly")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    product_line = models.CharField(max_length=30, default="premium")
    plan_id = models.CharField(max_length=50)

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default="trialing", db_index=True)
    billing_cycle = models.CharField(max_length=10, choices=BILLING_CYCLE_CHOICES, default="monthly")

    price_cents = models.BigIntegerField(
        validators=[MinValueValidator(0)],
        help_text=_("Current plan price per cycle"),
    )
    amount_paid_cents = models.BigIntegerField(default=0, help_text=_("Amount paid for the current period"))
    currency = models.CharField(max_length=3, default="INR")
    auto_renew = models.BooleanField(default=True)

    # Period tracking
    start_date = models.DateTimeField(default=timezone.now)
    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField(default=timezone.now)
    end_date = models.DateTimeField(help_text=_("End of the current paid or trial period"))
    next_billing_date = models.DateTimeField(null=True, blank=True, db_index=True)

    # Lifecycle dates
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    paused_at = models.DateTimeField(null=True, blank=True)
    resume_at = models.DateTimeField(null=True, blank=True)
    suspended_at = models.DateTimeField(null=True, blank=True)

    # Payment tracking
    payment_method_ref = models.CharField(
        max_length=100,
        blank=True,
        help_text=_("Gateway token of the saved payment method"),
    )
    alternate_payment_method_ref = models.CharField(max_length=100, blank=True)
    gateway_customer_id = models.CharField(max_length=100, blank=True)
    last_payment_date = models.DateTimeField(null=True, blank=True)
    grace_period_ends_at = models.DateTimeField(null=True, blank=True)

    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions"
        verbose_name = _("Subscription")
        verbose_name_plural = _("Subscriptions")
        ordering = ("-created_at",)
        indexes = (
            models.Index(fields=["user", "status"]),
            models.Index(fields=["status", "next_billing_date"]),
            models.Index(fields=["status", "end_date"]),
        )
        constraints: ClassVar[list] = [
            models.UniqueConstraint(
                fields=["user", "product_line"],
                condition=Q(status__in=OPEN_STATUSES),
                name="one_open_subscription_per_product_line",
            ),
            models.CheckConstraint(condition=Q(price_cents__gte=0), name="subscription_price_non_negative"),
        ]

    def __str__(self) -> str:
        return f"{self.plan_id} for user {self.user_id} ({self.status})"

    def clean(self) -> None:
        super().clean()
        validate_financial_amount(self.price_cents, "Plan price")
        validate_financial_amount(self.amount_paid_cents, "Amount paid")
        if self.end_date and self.current_period_start and self.end_date < self.current_period_start:
            raise ValidationError(_("Period end must not be before period start"))

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def metadata(self) -> SubscriptionMetadata:
        return SubscriptionMetadata.from_json(self.meta)

    def set_metadata(self, metadata: SubscriptionMetadata) -> None:
        self.meta = metadata.to_json()

    @property
    def price(self) -> Decimal:
        return from_minor_units(self.price_cents)

    @property
    def amount_paid(self) -> Decimal:
        return from_minor_units(self.amount_paid_cents)

    @property
    def cycle_days(self) -> int:
        return cycle_days_for(self.billing_cycle)

    @property
    def has_access(self) -> bool:
        return self.status in ACCESS_STATUSES

    @property
    def in_trial(self) -> bool:
        return self.status == "trialing" and bool(self.trial_end) and timezone.now() < self.trial_end

    # =========================================================================
    # LIFECYCLE METHODS
    # =========================================================================

    def _audit(self, event_type: str, **details: Any) -> None:
        log_security_event(
            event_type=event_type,
            details={
                "subscription_id": str(self.id),
                "user_id": str(self.user_id),
                "plan_id": self.plan_id,
                "status": self.status,
                **details,
            },
        )

    def start_trial(self, trial_days: int) -> None:
        """Start the trial; first billing falls one interval after the trial ends."""
        now = timezone.now()
        self.status = "trialing"
        self.start_date = now
        self.trial_start = now
        self.trial_end = now + timedelta(days=trial_days)
        self.current_period_start = now
        self.end_date = self.trial_end
        self.next_billing_date = self.trial_end + timedelta(days=self.cycle_days)
        self.amount_paid_cents = 0
        self.save()
        self._audit("subscription_trial_started", trial_days=trial_days, trial_end=self.trial_end.isoformat())

    def activate(self, amount_paid_cents: int | None = None) -> None:
        """Start a fresh paid period now."""
        now = timezone.now()
        with transaction.atomic():
            self.status = "active"
            self.current_period_start = now
            self.end_date = now + timedelta(days=self.cycle_days)
            self.next_billing_date = self.end_date
            if amount_paid_cents is not None:
                self.amount_paid_cents = amount_paid_cents
            self.grace_period_ends_at = None
            self.save()
            self._audit("subscription_activated", critical_financial_operation=True)

    def record_payment(self, amount_cents: int) -> None:
        """Record a successful charge; past_due and friends return to active."""
        now = timezone.now()
        with transaction.atomic():
            self.last_payment_date = now
            self.amount_paid_cents = amount_cents
            self.grace_period_ends_at = None
            if self.status in ("trialing", "past_due", "payment_failed", "payment_method_required"):
                self.status = "active"
            metadata = self.metadata
            if metadata.payment_retry_active:
                self.set_metadata(SubscriptionMetadata(**{**asdict(metadata), "payment_retry_active": False}))
            self.save()
            self._audit("subscription_payment_recorded", amount_cents=amount_cents, critical_financial_operation=True)

    def extend_period(self, days: int) -> None:
        """Push the paid period forward, never shortening it."""
        now = timezone.now()
        base = self.end_date if self.end_date and self.end_date > now else now
        self.end_date = base + timedelta(days=days)
        self.next_billing_date = self.end_date
        self.save(update_fields=["end_date", "next_billing_date", "updated_at"])

    def mark_past_due(self, grace_period_ends_at: Any, grace_active: bool = True) -> None:
        self.status = "past_due" if grace_active else "payment_failed"
        self.grace_period_ends_at = grace_period_ends_at
        metadata = self.metadata
        self.set_metadata(SubscriptionMetadata(**{**asdict(metadata), "payment_retry_active": True}))
        self.save(update_fields=["status", "grace_period_ends_at", "meta", "updated_at"])
        self._audit(
            "subscription_payment_failed",
            grace_period_ends_at=grace_period_ends_at.isoformat() if grace_period_ends_at else None,
        )

    def require_payment_method(self) -> None:
        self.status = "payment_method_required"
        self.save(update_fields=["status", "updated_at"])
        self._audit("subscription_payment_method_required")

    def suspend(self, reason: str = "max_payment_retries_exceeded") -> None:
        with transaction.atomic():
            self.status = "suspended"
            self.suspended_at = timezone.now()
            self.auto_renew = False
            self.cancellation_reason = reason
            self.save()
            self._audit("subscription_suspended", reason=reason, critical_financial_operation=True)

    def cancel(self, at_period_end: bool = True, reason: str = "") -> None:
        now = timezone.now()
        with transaction.atomic():
            self.cancelled_at = now
            self.cancellation_reason = reason[:255]
            self.auto_renew = False
            if at_period_end:
                self.status = "cancelling"
            else:
                self.status = "cancelled"
                self.end_date = now
                self.ended_at = now
                self.next_billing_date = None
            self.save()
            self._audit(
                "subscription_cancelled",
                at_period_end=at_period_end,
                reason=reason,
                critical_financial_operation=True,
            )

    def finalize_cancellation(self) -> None:
        self.status = "cancelled"
        self.ended_at = timezone.now()
        self.next_billing_date = None
        self.save(update_fields=["status", "ended_at", "next_billing_date", "updated_at"])
        self._audit("subscription_cancellation_finalized")

    def pause(self, days: int) -> None:
        now = timezone.now()
        with transaction.atomic():
            self.status = "paused"
            self.paused_at = now
            self.resume_at = now + timedelta(days=days)
            self.end_date = self.end_date + timedelta(days=days)
            if self.next_billing_date:
                self.next_billing_date = self.next_billing_date + timedelta(days=days)
            self.save()
            self._audit("subscription_paused", days=days, resume_at=self.resume_at.isoformat())

    def resume(self) -> None:
        if self.status != "paused":
            raise ValidationError(_("Can only resume paused subscriptions"))
        self.status = "active"
        self.paused_at = None
        self.resume_at = None
        self.save(update_fields=["status", "paused_at", "resume_at", "updated_at"])
        self._audit("subscription_resumed")

    def apply_plan(self, plan: SubscriptionPlan) -> None:
        """Switch the currently-effective plan in place."""
        self.plan_id = plan.id
        self.price_cents = to_minor_units(plan.price)
        self.billing_cycle = plan.interval
        metadata = self.metadata
        self.set_metadata(
            SubscriptionMetadata(
                **{
                    **asdict(metadata),
                    "plan_id": plan.id,
                    "family_members": plan.limits.family_members,
                    "features": plan.features,
                }
            )
        )


# ===============================================================================
# SUBSCRIPTION CHANGE MODEL
# ===============================================================================


class SubscriptionChange(models.Model):
    """
    Plan change history.
    Immediate changes are recorded as applied; next-cycle changes wait as scheduled.
    """

    CHANGE_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("upgrade", _("Upgrade")),
        ("downgrade", _("Downgrade")),
    )

    MODE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("immediate", _("Immediate")),
        ("next_cycle", _("Next Cycle")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("scheduled", _("Scheduled")),
        ("applied", _("Applied")),
        ("cancelled", _("Cancelled")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="changes")
    change_type = models.CharField(max_length=20, choices=CHANGE_TYPE_CHOICES)
    mode = models.CharField(max_length=20, choices=MODE_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="scheduled", db_index=True)

    old_plan_id = models.CharField(max_length=50)
    new_plan_id = models.CharField(max_length=50)
    old_price_cents = models.BigIntegerField()
    new_price_cents = models.BigIntegerField()
    proration_amount_cents = models.BigIntegerField(
        default=0,
        help_text=_("Proration amount (positive = charge, negative = credit)"),
    )

    effective_date = models.DateTimeField()
    applied_at = models.DateTimeField(null=True, blank=True)
    payment = models.ForeignKey(
        "billing.Payment",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscription_changes",
    )

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "subscription_changes"
        verbose_name = _("Subscription Change")
        verbose_name_plural = _("Subscription Changes")
        ordering = ("-created_at",)
        indexes = (models.Index(fields=["status", "effective_date"]),)

    def __str__(self) -> str:
        return f"{self.old_plan_id} -> {self.new_plan_id} ({self.mode}, {self.status})"

    @property
    def proration_amount(self) -> Decimal:
        return from_minor_units(self.proration_amount_cents)


# ===============================================================================
# PREMIUM GRANT MODEL
# ===============================================================================


class PremiumGrant(models.Model):
    """
    Access to a paid plan or premium service.
    Extensions only ever move `expires_at` forward.
    """

    GRANT_TYPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("subscription", _("Subscription")),
        ("premium_service", _("Premium Service")),
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        ("active", _("Active")),
        ("expired", _("Expired")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="premium_grants")
    grant_type = models.CharField(max_length=20, choices=GRANT_TYPE_CHOICES)
    benefit_id = models.CharField(max_length=50, help_text=_("Plan id or premium service id"))
    name = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    price_cents = models.BigIntegerField(default=0)
    billing_period = models.CharField(max_length=10, default="monthly")
    auto_renew = models.BooleanField(default=True)

    activated_at = models.DateTimeField(default=timezone.now)
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
        db_table = "premium_grants"
        verbose_name = _("Premium Grant")
        verbose_name_plural = _("Premium Grants")
        constraints: ClassVar[list] = [
            models.UniqueConstraint(fields=["user", "benefit_id"], name="one_grant_per_user_benefit"),
        ]

    def __str__(self) -> str:
        return f"{self.benefit_id} for user {self.user_id} until {self.expires_at:%Y-%m-%d}"

    @property
    def is_current(self) -> bool:
        return self.status == "active" and self.expires_at > timezone.now()
