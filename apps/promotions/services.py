"""
Promotion services for the woofpay platform.
Business logic for coupon validation, application and discount calculation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from django.db import models, transaction
from django.db.models import F
from django.utils import timezone

from apps.billing.exceptions import ValidationError
from apps.billing.validators import log_security_event
from apps.common.types import Err, Ok, Result, round2, to_minor_units

from .models import MAX_DISCOUNT_PERCENT, Coupon, CouponUsage

if TYPE_CHECKING:
    from apps.billing.models import PaymentOrder, Subscription

logger = logging.getLogger(__name__)


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass
class ValidationResult:
    """
    Result of coupon validation.

    Attributes:
        is_valid: Whether the coupon can be applied.
        discount_amount: Discount in major units (0 for trial extensions).
        final_amount: Order amount after the discount.
        error_message: Human-readable reason when invalid.
        error_code: Machine-readable code. Codes: INVALID_CODE, COUPON_INACTIVE,
            COUPON_NOT_YET_VALID, COUPON_EXPIRED, MIN_ORDER_NOT_MET,
            PLAN_NOT_ELIGIBLE, FIRST_TIME_ONLY, COUPON_DEPLETED,
            USER_LIMIT_REACHED, INVALID_AMOUNT
        extra_trial_days: Trial days granted by free_trial_extension coupons.
    """

    is_valid: bool
    discount_amount: Decimal = Decimal("0.00")
    final_amount: Decimal = Decimal("0.00")
    error_message: str = ""
    error_code: str = ""
    extra_trial_days: int = 0
    coupon_id: str | None = None


@dataclass
class ApplyResult:
    success: bool
    discount_amount: Decimal = Decimal("0.00")
    final_amount: Decimal = Decimal("0.00")
    usage_id: str | None = None
    extra_trial_days: int = 0
    error_message: str = ""
    error_code: str = ""


# ===============================================================================
# Coupon Service
# ===============================================================================


class CouponService:
    """
    Service for coupon validation, calculation and application.

    Checks run in a fixed order and stop at the first failure: active status,
    date window, minimum order, plan applicability, first-time restriction,
    global usage cap, per-user usage cap.
    """

    @staticmethod
    def normalize_code(code: str) -> str:
        """Normalize coupon code to uppercase and trimmed."""
        return (code or "").upper().strip()

    @classmethod
    def get_coupon_by_code(cls, code: str) -> Coupon | None:
        try:
            return Coupon.objects.get(code=cls.normalize_code(code))
        except Coupon.DoesNotExist:
            return None

    @classmethod
    def validate(
        cls,
        code: str,
        user: Any,
        order_amount: Decimal | int | str,
        plan_id: str | None = None,
    ) -> ValidationResult:
        coupon = cls.get_coupon_by_code(code)
        if coupon is None:
            return ValidationResult(is_valid=False, error_message="Invalid coupon code", error_code="INVALID_CODE")
        return cls._validate_coupon_instance(coupon, user, round2(order_amount), plan_id)

    @classmethod
    def _validate_coupon_instance(  # noqa: PLR0911
        cls,
        coupon: Coupon,
        user: Any,
        amount: Decimal,
        plan_id: str | None,
    ) -> ValidationResult:
        """Separated so apply() can re-run the checks against a locked row."""

        def invalid(message: str, code: str) -> ValidationResult:
            return ValidationResult(
                is_valid=False,
                final_amount=amount,
                error_message=message,
                error_code=code,
                coupon_id=str(coupon.id),
            )

        if amount <= 0:
            return invalid("Order amount must be positive", "INVALID_AMOUNT")

        if not coupon.is_active:
            return invalid("Coupon is inactive", "COUPON_INACTIVE")

        if coupon.is_not_yet_valid:
            return invalid("Coupon is not yet valid", "COUPON_NOT_YET_VALID")
        if coupon.is_expired:
            return invalid("Coupon has expired", "COUPON_EXPIRED")

        minimum = coupon.minimum_order_amount
        if minimum is not None and amount < minimum:
            return invalid(f"Minimum order of ₹{minimum:.2f} required", "MIN_ORDER_NOT_MET")

        if coupon.applicable_plans and plan_id not in coupon.applicable_plans:
            return invalid("Coupon is not valid for this plan", "PLAN_NOT_ELIGIBLE")

        if coupon.first_time_only and cls._has_any_subscription(user):
            return invalid("Coupon is only valid for first-time subscribers", "FIRST_TIME_ONLY")

        if coupon.usage_limit is not None and coupon.applied_uses() >= coupon.usage_limit:
            return invalid("Coupon usage limit reached", "COUPON_DEPLETED")

        if coupon.applied_uses_for(user) >= coupon.usage_limit_per_user:
            return invalid("You have already used this coupon", "USER_LIMIT_REACHED")

        discount = cls.calculate_discount(coupon, amount)
        return ValidationResult(
            is_valid=True,
            discount_amount=discount,
            final_amount=amount - discount,
            extra_trial_days=int(coupon.value) if coupon.coupon_type == "free_trial_extension" else 0,
            coupon_id=str(coupon.id),
        )

    @staticmethod
    def _has_any_subscription(user: Any) -> bool:
        from apps.billing.models import Subscription  # noqa: PLC0415

        return Subscription.objects.filter(user=user).exists()

    @staticmethod
    def calculate_discount(coupon: Coupon, amount: Decimal) -> Decimal:
        """
        percentage   -> round2(amount * value / 100)
        fixed_amount -> min(value, amount)
        free_trial_extension -> 0
        Both money types are clamped to the coupon's maximum discount.
        """
        if coupon.coupon_type == "percentage":
            discount = round2(amount * min(coupon.value, MAX_DISCOUNT_PERCENT) / Decimal("100"))
        elif coupon.coupon_type == "fixed_amount":
            discount = round2(min(coupon.value, amount))
        else:
            return Decimal("0.00")

        maximum = coupon.maximum_discount_amount
        if maximum is not None and discount > maximum:
            discount = maximum
        return discount

    @classmethod
    @transaction.atomic
    def apply(  # noqa: PLR0913
        cls,
        code: str,
        user: Any,
        order_amount: Decimal | int | str,
        plan_id: str | None = None,
        payment_order: PaymentOrder | None = None,
        subscription: Subscription | None = None,
    ) -> ApplyResult:
        """
        Redeem a coupon with race condition protection.

        The coupon row is locked with SELECT FOR UPDATE and every check is
        re-run under the lock, so concurrent redemptions near a cap serialize
        and only those that still fit succeed.
        """
        normalized_code = cls.normalize_code(code)
        amount = round2(order_amount)

        try:
            locked_coupon = Coupon.objects.select_for_update().get(code=normalized_code)
        except Coupon.DoesNotExist:
            return ApplyResult(success=False, error_message="Invalid coupon code", error_code="INVALID_CODE")

        validation = cls._validate_coupon_instance(locked_coupon, user, amount, plan_id)
        if not validation.is_valid:
            logger.warning(
                f"⚠️ [Coupons] Validation failed after lock: {normalized_code} - {validation.error_message}",
                extra={"coupon_code": normalized_code, "user_id": str(user.pk), "error": validation.error_code},
            )
            return ApplyResult(
                success=False,
                final_amount=amount,
                error_message=validation.error_message,
                error_code=validation.error_code,
            )

        discount_cents = to_minor_units(validation.discount_amount)
        usage = CouponUsage.objects.create(
            coupon=locked_coupon,
            user=user,
            payment_order=payment_order,
            subscription=subscription,
            amount_before_cents=to_minor_units(amount),
            discount_cents=discount_cents,
            amount_after_cents=to_minor_units(validation.final_amount),
            status="applied",
        )
        Coupon.objects.filter(pk=locked_coupon.pk).update(
            total_uses=F("total_uses") + 1,
            total_discount_cents=F("total_discount_cents") + discount_cents,
        )

        log_security_event(
            event_type="coupon_redeemed",
            details={
                "coupon_code": normalized_code,
                "usage_id": str(usage.id),
                "user_id": str(user.pk),
                "discount_cents": discount_cents,
                "critical_financial_operation": True,
            },
        )

        return ApplyResult(
            success=True,
            discount_amount=validation.discount_amount,
            final_amount=validation.final_amount,
            usage_id=str(usage.id),
            extra_trial_days=validation.extra_trial_days,
        )

    @classmethod
    def release_for_order(cls, payment_order: PaymentOrder) -> int:
        """Mark the order's redemptions refunded so they stop counting toward limits."""
        usages = list(CouponUsage.objects.filter(payment_order=payment_order, status="applied"))
        for usage in usages:
            usage.mark_refunded()
        return len(usages)

    @classmethod
    def create_coupon(  # noqa: PLR0913
        cls,
        code: str,
        name: str,
        coupon_type: str,
        value: Decimal | int | str,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        created_by: Any | None = None,
        **options: Any,
    ) -> Result[Coupon, ValidationError]:
        normalized_code = cls.normalize_code(code)
        if not normalized_code:
            return Err(ValidationError("Coupon code is required", code="INVALID_CODE"))
        if coupon_type not in dict(Coupon.COUPON_TYPE_CHOICES):
            return Err(ValidationError(f"Unknown coupon type: {coupon_type}", code="INVALID_COUPON_TYPE"))

        value = round2(value)
        if value <= 0:
            return Err(ValidationError("Coupon value must be positive", code="INVALID_VALUE"))
        if coupon_type == "percentage" and value > MAX_DISCOUNT_PERCENT:
            return Err(ValidationError("Percentage cannot exceed 100", code="INVALID_VALUE"))

        valid_from = valid_from or timezone.now()
        if valid_until is not None and valid_from >= valid_until:
            return Err(ValidationError("valid_from must be before valid_until", code="INVALID_DATE_RANGE"))

        for amount_key in ("minimum_order_amount", "maximum_discount_amount"):
            if options.get(amount_key) is not None:
                options[f"{amount_key}_cents"] = to_minor_units(options.pop(amount_key))
            else:
                options.pop(amount_key, None)

        with transaction.atomic():
            if Coupon.objects.select_for_update().filter(code=normalized_code).exists():
                return Err(ValidationError(f"Coupon code {normalized_code} already exists", code="DUPLICATE_CODE"))
            coupon = Coupon.objects.create(
                code=normalized_code,
                name=name,
                coupon_type=coupon_type,
                value=value,
                valid_from=valid_from,
                valid_until=valid_until,
                created_by=created_by,
                **options,
            )

        logger.info(f"✅ [Coupons] Created {coupon_type} coupon {normalized_code}")
        return Ok(coupon)

    @classmethod
    def get_available_coupons(
        cls,
        user: Any,
        plan_id: str | None,
        amount: Decimal | int | str,
    ) -> list[Coupon]:
        """Public coupons that would validate for this user, plan and amount."""
        now = timezone.now()
        queryset = Coupon.objects.filter(
            is_active=True,
            is_public=True,
            valid_from__lte=now,
        ).filter(models.Q(valid_until__isnull=True) | models.Q(valid_until__gte=now))

        amount = round2(amount)
        return [
            coupon
            for coupon in queryset
            if cls._validate_coupon_instance(coupon, user, amount, plan_id).is_valid
        ]
