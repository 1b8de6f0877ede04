"""
Subscription Service for the woofpay platform
Business logic for the subscription lifecycle, proration and refunds.

Provides:
- Trials and subscription creation (one open subscription per product line)
- Mid-cycle upgrades/downgrades with proration, or scheduled for next cycle
- Cancellation at period end or immediately with a pro-rata refund
- Pause/resume for family plans
- Activation from a completed checkout payment
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypedDict

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from apps.common.types import Err, Ok, Result, from_minor_units, round2, to_minor_units

from .config import cycle_days_for, get_retry_policy
from .dunning_service import DunningService, PaymentRetryService
from .exceptions import (
    InternalError,
    NotFoundError,
    PaymentEngineError,
    PaymentRequiredError,
    StateConflictError,
    ValidationError,
)
from .payment_models import DunningCampaign, Payment, PaymentOrder, PaymentRetry
from .plans import PlanCatalog, SubscriptionPlan, get_plan_catalog
from .subscription_models import (
    OPEN_STATUSES,
    Subscription,
    SubscriptionChange,
    SubscriptionMetadata,
)
from .validators import log_security_event

if TYPE_CHECKING:
    from apps.promotions.services import ApplyResult

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = Decimal(86400)
MAX_PAUSE_DAYS = 90

# Statuses that owe money; plan changes are refused until it is settled
PAYMENT_OUTSTANDING_STATUSES = ("past_due", "payment_failed", "payment_method_required")

CHANGE_MODES = ("immediate", "next_cycle")


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class ProrationResult(TypedDict):
    """Result of proration calculation (major units)."""

    proration_amount: Decimal
    unused_amount: Decimal
    new_amount: Decimal
    days_until_billing: int
    cycle_days: int


class CancellationResult(TypedDict):
    subscription: Subscription
    at_period_end: bool
    refund_amount: Decimal
    end_date: datetime


# ===============================================================================
# PRORATION SERVICE
# ===============================================================================


class ProrationService:
    """
    Pure proration and refund arithmetic.

    immediate:  days = ceil((next_billing - now) / 1 day), clamped at 0
                cycle = 365 for yearly, else 30 (current plan's interval)
                proration = round2(new * days / cycle - current * days / cycle)
    next_cycle: 0
    """

    @staticmethod
    def days_until(moment: datetime, now: datetime) -> int:
        seconds = Decimal(str((moment - now).total_seconds()))
        return max(0, math.ceil(seconds / SECONDS_PER_DAY))

    @staticmethod
    def calculate_proration(  # noqa: PLR0913
        current_price: Decimal,
        new_price: Decimal,
        next_billing_date: datetime,
        mode: str = "immediate",
        current_interval: str = "monthly",
        now: datetime | None = None,
    ) -> ProrationResult:
        if mode not in CHANGE_MODES:
            raise ValidationError(f"Unknown change mode: {mode}", code="INVALID_MODE")
        current_price = Decimal(str(current_price))
        new_price = Decimal(str(new_price))
        if current_price < 0 or new_price < 0:
            raise ValidationError("Plan prices must not be negative", code="INVALID_AMOUNT")

        cycle_days = cycle_days_for(current_interval)
        if mode == "next_cycle":
            return ProrationResult(
                proration_amount=Decimal("0.00"),
                unused_amount=Decimal("0.00"),
                new_amount=Decimal("0.00"),
                days_until_billing=0,
                cycle_days=cycle_days,
            )

        days = ProrationService.days_until(next_billing_date, now or timezone.now())
        unused = current_price * days / cycle_days
        new_portion = new_price * days / cycle_days

        return ProrationResult(
            proration_amount=round2(new_portion - unused),
            unused_amount=round2(unused),
            new_amount=round2(new_portion),
            days_until_billing=days,
            cycle_days=cycle_days,
        )

    @staticmethod
    def calculate_refund(
        amount_paid: Decimal,
        period_end: datetime | None,
        interval: str,
        now: datetime | None = None,
    ) -> Decimal:
        """Pro-rata refund: round2(amount_paid * remaining_days / cycle_days), never above amount_paid."""
        now = now or timezone.now()
        amount_paid = Decimal(str(amount_paid))
        if period_end is None or period_end <= now or amount_paid <= 0:
            return Decimal("0.00")

        cycle_days = cycle_days_for(interval)
        remaining = min(ProrationService.days_until(period_end, now), cycle_days)
        return min(round2(amount_paid * remaining / cycle_days), round2(amount_paid))


# ===============================================================================
# SUBSCRIPTION SERVICE
# ===============================================================================


def _notify(user: Any, template_type: str, payload: dict[str, Any]) -> None:
    from apps.notifications.services import NotificationService  # noqa: PLC0415

    NotificationService.notify(user, template_type, payload)


class SubscriptionService:
    """
    Core service for subscription management.

    Every state-changing operation runs in one transaction and locks the
    user's open subscription row(s) with SELECT FOR UPDATE.
    """

    @staticmethod
    def _open_subscription_for_update(user: Any, product_line: str = "premium") -> Subscription | None:
        return (
            Subscription.objects.select_for_update()
            .filter(user=user, product_line=product_line, status__in=OPEN_STATUSES)
            .order_by("-created_at")
            .first()
        )

    @staticmethod
    def get_open_subscription(user: Any, product_line: str = "premium") -> Subscription | None:
        return (
            Subscription.objects.filter(user=user, product_line=product_line, status__in=OPEN_STATUSES)
            .order_by("-created_at")
            .first()
        )

    # =========================================================================
    # SUBSCRIBE
    # =========================================================================

    @staticmethod
    def subscribe(  # noqa: PLR0913
        user: Any,
        plan_id: str,
        coupon_code: str | None = None,
        payment_method_ref: str = "",
        gateway_customer_id: str = "",
        catalog: PlanCatalog | None = None,
    ) -> Result[Subscription, PaymentEngineError]:
        """
        Start a subscription in `trialing` (or `active` for plans without a trial).
        Rejected while the user already has an open subscription in the product line.
        """
        catalog = catalog or get_plan_catalog()
        try:
            plan = catalog.get_plan(plan_id)
        except ValidationError as e:
            return Err(e)

        try:
            with transaction.atomic():
                existing = SubscriptionService._open_subscription_for_update(user, plan.product_line)
                if existing is not None:
                    return Err(
                        StateConflictError(
                            f"User already has a {existing.status} subscription; use change_plan instead",
                            code="SUBSCRIPTION_EXISTS",
                        )
                    )

                # Redeemed before the row exists so first-time-only coupons see no subscription
                coupon_result = None
                if coupon_code:
                    coupon_result = SubscriptionService._redeem_coupon(coupon_code, user, plan)
                extra_trial_days = coupon_result.extra_trial_days if coupon_result else 0

                now = timezone.now()
                subscription = Subscription.objects.create(
                    user=user,
                    product_line=plan.product_line,
                    plan_id=plan.id,
                    billing_cycle=plan.interval,
                    price_cents=to_minor_units(plan.price),
                    currency=plan.currency,
                    start_date=now,
                    current_period_start=now,
                    end_date=now,
                    payment_method_ref=payment_method_ref,
                    gateway_customer_id=gateway_customer_id,
                    meta=SubscriptionMetadata.for_plan(
                        plan,
                        coupon_code=coupon_code.upper().strip() if coupon_result else "",
                        extra_trial_days=extra_trial_days,
                    ).to_json(),
                )
                if coupon_result is not None:
                    SubscriptionService._link_coupon_usage(coupon_result.usage_id, subscription)

                trial_days = plan.trial_days + extra_trial_days
                if trial_days > 0:
                    subscription.start_trial(trial_days)
                else:
                    subscription.activate()

                log_security_event(
                    event_type="subscription_created",
                    details={
                        "subscription_id": str(subscription.id),
                        "user_id": str(user.pk),
                        "plan_id": plan.id,
                        "trial_days": trial_days,
                        "critical_financial_operation": True,
                    },
                    user_email=getattr(user, "email", None),
                )
        except PaymentEngineError as e:
            return Err(e)
        except IntegrityError:
            return Err(StateConflictError("A subscription was created concurrently", code="SUBSCRIPTION_EXISTS"))
        except DatabaseError as e:
            logger.exception(f"🔥 [Subscription] Failed to create subscription: {e}")
            return Err(InternalError("Failed to create subscription"))

        _notify(
            user,
            "subscription_trial_started" if subscription.status == "trialing" else "subscription_activated",
            {
                "plan_name": plan.name,
                "trial_end": subscription.trial_end.date() if subscription.trial_end else "",
                "next_billing_date": subscription.next_billing_date.date() if subscription.next_billing_date else "",
                "end_date": subscription.end_date.date(),
            },
        )
        logger.info(f"✅ [Subscription] {user.pk} subscribed to {plan.id} ({subscription.status})")
        return Ok(subscription)

    @staticmethod
    def _redeem_coupon(code: str, user: Any, plan: SubscriptionPlan) -> ApplyResult:
        from apps.promotions.services import CouponService  # noqa: PLC0415

        result = CouponService.apply(code, user, plan.price, plan_id=plan.id)
        if not result.success:
            if result.error_code in ("COUPON_DEPLETED", "USER_LIMIT_REACHED"):
                raise StateConflictError(result.error_message, code=result.error_code)
            raise ValidationError(result.error_message, code=result.error_code or "INVALID_COUPON")
        return result

    @staticmethod
    def _link_coupon_usage(usage_id: str | None, subscription: Subscription) -> None:
        from apps.promotions.models import CouponUsage  # noqa: PLC0415

        CouponUsage.objects.filter(id=usage_id).update(subscription=subscription)

    # =========================================================================
    # CHANGE PLAN
    # =========================================================================

    @staticmethod
    def change_plan(  # noqa: C901, PLR0911
        user: Any,
        new_plan_id: str,
        mode: str = "immediate",
        catalog: PlanCatalog | None = None,
        now: datetime | None = None,
    ) -> Result[SubscriptionChange, PaymentEngineError]:
        """
        Upgrade or downgrade.

        immediate:  proration is computed now, the new plan takes effect now and
                    the signed amount is recorded as a pending Payment.
        next_cycle: a SubscriptionChange is scheduled for the next billing date;
                    the subscription itself is not touched.
        """
        catalog = catalog or get_plan_catalog()
        if mode not in CHANGE_MODES:
            return Err(ValidationError(f"Unknown change mode: {mode}", code="INVALID_MODE"))
        try:
            new_plan = catalog.get_plan(new_plan_id)
        except ValidationError as e:
            return Err(e)

        now = now or timezone.now()
        try:
            with transaction.atomic():
                subscription = SubscriptionService._open_subscription_for_update(user, new_plan.product_line)
                if subscription is None:
                    return Err(NotFoundError("No active subscription to change", code="SUBSCRIPTION_NOT_FOUND"))
                if subscription.status in PAYMENT_OUTSTANDING_STATUSES:
                    return Err(
                        PaymentRequiredError(
                            "Settle the outstanding payment before changing plans",
                            details={"subscription_id": str(subscription.id), "status": subscription.status},
                        )
                    )
                if subscription.status not in ("active", "trialing"):
                    return Err(StateConflictError(f"Cannot change plan while {subscription.status}"))
                if subscription.plan_id == new_plan.id:
                    return Err(ValidationError("Already subscribed to this plan", code="SAME_PLAN"))

                old_price = subscription.price
                change_type = (
                    "upgrade"
                    if new_plan.price / new_plan.cycle_days > old_price / subscription.cycle_days
                    else "downgrade"
                )

                if mode == "next_cycle":
                    change = SubscriptionService._schedule_change(subscription, new_plan, change_type)
                else:
                    change = SubscriptionService._apply_immediate_change(
                        subscription, new_plan, change_type, old_price, now
                    )
        except PaymentEngineError as e:
            return Err(e)
        except DatabaseError as e:
            logger.exception(f"🔥 [Subscription] Plan change failed: {e}")
            return Err(InternalError("Failed to change plan"))

        if mode == "next_cycle":
            _notify(
                user,
                "subscription_change_scheduled",
                {"new_plan": new_plan.name, "effective_date": change.effective_date.date()},
            )
        else:
            _notify(
                user,
                "subscription_plan_changed",
                {
                    "old_plan": change.old_plan_id,
                    "new_plan": new_plan.name,
                    "proration_amount": change.proration_amount,
                },
            )
        return Ok(change)

    @staticmethod
    def _schedule_change(subscription: Subscription, new_plan: SubscriptionPlan, change_type: str) -> SubscriptionChange:
        # A newer scheduled change replaces an older one
        SubscriptionChange.objects.filter(subscription=subscription, status="scheduled").update(status="cancelled")
        change = SubscriptionChange.objects.create(
            subscription=subscription,
            change_type=change_type,
            mode="next_cycle",
            status="scheduled",
            old_plan_id=subscription.plan_id,
            new_plan_id=new_plan.id,
            old_price_cents=subscription.price_cents,
            new_price_cents=to_minor_units(new_plan.price),
            proration_amount_cents=0,
            effective_date=subscription.next_billing_date or subscription.end_date,
        )
        logger.info(
            f"🔄 [Subscription] Scheduled {change_type} {subscription.plan_id} -> {new_plan.id} "
            f"for {change.effective_date:%Y-%m-%d}"
        )
        return change

    @staticmethod
    def _apply_immediate_change(
        subscription: Subscription,
        new_plan: SubscriptionPlan,
        change_type: str,
        old_price: Decimal,
        now: datetime,
    ) -> SubscriptionChange:
        # Nothing has been paid during a trial, so there is nothing to prorate
        if subscription.status == "trialing":
            proration_amount = Decimal("0.00")
        else:
            proration = ProrationService.calculate_proration(
                current_price=old_price,
                new_price=new_plan.price,
                next_billing_date=subscription.next_billing_date or subscription.end_date,
                mode="immediate",
                current_interval=subscription.billing_cycle,
                now=now,
            )
            proration_amount = proration["proration_amount"]

        proration_cents = to_minor_units(proration_amount)
        old_plan_id = subscription.plan_id
        old_price_cents = subscription.price_cents

        subscription.apply_plan(new_plan)
        metadata = subscription.metadata
        subscription.set_metadata(replace(metadata, last_proration_cents=proration_cents))
        subscription.save()

        payment = None
        if proration_cents != 0:
            payment = Payment.objects.create(
                user_id=subscription.user_id,
                subscription=subscription,
                amount_cents=proration_cents,
                currency=subscription.currency,
                status="pending",
                payment_method="proration",
                invoice_number=f"PRO-{int(time.time())}",
                meta={"old_plan_id": old_plan_id, "new_plan_id": new_plan.id},
            )

        change = SubscriptionChange.objects.create(
            subscription=subscription,
            change_type=change_type,
            mode="immediate",
            status="applied",
            old_plan_id=old_plan_id,
            new_plan_id=new_plan.id,
            old_price_cents=old_price_cents,
            new_price_cents=subscription.price_cents,
            proration_amount_cents=proration_cents,
            effective_date=now,
            applied_at=now,
            payment=payment,
        )

        log_security_event(
            event_type="subscription_plan_changed",
            details={
                "subscription_id": str(subscription.id),
                "change_id": str(change.id),
                "change_type": change_type,
                "old_plan_id": old_plan_id,
                "new_plan_id": new_plan.id,
                "proration_amount_cents": proration_cents,
                "critical_financial_operation": True,
            },
        )
        return change

    # =========================================================================
    # CANCEL / PAUSE / RESUME
    # =========================================================================

    @staticmethod
    def cancel(
        user: Any,
        at_period_end: bool = True,
        reason: str = "",
        product_line: str = "premium",
        now: datetime | None = None,
    ) -> Result[CancellationResult, PaymentEngineError]:
        now = now or timezone.now()
        try:
            with transaction.atomic():
                subscription = SubscriptionService._open_subscription_for_update(user, product_line)
                if subscription is None:
                    return Err(NotFoundError("No subscription to cancel", code="SUBSCRIPTION_NOT_FOUND"))
                if at_period_end and subscription.status == "cancelling":
                    return Err(StateConflictError("Subscription is already set to cancel", code="ALREADY_CANCELLING"))

                refund = Decimal("0.00")
                if not at_period_end:
                    refund = ProrationService.calculate_refund(
                        subscription.amount_paid, subscription.end_date, subscription.billing_cycle, now
                    )

                subscription.cancel(at_period_end=at_period_end, reason=reason)
                if not at_period_end:
                    subscription.meta = {**subscription.meta, "cancellation_refund_cents": to_minor_units(refund)}
                    subscription.save(update_fields=["meta", "updated_at"])

                SubscriptionChange.objects.filter(subscription=subscription, status="scheduled").update(
                    status="cancelled"
                )
                DunningService.close_for_subscription(subscription, "cancelled")
                PaymentRetryService.close_open_retries(subscription, "Subscription cancelled")
        except DatabaseError as e:
            logger.exception(f"🔥 [Subscription] Cancellation failed: {e}")
            return Err(InternalError("Failed to cancel subscription"))

        _notify(user, "subscription_cancelled", {"end_date": subscription.end_date.date(), "refund": refund})
        logger.info(
            f"✅ [Subscription] Cancelled {subscription.id} "
            f"({'at period end' if at_period_end else 'immediately'}, refund ₹{refund})"
        )
        return Ok(
            CancellationResult(
                subscription=subscription,
                at_period_end=at_period_end,
                refund_amount=refund,
                end_date=subscription.end_date,
            )
        )

    @staticmethod
    def pause(
        user: Any,
        days: int,
        product_line: str = "premium",
        catalog: PlanCatalog | None = None,
    ) -> Result[Subscription, PaymentEngineError]:
        """Pause a family plan; the paid period is extended by the paused days."""
        catalog = catalog or get_plan_catalog()
        if not isinstance(days, int) or not 1 <= days <= MAX_PAUSE_DAYS:
            return Err(ValidationError(f"Pause must be between 1 and {MAX_PAUSE_DAYS} days", code="INVALID_PAUSE"))

        try:
            with transaction.atomic():
                subscription = SubscriptionService._open_subscription_for_update(user, product_line)
                if subscription is None:
                    return Err(NotFoundError("No subscription to pause", code="SUBSCRIPTION_NOT_FOUND"))
                if subscription.status != "active":
                    return Err(StateConflictError(f"Cannot pause a {subscription.status} subscription"))
                plan = catalog.plans.get(subscription.plan_id)
                if plan is None or not plan.pausable:
                    return Err(
                        StateConflictError("Only family plans can be paused", code="PAUSE_NOT_ALLOWED")
                    )
                subscription.pause(days)
        except DatabaseError as e:
            logger.exception(f"🔥 [Subscription] Pause failed: {e}")
            return Err(InternalError("Failed to pause subscription"))

        _notify(user, "subscription_paused", {"resume_at": subscription.resume_at.date()})
        return Ok(subscription)

    @staticmethod
    def resume(user: Any, product_line: str = "premium") -> Result[Subscription, PaymentEngineError]:
        try:
            with transaction.atomic():
                subscription = SubscriptionService._open_subscription_for_update(user, product_line)
                if subscription is None or subscription.status != "paused":
                    return Err(StateConflictError("No paused subscription to resume", code="NOT_PAUSED"))
                subscription.resume()
        except DatabaseError as e:
            logger.exception(f"🔥 [Subscription] Resume failed: {e}")
            return Err(InternalError("Failed to resume subscription"))

        _notify(user, "subscription_resumed", {})
        return Ok(subscription)

    # =========================================================================
    # PAYMENT DRIVEN ACTIVATION
    # =========================================================================

    @staticmethod
    def activate_from_payment(order: PaymentOrder, catalog: PlanCatalog | None = None) -> Subscription:
        """
        Apply a completed subscription checkout.

        Runs inside the caller's transaction. Trialing and payment-troubled
        subscriptions become active with a fresh period; active ones are
        extended; a user with no open subscription gets a new active one.
        """
        catalog = catalog or get_plan_catalog()
        plan = catalog.get_plan(order.plan_id)
        subscription = SubscriptionService._open_subscription_for_update(order.user, plan.product_line)

        if subscription is None:
            now = timezone.now()
            subscription = Subscription.objects.create(
                user_id=order.user_id,
                product_line=plan.product_line,
                plan_id=plan.id,
                billing_cycle=plan.interval,
                price_cents=to_minor_units(plan.price),
                currency=order.currency,
                start_date=now,
                current_period_start=now,
                end_date=now,
                status="active",
                meta=SubscriptionMetadata.for_plan(plan).to_json(),
            )
            subscription.activate(order.amount_cents)
        else:
            if subscription.plan_id != plan.id:
                subscription.apply_plan(plan)
                subscription.save()
            if subscription.status in ("active", "cancelling"):
                subscription.extend_period(plan.cycle_days)
            else:
                subscription.activate(order.amount_cents)

        subscription.record_payment(order.amount_cents)
        SubscriptionService._close_failure_episode(subscription)
        return subscription

    @staticmethod
    def _close_failure_episode(subscription: Subscription) -> None:
        """A successful payment settles any open retries and dunning for the subscription."""
        now = timezone.now()
        PaymentRetry.objects.filter(subscription=subscription, status="scheduled").update(
            status="succeeded", attempted_at=now, failure_reason="Settled by checkout payment"
        )
        for campaign in DunningCampaign.objects.filter(subscription=subscription, status="active"):
            campaign.close("completed")

    # =========================================================================
    # STATUS
    # =========================================================================

    @staticmethod
    def get_subscription_status(user: Any, product_line: str = "premium") -> dict[str, Any]:
        subscription = SubscriptionService.get_open_subscription(user, product_line)
        if subscription is None:
            return {"is_active": False, "subscription": None, "plan_id": None}

        now = timezone.now()
        policy = get_retry_policy()
        lookback_start = now - timedelta(days=policy.lookback_days)
        retries = PaymentRetry.objects.filter(subscription=subscription, created_at__gte=lookback_start)
        failed_attempts = retries.count()
        next_retry = retries.filter(status="scheduled").order_by("scheduled_at").first()
        first_failure = retries.order_by("created_at").first()

        return {
            "is_active": subscription.has_access,
            "status": subscription.status,
            "subscription_id": str(subscription.id),
            "plan_id": subscription.plan_id,
            "trial": {
                "in_trial": subscription.in_trial,
                "days_remaining": (
                    ProrationService.days_until(subscription.trial_end, now) if subscription.in_trial else 0
                ),
                "trial_end": subscription.trial_end,
            },
            "billing": {
                "next_billing_date": subscription.next_billing_date,
                "last_payment_date": subscription.last_payment_date,
                "amount": from_minor_units(subscription.price_cents),
                "billing_cycle": subscription.billing_cycle,
                "auto_renew": subscription.auto_renew,
                "end_date": subscription.end_date,
            },
            "payment_issues": {
                "has_issues": failed_attempts > 0,
                "failed_attempts": failed_attempts,
                "next_retry_date": next_retry.scheduled_at if next_retry else None,
                "grace_period_end": (
                    first_failure.created_at + timedelta(days=policy.grace_period_days) if first_failure else None
                ),
            },
        }

    # =========================================================================
    # SCHEDULED SWEEPS
    # =========================================================================

    @staticmethod
    def apply_scheduled_changes(now: datetime | None = None, catalog: PlanCatalog | None = None) -> dict[str, int]:
        """Apply next_cycle plan changes whose effective date has passed."""
        now = now or timezone.now()
        catalog = catalog or get_plan_catalog()
        applied = skipped = 0

        due_ids = list(
            SubscriptionChange.objects.filter(status="scheduled", effective_date__lte=now).values_list("id", flat=True)
        )
        for change_id in due_ids:
            with transaction.atomic():
                change = (
                    SubscriptionChange.objects.select_for_update()
                    .select_related("subscription")
                    .filter(id=change_id, status="scheduled")
                    .first()
                )
                if change is None:
                    continue
                subscription = Subscription.objects.select_for_update().get(id=change.subscription_id)
                plan = catalog.plans.get(change.new_plan_id)
                if plan is None or subscription.status not in ("active", "trialing"):
                    change.status = "cancelled"
                    change.save(update_fields=["status"])
                    skipped += 1
                    continue

                subscription.apply_plan(plan)
                subscription.save()
                change.status = "applied"
                change.applied_at = now
                change.save(update_fields=["status", "applied_at"])
                applied += 1
                logger.info(f"✅ [Subscription] Applied scheduled change {change.id} for {subscription.id}")

        return {"applied": applied, "skipped": skipped}

    @staticmethod
    def finalize_period_end_cancellations(now: datetime | None = None) -> dict[str, int]:
        """Move `cancelling` subscriptions whose period has ended to `cancelled`."""
        now = now or timezone.now()
        finalized = 0
        due_ids = list(
            Subscription.objects.filter(status="cancelling", end_date__lte=now).values_list("id", flat=True)
        )
        for subscription_id in due_ids:
            with transaction.atomic():
                subscription = (
                    Subscription.objects.select_for_update().filter(id=subscription_id, status="cancelling").first()
                )
                if subscription is None:
                    continue
                subscription.finalize_cancellation()
                finalized += 1

        if finalized:
            logger.info(f"✅ [Subscription] Finalized {finalized} period-end cancellation(s)")
        return {"finalized": finalized}
