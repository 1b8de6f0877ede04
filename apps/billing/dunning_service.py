"""
Payment Retry & Dunning Service for the woofpay platform
Scheduled retries for failed recurring payments and the customer
communication campaigns that run alongside them.

The engine is driven by persisted `scheduled_at` timestamps polled by the
django-q scheduler; nothing waits in process.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from django.db import DatabaseError, transaction
from django.db.models import F, Max, Min
from django.utils import timezone

from apps.common.types import Err, Ok, Result

from .config import BATCH_SIZE_DEFAULT, DUNNING_CAMPAIGN_STEPS, RetryPolicy, RetryStep, get_retry_policy
from .exceptions import GatewayError, InternalError, NotFoundError, PaymentEngineError, StateConflictError
from .gateways import BasePaymentGateway, PaymentGatewayFactory
from .gateways.base import ChargeResult
from .payment_models import DunningCampaign, Payment, PaymentRetry
from .subscription_models import TERMINAL_STATUSES, Subscription
from .validators import log_security_event

logger = logging.getLogger(__name__)


def _notify(user: Any, template_type: str, payload: dict[str, Any]) -> None:
    from apps.notifications.services import NotificationService  # noqa: PLC0415

    NotificationService.notify(user, template_type, payload)


def _admin_alert(subject: str, message: str, metadata: dict[str, Any]) -> None:
    from apps.notifications.services import NotificationService  # noqa: PLC0415

    NotificationService.send_admin_alert(subject, message, alert_type="critical", metadata=metadata)


# ===============================================================================
# DUNNING CAMPAIGNS
# ===============================================================================


class DunningService:
    """One active communication campaign per subscription, advanced per failure."""

    @staticmethod
    def campaign_type_for(step: RetryStep) -> str:
        if step.method == "manual_intervention":
            return "final_notice"
        if not step.grace_period_active:
            return "grace_period"
        return "payment_failed" if step.attempt == 1 else "payment_retry"

    @staticmethod
    def open_or_advance(subscription: Subscription, step: RetryStep) -> DunningCampaign:
        """Advance the active campaign to this attempt, or open one. Caller holds a transaction."""
        now = timezone.now()
        campaign = DunningCampaign.objects.select_for_update().filter(subscription=subscription, status="active").first()
        if campaign is None:
            campaign_type = DunningService.campaign_type_for(step)
            campaign = DunningCampaign.objects.create(
                user_id=subscription.user_id,
                subscription=subscription,
                campaign_type=campaign_type,
                current_step=1,
                total_steps=DUNNING_CAMPAIGN_STEPS[campaign_type],
                next_action_date=now + timedelta(days=1),
                communications_sent=1,
            )
            logger.info(f"🔔 [Dunning] Opened {campaign_type} campaign for subscription {subscription.id}")
            return campaign

        campaign.current_step = min(step.attempt, campaign.total_steps)
        campaign.next_action_date = now + timedelta(days=1)
        campaign.communications_sent = F("communications_sent") + 1
        campaign.save(update_fields=["current_step", "next_action_date", "communications_sent", "updated_at"])
        campaign.refresh_from_db(fields=["communications_sent"])
        return campaign

    @staticmethod
    def close_for_subscription(subscription: Subscription, status: str = "cancelled") -> int:
        campaigns = list(DunningCampaign.objects.filter(subscription=subscription, status="active"))
        for campaign in campaigns:
            campaign.close(status)
        return len(campaigns)

    @staticmethod
    def process_due_actions(now: Any = None, batch_size: int = BATCH_SIZE_DEFAULT) -> dict[str, int]:
        """Send the next reminder of every active campaign whose action date has passed."""
        now = now or timezone.now()
        sent = completed = 0
        due_ids = list(
            DunningCampaign.objects.filter(status="active", next_action_date__lte=now)
            .order_by("next_action_date")
            .values_list("id", flat=True)[:batch_size]
        )
        for campaign_id in due_ids:
            with transaction.atomic():
                campaign = (
                    DunningCampaign.objects.select_for_update()
                    .select_related("subscription", "user")
                    .filter(id=campaign_id, status="active")
                    .first()
                )
                if campaign is None:
                    continue
                if campaign.current_step >= campaign.total_steps:
                    campaign.close("completed")
                    completed += 1
                    continue

                next_retry = (
                    PaymentRetry.objects.filter(subscription=campaign.subscription, status="scheduled")
                    .order_by("scheduled_at")
                    .first()
                )
                campaign.current_step += 1
                campaign.communications_sent += 1
                campaign.next_action_date = now + timedelta(days=1)
                campaign.save(update_fields=["current_step", "communications_sent", "next_action_date", "updated_at"])
                _notify(
                    campaign.user,
                    "dunning_reminder",
                    {"next_retry_date": next_retry.scheduled_at.date() if next_retry else "pending review"},
                )
                sent += 1

        return {"sent": sent, "completed": completed}


# ===============================================================================
# PAYMENT RETRY SERVICE
# ===============================================================================


class PaymentRetryService:
    """
    🔄 Retry engine for failed recurring payments

    Attempt schedule (attempt -> day offset, method, grace):
        1 -> +1d  same_payment_method  grace
        2 -> +3d  same_payment_method  grace
        3 -> +7d  alternative_method   grace
        4 -> +14d manual_intervention  grace ends
    A failure beyond the last attempt suspends the subscription.
    """

    @staticmethod
    def handle_failure(  # noqa: PLR0913
        payment_id: str,
        subscription_id: str,
        reason: str,
        error_code: str = "",
        policy: RetryPolicy | None = None,
        now: Any = None,
    ) -> Result[dict[str, Any], PaymentEngineError]:
        policy = policy or get_retry_policy()
        now = now or timezone.now()
        classification = policy.classify(error_code)
        alert: dict[str, Any] | None = None

        try:
            with transaction.atomic():
                subscription = Subscription.objects.select_for_update().filter(id=subscription_id).first()
                if subscription is None:
                    return Err(NotFoundError(f"Subscription {subscription_id} not found", code="SUBSCRIPTION_NOT_FOUND"))
                payment = Payment.objects.filter(id=payment_id, subscription=subscription).first()
                if payment is None:
                    return Err(NotFoundError(f"Payment {payment_id} not found", code="PAYMENT_NOT_FOUND"))
                if subscription.status in TERMINAL_STATUSES:
                    return Err(StateConflictError(f"Subscription is {subscription.status}", code="SUBSCRIPTION_CLOSED"))

                if payment.status in ("pending", "retry_pending"):
                    payment.mark_failed(error_code or "UNKNOWN", reason)

                if classification == "non_retryable":
                    subscription.require_payment_method()
                    outcome: dict[str, Any] = {"action": "payment_method_required", "retryable": False}
                else:
                    outcome = PaymentRetryService._schedule_next(
                        subscription, payment, reason, error_code, classification, policy, now
                    )
                    if outcome["action"] == "retry_scheduled" and outcome["retry_method"] == "manual_intervention":
                        alert = {
                            "subscription_id": str(subscription.id),
                            "payment_id": str(payment.id),
                            "user_id": str(subscription.user_id),
                            "attempt": outcome["attempt_number"],
                        }
        except DatabaseError as e:
            logger.exception(f"🔥 [Retry] Failed to record payment failure for {subscription_id}: {e}")
            return Err(InternalError("Failed to record payment failure"))

        user = subscription.user
        if outcome["action"] == "payment_method_required":
            logger.warning(f"⚠️ [Retry] Non-retryable failure {error_code} on subscription {subscription.id}")
            _notify(user, "payment_method_required", {"reason": reason})
        elif outcome["action"] == "suspended":
            _notify(user, "subscription_suspended", {})
        elif outcome["retry_method"] == "manual_intervention":
            _notify(user, "payment_manual_intervention", {})
        else:
            _notify(
                user,
                "payment_failed_retry_scheduled",
                {
                    "next_retry_date": outcome["scheduled_at"].date(),
                    "grace_period_ends_at": outcome["grace_period_ends_at"].date(),
                },
            )
        if alert is not None:
            _admin_alert(
                "Payment retry requires manual intervention",
                f"Subscription {alert['subscription_id']} has exhausted automatic retries.",
                alert,
            )
        return Ok(outcome)

    @staticmethod
    def _schedule_next(  # noqa: PLR0913
        subscription: Subscription,
        payment: Payment,
        reason: str,
        error_code: str,
        classification: str,
        policy: RetryPolicy,
        now: Any,
    ) -> dict[str, Any]:
        window = PaymentRetry.objects.filter(
            subscription=subscription,
            created_at__gte=now - timedelta(days=policy.lookback_days),
        ).aggregate(last_attempt=Max("attempt_number"), first_failure=Min("created_at"))
        attempt = (window["last_attempt"] or 0) + 1

        if attempt > policy.max_attempts:
            subscription.suspend("max_payment_retries_exceeded")
            PaymentRetryService.close_open_retries(subscription, "Subscription suspended")
            DunningService.close_for_subscription(subscription, "cancelled")
            logger.warning(f"⚠️ [Retry] Subscription {subscription.id} suspended after {attempt - 1} retries")
            return {"action": "suspended", "attempt_number": attempt - 1}

        step = policy.step_for(attempt)
        grace_period_ends_at = (window["first_failure"] or now) + timedelta(days=policy.grace_period_days)
        retry = PaymentRetry.objects.create(
            subscription=subscription,
            payment=payment,
            user_id=subscription.user_id,
            attempt_number=attempt,
            scheduled_at=now + timedelta(days=step.day_offset),
            retry_method=step.method,
            error_code=(error_code or "")[:50],
            failure_reason=reason,
            needs_review=classification == "unknown",
        )
        subscription.mark_past_due(grace_period_ends_at, grace_active=step.grace_period_active)
        DunningService.open_or_advance(subscription, step)

        log_security_event(
            event_type="payment_retry_scheduled",
            details={
                "subscription_id": str(subscription.id),
                "retry_id": str(retry.id),
                "attempt_number": attempt,
                "retry_method": step.method,
                "needs_review": retry.needs_review,
                "critical_financial_operation": True,
            },
        )
        logger.info(
            f"🔄 [Retry] Scheduled attempt {attempt} ({step.method}) for subscription {subscription.id} "
            f"at {retry.scheduled_at:%Y-%m-%d}"
        )
        return {
            "action": "retry_scheduled",
            "retry_id": str(retry.id),
            "attempt_number": attempt,
            "retry_method": step.method,
            "scheduled_at": retry.scheduled_at,
            "grace_period_ends_at": grace_period_ends_at,
            "needs_review": retry.needs_review,
        }

    @staticmethod
    def execute_retry(
        retry_id: str,
        gateway: BasePaymentGateway | None = None,
        policy: RetryPolicy | None = None,
    ) -> Result[dict[str, Any], PaymentEngineError]:
        """
        Run one scheduled retry.

        Only a `scheduled` retry that is due is attempted; any other state
        returns a skipped result, so repeated scheduler invocations are harmless.
        """
        with transaction.atomic():
            retry = (
                PaymentRetry.objects.select_for_update()
                .select_related("subscription", "payment")
                .filter(id=retry_id)
                .first()
            )
            if retry is None:
                return Err(NotFoundError(f"Retry {retry_id} not found", code="RETRY_NOT_FOUND"))
            if not retry.is_due:
                return Ok({"retry_id": str(retry.id), "skipped": True, "status": retry.status})

            subscription = Subscription.objects.select_for_update().get(id=retry.subscription_id)
            if subscription.status in TERMINAL_STATUSES:
                retry.status = "failed"
                retry.attempted_at = timezone.now()
                retry.failure_reason = f"Subscription {subscription.status} before retry"
                retry.save(update_fields=["status", "attempted_at", "failure_reason", "updated_at"])
                logger.info(f"🔄 [Retry] Closed retry {retry.id} on {subscription.status} subscription")
                return Ok({"retry_id": str(retry.id), "skipped": True, "status": retry.status})

            retry.status = "attempting"
            retry.attempted_at = timezone.now()
            retry.save(update_fields=["status", "attempted_at", "updated_at"])

        original = retry.payment
        try:
            charge = PaymentRetryService._attempt_charge(retry, subscription, original, gateway)
        except Exception as e:
            # The retry is already committed as attempting and must still reach a final state
            logger.exception(f"🔥 [Retry] Attempt {retry.attempt_number} crashed for {subscription.id}: {e}")
            PaymentRetryService._settle_crashed_attempt(retry, str(e))
            charge = ChargeResult(
                success=False,
                gateway_payment_id=None,
                error_code="PROCESSING_ERROR",
                error=f"Retry could not be processed: {e}",
            )

        if charge["success"]:
            return PaymentRetryService._record_success(retry, charge)

        with transaction.atomic():
            retry.status = "failed"
            retry.error_code = (charge["error_code"] or "")[:50]
            retry.failure_reason = charge["error"] or "Retry failed"
            retry.save(update_fields=["status", "error_code", "failure_reason", "updated_at"])

        logger.warning(f"❌ [Retry] Attempt {retry.attempt_number} for subscription {subscription.id} failed")
        return PaymentRetryService.handle_failure(
            str(original.id),
            str(subscription.id),
            charge["error"] or "Retry failed",
            charge["error_code"] or "",
            policy=policy,
        ).map(lambda outcome: {"retry_id": str(retry.id), "succeeded": False, **outcome})

    @staticmethod
    def _attempt_charge(
        retry: PaymentRetry,
        subscription: Subscription,
        original: Payment,
        gateway: BasePaymentGateway | None,
    ) -> ChargeResult:
        if retry.retry_method == "manual_intervention":
            _admin_alert(
                "Manual payment collection required",
                f"Retry {retry.id} for subscription {subscription.id} needs a person to collect payment.",
                {"retry_id": str(retry.id), "subscription_id": str(subscription.id), "user_id": str(retry.user_id)},
            )
            return ChargeResult(
                success=False,
                gateway_payment_id=None,
                error_code="MANUAL_INTERVENTION",
                error="Manual intervention required",
            )

        if retry.retry_method == "alternative_method":
            method_ref = subscription.alternate_payment_method_ref
            if not method_ref:
                _notify(subscription.user, "payment_method_required", {"reason": "add an alternative payment method"})
                return ChargeResult(
                    success=False,
                    gateway_payment_id=None,
                    error_code="ALTERNATIVE_METHOD_MISSING",
                    error="No alternative payment method on file",
                )
        else:
            method_ref = subscription.payment_method_ref

        new_payment = Payment.objects.create(
            user_id=subscription.user_id,
            subscription=subscription,
            original_payment=original,
            amount_cents=original.amount_cents,
            currency=original.currency,
            status="retry_pending",
            payment_method=retry.retry_method,
            invoice_number=f"RETRY-{retry.attempt_number}-{str(original.id)[:8]}",
            meta={"retry_id": str(retry.id), "attempt_number": retry.attempt_number},
        )
        retry.new_payment = new_payment
        retry.save(update_fields=["new_payment", "updated_at"])

        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        try:
            result = gateway.charge_recurring(
                customer_id=subscription.gateway_customer_id,
                payment_method_ref=method_ref,
                amount_cents=original.amount_cents,
                currency=original.currency,
                notes={"subscription_id": str(subscription.id), "retry_id": str(retry.id)},
            )
        except GatewayError as e:
            result = ChargeResult(success=False, gateway_payment_id=None, error_code=e.code, error=e.message)

        if result["success"]:
            new_payment.mark_paid(result["gateway_payment_id"] or "")
        else:
            new_payment.mark_failed(result["error_code"] or "UNKNOWN", result["error"] or "")
        return result

    @staticmethod
    def _settle_crashed_attempt(retry: PaymentRetry, error: str) -> None:
        if retry.new_payment_id:
            Payment.objects.filter(id=retry.new_payment_id, status="retry_pending").update(
                status="failed", failure_code="PROCESSING_ERROR", failure_reason=error, updated_at=timezone.now()
            )

    @staticmethod
    def close_open_retries(subscription: Subscription, reason: str) -> int:
        """Fail every scheduled retry of a subscription that will no longer be charged."""
        return PaymentRetry.objects.filter(subscription=subscription, status="scheduled").update(
            status="failed", failure_reason=reason, updated_at=timezone.now()
        )

    @staticmethod
    def _record_success(retry: PaymentRetry, charge: ChargeResult) -> Result[dict[str, Any], PaymentEngineError]:
        try:
            with transaction.atomic():
                subscription = Subscription.objects.select_for_update().get(id=retry.subscription_id)
                retry.status = "succeeded"
                retry.save(update_fields=["status", "updated_at"])
                subscription.record_payment(retry.payment.amount_cents)
                DunningService.close_for_subscription(subscription, "cancelled")
                log_security_event(
                    event_type="payment_retry_succeeded",
                    details={
                        "subscription_id": str(subscription.id),
                        "retry_id": str(retry.id),
                        "gateway_payment_id": charge["gateway_payment_id"],
                        "critical_financial_operation": True,
                    },
                )
        except DatabaseError as e:
            logger.exception(f"🔥 [Retry] Failed to record successful retry {retry.id}: {e}")
            return Err(InternalError("Failed to record successful retry"))

        _notify(subscription.user, "payment_retry_succeeded", {})
        logger.info(f"✅ [Retry] Attempt {retry.attempt_number} succeeded for subscription {subscription.id}")
        return Ok({"retry_id": str(retry.id), "succeeded": True, "subscription_status": subscription.status})

    @staticmethod
    def process_due_retries(
        gateway: BasePaymentGateway | None = None,
        batch_size: int = BATCH_SIZE_DEFAULT,
    ) -> dict[str, int]:
        """Run every scheduled retry whose time has come."""
        results = {"processed": 0, "succeeded": 0, "failed": 0, "errors": 0}
        due_ids = list(
            PaymentRetry.objects.filter(status="scheduled", scheduled_at__lte=timezone.now())
            .order_by("scheduled_at")
            .values_list("id", flat=True)[:batch_size]
        )
        for retry_id in due_ids:
            outcome = PaymentRetryService.execute_retry(str(retry_id), gateway=gateway)
            if outcome.is_err():
                results["errors"] += 1
                continue
            value = outcome.unwrap()
            if value.get("skipped"):
                continue
            results["processed"] += 1
            results["succeeded" if value.get("succeeded") else "failed"] += 1

        if results["processed"] or results["errors"]:
            logger.info(f"🔄 [Retry] Due retry sweep: {results}")
        return results
