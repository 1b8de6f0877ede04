"""
Tests for the payment retry engine and dunning campaigns.
"""

from __future__ import annotations

from datetime import timedelta
from unittest import mock

from django.core import mail
from django.test import TestCase
from django.utils import timezone

from apps.billing.config import get_retry_policy
from apps.billing.dunning_service import DunningService, PaymentRetryService
from apps.billing.models import DunningCampaign, Payment, PaymentRetry, Subscription
from apps.billing.subscription_service import SubscriptionService
from apps.notifications.models import NotificationLog
from tests.factories.billing_factories import (
    FakeGateway,
    create_recurring_payment,
    create_subscription,
    create_user,
    declined,
)


class RetryTestCase(TestCase):
    def setUp(self) -> None:
        self.user = create_user()
        self.subscription = create_subscription(self.user)
        self.payment = create_recurring_payment(self.subscription)

    def _fail(self, error_code: str = "INSUFFICIENT_FUNDS", now=None) -> dict:
        return PaymentRetryService.handle_failure(
            str(self.payment.id), str(self.subscription.id), "Card declined", error_code, now=now
        ).unwrap()

    def _make_due(self, retry_id: str) -> None:
        PaymentRetry.objects.filter(id=retry_id).update(scheduled_at=timezone.now() - timedelta(minutes=1))


# =============================================================================
# FAILURE HANDLING
# =============================================================================


class HandleFailureTests(RetryTestCase):
    def test_first_failure_schedules_retry_next_day(self) -> None:
        now = timezone.now()

        outcome = self._fail(now=now)

        self.assertEqual(outcome["action"], "retry_scheduled")
        self.assertEqual(outcome["attempt_number"], 1)
        self.assertEqual(outcome["retry_method"], "same_payment_method")
        self.assertEqual(outcome["scheduled_at"], now + timedelta(days=1))
        self.assertFalse(outcome["needs_review"])

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "past_due")
        self.assertTrue(self.subscription.metadata.payment_retry_active)
        self.assertEqual(Payment.objects.get(id=self.payment.id).status, "failed")

        campaign = DunningCampaign.objects.get(subscription=self.subscription)
        self.assertEqual(campaign.campaign_type, "payment_failed")
        self.assertEqual(campaign.total_steps, 5)
        self.assertTrue(
            NotificationLog.objects.filter(user=self.user, template_type="payment_failed_retry_scheduled").exists()
        )

    def test_schedule_escalates_then_suspends(self) -> None:
        now = timezone.now()
        outcomes = [self._fail(now=now) for _ in range(4)]

        self.assertEqual([o["attempt_number"] for o in outcomes], [1, 2, 3, 4])
        self.assertEqual(
            [o["retry_method"] for o in outcomes],
            ["same_payment_method", "same_payment_method", "alternative_method", "manual_intervention"],
        )
        self.assertEqual(
            [o["scheduled_at"] - now for o in outcomes],
            [timedelta(days=1), timedelta(days=3), timedelta(days=7), timedelta(days=14)],
        )

        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "payment_failed")
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "[CRITICAL] Payment retry requires manual intervention")
        self.assertEqual(DunningCampaign.objects.get().current_step, 4)

        final = self._fail(now=now)

        self.assertEqual(final["action"], "suspended")
        self.assertEqual(PaymentRetry.objects.count(), 4)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "suspended")
        self.assertFalse(DunningCampaign.objects.filter(status="active").exists())

    def test_grace_period_counts_from_first_failure(self) -> None:
        now = timezone.now()
        first = self._fail(now=now)
        second = self._fail(now=now + timedelta(days=1))

        # Anchored on the first retry row, not on the second failure's clock
        self.assertAlmostEqual(
            second["grace_period_ends_at"], first["grace_period_ends_at"], delta=timedelta(seconds=5)
        )
        self.assertLess(second["grace_period_ends_at"], now + timedelta(days=8))

    def test_non_retryable_code_requires_new_method(self) -> None:
        outcome = self._fail("card_expired")

        self.assertEqual(outcome["action"], "payment_method_required")
        self.assertFalse(PaymentRetry.objects.exists())
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, "payment_method_required")

    def test_unknown_code_retried_and_flagged(self) -> None:
        outcome = self._fail("SOMETHING_NEW")

        self.assertEqual(outcome["action"], "retry_scheduled")
        self.assertTrue(outcome["needs_review"])
        self.assertTrue(PaymentRetry.objects.get().needs_review)

    def test_closed_subscription_rejected(self) -> None:
        self.subscription.suspend()

        result = PaymentRetryService.handle_failure(str(self.payment.id), str(self.subscription.id), "declined")

        self.assertEqual(result.unwrap_err().code, "SUBSCRIPTION_CLOSED")

    def test_payment_must_belong_to_subscription(self) -> None:
        other = create_subscription(create_user("other"))

        result = PaymentRetryService.handle_failure(str(self.payment.id), str(other.id), "declined")

        self.assertEqual(result.unwrap_err().code, "PAYMENT_NOT_FOUND")

    def test_unknown_subscription(self) -> None:
        result = PaymentRetryService.handle_failure(
            str(self.payment.id), "6f1b3c1e-0000-4000-8000-000000000000", "declined"
        )

        self.assertEqual(result.unwrap_err().code, "SUBSCRIPTION_NOT_FOUND")

    def test_retry_schedule_configuration(self) -> None:
        policy = get_retry_policy()

        self.assertEqual(policy.max_attempts, 4)
        self.assertEqual(policy.classify("insufficient_funds"), "retryable")
        self.assertEqual(policy.classify("CARD_STOLEN"), "non_retryable")
        self.assertEqual(policy.classify(""), "unknown")


# =============================================================================
# EXECUTING RETRIES
# =============================================================================


class ExecuteRetryTests(RetryTestCase):
    def test_successful_retry_reactivates_subscription(self) -> None:
        retry_id = self._fail()["retry_id"]
        self._make_due(retry_id)
        gateway = FakeGateway()

        outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertTrue(outcome["succeeded"])
        self.assertEqual(outcome["subscription_status"], "active")
        self.assertEqual(gateway.charges[0]["payment_method_ref"], "token_primary")
        self.assertEqual(gateway.charges[0]["amount_cents"], 9900)

        retry = PaymentRetry.objects.get(id=retry_id)
        self.assertEqual(retry.status, "succeeded")
        self.assertEqual(retry.new_payment.status, "paid")
        self.assertEqual(retry.new_payment.original_payment, self.payment)
        self.assertFalse(DunningCampaign.objects.filter(status="active").exists())
        self.subscription.refresh_from_db()
        self.assertFalse(self.subscription.metadata.payment_retry_active)

    def test_failed_retry_schedules_next_attempt(self) -> None:
        retry_id = self._fail()["retry_id"]
        self._make_due(retry_id)
        gateway = FakeGateway(charge_results=[declined()])

        outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertFalse(outcome["succeeded"])
        self.assertEqual(outcome["action"], "retry_scheduled")
        self.assertEqual(outcome["attempt_number"], 2)
        self.assertEqual(PaymentRetry.objects.get(id=retry_id).status, "failed")
        self.assertEqual(PaymentRetry.objects.get(id=retry_id).new_payment.status, "failed")

    def test_retry_not_yet_due_is_skipped(self) -> None:
        retry_id = self._fail()["retry_id"]
        gateway = FakeGateway()

        outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertTrue(outcome["skipped"])
        self.assertEqual(gateway.charges, [])

    def test_repeated_execution_is_harmless(self) -> None:
        retry_id = self._fail()["retry_id"]
        self._make_due(retry_id)
        gateway = FakeGateway()

        PaymentRetryService.execute_retry(retry_id, gateway=gateway)
        second = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertTrue(second["skipped"])
        self.assertEqual(len(gateway.charges), 1)

    def test_alternative_method_missing(self) -> None:
        for _ in range(3):
            outcome = self._fail()
        self._make_due(outcome["retry_id"])
        gateway = FakeGateway()

        result = PaymentRetryService.execute_retry(outcome["retry_id"], gateway=gateway).unwrap()

        self.assertFalse(result["succeeded"])
        self.assertEqual(PaymentRetry.objects.get(id=outcome["retry_id"]).error_code, "ALTERNATIVE_METHOD_MISSING")
        self.assertEqual(gateway.charges, [])

    def test_alternative_method_charged(self) -> None:
        self.subscription.alternate_payment_method_ref = "token_backup"
        self.subscription.save()
        for _ in range(3):
            outcome = self._fail()
        self._make_due(outcome["retry_id"])
        gateway = FakeGateway()

        PaymentRetryService.execute_retry(outcome["retry_id"], gateway=gateway).unwrap()

        self.assertEqual(gateway.charges[0]["payment_method_ref"], "token_backup")

    def test_unknown_retry(self) -> None:
        result = PaymentRetryService.execute_retry("6f1b3c1e-0000-4000-8000-000000000000", gateway=FakeGateway())

        self.assertEqual(result.unwrap_err().code, "RETRY_NOT_FOUND")

    def test_cancellation_closes_scheduled_retries(self) -> None:
        retry_id = self._fail()["retry_id"]

        SubscriptionService.cancel(self.user, at_period_end=False, reason="moving abroad").unwrap()
        self._make_due(retry_id)
        gateway = FakeGateway()
        outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertTrue(outcome["skipped"])
        self.assertEqual(gateway.charges, [])
        retry = PaymentRetry.objects.get(id=retry_id)
        self.assertEqual(retry.status, "failed")
        self.assertEqual(retry.failure_reason, "Subscription cancelled")

    def test_closed_subscription_is_never_charged(self) -> None:
        retry_id = self._fail()["retry_id"]
        self._make_due(retry_id)
        Subscription.objects.filter(id=self.subscription.id).update(status="suspended")
        gateway = FakeGateway()

        outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertEqual(outcome, {"retry_id": retry_id, "skipped": True, "status": "failed"})
        self.assertEqual(gateway.charges, [])
        self.assertEqual(PaymentRetry.objects.get(id=retry_id).failure_reason, "Subscription suspended before retry")

    def test_crashed_charge_moves_episode_forward(self) -> None:
        retry_id = self._fail()["retry_id"]
        self._make_due(retry_id)
        gateway = FakeGateway()

        with mock.patch.object(gateway, "charge_recurring", side_effect=ValueError("unreadable response")):
            outcome = PaymentRetryService.execute_retry(retry_id, gateway=gateway).unwrap()

        self.assertFalse(outcome["succeeded"])
        self.assertEqual(outcome["action"], "retry_scheduled")
        self.assertEqual(outcome["attempt_number"], 2)
        self.assertTrue(outcome["needs_review"])
        retry = PaymentRetry.objects.get(id=retry_id)
        self.assertEqual(retry.status, "failed")
        self.assertEqual(retry.error_code, "PROCESSING_ERROR")
        self.assertEqual(retry.new_payment.status, "failed")

    def test_process_due_retries(self) -> None:
        due_id = self._fail()["retry_id"]
        self._make_due(due_id)
        other_user = create_user("second")
        other_subscription = create_subscription(other_user)
        other_payment = create_recurring_payment(other_subscription)
        PaymentRetryService.handle_failure(str(other_payment.id), str(other_subscription.id), "declined", "BANK_ERROR")
        gateway = FakeGateway()

        results = PaymentRetryService.process_due_retries(gateway=gateway)

        self.assertEqual(results, {"processed": 1, "succeeded": 1, "failed": 0, "errors": 0})
        self.assertEqual(len(gateway.charges), 1)


# =============================================================================
# DUNNING
# =============================================================================


class DunningTests(RetryTestCase):
    def test_campaign_type_follows_retry_step(self) -> None:
        steps = get_retry_policy().steps

        self.assertEqual(
            [DunningService.campaign_type_for(step) for step in steps],
            ["payment_failed", "payment_retry", "payment_retry", "final_notice"],
        )

    def test_due_reminders_are_sent(self) -> None:
        self._fail()
        campaign = DunningCampaign.objects.get()

        early = DunningService.process_due_actions(now=timezone.now())
        due = DunningService.process_due_actions(now=timezone.now() + timedelta(days=2))

        self.assertEqual(early, {"sent": 0, "completed": 0})
        self.assertEqual(due, {"sent": 1, "completed": 0})
        campaign.refresh_from_db()
        self.assertEqual(campaign.current_step, 2)
        self.assertEqual(campaign.communications_sent, 2)
        self.assertTrue(NotificationLog.objects.filter(template_type="dunning_reminder").exists())

    def test_finished_campaign_is_completed(self) -> None:
        self._fail()
        DunningCampaign.objects.update(current_step=5)

        outcome = DunningService.process_due_actions(now=timezone.now() + timedelta(days=2))

        self.assertEqual(outcome, {"sent": 0, "completed": 1})
        self.assertEqual(DunningCampaign.objects.get().status, "completed")
