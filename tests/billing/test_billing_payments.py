"""
Tests for OrderPaymentService: checkout creation, signature-verified completion,
per-type benefits, webhooks, refunds and the stale order sweep.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.core import mail
from django.test import TestCase
from django.utils import timezone

from apps.billing.exceptions import GatewayError, NotFoundError, SignatureError, StateConflictError, ValidationError
from apps.billing.models import Payment, PaymentOrder, PremiumGrant, Subscription, Transaction
from apps.billing.payment_service import OrderPaymentService
from apps.partners.models import PartnerSubscription
from apps.partners.services import CommissionService
from apps.promotions.models import CouponUsage
from tests.factories.billing_factories import (
    FakeGateway,
    create_coupon,
    create_dog,
    create_partner,
    create_user,
    sign_payment,
    sign_webhook,
    webhook_body,
)


class PaymentTestCase(TestCase):
    def setUp(self) -> None:
        self.user = create_user()
        self.gateway = FakeGateway()

    def _create(self, amount: str | int = "99", payment_type: str = "premium_service", **kwargs) -> dict:
        kwargs.setdefault("service_id", "priority_support" if payment_type == "premium_service" else "")
        result = OrderPaymentService.create_order(self.user, amount, payment_type, gateway=self.gateway, **kwargs)
        return result.unwrap()

    def _pay(self, checkout: dict, payment_id: str = "pay_001") -> dict:
        gateway_order_id = checkout["gateway_order_id"]
        return OrderPaymentService.verify_and_complete(
            payment_id, gateway_order_id, sign_payment(gateway_order_id, payment_id), gateway=self.gateway
        ).unwrap()


# =============================================================================
# CREATE ORDER
# =============================================================================


class CreateOrderTests(PaymentTestCase):
    def test_premium_service_order(self) -> None:
        checkout = self._create("99")

        self.assertEqual(checkout["amount"], Decimal("116.82"))
        self.assertEqual(checkout["tax_amount"], Decimal("17.82"))
        self.assertEqual(checkout["key_id"], "rzp_test_fake_key")
        self.assertTrue(checkout["receipt"].startswith("receipt_"))

        order = PaymentOrder.objects.get(id=checkout["order_id"])
        self.assertEqual(order.status, "created")
        self.assertEqual(order.amount_cents, 11682)
        self.assertEqual(order.base_amount_cents, 9900)
        self.assertEqual(self.gateway.orders[order.gateway_order_id]["amount_cents"], 11682)

    def test_yearly_subscription_order(self) -> None:
        checkout = self._create("990", "subscription", plan_id="premium_yearly", billing_period="yearly")

        self.assertEqual(checkout["amount"], Decimal("973.50"))

    def test_coupon_discount_applied_before_tax(self) -> None:
        create_coupon("WOOF10", "percentage", 10)

        checkout = self._create("199", service_id="advanced_analytics", coupon_code="woof10")

        self.assertEqual(checkout["discount_amount"], Decimal("19.90"))
        self.assertEqual(checkout["amount"], Decimal("211.34"))
        order = PaymentOrder.objects.get(id=checkout["order_id"])
        self.assertEqual(order.coupon_code, "WOOF10")
        self.assertEqual(CouponUsage.objects.get().payment_order, order)

    def test_invalid_requests_never_reach_gateway(self) -> None:
        other_dog = create_dog(create_user("stranger"))
        cases = [
            ({"amount": "99", "payment_type": "donation"}, "INVALID_PAYMENT_TYPE"),
            ({"amount": "99", "payment_type": "premium_service", "currency": "EUR"}, "INVALID_CURRENCY"),
            ({"amount": "0", "payment_type": "premium_service"}, "INVALID_AMOUNT"),
            ({"amount": "abc", "payment_type": "premium_service"}, "INVALID_AMOUNT"),
            ({"amount": "10", "payment_type": "premium_service"}, "AMOUNT_BELOW_MINIMUM"),
            ({"amount": "99", "payment_type": "subscription", "plan_id": "gold"}, "INVALID_PLAN"),
            ({"amount": "99", "payment_type": "premium_service", "service_id": "walks"}, "INVALID_SERVICE"),
            ({"amount": "299", "payment_type": "dog_id"}, "MISSING_DOG"),
            ({"amount": "299", "payment_type": "dog_id", "dog_id": str(other_dog.id)}, "DOG_NOT_OWNED"),
            ({"amount": "200", "payment_type": "appointment"}, "MISSING_REFERENCE"),
            ({"amount": "500", "payment_type": "partner_subscription"}, "MISSING_PARTNER"),
        ]
        for request, code in cases:
            with self.subTest(code=code, request=request):
                kwargs = dict(request)
                amount = kwargs.pop("amount")
                payment_type = kwargs.pop("payment_type")
                if payment_type == "premium_service":
                    kwargs.setdefault("service_id", "priority_support")
                result = OrderPaymentService.create_order(
                    self.user, amount, payment_type, gateway=self.gateway, **kwargs
                )
                self.assertIsInstance(result.unwrap_err(), ValidationError)
                self.assertEqual(result.unwrap_err().code, code)

        self.assertEqual(self.gateway.orders, {})
        self.assertFalse(PaymentOrder.objects.exists())

    def test_unknown_dog_is_not_found(self) -> None:
        result = OrderPaymentService.create_order(
            self.user, "299", "dog_id", dog_id="not-a-uuid", gateway=self.gateway
        )

        self.assertIsInstance(result.unwrap_err(), NotFoundError)
        self.assertEqual(result.unwrap_err().code, "DOG_NOT_FOUND")

    def test_inactive_partner_rejected(self) -> None:
        partner = create_partner(status="pending")

        result = OrderPaymentService.create_order(
            self.user, "500", "partner_subscription", partner_id=str(partner.id), gateway=self.gateway
        )

        self.assertEqual(result.unwrap_err().code, "PARTNER_INACTIVE")

    def test_gateway_failure_persists_nothing(self) -> None:
        self.gateway.create_error = GatewayError("Payment gateway timed out: orders", code="TIMEOUT")

        result = OrderPaymentService.create_order(
            self.user, "99", "premium_service", service_id="priority_support", gateway=self.gateway
        )

        self.assertIsInstance(result.unwrap_err(), GatewayError)
        self.assertTrue(result.unwrap_err().retryable)
        self.assertFalse(PaymentOrder.objects.exists())

    def test_depleted_coupon_is_a_conflict(self) -> None:
        create_coupon("ONCE", usage_limit=1)
        self._create("99", coupon_code="ONCE")
        other = create_user("second")

        result = OrderPaymentService.create_order(
            other, "99", "premium_service", service_id="priority_support", coupon_code="ONCE", gateway=self.gateway
        )

        self.assertIsInstance(result.unwrap_err(), StateConflictError)
        self.assertEqual(result.unwrap_err().code, "COUPON_DEPLETED")


# =============================================================================
# VERIFY AND COMPLETE
# =============================================================================


class VerifyAndCompleteTests(PaymentTestCase):
    def test_completion_is_idempotent(self) -> None:
        checkout = self._create("99")

        first = self._pay(checkout)
        second = self._pay(checkout)

        self.assertFalse(first["already_processed"])
        self.assertTrue(second["already_processed"])
        self.assertEqual(first["transaction_id"], second["transaction_id"])
        self.assertEqual(first["benefit"], second["benefit"])
        self.assertEqual(Transaction.objects.count(), 1)
        self.assertEqual(Payment.objects.count(), 1)

        order = PaymentOrder.objects.get(id=checkout["order_id"])
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.gateway_payment_id, "pay_001")

    def test_bad_signature_rejected_without_side_effects(self) -> None:
        checkout = self._create("99")

        result = OrderPaymentService.verify_and_complete(
            "pay_001", checkout["gateway_order_id"], "deadbeef", gateway=self.gateway
        )

        self.assertIsInstance(result.unwrap_err(), SignatureError)
        self.assertEqual(result.unwrap_err().code, "SIGNATURE_MISMATCH")
        self.assertEqual(PaymentOrder.objects.get().status, "created")
        self.assertFalse(Transaction.objects.exists())

    def test_unknown_order(self) -> None:
        result = OrderPaymentService.verify_and_complete(
            "pay_001", "order_missing", sign_payment("order_missing", "pay_001"), gateway=self.gateway
        )

        self.assertEqual(result.unwrap_err().code, "ORDER_NOT_FOUND")

    def test_failed_order_still_completes_on_second_attempt(self) -> None:
        checkout = self._create("99")
        failure = webhook_body(
            "payment.failed",
            payment={"id": "pay_1", "order_id": checkout["gateway_order_id"], "error_description": "Card declined"},
        )
        OrderPaymentService.handle_webhook(failure, sign_webhook(failure), gateway=self.gateway).unwrap()
        self.assertEqual(PaymentOrder.objects.get().status, "failed")

        result = self._pay(checkout, payment_id="pay_2")

        order = PaymentOrder.objects.get()
        self.assertFalse(result["already_processed"])
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.gateway_payment_id, "pay_2")
        self.assertEqual(Transaction.objects.filter(payment_order=order, entry_type="charge").count(), 1)
        self.assertEqual(Payment.objects.filter(payment_order=order, status="paid").count(), 1)
        self.assertTrue(PremiumGrant.objects.filter(user=self.user, benefit_id="priority_support").exists())

    def test_ledger_entry_matches_order(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        entry = Transaction.objects.get()
        self.assertEqual(entry.amount_cents, 11682)
        self.assertEqual(entry.entry_type, "charge")
        self.assertEqual(entry.external_id, "pay_001")
        self.assertEqual(entry.revenue_stream.name, "Premium Services")


class CompletionBenefitTests(PaymentTestCase):
    def test_subscription_checkout_activates_subscription(self) -> None:
        checkout = self._create("99", "subscription", plan_id="premium_monthly")

        benefit = self._pay(checkout)["benefit"]

        subscription = Subscription.objects.get(id=benefit["subscription_id"])
        self.assertEqual(subscription.status, "active")
        self.assertEqual(subscription.amount_paid_cents, 11682)
        self.assertEqual(PremiumGrant.objects.get(id=benefit["grant_id"]).benefit_id, "premium_monthly")

    def test_subscription_checkout_ends_trial(self) -> None:
        from apps.billing.subscription_service import SubscriptionService  # noqa: PLC0415

        trialing = SubscriptionService.subscribe(self.user, "premium_monthly").unwrap()
        checkout = self._create("99", "subscription", plan_id="premium_monthly")

        benefit = self._pay(checkout)["benefit"]

        self.assertEqual(benefit["subscription_id"], str(trialing.id))
        trialing.refresh_from_db()
        self.assertEqual(trialing.status, "active")

    def test_premium_service_grant_extends_forward(self) -> None:
        first = self._pay(self._create("99"), payment_id="pay_a")
        second = self._pay(self._create("99"), payment_id="pay_b")

        self.assertEqual(first["benefit"]["grant_id"], second["benefit"]["grant_id"])
        grant = PremiumGrant.objects.get()
        self.assertGreaterEqual(grant.expires_at, timezone.now() + timedelta(days=29))
        self.assertGreaterEqual(second["benefit"]["expires_at"], first["benefit"]["expires_at"])

    def test_dog_id_activates_premium_id(self) -> None:
        dog = create_dog(self.user)
        checkout = self._create("299", "dog_id", dog_id=str(dog.id))

        benefit = self._pay(checkout)["benefit"]

        dog.refresh_from_db()
        self.assertEqual(benefit["dog_id"], str(dog.id))
        self.assertTrue(dog.premium_id_active)
        self.assertGreaterEqual(dog.premium_id_expires_at, timezone.now() + timedelta(days=364))
        self.assertEqual(Transaction.objects.get().dog, dog)

    def test_appointment_records_reference(self) -> None:
        checkout = self._create("200", "appointment", reference="appt-42")

        benefit = self._pay(checkout)["benefit"]

        self.assertEqual(benefit, {"appointment_reference": "appt-42"})
        self.assertEqual(Transaction.objects.get().revenue_stream.name, "Appointment Fees")

    def test_partner_subscription_tier(self) -> None:
        partner = create_partner()
        checkout = self._create("1500", "partner_subscription", partner_id=str(partner.id), tier="premium")

        benefit = self._pay(checkout)["benefit"]

        subscription = PartnerSubscription.objects.get(id=benefit["partner_subscription_id"])
        self.assertEqual(subscription.tier, "premium")
        self.assertEqual(subscription.commission_rate, Decimal("8"))
        self.assertEqual(subscription.partner, partner)

    def test_invalid_partner_tier(self) -> None:
        partner = create_partner()

        result = OrderPaymentService.create_order(
            self.user, "1500", "partner_subscription", partner_id=str(partner.id), tier="gold", gateway=self.gateway
        )

        self.assertEqual(result.unwrap_err().code, "INVALID_TIER")

    def test_commission_payout_marks_payout_paid(self) -> None:
        partner = create_partner()
        commission = CommissionService.record_commission(
            partner, Decimal("1000"), "vet_consultation", "consult-1"
        ).unwrap()
        payout = CommissionService.process_payout(partner, [str(commission.id)]).unwrap()
        checkout = self._create("150", "commission_payout", partner_id=str(partner.id), reference=str(payout.id))

        benefit = self._pay(checkout, payment_id="pay_payout")["benefit"]

        payout.refresh_from_db()
        self.assertEqual(benefit["payout_id"], str(payout.id))
        self.assertEqual(payout.status, "paid")
        self.assertEqual(payout.reference, "pay_payout")

    def test_commission_payout_requires_processing_payout(self) -> None:
        partner = create_partner()

        result = OrderPaymentService.create_order(
            self.user, "150", "commission_payout", partner_id=str(partner.id), reference="nope", gateway=self.gateway
        )

        self.assertEqual(result.unwrap_err().code, "INVALID_PAYOUT")


# =============================================================================
# WEBHOOKS
# =============================================================================


class WebhookTests(PaymentTestCase):
    def _deliver(self, body: bytes, signature: str | None = None):
        return OrderPaymentService.handle_webhook(
            body, sign_webhook(body) if signature is None else signature, gateway=self.gateway
        )

    def test_payment_captured_completes_order(self) -> None:
        checkout = self._create("99")
        body = webhook_body(
            "payment.captured",
            payment={"id": "pay_wh", "order_id": checkout["gateway_order_id"], "amount": 11682},
        )

        outcome = self._deliver(body).unwrap()

        self.assertTrue(outcome["processed"])
        self.assertFalse(outcome["already_processed"])
        self.assertEqual(PaymentOrder.objects.get().status, "completed")

    def test_callback_and_webhook_complete_once(self) -> None:
        checkout = self._create("99")
        self._pay(checkout, payment_id="pay_wh")
        body = webhook_body(
            "payment.captured",
            payment={"id": "pay_wh", "order_id": checkout["gateway_order_id"], "amount": 11682},
        )

        outcome = self._deliver(body).unwrap()

        self.assertTrue(outcome["already_processed"])
        self.assertEqual(Transaction.objects.count(), 1)

    def test_tampered_body_rejected(self) -> None:
        checkout = self._create("99")
        body = webhook_body(
            "payment.captured",
            payment={"id": "pay_wh", "order_id": checkout["gateway_order_id"], "amount": 11682},
        )
        signature = sign_webhook(body)

        result = self._deliver(body.replace(b"11682", b"11683"), signature)

        self.assertIsInstance(result.unwrap_err(), SignatureError)
        self.assertEqual(PaymentOrder.objects.get().status, "created")

    def test_missing_signature_rejected(self) -> None:
        result = OrderPaymentService.handle_webhook(webhook_body("order.paid"), None, gateway=self.gateway)

        self.assertIsInstance(result.unwrap_err(), SignatureError)

    def test_amount_mismatch_leaves_order_open(self) -> None:
        checkout = self._create("99")
        body = webhook_body(
            "payment.captured",
            payment={"id": "pay_wh", "order_id": checkout["gateway_order_id"], "amount": 100},
        )

        result = self._deliver(body)

        self.assertEqual(result.unwrap_err().code, "AMOUNT_MISMATCH")
        self.assertEqual(PaymentOrder.objects.get().status, "created")

    def test_order_paid_event(self) -> None:
        checkout = self._create("99")
        body = webhook_body(
            "order.paid",
            payment={"id": "pay_op", "order_id": checkout["gateway_order_id"]},
            order={"id": checkout["gateway_order_id"]},
        )

        self.assertTrue(self._deliver(body).unwrap()["processed"])
        self.assertEqual(PaymentOrder.objects.get().gateway_payment_id, "pay_op")

    def test_payment_failed_marks_open_order_failed(self) -> None:
        checkout = self._create("99")
        body = webhook_body(
            "payment.failed",
            payment={"id": "pay_x", "order_id": checkout["gateway_order_id"], "error_description": "Card declined"},
        )

        self._deliver(body).unwrap()

        order = PaymentOrder.objects.get()
        self.assertEqual(order.status, "failed")
        self.assertEqual(order.meta["failure_reason"], "Card declined")

    def test_late_failure_never_downgrades_completed_order(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)
        body = webhook_body("payment.failed", payment={"id": "pay_x", "order_id": checkout["gateway_order_id"]})

        self._deliver(body).unwrap()

        self.assertEqual(PaymentOrder.objects.get().status, "completed")

    def test_unknown_event_acknowledged(self) -> None:
        outcome = self._deliver(webhook_body("refund.created")).unwrap()

        self.assertEqual(outcome, {"event": "refund.created", "processed": False})

    def test_malformed_body(self) -> None:
        body = b"not json"

        result = self._deliver(body)

        self.assertEqual(result.unwrap_err().code, "INVALID_PAYLOAD")


# =============================================================================
# REFUNDS
# =============================================================================


class RefundTests(PaymentTestCase):
    def test_full_refund_once(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        order = OrderPaymentService.refund(checkout["order_id"], reason="duplicate", gateway=self.gateway).unwrap()
        again = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)

        self.assertEqual(order.status, "refunded")
        self.assertEqual(order.refund_id, "rfnd_1")
        self.assertEqual(order.refunded_amount_cents, 11682)
        self.assertEqual(again.unwrap_err().code, "ALREADY_REFUNDED")
        self.assertEqual(len(self.gateway.refunds), 1)

        refund_entry = Transaction.objects.get(entry_type="refund")
        self.assertEqual(refund_entry.amount_cents, -11682)
        self.assertEqual(refund_entry.original_transaction, Transaction.objects.get(entry_type="charge"))

    def test_partial_refund(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        order = OrderPaymentService.refund(checkout["order_id"], amount="50", gateway=self.gateway).unwrap()

        self.assertEqual(order.refunded_amount_cents, 5000)
        self.assertEqual(self.gateway.refunds[0]["amount_cents"], 5000)

    def test_refund_above_order_amount_rejected(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        result = OrderPaymentService.refund(checkout["order_id"], amount="500", gateway=self.gateway)

        self.assertEqual(result.unwrap_err().code, "INVALID_AMOUNT")
        self.assertEqual(self.gateway.refunds, [])

    def test_open_order_not_refundable(self) -> None:
        checkout = self._create("99")

        result = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)

        self.assertEqual(result.unwrap_err().code, "ORDER_NOT_REFUNDABLE")

    def test_unknown_order(self) -> None:
        result = OrderPaymentService.refund("not-a-uuid", gateway=self.gateway)

        self.assertEqual(result.unwrap_err().code, "ORDER_NOT_FOUND")

    def test_refund_releases_coupon(self) -> None:
        create_coupon("ONCE", usage_limit=1)
        checkout = self._create("99", coupon_code="ONCE")
        self._pay(checkout)

        OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway).unwrap()

        self.assertEqual(CouponUsage.objects.get().status, "refunded")

    def test_gateway_failure_releases_refund_claim(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        with mock.patch.object(self.gateway, "refund", side_effect=GatewayError("down", code="SERVER_ERROR")):
            failed = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)
        retried = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)

        self.assertEqual(failed.unwrap_err().code, "SERVER_ERROR")
        self.assertEqual(retried.unwrap().status, "refunded")
        self.assertNotIn("refund_pending", PaymentOrder.objects.get().meta)

    def test_unrecorded_refund_is_never_issued_twice(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        with mock.patch(
            "apps.billing.payment_service.RevenueLedgerService.record_refund",
            side_effect=StateConflictError("ledger unavailable"),
        ):
            result = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)
        again = OrderPaymentService.refund(checkout["order_id"], gateway=self.gateway)

        self.assertEqual(result.unwrap_err().code, "REFUND_NOT_RECORDED")
        self.assertEqual(again.unwrap_err().code, "REFUND_IN_PROGRESS")
        self.assertEqual(len(self.gateway.refunds), 1)
        order = PaymentOrder.objects.get()
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.meta["refund_pending"], {"amount_cents": 11682, "refund_id": "rfnd_1"})
        self.assertFalse(Transaction.objects.filter(entry_type="refund").exists())
        self.assertEqual(mail.outbox[0].subject, "[CRITICAL] Refund issued but not recorded")


# =============================================================================
# STATUS AND RECONCILIATION
# =============================================================================


class PaymentStatusTests(PaymentTestCase):
    def test_owner_sees_status(self) -> None:
        checkout = self._create("99")
        self._pay(checkout)

        status = OrderPaymentService.get_payment_status(checkout["order_id"], self.user).unwrap()

        self.assertEqual(status["status"], "completed")
        self.assertEqual(status["amount"], Decimal("116.82"))
        self.assertEqual(status["latest_payment"]["gateway_txn_id"], "pay_001")
        self.assertEqual(len(status["ledger_entries"]), 1)

    def test_other_user_cannot_see_order(self) -> None:
        checkout = self._create("99")

        result = OrderPaymentService.get_payment_status(checkout["order_id"], create_user("nosy"))

        self.assertIsInstance(result.unwrap_err(), NotFoundError)

    def test_invalid_id(self) -> None:
        result = OrderPaymentService.get_payment_status("abc", self.user)

        self.assertEqual(result.unwrap_err().code, "ORDER_NOT_FOUND")


class ReconcileStaleOrdersTests(PaymentTestCase):
    def _age(self, checkout: dict, minutes: int = 60) -> None:
        PaymentOrder.objects.filter(id=checkout["order_id"]).update(
            created_at=timezone.now() - timedelta(minutes=minutes)
        )

    def test_paid_remote_order_is_completed(self) -> None:
        paid = self._create("99")
        failed = self._create("99", service_id="premium_community")
        pending = self._create("99", service_id="advanced_analytics")
        fresh = self._create("99")
        for checkout in (paid, failed, pending):
            self._age(checkout)
        self.gateway.orders[paid["gateway_order_id"]].update(status="paid", payment_id="pay_late")
        self.gateway.orders[failed["gateway_order_id"]]["status"] = "failed"

        results = OrderPaymentService.reconcile_stale_orders(gateway=self.gateway, older_than_minutes=30)

        self.assertEqual(results, {"checked": 3, "completed": 1, "failed": 1, "pending": 1, "errors": 0})
        self.assertEqual(PaymentOrder.objects.get(id=paid["order_id"]).status, "completed")
        self.assertEqual(PaymentOrder.objects.get(id=failed["order_id"]).status, "failed")
        self.assertEqual(PaymentOrder.objects.get(id=fresh["order_id"]).status, "created")

    def test_recently_failed_order_recovers_when_paid(self) -> None:
        recovered = self._create("99")
        abandoned = self._create("99", service_id="premium_community")
        for checkout in (recovered, abandoned):
            self._age(checkout)
            PaymentOrder.objects.get(id=checkout["order_id"]).mark_failed("Card declined")
        PaymentOrder.objects.filter(id=abandoned["order_id"]).update(failed_at=timezone.now() - timedelta(days=3))
        self.gateway.orders[recovered["gateway_order_id"]].update(status="paid", payment_id="pay_second")

        results = OrderPaymentService.reconcile_stale_orders(gateway=self.gateway, older_than_minutes=30)

        self.assertEqual(results["checked"], 1)
        self.assertEqual(results["completed"], 1)
        self.assertEqual(PaymentOrder.objects.get(id=recovered["order_id"]).status, "completed")
        self.assertEqual(PaymentOrder.objects.get(id=abandoned["order_id"]).status, "failed")
