"""
Tests for ProrationService: mid-cycle plan change arithmetic and pro-rata refunds.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from django.test import SimpleTestCase
from django.utils import timezone

from apps.billing.exceptions import ValidationError
from apps.billing.payment_service import calculate_final_amount
from apps.billing.subscription_service import ProrationService

# =============================================================================
# PRORATION
# =============================================================================


class CalculateProrationTests(SimpleTestCase):
    def setUp(self) -> None:
        self.now = timezone.now()

    def test_upgrade_halfway_through_month(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("99"), Decimal("149"), self.now + timedelta(days=15), now=self.now
        )

        self.assertEqual(result["proration_amount"], Decimal("25.00"))
        self.assertEqual(result["unused_amount"], Decimal("49.50"))
        self.assertEqual(result["new_amount"], Decimal("74.50"))
        self.assertEqual(result["days_until_billing"], 15)
        self.assertEqual(result["cycle_days"], 30)

    def test_downgrade_gives_credit(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("149"), Decimal("99"), self.now + timedelta(days=15), now=self.now
        )

        self.assertEqual(result["proration_amount"], Decimal("-25.00"))

    def test_billing_date_in_the_past_prorates_nothing(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("99"), Decimal("149"), self.now - timedelta(days=2), now=self.now
        )

        self.assertEqual(result["proration_amount"], Decimal("0.00"))
        self.assertEqual(result["days_until_billing"], 0)

    def test_partial_day_rounds_up_to_one_day(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("99"), Decimal("149"), self.now + timedelta(hours=1), now=self.now
        )

        self.assertEqual(result["days_until_billing"], 1)
        self.assertEqual(result["proration_amount"], Decimal("1.67"))

    def test_full_cycle_charges_price_difference(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("99"), Decimal("149"), self.now + timedelta(days=30), now=self.now
        )

        self.assertEqual(result["proration_amount"], Decimal("50.00"))

    def test_yearly_interval_uses_365_day_cycle(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("990"), Decimal("1490"), self.now + timedelta(days=73), current_interval="yearly", now=self.now
        )

        self.assertEqual(result["cycle_days"], 365)
        self.assertEqual(result["proration_amount"], Decimal("100.00"))

    def test_next_cycle_mode_is_zero(self) -> None:
        result = ProrationService.calculate_proration(
            Decimal("99"), Decimal("149"), self.now + timedelta(days=15), mode="next_cycle", now=self.now
        )

        self.assertEqual(result["proration_amount"], Decimal("0.00"))

    def test_unknown_mode_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            ProrationService.calculate_proration(Decimal("99"), Decimal("149"), self.now, mode="sometime")

        self.assertEqual(ctx.exception.code, "INVALID_MODE")

    def test_negative_price_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            ProrationService.calculate_proration(Decimal("-1"), Decimal("149"), self.now + timedelta(days=3))


# =============================================================================
# REFUNDS
# =============================================================================


class CalculateRefundTests(SimpleTestCase):
    def setUp(self) -> None:
        self.now = timezone.now()

    def test_yearly_refund_for_remaining_days(self) -> None:
        refund = ProrationService.calculate_refund(
            Decimal("990"), self.now + timedelta(days=100), "yearly", now=self.now
        )

        self.assertEqual(refund, Decimal("271.23"))

    def test_refund_never_exceeds_amount_paid(self) -> None:
        refund = ProrationService.calculate_refund(
            Decimal("99"), self.now + timedelta(days=45), "monthly", now=self.now
        )

        self.assertEqual(refund, Decimal("99.00"))

    def test_ended_period_refunds_nothing(self) -> None:
        refund = ProrationService.calculate_refund(
            Decimal("99"), self.now - timedelta(seconds=1), "monthly", now=self.now
        )

        self.assertEqual(refund, Decimal("0.00"))

    def test_nothing_paid_refunds_nothing(self) -> None:
        refund = ProrationService.calculate_refund(Decimal("0"), self.now + timedelta(days=10), "monthly", now=self.now)

        self.assertEqual(refund, Decimal("0.00"))


# =============================================================================
# CHECKOUT AMOUNTS
# =============================================================================


class CalculateFinalAmountTests(SimpleTestCase):
    def test_gst_added_on_top(self) -> None:
        breakdown = calculate_final_amount(Decimal("99"), "premium_service")

        self.assertEqual(breakdown["tax_amount"], Decimal("17.82"))
        self.assertEqual(breakdown["final_amount"], Decimal("116.82"))

    def test_gst_applies_after_discount(self) -> None:
        breakdown = calculate_final_amount(Decimal("199"), "premium_service", discount_amount=Decimal("19.90"))

        self.assertEqual(breakdown["tax_amount"], Decimal("32.24"))
        self.assertEqual(breakdown["final_amount"], Decimal("211.34"))

    def test_yearly_subscription_billed_ten_months_for_twelve(self) -> None:
        breakdown = calculate_final_amount(Decimal("990"), "subscription", billing_period="yearly")

        self.assertEqual(breakdown["tax_amount"], Decimal("178.20"))
        self.assertEqual(breakdown["final_amount"], Decimal("973.50"))

    def test_yearly_factor_only_applies_to_subscriptions(self) -> None:
        breakdown = calculate_final_amount(Decimal("299"), "dog_id", billing_period="yearly")

        self.assertEqual(breakdown["final_amount"], Decimal("352.82"))
