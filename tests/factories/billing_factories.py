# ===============================================================================
# TEST FACTORIES FOR BILLING
# ===============================================================================

from __future__ import annotations

import json
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Any

from django.contrib.auth import get_user_model
from django.utils import timezone

from apps.billing.config import GatewaySettings
from apps.billing.exceptions import GatewayError
from apps.billing.gateways.base import (
    ChargeResult,
    OrderResult,
    OrderStatusResult,
    RefundResult,
    compute_hmac_signature,
)
from apps.billing.gateways.razorpay_gateway import RazorpayGateway
from apps.billing.models import Payment, Subscription, SubscriptionMetadata
from apps.billing.plans import get_plan_catalog
from apps.common.types import to_minor_units
from apps.dogs.models import Dog
from apps.partners.models import Partner
from apps.promotions.models import Coupon
from apps.promotions.services import CouponService

User = get_user_model()

TEST_GATEWAY_SETTINGS = GatewaySettings(
    key_id="rzp_test_fake_key",
    key_secret="test_key_secret",  # noqa: S106
    webhook_secret="test_webhook_secret",  # noqa: S106
    api_base="https://api.razorpay.test/v1",
    timeout_seconds=5,
)


# ===============================================================================
# FAKE GATEWAY
# ===============================================================================


class FakeGateway(RazorpayGateway):
    """
    Razorpay gateway with in-memory remote state.

    Signature checks are inherited unchanged, so tests sign payloads with
    the same HMAC the production gateway verifies.
    """

    def __init__(self, charge_results: list[ChargeResult] | None = None) -> None:
        super().__init__(TEST_GATEWAY_SETTINGS)
        self.orders: dict[str, dict[str, Any]] = {}
        self.refunds: list[dict[str, Any]] = []
        self.charges: list[dict[str, Any]] = []
        self.charge_results = list(charge_results or [])
        self.create_error: GatewayError | None = None

    def create_order(
        self,
        amount_cents: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> OrderResult:
        if self.create_error is not None:
            raise self.create_error
        gateway_order_id = f"order_{secrets.token_hex(7)}"
        self.orders[gateway_order_id] = {
            "amount_cents": amount_cents,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "payment_id": None,
        }
        return OrderResult(
            gateway_order_id=gateway_order_id,
            amount_cents=amount_cents,
            currency=currency,
            receipt=receipt,
            notes=dict(notes or {}),
        )

    def fetch_order(self, gateway_order_id: str) -> OrderStatusResult:
        remote = self.orders[gateway_order_id]
        return OrderStatusResult(
            gateway_order_id=gateway_order_id,
            status=remote["status"],
            gateway_payment_id=remote["payment_id"],
        )

    def refund(
        self,
        gateway_payment_id: str,
        amount_cents: int | None = None,
        notes: dict[str, Any] | None = None,
    ) -> RefundResult:
        refund_id = f"rfnd_{len(self.refunds) + 1}"
        self.refunds.append({"payment_id": gateway_payment_id, "amount_cents": amount_cents, "refund_id": refund_id})
        return RefundResult(refund_id=refund_id, amount_cents=amount_cents or 0, status="processed")

    def charge_recurring(
        self,
        customer_id: str,
        payment_method_ref: str,
        amount_cents: int,
        currency: str,
        notes: dict[str, Any] | None = None,
    ) -> ChargeResult:
        self.charges.append(
            {"customer_id": customer_id, "payment_method_ref": payment_method_ref, "amount_cents": amount_cents}
        )
        if self.charge_results:
            return self.charge_results.pop(0)
        return ChargeResult(
            success=True, gateway_payment_id=f"pay_rec_{len(self.charges)}", error_code=None, error=None
        )


def declined(error_code: str = "INSUFFICIENT_FUNDS", error: str = "Insufficient funds") -> ChargeResult:
    return ChargeResult(success=False, gateway_payment_id=None, error_code=error_code, error=error)


def sign_payment(gateway_order_id: str, gateway_payment_id: str) -> str:
    """Checkout callback signature as the gateway would send it"""
    return compute_hmac_signature(TEST_GATEWAY_SETTINGS.key_secret, f"{gateway_order_id}|{gateway_payment_id}")


def webhook_body(event: str, payment: dict[str, Any] | None = None, order: dict[str, Any] | None = None) -> bytes:
    payload: dict[str, Any] = {}
    if payment is not None:
        payload["payment"] = {"entity": payment}
    if order is not None:
        payload["order"] = {"entity": order}
    return json.dumps({"event": event, "payload": payload}).encode("utf-8")


def sign_webhook(raw_body: bytes) -> str:
    return compute_hmac_signature(TEST_GATEWAY_SETTINGS.webhook_secret, raw_body)


# ===============================================================================
# MODEL FACTORIES
# ===============================================================================


def create_user(username: str = "owner", **kwargs: Any) -> Any:
    kwargs.setdefault("email", f"{username}@woofpay.test")
    return User.objects.create_user(username=username, password="testpass123", **kwargs)  # noqa: S106


def create_dog(owner: Any, name: str = "Bruno") -> Dog:
    return Dog.objects.create(owner=owner, name=name, breed="Indie")


def create_partner(name: str = "Happy Paws Clinic", partner_type: str = "veterinarian", status: str = "active") -> Partner:
    return Partner.objects.create(name=name, partner_type=partner_type, status=status, email="clinic@woofpay.test")


def create_subscription(  # noqa: PLR0913
    user: Any,
    plan_id: str = "premium_monthly",
    status: str = "active",
    days_left: int = 15,
    amount_paid_cents: int | None = None,
    now: Any = None,
    **fields: Any,
) -> Subscription:
    """Subscription in the middle of a paid period that ends `days_left` days after `now`"""
    plan = get_plan_catalog().get_plan(plan_id)
    now = now or timezone.now()
    period_end = now + timedelta(days=days_left)
    price_cents = to_minor_units(plan.price)
    values: dict[str, Any] = {
        "user": user,
        "product_line": plan.product_line,
        "plan_id": plan.id,
        "billing_cycle": plan.interval,
        "price_cents": price_cents,
        "currency": plan.currency,
        "status": status,
        "start_date": period_end - timedelta(days=plan.cycle_days),
        "current_period_start": period_end - timedelta(days=plan.cycle_days),
        "end_date": period_end,
        "next_billing_date": period_end,
        "amount_paid_cents": price_cents if amount_paid_cents is None else amount_paid_cents,
        "payment_method_ref": "token_primary",
        "gateway_customer_id": "cust_test",
        "meta": SubscriptionMetadata.for_plan(plan).to_json(),
    }
    values.update(fields)
    return Subscription.objects.create(**values)


def create_recurring_payment(subscription: Subscription, status: str = "pending") -> Payment:
    """Renewal charge that the retry engine works on"""
    return Payment.objects.create(
        user_id=subscription.user_id,
        subscription=subscription,
        amount_cents=subscription.price_cents,
        currency=subscription.currency,
        status=status,
        payment_method="recurring",
        invoice_number=f"REN-{secrets.token_hex(3)}",
    )


def create_coupon(
    code: str = "WOOF10",
    coupon_type: str = "percentage",
    value: Decimal | int | str = "10",
    **options: Any,
) -> Coupon:
    return CouponService.create_coupon(code, f"{code} promo", coupon_type, value, **options).unwrap()
