"""
Payment Service for the woofpay platform
Gateway-agnostic checkout orchestration: order creation, signature-verified
completion, refunds, webhooks and the stale order sweep.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
import uuid
from collections.abc import Callable
from datetime import timedelta
from decimal import Decimal
from typing import Any, TypedDict

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, transaction
from django.db.models import Q
from django.utils import timezone

from apps.common.types import Err, Ok, Result, from_minor_units, round2, to_minor_units
from apps.dogs.models import Dog
from apps.partners.models import CommissionPayout, Partner
from apps.partners.services import CommissionService, PartnerSubscriptionService
from apps.promotions.services import CouponService

from .config import (
    BATCH_SIZE_DEFAULT,
    DOG_ID_VALIDITY_DAYS,
    FAILED_ORDER_RECHECK_HOURS,
    PARTNER_SUBSCRIPTION_DAYS,
    PAYMENT_TYPES,
    STALE_ORDER_MINUTES,
    SUPPORTED_CURRENCY_CODES,
    get_gst_rate,
    get_min_amounts,
    get_yearly_discount_factor,
)
from .exceptions import (
    GatewayError,
    InternalError,
    NotFoundError,
    PaymentEngineError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from .gateways import BasePaymentGateway, PaymentGatewayFactory
from .ledger_models import Transaction
from .ledger_service import RevenueLedgerService
from .payment_models import Payment, PaymentOrder
from .plans import PlanCatalog, get_plan_catalog
from .subscription_models import PremiumGrant
from .subscription_service import SubscriptionService
from .validators import log_security_event, validate_gateway_notes

logger = logging.getLogger(__name__)


# ===============================================================================
# TYPE DEFINITIONS
# ===============================================================================


class CheckoutResult(TypedDict):
    order_id: str
    gateway_order_id: str
    receipt: str
    amount: Decimal
    base_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    currency: str
    key_id: str


class CompletionResult(TypedDict):
    order_id: str
    payment_type: str
    status: str
    already_processed: bool
    transaction_id: str | None
    benefit: dict[str, Any]


class AmountBreakdown(TypedDict):
    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    final_amount: Decimal


def _notify(user: Any, template_type: str, payload: dict[str, Any]) -> None:
    from apps.notifications.services import NotificationService  # noqa: PLC0415

    NotificationService.notify(user, template_type, payload)


def _admin_alert(subject: str, message: str, metadata: dict[str, Any]) -> None:
    from apps.notifications.services import NotificationService  # noqa: PLC0415

    NotificationService.send_admin_alert(subject, message, alert_type="critical", metadata=metadata)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def generate_receipt() -> str:
    """receipt_<unix-ts>_<random hex>"""
    return f"receipt_{int(time.time())}_{secrets.token_hex(4)}"


# ===============================================================================
# AMOUNT CALCULATION
# ===============================================================================


def calculate_final_amount(
    base_amount: Decimal,
    payment_type: str,
    billing_period: str = "monthly",
    discount_amount: Decimal = Decimal("0.00"),
) -> AmountBreakdown:
    """
    GST is added on top of the discounted amount; yearly subscription
    checkouts are then multiplied by the yearly discount factor (10/12).
    """
    discounted = round2(base_amount - discount_amount)
    tax = round2(discounted * get_gst_rate())
    total = discounted + tax
    if payment_type == "subscription" and billing_period == "yearly":
        total = total * get_yearly_discount_factor()
    return AmountBreakdown(
        base_amount=round2(base_amount),
        discount_amount=round2(discount_amount),
        tax_amount=tax,
        final_amount=round2(total),
    )


# ===============================================================================
# ORDER PAYMENT SERVICE
# ===============================================================================


class OrderPaymentService:
    """
    💳 Checkout orchestration over a payment gateway

    Completion is the critical path: the status flip, the type-specific
    benefit and the ledger write commit together under a row lock on the
    order, and a second completion of the same order is a no-op.
    """

    # =========================================================================
    # CREATE ORDER
    # =========================================================================

    @staticmethod
    def create_order(  # noqa: PLR0913
        user: Any,
        amount: Decimal | int | str,
        payment_type: str,
        *,
        currency: str = "INR",
        service_id: str = "",
        plan_id: str = "",
        dog_id: str | None = None,
        partner_id: str | None = None,
        reference: str = "",
        billing_period: str = "monthly",
        coupon_code: str = "",
        tier: str = "",
        gateway: BasePaymentGateway | None = None,
        catalog: PlanCatalog | None = None,
    ) -> Result[CheckoutResult, PaymentEngineError]:
        """
        Validate a checkout request, create the remote order and persist it.

        The coupon is validated against the pre-tax amount and redeemed in the
        same transaction that stores the order.
        """
        catalog = catalog or get_plan_catalog()
        try:
            base_amount = OrderPaymentService._validate_request(
                user,
                amount,
                payment_type,
                currency=currency,
                service_id=service_id,
                plan_id=plan_id,
                dog_id=dog_id,
                partner_id=partner_id,
                reference=reference,
                billing_period=billing_period,
                tier=tier,
                catalog=catalog,
            )

            discount = Decimal("0.00")
            if coupon_code:
                validation = CouponService.validate(coupon_code, user, base_amount, plan_id=plan_id or None)
                if not validation.is_valid:
                    if validation.error_code in ("COUPON_DEPLETED", "USER_LIMIT_REACHED"):
                        raise StateConflictError(validation.error_message, code=validation.error_code)
                    raise ValidationError(validation.error_message, code=validation.error_code or "INVALID_COUPON")
                discount = validation.discount_amount

            breakdown = calculate_final_amount(base_amount, payment_type, billing_period, discount)
            receipt = generate_receipt()
            notes: dict[str, Any] = {"payment_type": payment_type, "user_id": str(user.pk), "receipt": receipt}
            if plan_id:
                notes["plan_id"] = plan_id
            if service_id:
                notes["service_id"] = service_id
            if reference:
                notes["reference"] = reference
            notes = validate_gateway_notes(notes)

            logger.info(
                f"💳 [Payment] Creating {payment_type} order {receipt} "
                f"({breakdown['final_amount']} {currency}) for user {user.pk}"
            )
            gateway = gateway or PaymentGatewayFactory.get_default_gateway()
            remote = gateway.create_order(
                amount_cents=to_minor_units(breakdown["final_amount"]),
                currency=currency,
                receipt=receipt,
                notes=notes,
            )

            with transaction.atomic():
                order = PaymentOrder.objects.create(
                    user=user,
                    payment_type=payment_type,
                    base_amount_cents=to_minor_units(breakdown["base_amount"]),
                    tax_cents=to_minor_units(breakdown["tax_amount"]),
                    discount_cents=to_minor_units(breakdown["discount_amount"]),
                    amount_cents=to_minor_units(breakdown["final_amount"]),
                    currency=currency,
                    gateway=gateway.gateway_name,
                    gateway_order_id=remote["gateway_order_id"],
                    receipt=receipt,
                    plan_id=plan_id or "",
                    service_id=service_id or "",
                    billing_period=billing_period,
                    dog_id=dog_id or None,
                    partner_id=partner_id or None,
                    reference=reference or "",
                    coupon_code=CouponService.normalize_code(coupon_code),
                    meta={"tier": tier} if tier else {},
                )
                if coupon_code:
                    applied = CouponService.apply(
                        coupon_code, user, base_amount, plan_id=plan_id or None, payment_order=order
                    )
                    if not applied.success:
                        # Lost a race for the last redemption; the order must not survive without it
                        raise StateConflictError(applied.error_message, code=applied.error_code or "INVALID_COUPON")

        except PaymentEngineError as e:
            logger.warning(f"⚠️ [Payment] Order rejected for user {user.pk}: {e.code} {e.message}")
            return Err(e)
        except DatabaseError as e:
            logger.exception(f"🔥 [Payment] Failed to persist order: {e}")
            return Err(InternalError("Failed to create payment order"))

        logger.info(f"✅ [Payment] Created order {order.receipt} -> {order.gateway_order_id}")
        return Ok(
            CheckoutResult(
                order_id=str(order.id),
                gateway_order_id=order.gateway_order_id,
                receipt=order.receipt,
                amount=order.amount,
                base_amount=breakdown["base_amount"],
                tax_amount=breakdown["tax_amount"],
                discount_amount=breakdown["discount_amount"],
                currency=order.currency,
                key_id=gateway.config.key_id,
            )
        )

    @staticmethod
    def _validate_request(  # noqa: C901, PLR0912, PLR0913
        user: Any,
        amount: Decimal | int | str,
        payment_type: str,
        *,
        currency: str,
        service_id: str,
        plan_id: str,
        dog_id: str | None,
        partner_id: str | None,
        reference: str,
        billing_period: str,
        tier: str,
        catalog: PlanCatalog,
    ) -> Decimal:
        """Raise a taxonomy error for the first problem found; return the rounded amount."""
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError(f"Unsupported payment type: {payment_type}", code="INVALID_PAYMENT_TYPE")
        if currency not in SUPPORTED_CURRENCY_CODES:
            raise ValidationError(f"Unsupported currency: {currency}", code="INVALID_CURRENCY")
        if billing_period not in ("monthly", "yearly"):
            raise ValidationError(f"Unsupported billing period: {billing_period}", code="INVALID_BILLING_PERIOD")

        try:
            base_amount = round2(amount)
        except (ArithmeticError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid amount: {amount}", code="INVALID_AMOUNT") from e
        if base_amount <= 0:
            raise ValidationError("Amount must be positive", code="INVALID_AMOUNT")
        minimum = get_min_amounts().get(payment_type, Decimal("0"))
        if base_amount < minimum:
            raise ValidationError(
                f"Minimum amount for {payment_type} is ₹{minimum}",
                code="AMOUNT_BELOW_MINIMUM",
                details={"minimum": str(minimum)},
            )

        if payment_type == "subscription":
            catalog.get_plan(plan_id)
        elif payment_type == "premium_service":
            catalog.get_service(service_id)
        elif payment_type == "dog_id":
            if not dog_id:
                raise ValidationError("dog_id is required for Digital Dog ID orders", code="MISSING_DOG")
            dog = Dog.objects.filter(id=dog_id).first() if _is_uuid(dog_id) else None
            if dog is None:
                raise NotFoundError(f"Dog {dog_id} not found", code="DOG_NOT_FOUND")
            if dog.owner_id != user.pk:
                raise ValidationError("Dog does not belong to this user", code="DOG_NOT_OWNED")
        elif payment_type == "appointment":
            if not reference:
                raise ValidationError("Appointment orders require a reference", code="MISSING_REFERENCE")
        elif payment_type in ("partner_subscription", "commission_payout"):
            if not partner_id:
                raise ValidationError(f"partner_id is required for {payment_type}", code="MISSING_PARTNER")
            partner = Partner.objects.filter(id=partner_id).first() if _is_uuid(partner_id) else None
            if partner is None:
                raise NotFoundError(f"Partner {partner_id} not found", code="PARTNER_NOT_FOUND")
            if payment_type == "partner_subscription":
                if not partner.is_active:
                    raise ValidationError("Partner is not active", code="PARTNER_INACTIVE")
                PartnerSubscriptionService.get_tier(tier or None)
            elif not (
                _is_uuid(reference)
                and CommissionPayout.objects.filter(id=reference, partner=partner, status="processing").exists()
            ):
                raise ValidationError(
                    "Commission payout orders must reference a processing payout of the partner",
                    code="INVALID_PAYOUT",
                )

        return base_amount

    # =========================================================================
    # VERIFY & COMPLETE
    # =========================================================================

    @staticmethod
    def verify_and_complete(
        gateway_payment_id: str,
        gateway_order_id: str,
        signature: str,
        gateway: BasePaymentGateway | None = None,
    ) -> Result[CompletionResult, PaymentEngineError]:
        """
        Verify the checkout callback signature and complete the order.

        A repeated call for an already completed order returns the prior
        result with `already_processed=True` and has no further effect.
        """
        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        if not gateway.verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
            log_security_event(
                event_type="payment_signature_mismatch",
                details={
                    "gateway_order_id": gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "gateway": gateway.gateway_name,
                },
            )
            logger.warning(f"⚠️ [Payment] Signature mismatch for order {gateway_order_id}")
            return Err(SignatureError("Payment signature verification failed"))

        return OrderPaymentService._complete_order(gateway_order_id, gateway_payment_id)

    @staticmethod
    def _complete_order(
        gateway_order_id: str,
        gateway_payment_id: str,
        expected_amount_cents: int | None = None,
    ) -> Result[CompletionResult, PaymentEngineError]:
        try:
            with transaction.atomic():
                try:
                    order = PaymentOrder.objects.select_for_update().get(gateway_order_id=gateway_order_id)
                except PaymentOrder.DoesNotExist:
                    return Err(NotFoundError(f"Order {gateway_order_id} not found", code="ORDER_NOT_FOUND"))

                if order.status in ("completed", "refunded"):
                    existing = Transaction.objects.filter(payment_order=order, entry_type="charge").first()
                    logger.info(f"🔄 [Payment] Order {order.receipt} already completed, skipping")
                    return Ok(
                        CompletionResult(
                            order_id=str(order.id),
                            payment_type=order.payment_type,
                            status=order.status,
                            already_processed=True,
                            transaction_id=str(existing.id) if existing else None,
                            benefit=order.meta.get("benefit", {}),
                        )
                    )
                if order.status == "failed":
                    logger.info(f"🔄 [Payment] Order {order.receipt} captured after a failed attempt")
                if expected_amount_cents is not None and expected_amount_cents != order.amount_cents:
                    log_security_event(
                        event_type="payment_amount_mismatch",
                        details={
                            "payment_order_id": str(order.id),
                            "expected_cents": order.amount_cents,
                            "received_cents": expected_amount_cents,
                        },
                    )
                    return Err(ValidationError("Captured amount does not match the order", code="AMOUNT_MISMATCH"))

                order.mark_completed(gateway_payment_id)
                Payment.objects.create(
                    user_id=order.user_id,
                    payment_order=order,
                    amount_cents=order.amount_cents,
                    currency=order.currency,
                    status="paid",
                    payment_method=order.gateway,
                    gateway_txn_id=gateway_payment_id,
                    invoice_number=order.receipt,
                    paid_at=timezone.now(),
                )

                handler = PAYMENT_TYPE_HANDLERS.get(order.payment_type)
                if handler is None:
                    raise InternalError(f"No completion handler for payment type {order.payment_type}")
                benefit = handler(order)
                order.meta = {**order.meta, "benefit": benefit}
                order.save(update_fields=["meta", "updated_at"])

                entry = RevenueLedgerService.record_charge(order)

        except PaymentEngineError as e:
            return Err(e)
        except DatabaseError as e:
            logger.exception(f"🔥 [Payment] Completion of {gateway_order_id} rolled back: {e}")
            return Err(InternalError("Failed to complete payment; safe to retry"))

        _notify(order.user, "payment_completed", {"amount": order.amount, "receipt": order.receipt})
        logger.info(f"✅ [Payment] Completed {order.payment_type} order {order.receipt}")
        return Ok(
            CompletionResult(
                order_id=str(order.id),
                payment_type=order.payment_type,
                status=order.status,
                already_processed=False,
                transaction_id=str(entry.id),
                benefit=benefit,
            )
        )

    # =========================================================================
    # REFUND
    # =========================================================================

    @staticmethod
    def refund(
        payment_order_id: str,
        amount: Decimal | int | str | None = None,
        reason: str = "",
        gateway: BasePaymentGateway | None = None,
    ) -> Result[PaymentOrder, PaymentEngineError]:
        """
        Refund a completed order once, fully or partially.

        The order is claimed with a `refund_pending` marker before the gateway
        is called and the refund is recorded in a second transaction. The
        marker survives a failed recording, which blocks a second remote refund.
        """
        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        claim = OrderPaymentService._claim_refund(payment_order_id, amount)
        if claim.is_err():
            return Err(claim.unwrap_err())
        order, amount_cents = claim.unwrap()

        try:
            result = gateway.refund(
                order.gateway_payment_id,
                amount_cents=amount_cents,
                notes={"receipt": order.receipt, "reason": reason[:200]},
            )
        except GatewayError as e:
            logger.error(f"🔥 [Payment] Gateway refund failed for {payment_order_id}: {e.code} {e.message}")
            OrderPaymentService._release_refund_claim(order.id)
            return Err(e)

        try:
            with transaction.atomic():
                order = PaymentOrder.objects.select_for_update().get(id=order.id)
                order.meta = {key: value for key, value in order.meta.items() if key != "refund_pending"}
                order.save(update_fields=["meta", "updated_at"])
                order.mark_refunded(result["refund_id"], amount_cents, reason)
                RevenueLedgerService.record_refund(order, result["refund_id"], amount_cents, reason)
                CouponService.release_for_order(order)
        except (PaymentEngineError, DatabaseError) as e:
            logger.exception(f"🔥 [Payment] Refund {result['refund_id']} not recorded for {order.receipt}: {e}")
            PaymentOrder.objects.filter(id=order.id).update(
                meta={**order.meta, "refund_pending": {"amount_cents": amount_cents, "refund_id": result["refund_id"]}}
            )
            _admin_alert(
                "Refund issued but not recorded",
                f"Gateway refund {result['refund_id']} for order {order.receipt} needs to be recorded by hand.",
                {"order_id": str(order.id), "refund_id": result["refund_id"], "error": str(e)},
            )
            return Err(InternalError("Refund was issued but could not be recorded", code="REFUND_NOT_RECORDED"))

        _notify(order.user, "refund_processed", {"amount": from_minor_units(amount_cents), "receipt": order.receipt})
        logger.info(f"💸 [Payment] Refunded {amount_cents} {order.currency} on order {order.receipt}")
        return Ok(order)

    @staticmethod
    def _claim_refund(
        payment_order_id: str, amount: Decimal | int | str | None
    ) -> Result[tuple[PaymentOrder, int], PaymentEngineError]:
        try:
            with transaction.atomic():
                try:
                    order = PaymentOrder.objects.select_for_update().get(id=payment_order_id)
                except (PaymentOrder.DoesNotExist, ValueError, DjangoValidationError):
                    return Err(NotFoundError(f"Order {payment_order_id} not found", code="ORDER_NOT_FOUND"))

                if order.status == "refunded":
                    return Err(StateConflictError("Order has already been refunded", code="ALREADY_REFUNDED"))
                if not order.is_completed:
                    return Err(StateConflictError(f"Cannot refund a {order.status} order", code="ORDER_NOT_REFUNDABLE"))
                if "refund_pending" in order.meta:
                    return Err(StateConflictError("A refund is already in progress", code="REFUND_IN_PROGRESS"))

                amount_cents = order.amount_cents if amount is None else to_minor_units(round2(amount))
                if amount_cents <= 0 or amount_cents > order.amount_cents:
                    return Err(ValidationError("Refund amount must be within the order amount", code="INVALID_AMOUNT"))

                order.meta = {**order.meta, "refund_pending": {"amount_cents": amount_cents}}
                order.save(update_fields=["meta", "updated_at"])
        except DatabaseError as e:
            logger.exception(f"🔥 [Payment] Could not claim order {payment_order_id} for refund: {e}")
            return Err(InternalError("Failed to start refund"))
        return Ok((order, amount_cents))

    @staticmethod
    def _release_refund_claim(order_id: Any) -> None:
        with transaction.atomic():
            order = PaymentOrder.objects.select_for_update().get(id=order_id)
            order.meta = {key: value for key, value in order.meta.items() if key != "refund_pending"}
            order.save(update_fields=["meta", "updated_at"])

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    @staticmethod
    def handle_webhook(
        raw_body: bytes,
        signature: str | None,
        gateway: BasePaymentGateway | None = None,
    ) -> Result[dict[str, Any], PaymentEngineError]:
        """
        Process a gateway webhook.

        The signature is checked against the raw body before anything is
        parsed; a mismatch has no side effects beyond the security log.
        """
        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        if not gateway.verify_webhook_signature(raw_body, signature):
            log_security_event(
                event_type="webhook_signature_mismatch",
                details={"gateway": gateway.gateway_name, "body_length": len(raw_body or b"")},
            )
            logger.warning(f"⚠️ [Webhook] Rejected {gateway.gateway_name} webhook with invalid signature")
            return Err(SignatureError("Webhook signature verification failed"))

        try:
            event = json.loads(raw_body)
        except (TypeError, ValueError) as e:
            return Err(ValidationError(f"Malformed webhook body: {e}", code="INVALID_PAYLOAD"))

        event_type = event.get("event", "")
        payload = event.get("payload", {})
        payment_entity = payload.get("payment", {}).get("entity", {})
        order_entity = payload.get("order", {}).get("entity", {})
        logger.info(f"🔔 [Webhook] Processing {gateway.gateway_name} event {event_type}")

        if event_type == "payment.captured":
            completion = OrderPaymentService._complete_order(
                payment_entity.get("order_id", ""),
                payment_entity.get("id", ""),
                expected_amount_cents=payment_entity.get("amount"),
            )
            return completion.map(lambda result: {"event": event_type, "processed": True, **result})

        if event_type == "order.paid":
            completion = OrderPaymentService._complete_order(
                order_entity.get("id") or payment_entity.get("order_id", ""),
                payment_entity.get("id", ""),
            )
            return completion.map(lambda result: {"event": event_type, "processed": True, **result})

        if event_type == "payment.failed":
            return OrderPaymentService._mark_order_failed(
                payment_entity.get("order_id", ""),
                payment_entity.get("error_description") or payment_entity.get("error_code") or "payment failed",
            ).map(lambda order: {"event": event_type, "processed": True, "order_id": str(order.id)})

        logger.info(f"🔔 [Webhook] Ignoring unhandled event {event_type}")
        return Ok({"event": event_type, "processed": False})

    @staticmethod
    def _mark_order_failed(gateway_order_id: str, reason: str) -> Result[PaymentOrder, PaymentEngineError]:
        with transaction.atomic():
            order = PaymentOrder.objects.select_for_update().filter(gateway_order_id=gateway_order_id).first()
            if order is None:
                return Err(NotFoundError(f"Order {gateway_order_id} not found", code="ORDER_NOT_FOUND"))
            # A late failure event never downgrades a completed order
            if order.status == "created":
                order.mark_failed(reason)
                logger.warning(f"❌ [Payment] Order {order.receipt} failed: {reason}")
        return Ok(order)

    # =========================================================================
    # QUERIES & SWEEPS
    # =========================================================================

    @staticmethod
    def get_payment_status(order_id: str, user: Any | None = None) -> Result[dict[str, Any], PaymentEngineError]:
        queryset = PaymentOrder.objects.all()
        if user is not None:
            queryset = queryset.filter(user=user)
        try:
            order = queryset.get(id=order_id)
        except (PaymentOrder.DoesNotExist, ValueError, DjangoValidationError):
            return Err(NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND"))

        latest_payment = order.payments.order_by("-created_at").first()
        ledger = [
            {
                "id": str(entry.id),
                "entry_type": entry.entry_type,
                "amount": entry.amount,
                "status": entry.status,
                "processed_at": entry.processed_at,
            }
            for entry in order.ledger_entries.order_by("processed_at")
        ]
        return Ok(
            {
                "order_id": str(order.id),
                "receipt": order.receipt,
                "payment_type": order.payment_type,
                "status": order.status,
                "amount": order.amount,
                "base_amount": from_minor_units(order.base_amount_cents),
                "tax_amount": from_minor_units(order.tax_cents),
                "discount_amount": from_minor_units(order.discount_cents),
                "refunded_amount": from_minor_units(order.refunded_amount_cents),
                "currency": order.currency,
                "created_at": order.created_at,
                "completed_at": order.completed_at,
                "latest_payment": (
                    {
                        "id": str(latest_payment.id),
                        "status": latest_payment.status,
                        "amount": latest_payment.amount,
                        "gateway_txn_id": latest_payment.gateway_txn_id,
                    }
                    if latest_payment
                    else None
                ),
                "ledger_entries": ledger,
            }
        )

    @staticmethod
    def reconcile_stale_orders(
        gateway: BasePaymentGateway | None = None,
        older_than_minutes: int = STALE_ORDER_MINUTES,
        batch_size: int = BATCH_SIZE_DEFAULT,
    ) -> dict[str, int]:
        """Re-query the gateway for orders stuck in `created` and for recently failed ones."""
        gateway = gateway or PaymentGatewayFactory.get_default_gateway()
        now = timezone.now()
        cutoff = now - timedelta(minutes=older_than_minutes)
        results = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}

        recheck_failed_since = now - timedelta(hours=FAILED_ORDER_RECHECK_HOURS)
        stale = PaymentOrder.objects.filter(
            Q(status="created") | Q(status="failed", failed_at__gte=recheck_failed_since),
            created_at__lt=cutoff,
        ).order_by("created_at")[:batch_size]
        for order in stale:
            results["checked"] += 1
            try:
                remote = gateway.fetch_order(order.gateway_order_id)
            except GatewayError as e:
                results["errors"] += 1
                logger.warning(f"⚠️ [Reconcile] Could not fetch {order.gateway_order_id}: {e.code}")
                continue

            if remote["status"] == "paid" and remote["gateway_payment_id"]:
                completion = OrderPaymentService._complete_order(order.gateway_order_id, remote["gateway_payment_id"])
                results["completed" if completion.is_ok() else "errors"] += 1
            elif remote["status"] == "failed":
                OrderPaymentService._mark_order_failed(order.gateway_order_id, "Reported failed by gateway")
                results["failed"] += 1
            else:
                results["pending"] += 1

        if results["checked"]:
            logger.info(f"🔄 [Reconcile] Stale order sweep: {results}")
        return results


# ===============================================================================
# COMPLETION HANDLERS
# ===============================================================================


def _extend_grant(order: PaymentOrder, grant_type: str, benefit_id: str, name: str, period_days: int) -> PremiumGrant:
    """Create or extend a grant; the expiry only ever moves forward."""
    now = timezone.now()
    candidate = now + timedelta(days=period_days)
    grant = PremiumGrant.objects.select_for_update().filter(user_id=order.user_id, benefit_id=benefit_id).first()
    if grant is None:
        return PremiumGrant.objects.create(
            user_id=order.user_id,
            grant_type=grant_type,
            benefit_id=benefit_id,
            name=name,
            price_cents=order.amount_cents,
            billing_period=order.billing_period,
            activated_at=now,
            expires_at=candidate,
            last_payment_order=order,
        )

    if grant.is_current:
        grant.expires_at = max(grant.expires_at, candidate)
    else:
        grant.activated_at = now
        grant.expires_at = candidate
    grant.status = "active"
    grant.price_cents = order.amount_cents
    grant.last_payment_order = order
    grant.save()
    return grant


def _complete_subscription(order: PaymentOrder) -> dict[str, Any]:
    catalog = get_plan_catalog()
    plan = catalog.get_plan(order.plan_id)
    grant = _extend_grant(order, "subscription", plan.id, plan.name, plan.cycle_days)
    subscription = SubscriptionService.activate_from_payment(order, catalog)
    return {
        "grant_id": str(grant.id),
        "subscription_id": str(subscription.id),
        "expires_at": grant.expires_at.isoformat(),
    }


def _complete_premium_service(order: PaymentOrder) -> dict[str, Any]:
    service = get_plan_catalog().get_service(order.service_id)
    grant = _extend_grant(order, "premium_service", service.id, service.name, service.period_days)
    return {"grant_id": str(grant.id), "expires_at": grant.expires_at.isoformat()}


def _complete_dog_id(order: PaymentOrder) -> dict[str, Any]:
    dog = Dog.objects.select_for_update().get(id=order.dog_id)
    dog.activate_premium_id(DOG_ID_VALIDITY_DAYS)
    return {"dog_id": str(dog.id), "expires_at": dog.premium_id_expires_at.isoformat()}


def _complete_appointment(order: PaymentOrder) -> dict[str, Any]:
    # Booking confirmation belongs to the appointments module; the payment only records revenue
    return {"appointment_reference": order.reference}


def _complete_partner_subscription(order: PaymentOrder) -> dict[str, Any]:
    partner = Partner.objects.get(id=order.partner_id)
    subscription = PartnerSubscriptionService.activate_from_payment(
        partner, order, PARTNER_SUBSCRIPTION_DAYS, tier_name=order.meta.get("tier") or None
    )
    return {"partner_subscription_id": str(subscription.id), "expires_at": subscription.expires_at.isoformat()}


def _complete_commission_payout(order: PaymentOrder) -> dict[str, Any]:
    result = CommissionService.complete_payout(order.reference, reference=order.gateway_payment_id)
    if result.is_err():
        raise result.unwrap_err()
    return {"payout_id": str(result.unwrap().id)}


PAYMENT_TYPE_HANDLERS: dict[str, Callable[[PaymentOrder], dict[str, Any]]] = {
    "subscription": _complete_subscription,
    "premium_service": _complete_premium_service,
    "dog_id": _complete_dog_id,
    "appointment": _complete_appointment,
    "partner_subscription": _complete_partner_subscription,
    "commission_payout": _complete_commission_payout,
}
