"""
Revenue Ledger Service for the woofpay platform
Records completed charges and refunds against named revenue streams.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, TypedDict

from django.db.models import Count, Sum

from apps.common.types import from_minor_units, round2

from .config import REVENUE_STREAM_NAMES, get_gst_rate
from .exceptions import StateConflictError, ValidationError
from .ledger_models import RevenueStream, Transaction
from .payment_models import PaymentOrder
from .validators import log_security_event

logger = logging.getLogger(__name__)


class ReceiptData(TypedDict):
    receipt: str
    payment_type: str
    currency: str
    total: Decimal
    base_amount: Decimal
    gst_rate: Decimal
    gst_amount: Decimal
    discount: Decimal
    gateway_payment_id: str


class RevenueLedgerService:
    """
    📒 Append-only revenue ledger

    Ledger writes happen inside the caller's transaction so that they commit
    together with the order status flip, or not at all.
    """

    @staticmethod
    def get_stream(payment_type: str) -> RevenueStream:
        name = REVENUE_STREAM_NAMES.get(payment_type)
        if name is None:
            raise ValidationError(f"No revenue stream for payment type: {payment_type}", code="INVALID_PAYMENT_TYPE")
        stream, created = RevenueStream.objects.get_or_create(
            name=name,
            defaults={"payment_type": payment_type, "description": f"Revenue from {payment_type} payments"},
        )
        if created:
            logger.info(f"✅ [Ledger] Created revenue stream '{name}'")
        return stream

    @staticmethod
    def record_charge(order: PaymentOrder) -> Transaction:
        """Write the charge entry for a completed order; at most one per order."""
        existing = Transaction.objects.filter(payment_order=order, entry_type="charge").first()
        if existing is not None:
            return existing

        entry = Transaction.objects.create(
            revenue_stream=RevenueLedgerService.get_stream(order.payment_type),
            payment_order=order,
            user_id=order.user_id,
            partner_id=order.partner_id,
            dog_id=order.dog_id,
            entry_type="charge",
            transaction_type=order.payment_type,
            amount_cents=order.amount_cents,
            currency=order.currency,
            status="completed",
            payment_method=order.gateway,
            external_id=order.gateway_payment_id,
            description=f"{order.payment_type} payment {order.receipt}",
            meta={"plan_id": order.plan_id, "service_id": order.service_id},
        )
        logger.info(f"📒 [Ledger] Recorded {order.amount_cents} {order.currency} for order {order.receipt}")
        return entry

    @staticmethod
    def record_refund(order: PaymentOrder, refund_id: str, amount_cents: int, reason: str = "") -> Transaction:
        """Write a negative entry that references the original charge."""
        original = Transaction.objects.filter(payment_order=order, entry_type="charge").first()
        if original is None:
            raise StateConflictError(f"Order {order.receipt} has no recorded charge to refund")
        if Transaction.objects.filter(payment_order=order, entry_type="refund").exists():
            raise StateConflictError(f"Order {order.receipt} has already been refunded", code="ALREADY_REFUNDED")

        entry = Transaction.objects.create(
            revenue_stream=original.revenue_stream,
            payment_order=order,
            user_id=order.user_id,
            partner_id=order.partner_id,
            dog_id=order.dog_id,
            entry_type="refund",
            transaction_type=order.payment_type,
            amount_cents=-abs(amount_cents),
            currency=order.currency,
            status="refunded",
            payment_method=order.gateway,
            external_id=refund_id,
            original_transaction=original,
            description=f"Refund for {order.receipt}",
            meta={"reason": reason[:200]},
        )

        log_security_event(
            event_type="ledger_refund_recorded",
            details={
                "payment_order_id": str(order.id),
                "original_transaction_id": str(original.id),
                "amount_cents": entry.amount_cents,
                "critical_financial_operation": True,
            },
        )
        return entry

    @staticmethod
    def revenue_summary(start: datetime, end: datetime) -> dict[str, Any]:
        """Net revenue per stream for [start, end)."""
        rows = (
            Transaction.objects.filter(processed_at__gte=start, processed_at__lt=end)
            .values("revenue_stream__name", "currency")
            .annotate(net_cents=Sum("amount_cents"), entries=Count("id"))
            .order_by("revenue_stream__name")
        )

        streams: dict[str, dict[str, Any]] = {}
        totals: dict[str, int] = {}
        for row in rows:
            name = row["revenue_stream__name"]
            streams.setdefault(name, {})[row["currency"]] = {
                "net": from_minor_units(row["net_cents"] or 0),
                "entries": row["entries"],
            }
            totals[row["currency"]] = totals.get(row["currency"], 0) + (row["net_cents"] or 0)

        return {
            "start": start,
            "end": end,
            "streams": streams,
            "totals": {currency: from_minor_units(cents) for currency, cents in totals.items()},
        }

    @staticmethod
    def build_receipt(order: PaymentOrder) -> ReceiptData:
        """GST breakdown of a completed order; the charged total is GST-inclusive."""
        gst_rate = get_gst_rate()
        total = from_minor_units(order.amount_cents)
        base = round2(total / (Decimal("1") + gst_rate))
        return ReceiptData(
            receipt=order.receipt,
            payment_type=order.payment_type,
            currency=order.currency,
            total=total,
            base_amount=base,
            gst_rate=gst_rate,
            gst_amount=total - base,
            discount=from_minor_units(order.discount_cents),
            gateway_payment_id=order.gateway_payment_id,
        )
