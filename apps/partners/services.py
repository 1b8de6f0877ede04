"""
Partner services for the woofpay platform.
Commission calculation, commission recording, payouts and partner subscriptions.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from apps.billing.exceptions import NotFoundError, PaymentEngineError, StateConflictError, ValidationError
from apps.billing.validators import log_security_event
from apps.common.types import Err, Ok, Result, from_minor_units, round2, to_minor_units

from .config import DEFAULT_TIER, CommissionRate, PartnerTier, get_commission_rates, get_subscription_tiers
from .models import CommissionPayout, Partner, PartnerCommission, PartnerSubscription

if TYPE_CHECKING:
    from apps.billing.models import PaymentOrder

logger = logging.getLogger(__name__)


# ===============================================================================
# Commission Calculator
# ===============================================================================


@dataclass(frozen=True)
class CommissionResult:
    base_amount: Decimal
    commission_rate: Decimal  # percentage, or 0 for flat rows
    commission_amount: Decimal
    partner_earnings: Decimal
    platform_earnings: Decimal

    @classmethod
    def zero(cls, amount: Decimal) -> CommissionResult:
        return cls(amount, Decimal("0"), Decimal("0.00"), Decimal("0.00"), amount)


class CommissionCalculator:
    """
    Pure commission arithmetic over an injected rate table.

    commission = round2(amount * rate / 100), clamped to [min, max] when set.
    Flat rows pay the configured amount regardless of the base. Unknown
    service types and partner-type mismatches earn nothing.
    """

    def __init__(self, rates: Mapping[str, CommissionRate] | None = None) -> None:
        self.rates = rates if rates is not None else get_commission_rates()

    def calculate(self, amount: Decimal | int | str, service_type: str, partner_type: str) -> CommissionResult:
        base = round2(amount)
        if base <= 0:
            raise ValidationError("Commission base amount must be positive", code="INVALID_AMOUNT")

        rate = self.rates.get(service_type)
        if rate is None or (rate.partner_type is not None and rate.partner_type != partner_type):
            return CommissionResult.zero(base)

        if rate.is_flat:
            commission = round2(rate.rate)
            percentage = Decimal("0")
        else:
            commission = round2(base * rate.rate / Decimal("100"))
            percentage = rate.rate

        if rate.min_amount is not None and commission < rate.min_amount:
            commission = round2(rate.min_amount)
        if rate.max_amount is not None and commission > rate.max_amount:
            commission = round2(rate.max_amount)

        return CommissionResult(
            base_amount=base,
            commission_rate=percentage,
            commission_amount=commission,
            partner_earnings=commission,
            platform_earnings=base - commission,
        )


# ===============================================================================
# Commission Service
# ===============================================================================


class CommissionService:
    """Records commissions once per transaction and moves them through payouts."""

    @staticmethod
    def record_commission(  # noqa: PLR0913
        partner: Partner,
        amount: Decimal,
        service_type: str,
        service_reference: str,
        user: Any | None = None,
        calculator: CommissionCalculator | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[PartnerCommission, PaymentEngineError]:
        calculator = calculator or CommissionCalculator()
        try:
            result = calculator.calculate(amount, service_type, partner.partner_type)
        except ValidationError as e:
            return Err(e)

        try:
            with transaction.atomic():
                commission = PartnerCommission.objects.create(
                    partner=partner,
                    user=user,
                    service_type=service_type,
                    service_reference=service_reference,
                    base_amount_cents=to_minor_units(result.base_amount),
                    commission_rate=result.commission_rate,
                    commission_amount_cents=to_minor_units(result.commission_amount),
                    status="pending",
                    meta=metadata or {},
                )
        except IntegrityError:
            existing = PartnerCommission.objects.get(service_type=service_type, service_reference=service_reference)
            logger.info(f"🔄 [Partners] Commission for {service_type}:{service_reference} already recorded")
            return Ok(existing)

        logger.info(
            f"✅ [Partners] Commission {result.commission_amount} recorded for partner {partner.id} ({service_type})"
        )
        return Ok(commission)

    @staticmethod
    def partner_summary(partner: Partner, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        queryset = PartnerCommission.objects.filter(partner=partner)
        if start:
            queryset = queryset.filter(created_at__gte=start)
        if end:
            queryset = queryset.filter(created_at__lte=end)

        by_status = {
            row["status"]: row
            for row in queryset.values("status").annotate(total=Sum("commission_amount_cents"), count=Count("id"))
        }

        def _total(status: str) -> Decimal:
            return from_minor_units(by_status.get(status, {}).get("total") or 0)

        breakdown = [
            {
                "service_type": row["service_type"],
                "total": from_minor_units(row["total"] or 0),
                "count": row["count"],
            }
            for row in queryset.values("service_type")
            .annotate(total=Sum("commission_amount_cents"), count=Count("id"))
            .order_by("service_type")
        ]

        return {
            "partner_id": str(partner.id),
            "pending": _total("pending"),
            "processing": _total("processing"),
            "paid": _total("paid"),
            "total": _total("pending") + _total("processing") + _total("paid"),
            "transactions": sum(row["count"] for row in by_status.values()),
            "by_service_type": breakdown,
        }

    @staticmethod
    def process_payout(
        partner: Partner,
        commission_ids: list[str],
        method: str = "bank_transfer",
        reference: str = "",
    ) -> Result[CommissionPayout, PaymentEngineError]:
        """Bundle pending commissions into a payout; amounts are summed, never recomputed."""
        if not commission_ids:
            return Err(ValidationError("No commissions selected for payout", code="EMPTY_PAYOUT"))

        with transaction.atomic():
            commissions = list(
                PartnerCommission.objects.select_for_update().filter(id__in=commission_ids, partner=partner)
            )
            if len(commissions) != len(set(commission_ids)):
                return Err(NotFoundError("Some commissions do not exist or belong to another partner"))
            not_pending = [str(c.id) for c in commissions if c.status != "pending"]
            if not_pending:
                return Err(
                    StateConflictError(
                        "Only pending commissions can be paid out",
                        code="COMMISSION_NOT_PENDING",
                        details={"commission_ids": not_pending},
                    )
                )

            payout = CommissionPayout.objects.create(
                partner=partner,
                amount_cents=sum(c.commission_amount_cents for c in commissions),
                currency=commissions[0].currency,
                method=method,
                status="processing",
                reference=reference,
                commission_count=len(commissions),
            )
            PartnerCommission.objects.filter(id__in=[c.id for c in commissions]).update(
                status="processing", payout=payout
            )

            log_security_event(
                event_type="commission_payout_started",
                details={
                    "partner_id": str(partner.id),
                    "payout_id": str(payout.id),
                    "amount_cents": payout.amount_cents,
                    "commission_count": payout.commission_count,
                    "critical_financial_operation": True,
                },
            )

        logger.info(f"💸 [Partners] Payout {payout.id} of {payout.amount} started for partner {partner.id}")
        return Ok(payout)

    @staticmethod
    def complete_payout(payout_id: str, reference: str = "") -> Result[CommissionPayout, PaymentEngineError]:
        with transaction.atomic():
            try:
                payout = CommissionPayout.objects.select_for_update().get(id=payout_id)
            except CommissionPayout.DoesNotExist:
                return Err(NotFoundError(f"Payout {payout_id} not found"))

            if payout.status == "paid":
                return Ok(payout)
            if payout.status != "processing":
                return Err(StateConflictError(f"Payout {payout_id} is {payout.status}"))

            now = timezone.now()
            payout.status = "paid"
            payout.completed_at = now
            if reference:
                payout.reference = reference
            payout.save(update_fields=["status", "completed_at", "reference"])
            payout.commissions.filter(status="processing").update(status="paid", paid_at=now)

            log_security_event(
                event_type="commission_payout_completed",
                details={
                    "payout_id": str(payout.id),
                    "partner_id": str(payout.partner_id),
                    "amount_cents": payout.amount_cents,
                    "critical_financial_operation": True,
                },
            )

        logger.info(f"✅ [Partners] Payout {payout.id} marked paid")
        return Ok(payout)


# ===============================================================================
# Partner Subscription Service
# ===============================================================================


class PartnerSubscriptionService:
    @staticmethod
    def get_tier(name: str | None, tiers: Mapping[str, PartnerTier] | None = None) -> PartnerTier:
        tiers = tiers if tiers is not None else get_subscription_tiers()
        tier = tiers.get(name or DEFAULT_TIER)
        if tier is None:
            raise ValidationError(f"Unknown partner tier: {name}", code="INVALID_TIER")
        return tier

    @staticmethod
    def activate_from_payment(
        partner: Partner,
        order: PaymentOrder,
        period_days: int,
        tier_name: str | None = None,
    ) -> PartnerSubscription:
        """Upsert the partner's subscription to active for `period_days` from now."""
        tier = PartnerSubscriptionService.get_tier(tier_name)
        now = timezone.now()
        subscription, created = PartnerSubscription.objects.select_for_update().update_or_create(
            partner=partner,
            defaults={
                "tier": tier.name,
                "status": "active",
                "monthly_rate_cents": order.amount_cents,
                "commission_rate": tier.commission_rate,
                "features": list(tier.features),
                "starts_at": now,
                "expires_at": now + timedelta(days=period_days),
                "last_payment_order": order,
            },
        )
        logger.info(
            f"✅ [Partners] {'Created' if created else 'Renewed'} {tier.name} subscription for partner {partner.id}"
        )
        return subscription
