"""
Partner programme configuration: commission rate table and subscription tiers.

Tables are immutable. `get_commission_rates()` and `get_subscription_tiers()`
merge defaults with the PARTNER_* settings overrides; calculators receive the
result as an argument.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Any

from django.conf import settings

# ===============================================================================
# COMMISSION RATES
# ===============================================================================


@dataclass(frozen=True)
class CommissionRate:
    """
    One row of the commission table.

    `rate` is a percentage for percentage rows and a major-unit amount for flat
    rows. `partner_type=None` matches any partner.
    """

    service_type: str
    partner_type: str | None
    rate: Decimal
    is_flat: bool = False
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    description: str = ""


DEFAULT_COMMISSION_RATES: Mapping[str, CommissionRate] = MappingProxyType(
    {
        "vet_consultation": CommissionRate(
            "vet_consultation", "veterinarian", Decimal("15"), min_amount=Decimal("50"),
            description="Veterinary consultation",
        ),
        "vet_health_analysis": CommissionRate(
            "vet_health_analysis", "veterinarian", Decimal("12"), min_amount=Decimal("30"),
            description="Health analysis review",
        ),
        "vet_subscription_referral": CommissionRate(
            "vet_subscription_referral", "veterinarian", Decimal("20"), max_amount=Decimal("200"),
            description="Premium subscription referral (first month)",
        ),
        "corporate_employee_subscription": CommissionRate(
            "corporate_employee_subscription", "corporate", Decimal("10"), min_amount=Decimal("25"),
            description="Employee subscription revenue share",
        ),
        "corporate_wellness_program": CommissionRate(
            "corporate_wellness_program", "corporate", Decimal("8"), min_amount=Decimal("100"),
            description="Corporate wellness programme",
        ),
        "insurance_referral": CommissionRate(
            "insurance_referral", None, Decimal("50"), is_flat=True,
            description="Pet insurance referral",
        ),
    }
)


def _decimal_or_none(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _rate_from_override(base: CommissionRate | None, service_type: str, values: Mapping[str, Any]) -> CommissionRate:
    parsed: dict[str, Any] = dict(values)
    for key in ("rate", "min_amount", "max_amount"):
        if key in parsed:
            parsed[key] = _decimal_or_none(parsed[key])
    if base is None:
        return CommissionRate(service_type=service_type, **{"partner_type": None, **parsed})
    return replace(base, **parsed)


def get_commission_rates() -> Mapping[str, CommissionRate]:
    overrides = getattr(settings, "PARTNER_COMMISSION_RATES", {}) or {}
    merged = dict(DEFAULT_COMMISSION_RATES)
    for service_type, values in overrides.items():
        merged[service_type] = _rate_from_override(merged.get(service_type), service_type, values)
    return MappingProxyType(merged)


# ===============================================================================
# PARTNER SUBSCRIPTION TIERS
# ===============================================================================


@dataclass(frozen=True)
class PartnerTier:
    name: str
    monthly_price: Decimal
    yearly_price: Decimal
    commission_rate: Decimal  # percentage
    features: tuple[str, ...] = ()


DEFAULT_SUBSCRIPTION_TIERS: Mapping[str, PartnerTier] = MappingProxyType(
    {
        "basic": PartnerTier(
            "basic", Decimal("500"), Decimal("5000"), Decimal("5"),
            ("listing", "appointment_booking"),
        ),
        "premium": PartnerTier(
            "premium", Decimal("1500"), Decimal("15000"), Decimal("8"),
            ("listing", "appointment_booking", "featured_placement", "analytics"),
        ),
        "enterprise": PartnerTier(
            "enterprise", Decimal("5000"), Decimal("50000"), Decimal("12"),
            ("listing", "appointment_booking", "featured_placement", "analytics", "api_access", "account_manager"),
        ),
    }
)

DEFAULT_TIER = "basic"


def get_subscription_tiers() -> Mapping[str, PartnerTier]:
    overrides = getattr(settings, "PARTNER_SUBSCRIPTION_TIERS", {}) or {}
    merged = dict(DEFAULT_SUBSCRIPTION_TIERS)
    for name, values in overrides.items():
        parsed = {key: Decimal(str(value)) if key.endswith(("price", "rate")) else value for key, value in values.items()}
        base = merged.get(name)
        merged[name] = replace(base, **parsed) if base else PartnerTier(name=name, **parsed)
    return MappingProxyType(merged)
