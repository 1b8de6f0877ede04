"""
Plan and premium service catalog.

Plans are immutable values. `get_plan_catalog()` builds a catalog from the
defaults below merged with `BILLING_PLAN_OVERRIDES`; services take the
catalog as an argument so it can be replaced in tests.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Any

from django.conf import settings

from .config import cycle_days_for
from .exceptions import ValidationError

# ===============================================================================
# PLAN TYPES
# ===============================================================================


@dataclass(frozen=True)
class PlanLimits:
    """Feature limits attached to a plan. None means unlimited."""

    dogs: int | None = None
    health_logs: int | None = None
    expert_consultations: int | None = None
    family_members: int = 1


@dataclass(frozen=True)
class SubscriptionPlan:
    id: str
    name: str
    price: Decimal
    interval: str  # monthly | yearly
    trial_days: int = 14
    currency: str = "INR"
    product_line: str = "premium"
    pausable: bool = False
    limits: PlanLimits = field(default_factory=PlanLimits)
    features: tuple[str, ...] = ()

    @property
    def cycle_days(self) -> int:
        return cycle_days_for(self.interval)

    @property
    def is_family(self) -> bool:
        return self.limits.family_members > 1


@dataclass(frozen=True)
class PremiumService:
    id: str
    name: str
    price: Decimal
    billing: str  # one_time | monthly
    period_days: int = 30


# ===============================================================================
# DEFAULT CATALOG
# ===============================================================================

_FAMILY_LIMITS = PlanLimits(family_members=5)

DEFAULT_PLANS: Mapping[str, SubscriptionPlan] = MappingProxyType(
    {
        "premium_monthly": SubscriptionPlan(
            id="premium_monthly",
            name="Premium Monthly",
            price=Decimal("99.00"),
            interval="monthly",
            features=("unlimited_health_tracking", "priority_vet_consultations", "ad_free"),
        ),
        "premium_yearly": SubscriptionPlan(
            id="premium_yearly",
            name="Premium Yearly",
            price=Decimal("990.00"),
            interval="yearly",
            features=("unlimited_health_tracking", "priority_vet_consultations", "ad_free", "premium_community"),
        ),
        "family_monthly": SubscriptionPlan(
            id="family_monthly",
            name="Family Monthly",
            price=Decimal("149.00"),
            interval="monthly",
            pausable=True,
            limits=_FAMILY_LIMITS,
            features=("shared_dog_profiles", "family_health_dashboard", "group_vet_consultations"),
        ),
        "family_yearly": SubscriptionPlan(
            id="family_yearly",
            name="Family Yearly",
            price=Decimal("1490.00"),
            interval="yearly",
            pausable=True,
            limits=_FAMILY_LIMITS,
            features=("shared_dog_profiles", "family_health_dashboard", "family_priority_support"),
        ),
    }
)

DEFAULT_PREMIUM_SERVICES: Mapping[str, PremiumService] = MappingProxyType(
    {
        "premium_dog_id": PremiumService("premium_dog_id", "Premium Dog ID", Decimal("299.00"), "one_time", 365),
        "priority_support": PremiumService("priority_support", "Priority Support", Decimal("99.00"), "monthly"),
        "advanced_analytics": PremiumService(
            "advanced_analytics", "Advanced Health Analytics", Decimal("199.00"), "monthly"
        ),
        "premium_community": PremiumService("premium_community", "Premium Community", Decimal("149.00"), "monthly"),
    }
)


# ===============================================================================
# CATALOG
# ===============================================================================


@dataclass(frozen=True)
class PlanCatalog:
    """Read-only lookup for plans and premium services."""

    plans: Mapping[str, SubscriptionPlan]
    services: Mapping[str, PremiumService]

    def get_plan(self, plan_id: str | None) -> SubscriptionPlan:
        plan = self.plans.get(plan_id or "")
        if plan is None:
            raise ValidationError(f"Unknown subscription plan: {plan_id}", code="INVALID_PLAN")
        return plan

    def get_service(self, service_id: str | None) -> PremiumService:
        service = self.services.get(service_id or "")
        if service is None:
            raise ValidationError(f"Unknown premium service: {service_id}", code="INVALID_SERVICE")
        return service

    def has_plan(self, plan_id: str | None) -> bool:
        return (plan_id or "") in self.plans


def _apply_overrides(plans: Mapping[str, SubscriptionPlan], overrides: Mapping[str, Any]) -> dict[str, SubscriptionPlan]:
    merged = dict(plans)
    for plan_id, values in overrides.items():
        base = merged.get(plan_id)
        if base is None:
            continue
        if "price" in values:
            values = {**values, "price": Decimal(str(values["price"]))}
        merged[plan_id] = replace(base, **values)
    return merged


def get_plan_catalog() -> PlanCatalog:
    """Default catalog with per-environment overrides from settings."""
    overrides = getattr(settings, "BILLING_PLAN_OVERRIDES", {}) or {}
    return PlanCatalog(
        plans=MappingProxyType(_apply_overrides(DEFAULT_PLANS, overrides)),
        services=DEFAULT_PREMIUM_SERVICES,
    )
