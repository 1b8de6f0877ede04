"""
Centralized billing configuration for the woofpay platform.

All billing-related constants and rate tables are defined here. Tables are
immutable; services receive them as arguments so tests and environments can
swap them without touching module state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)

# ===============================================================================
# HELPER: SAFE VALUE PARSING
# ===============================================================================


def _get_positive_int(setting_name: str, default: int) -> int:
    """Get a positive integer from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        result = int(value)
    except (TypeError, ValueError):
        result = default
    return max(1, result)  # Ensure at least 1


def _get_decimal_rate(setting_name: str, default: str) -> Decimal:
    """Get a decimal rate (0-1) from settings with validation."""
    value = getattr(settings, setting_name, default)
    try:
        # Always convert to string first to avoid float precision issues
        result = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        result = Decimal(default)
    # Clamp to valid rate range
    if result < Decimal("0"):
        return Decimal("0")
    if result > Decimal("1"):
        return Decimal("1")
    return result


def _get_decimal_amount(value: Any, default: str) -> Decimal:
    """Parse a non-negative major-unit amount, falling back to default."""
    try:
        result = Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        result = Decimal(default)
    return max(Decimal("0"), result)


# ===============================================================================
# CURRENCY & TAX
# ===============================================================================

DEFAULT_CURRENCY_CODE = getattr(settings, "BILLING_DEFAULT_CURRENCY", "INR") or "INR"

SUPPORTED_CURRENCY_CODES = frozenset(getattr(settings, "BILLING_SUPPORTED_CURRENCIES", ("INR", "USD")))


def get_gst_rate() -> Decimal:
    """GST applied on top of every checkout amount (18% by default)."""
    return _get_decimal_rate("BILLING_GST_RATE", "0.18")


def get_yearly_discount_factor() -> Decimal:
    """Multiplier applied to yearly subscription checkouts (two months free)."""
    value = getattr(settings, "BILLING_YEARLY_DISCOUNT_FACTOR", None)
    if value is None:
        return Decimal(10) / Decimal(12)
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, InvalidOperation):
        return Decimal(10) / Decimal(12)


# ===============================================================================
# PAYMENT TYPES
# ===============================================================================

PAYMENT_TYPES = (
    "subscription",
    "premium_service",
    "dog_id",
    "appointment",
    "partner_subscription",
    "commission_payout",
)

_DEFAULT_MIN_AMOUNTS = {
    "subscription": "99",
    "premium_service": "50",
    "dog_id": "299",
    "appointment": "200",
    "partner_subscription": "500",
    "commission_payout": "1",
}


def get_min_amounts() -> MappingProxyType[str, Decimal]:
    """Minimum checkout amount (major units) per payment type."""
    overrides = getattr(settings, "BILLING_MIN_AMOUNTS", {}) or {}
    merged = {**_DEFAULT_MIN_AMOUNTS, **overrides}
    return MappingProxyType(
        {payment_type: _get_decimal_amount(value, "0") for payment_type, value in merged.items()}
    )


REVENUE_STREAM_NAMES = MappingProxyType(
    {
        "subscription": "Premium Subscriptions",
        "premium_service": "Premium Services",
        "dog_id": "Digital Dog ID",
        "appointment": "Appointment Fees",
        "partner_subscription": "Partner Subscriptions",
        "commission_payout": "Commission Payouts",
    }
)


# ===============================================================================
# BENEFIT PERIODS
# ===============================================================================

DOG_ID_VALIDITY_DAYS = _get_positive_int("BILLING_DOG_ID_VALIDITY_DAYS", 365)

PARTNER_SUBSCRIPTION_DAYS = _get_positive_int("BILLING_PARTNER_SUBSCRIPTION_DAYS", 30)


def _build_cycle_days() -> MappingProxyType[str, int]:
    overrides = getattr(settings, "BILLING_REFUND_CYCLE_DAYS", {}) or {}
    days = {"monthly": 30, "yearly": 365}
    for interval, default in days.items():
        try:
            days[interval] = max(1, int(overrides.get(interval, default)))
        except (TypeError, ValueError):
            logger.warning(f"⚠️ [Billing Config] Ignoring invalid cycle length for {interval}")
    return MappingProxyType(days)


# Cycle lengths used by proration and refund arithmetic
CYCLE_DAYS = _build_cycle_days()


def cycle_days_for(interval: str) -> int:
    """Billing cycle length in days: 365 for yearly plans, 30 otherwise."""
    return CYCLE_DAYS["yearly"] if interval == "yearly" else CYCLE_DAYS["monthly"]


# ===============================================================================
# RETRY & DUNNING CONFIGURATION
# ===============================================================================

GRACE_PERIOD_DAYS = _get_positive_int("BILLING_GRACE_PERIOD_DAYS", 7)

RETRY_LOOKBACK_DAYS = _get_positive_int("BILLING_RETRY_LOOKBACK_DAYS", 30)


@dataclass(frozen=True)
class RetryStep:
    """One row of the attempt-indexed retry schedule."""

    attempt: int
    day_offset: int
    method: str  # same_payment_method | alternative_method | manual_intervention
    grace_period_active: bool


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule plus the allow/deny table used to classify gateway errors."""

    steps: tuple[RetryStep, ...]
    retryable_codes: frozenset[str]
    non_retryable_codes: frozenset[str]
    grace_period_days: int = 7
    lookback_days: int = 30

    @property
    def max_attempts(self) -> int:
        return len(self.steps)

    def step_for(self, attempt: int) -> RetryStep | None:
        if 1 <= attempt <= len(self.steps):
            return self.steps[attempt - 1]
        return None

    def classify(self, error_code: str) -> str:
        """Return 'retryable', 'non_retryable' or 'unknown' for a gateway error code."""
        code = (error_code or "").upper()
        if code in self.non_retryable_codes:
            return "non_retryable"
        if code in self.retryable_codes:
            return "retryable"
        return "unknown"


DEFAULT_RETRY_STEPS = (
    RetryStep(attempt=1, day_offset=1, method="same_payment_method", grace_period_active=True),
    RetryStep(attempt=2, day_offset=3, method="same_payment_method", grace_period_active=True),
    RetryStep(attempt=3, day_offset=7, method="alternative_method", grace_period_active=True),
    RetryStep(attempt=4, day_offset=14, method="manual_intervention", grace_period_active=False),
)

DEFAULT_RETRYABLE_CODES = frozenset(
    {
        "GATEWAY_ERROR",
        "BAD_REQUEST_ERROR",
        "SERVER_ERROR",
        "NETWORK_ERROR",
        "TIMEOUT",
        "INSUFFICIENT_FUNDS",
        "BANK_ERROR",
    }
)

DEFAULT_NON_RETRYABLE_CODES = frozenset(
    {
        "CARD_LOST",
        "CARD_STOLEN",
        "CARD_EXPIRED",
        "INVALID_CARD",
        "CARD_BLOCKED",
        "AUTHENTICATION_ERROR",
    }
)


def get_retry_policy() -> RetryPolicy:
    """Build the retry policy from defaults plus settings overrides."""
    retryable = frozenset(
        code.upper() for code in getattr(settings, "BILLING_RETRYABLE_ERROR_CODES", DEFAULT_RETRYABLE_CODES)
    )
    non_retryable = frozenset(
        code.upper() for code in getattr(settings, "BILLING_NON_RETRYABLE_ERROR_CODES", DEFAULT_NON_RETRYABLE_CODES)
    )
    max_attempts = _get_positive_int("BILLING_MAX_RETRY_ATTEMPTS", len(DEFAULT_RETRY_STEPS))
    return RetryPolicy(
        steps=DEFAULT_RETRY_STEPS[:max_attempts],
        retryable_codes=retryable,
        non_retryable_codes=non_retryable,
        grace_period_days=GRACE_PERIOD_DAYS,
        lookback_days=RETRY_LOOKBACK_DAYS,
    )


DUNNING_CAMPAIGN_STEPS = MappingProxyType(
    {
        "payment_failed": 5,
        "payment_retry": 3,
        "grace_period": 3,
        "final_notice": 2,
    }
)


# ===============================================================================
# GATEWAY CONFIGURATION
# ===============================================================================


@dataclass(frozen=True)
class GatewaySettings:
    """Credentials and transport bounds for the remote payment gateway."""

    key_id: str
    key_secret: str
    webhook_secret: str
    api_base: str = "https://api.razorpay.com/v1"
    timeout_seconds: int = 10
    extra: dict[str, Any] = field(default_factory=dict)


def get_gateway_settings() -> GatewaySettings:
    return GatewaySettings(
        key_id=getattr(settings, "RAZORPAY_KEY_ID", "") or "",
        key_secret=getattr(settings, "RAZORPAY_KEY_SECRET", "") or "",
        webhook_secret=getattr(settings, "RAZORPAY_WEBHOOK_SECRET", "") or "",
        api_base=getattr(settings, "RAZORPAY_API_BASE", "https://api.razorpay.com/v1"),
        timeout_seconds=_get_positive_int("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10),
    )


# Orders left in 'created' longer than this are re-queried by the reconciliation sweep
STALE_ORDER_MINUTES = _get_positive_int("BILLING_STALE_ORDER_MINUTES", 30)

# Failed orders are re-queried for this long, since the customer may pay again on the same order
FAILED_ORDER_RECHECK_HOURS = _get_positive_int("BILLING_FAILED_ORDER_RECHECK_HOURS", 24)

# Batch size for scheduled sweeps
BATCH_SIZE_DEFAULT = _get_positive_int("BILLING_BATCH_SIZE_DEFAULT", 100)
