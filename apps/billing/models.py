"""
Billing models for the woofpay platform
Checkout orders, subscriptions, retries/dunning and the revenue ledger.

This file serves as a re-export hub; models live in feature modules.
"""

from __future__ import annotations

from .ledger_models import RevenueStream, Transaction
from .payment_models import DunningCampaign, Payment, PaymentOrder, PaymentRetry
from .subscription_models import (
    ACCESS_STATUSES,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    PremiumGrant,
    Subscription,
    SubscriptionChange,
    SubscriptionMetadata,
)
from .validators import log_security_event, validate_financial_amount, validate_order_metadata

# ===============================================================================
# MODEL RE-EXPORTS
# ===============================================================================

__all__ = [
    "ACCESS_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "DunningCampaign",
    "Payment",
    "PaymentOrder",
    "PaymentRetry",
    "PremiumGrant",
    "RevenueStream",
    "Subscription",
    "SubscriptionChange",
    "SubscriptionMetadata",
    "Transaction",
    "log_security_event",
    "validate_financial_amount",
    "validate_order_metadata",
]
