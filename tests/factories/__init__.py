# ===============================================================================
# TEST FACTORIES - CENTRALIZED TEST DATA GENERATION
# ===============================================================================
"""
Factory module for generating test data across woofpay.

Usage:
    from tests.factories.billing_factories import FakeGateway, create_user, create_subscription

    user = create_user()
    subscription = create_subscription(user, plan_id="family_monthly")
"""

from tests.factories.billing_factories import (
    FakeGateway,
    create_coupon,
    create_dog,
    create_partner,
    create_recurring_payment,
    create_subscription,
    create_user,
    sign_payment,
    sign_webhook,
    webhook_body,
)

__all__ = [
    "FakeGateway",
    "create_coupon",
    "create_dog",
    "create_partner",
    "create_recurring_payment",
    "create_subscription",
    "create_user",
    "sign_payment",
    "sign_webhook",
    "webhook_body",
]
