# ===============================================================================
# PYTEST CONFIGURATION FOR WOOFPAY
# ===============================================================================
"""
Global test configuration for the woofpay payment engine.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- Naming convention: test_{app}_{feature}.py
- Shared builders live in tests/factories/

Run all tests: pytest tests/
Run one app:   pytest tests/billing/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.test")

    django.setup()


# ===============================================================================
# PYTEST FIXTURES
# ===============================================================================

import pytest  # noqa: E402
from django.contrib.auth import get_user_model  # noqa: E402

User = get_user_model()


@pytest.fixture
def user():
    """Dog owner with no subscriptions"""
    return User.objects.create_user(username="owner", email="owner@woofpay.test", password="testpass123")


@pytest.fixture
def staff_user():
    """Staff member allowed to issue refunds"""
    return User.objects.create_user(
        username="billing-admin", email="admin@woofpay.test", password="testpass123", is_staff=True
    )
