"""
URL configuration for the woofpay payment engine
"""

from django.urls import include, path

# ===============================================================================
# MAIN URL PATTERNS
# ===============================================================================

urlpatterns = [
    # REST API: checkout, webhooks, subscriptions and coupons
    path("api/", include("apps.api.urls")),
]
