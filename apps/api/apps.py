# ===============================================================================
# WOOFPAY API APP CONFIGURATION 🛠️
# ===============================================================================

from django.apps import AppConfig


class ApiConfig(AppConfig):
    """
    Configuration for the woofpay HTTP API.

    Exposes checkout, payment verification, gateway webhooks, subscription
    management and coupon validation over Django REST Framework.
    """

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.api"
    label = "woofpay_api"
    verbose_name = "Woofpay API"
