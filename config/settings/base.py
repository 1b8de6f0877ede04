"""
Django settings for the woofpay payment engine - Base Configuration
Payments and subscriptions for a dog-owner platform.
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
]

THIRD_PARTY_APPS: list[str] = [
    "rest_framework",
    "django_q",
]

LOCAL_APPS: list[str] = [
    "apps.common",
    "apps.dogs",
    "apps.billing",
    "apps.promotions",  # 🏷️ Coupons & usage tracking
    "apps.partners",  # 🤝 Partner commissions & subscriptions
    "apps.notifications",
    "apps.api",
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "woofpay"),
        "USER": os.environ.get("DB_USER", "woofpay"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ===============================================================================
# INTERNATIONALIZATION
# ===============================================================================

LANGUAGE_CODE = "en"
TIME_ZONE = "Asia/Kolkata"
USE_I18N = True
USE_TZ = True

# ===============================================================================
# DJANGO REST FRAMEWORK
# ===============================================================================

REST_FRAMEWORK: dict[str, Any] = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "user": "120/minute",
    },
}

# ===============================================================================
# DJANGO-Q2 TASK QUEUE CONFIGURATION
# ===============================================================================

Q_CLUSTER_BASE = {
    "name": "woofpay-cluster",
    "timeout": 300,  # 5 minutes
    "retry": 600,  # 10 minutes retry delay
    "save_limit": 1000,  # Keep last 1000 task results
    "catch_up": False,  # Don't run missed scheduled tasks
    "orm": "default",  # Use the database as broker
    "bulk": 10,
    "queue_limit": 100,
}

Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    "workers": 2,
    "recycle": 500,  # Restart workers after 500 tasks
    "sync": False,
}

# ===============================================================================
# BILLING CONFIGURATION 💳
# ===============================================================================

BILLING_DEFAULT_CURRENCY = "INR"
BILLING_SUPPORTED_CURRENCIES = ["INR", "USD"]

# GST applied on top of the discounted amount
BILLING_GST_RATE = "0.18"

# Yearly subscriptions are billed at 10 months for 12; set BILLING_YEARLY_DISCOUNT_FACTOR to override
BILLING_YEARLY_DISCOUNT_FACTOR = None

BILLING_MIN_AMOUNTS = {
    "subscription": "99",
    "premium_service": "50",
    "dog_id": "299",
    "appointment": "200",
    "partner_subscription": "500",
    "commission_payout": "1",
}

BILLING_GRACE_PERIOD_DAYS = int(os.environ.get("BILLING_GRACE_PERIOD_DAYS", "7"))
BILLING_MAX_RETRY_ATTEMPTS = int(os.environ.get("BILLING_MAX_RETRY_ATTEMPTS", "4"))
BILLING_RETRY_LOOKBACK_DAYS = 30
BILLING_DOG_ID_VALIDITY_DAYS = 365
BILLING_PARTNER_SUBSCRIPTION_DAYS = 30
BILLING_REFUND_CYCLE_DAYS = {"monthly": 30, "yearly": 365}

# Per-environment plan price or limit overrides, keyed by plan id
BILLING_PLAN_OVERRIDES: dict[str, dict[str, Any]] = {}

# ===============================================================================
# PARTNER CONFIGURATION 🤝
# ===============================================================================

PARTNER_COMMISSION_RATES: dict[str, str] = {}
PARTNER_SUBSCRIPTION_TIERS: dict[str, dict[str, Any]] = {}

# ===============================================================================
# PAYMENT GATEWAY CONFIGURATION 🏦
# ===============================================================================

PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "razorpay")

RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
RAZORPAY_API_BASE = os.environ.get("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")

PAYMENT_GATEWAY_TIMEOUT_SECONDS = int(os.environ.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))

# ===============================================================================
# EMAIL & NOTIFICATIONS 📧
# ===============================================================================

EMAIL_BACKEND = "django.core.mail.backends.smtp.EmailBackend"
EMAIL_HOST = os.environ.get("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.environ.get("EMAIL_PORT", "587"))
EMAIL_HOST_USER = os.environ.get("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.environ.get("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = True

DEFAULT_FROM_EMAIL = os.environ.get("DEFAULT_FROM_EMAIL", "WoofPay <billing@woofpay.example>")

# Recipients of manual-intervention and suspension alerts
ADMIN_ALERT_EMAILS = [email for email in os.environ.get("ADMIN_ALERT_EMAILS", "").split(",") if email]

# ===============================================================================
# LOGGING CONFIGURATION 📋
# ===============================================================================

LOGGING: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {name} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "apps": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        # Security events are always kept, even when app logging is quiet
        "apps.common.validators": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "django_q": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}

# ===============================================================================
# SECURITY SETTINGS (Base - override in prod.py)
# ===============================================================================

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY")
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings

    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2,
    )
    SECRET_KEY = "django-insecure-dev-key-only-change-in-production-or-tests"  # noqa: S105

ALLOWED_HOSTS: list[str] = []


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith("django-insecure-"):
        raise ValueError("🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production!")


def validate_gateway_credentials() -> None:
    """Production refuses to start without gateway credentials."""
    missing = [
        name
        for name, value in (
            ("RAZORPAY_KEY_ID", RAZORPAY_KEY_ID),
            ("RAZORPAY_KEY_SECRET", RAZORPAY_KEY_SECRET),
            ("RAZORPAY_WEBHOOK_SECRET", RAZORPAY_WEBHOOK_SECRET),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"🔥 CRITICAL CONFIGURATION ERROR: Missing gateway settings: {', '.join(missing)}")
