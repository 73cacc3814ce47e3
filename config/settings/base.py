"""
Django settings for the tenant billing engine - Base Configuration
Usage metering, subscriptions, invoicing and gateway payments.
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
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

THIRD_PARTY_APPS: list[str] = [
    "django_q",  # Async task processing
]

LOCAL_APPS: list[str] = [
    "apps.tenants",
    "apps.billing",
    "apps.integrations",  # 🔌 Gateway webhooks & deduplication
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
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

ASGI_APPLICATION = "config.asgi.application"

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "billing"),
        "USER": os.environ.get("DB_USER", "billing"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,  # Database connection pooling
        "OPTIONS": {
            "application_name": "billing_engine",
        },
    }
}

# ===============================================================================
# INTERNATIONALIZATION
# ===============================================================================

LANGUAGE_CODE = "en-us"
# Billing periods and invoice numbers are computed in UTC
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# ===============================================================================
# STATIC FILES
# ===============================================================================

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# ===============================================================================
# CACHE CONFIGURATION (Redis)
# ===============================================================================

# The billing tick lock relies on an atomic cache.add shared by all workers
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": REDIS_URL,
        "KEY_PREFIX": "billing",
    }
}

# ===============================================================================
# SECURITY SETTINGS
# ===============================================================================

SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"
CSRF_COOKIE_HTTPONLY = True
SESSION_COOKIE_HTTPONLY = True

# Webhook bodies are small JSON documents
DATA_UPLOAD_MAX_MEMORY_SIZE = 2621440  # 2.5MB

# ===============================================================================
# DJANGO-Q2 ASYNC TASK PROCESSING 🚀
# ===============================================================================

# Base queue cluster configuration
Q_CLUSTER_BASE = {
    "name": "billing-cluster",
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
# BILLING ENGINE CONFIGURATION 💳
# ===============================================================================

# Subscription lifecycle
BILLING_SUSPEND_AFTER_FAILURES = int(os.environ.get("BILLING_SUSPEND_AFTER_FAILURES", "3"))
BILLING_GRACE_PERIOD_DAYS = int(os.environ.get("BILLING_GRACE_PERIOD_DAYS", "7"))
BILLING_SUSPENSION_CANCEL_DAYS = int(os.environ.get("BILLING_SUSPENSION_CANCEL_DAYS", "30"))
BILLING_TRIAL_GRACE_DAYS = int(os.environ.get("BILLING_TRIAL_GRACE_DAYS", "3"))
BILLING_TICK_INTERVAL_MINUTES = int(os.environ.get("BILLING_TICK_INTERVAL_MINUTES", "15"))

# Payment retries (hours after the 1st, 2nd, 3rd... failed round)
BILLING_PAYMENT_RETRY_HOURS = (1, 6, 24, 72)
BILLING_MAX_CHARGE_ROUNDS = 4
BILLING_RETRY_DECLINED_PAYMENTS = os.environ.get("BILLING_RETRY_DECLINED_PAYMENTS", "false").lower() == "true"
BILLING_CHARGE_LEASE_SECONDS = 300
BILLING_GATEWAY_TIMEOUT_SECONDS = 30
BILLING_PENDING_ATTEMPT_TIMEOUT = int(os.environ.get("BILLING_PENDING_ATTEMPT_TIMEOUT", "1440"))  # minutes

# Invoicing
BILLING_INVOICE_PREFIX = os.environ.get("BILLING_INVOICE_PREFIX", "INV")
BILLING_DEFAULT_PAYMENT_TERMS_DAYS = 7

# ===============================================================================
# EXTERNAL INTEGRATIONS
# ===============================================================================

# Stripe settings
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# Razorpay settings
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

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


def validate_production_secret_key() -> None:
    """Validate SECRET_KEY meets production security requirements"""
    if SECRET_KEY and SECRET_KEY.startswith("django-insecure-"):
        raise ValueError("🔥 CRITICAL SECURITY ERROR: Cannot use insecure SECRET_KEY in production!")
