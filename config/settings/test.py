"""
Test settings for the billing engine
Fast, isolated testing environment.
"""

import os

from .base import *  # noqa: F403

# ===============================================================================
# TEST FLAGS
# ===============================================================================

DEBUG = False

# ===============================================================================
# TEST DATABASE (In-memory for speed; TEST_DB=postgres runs the row-locking
# concurrency tests against the PostgreSQL settings from base)
# ===============================================================================

if os.environ.get("TEST_DB", "sqlite") != "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": ":memory:",
            "OPTIONS": {
                "timeout": 20,
            },
        }
    }

# ===============================================================================
# TEST CACHE (Local memory; the tick lock still needs atomic add)
# ===============================================================================

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "test-cache",
    }
}

# ===============================================================================
# DISABLE MIGRATIONS FOR FASTER TESTS
# ===============================================================================


class DisableMigrations:
    def __contains__(self, item: str) -> bool:
        return True

    def __getitem__(self, item: str) -> None:
        return None


MIGRATION_MODULES = DisableMigrations()

# ===============================================================================
# PASSWORD HASHER (Fast for tests)
# ===============================================================================

PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.MD5PasswordHasher",  # Fast but insecure (test only)
]

# ===============================================================================
# LOGGING (Minimal for tests)
# ===============================================================================

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "null": {
            "class": "logging.NullHandler",
        },
    },
    "root": {
        "handlers": ["null"],
        "level": "CRITICAL",
    },
}

# ===============================================================================
# SECURITY (Relaxed for tests)
# ===============================================================================

SECRET_KEY = "django-test-key-not-secure"  # noqa: S105
ALLOWED_HOSTS = ["testserver", "localhost", "127.0.0.1"]

# ===============================================================================
# EXTERNAL SERVICES (Disabled in tests)
# ===============================================================================

# Gateways are mocked; these only satisfy configuration checks
STRIPE_SECRET_KEY = "sk_test_fake_key"  # noqa: S105
STRIPE_WEBHOOK_SECRET = "whsec_test_fake_secret"  # noqa: S105
RAZORPAY_KEY_ID = "rzp_test_fake_key"
RAZORPAY_KEY_SECRET = "rzp_test_fake_secret"  # noqa: S105
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_test_secret"  # noqa: S105

# ===============================================================================
# TASK QUEUE (Synchronous for tests)
# ===============================================================================

Q_CLUSTER = {
    **Q_CLUSTER_BASE,  # noqa: F405
    "sync": True,  # Run tasks inline in tests
}

# Deterministic billing policy regardless of environment
BILLING_SUSPEND_AFTER_FAILURES = 3
BILLING_GRACE_PERIOD_DAYS = 7
BILLING_SUSPENSION_CANCEL_DAYS = 30
BILLING_TRIAL_GRACE_DAYS = 3
BILLING_RETRY_DECLINED_PAYMENTS = False
BILLING_PENDING_ATTEMPT_TIMEOUT = 1440
BILLING_INVOICE_PREFIX = "INV"
