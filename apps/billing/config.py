"""
Centralized billing configuration.

All tunables of the billing engine are read here through small typed helpers
so that invalid settings fall back to safe defaults instead of crashing a
scheduled task. Values are read on every call, which keeps
``override_settings`` working in tests.
"""

import logging
from decimal import Decimal

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
        logger.warning(f"⚠️ [Billing Config] Invalid {setting_name}={value!r}, using {default}")
        result = default
    return max(1, result)  # Ensure at least 1


def _get_int_list(setting_name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """Get a non-empty tuple of positive integers (e.g. a backoff schedule)."""
    value = getattr(settings, setting_name, default)
    try:
        result = tuple(int(v) for v in value)
    except (TypeError, ValueError):
        return default
    if not result or any(v <= 0 for v in result):
        return default
    return result


# ===============================================================================
# MONEY PRECISION
# ===============================================================================

# Overage rates are per-unit prices that can be fractions of a cent
RATE_DECIMAL_PLACES = 6
RATE_QUANTUM = Decimal(1).scaleb(-RATE_DECIMAL_PLACES)

# Stored precision of money columns, amounts are quantized to currency scale
MONEY_DECIMAL_PLACES = 4
MONEY_MAX_DIGITS = 18


# ===============================================================================
# SUBSCRIPTION LIFECYCLE
# ===============================================================================


def get_suspend_after_failures() -> int:
    """Consecutive failed charge rounds that move past_due to suspended."""
    return _get_positive_int("BILLING_SUSPEND_AFTER_FAILURES", 3)


def get_grace_period_days() -> int:
    """Days after the first failure before a past_due subscription is suspended."""
    return _get_positive_int("BILLING_GRACE_PERIOD_DAYS", 7)


def get_suspension_cancel_days() -> int:
    """Days a subscription may stay suspended before it is cancelled."""
    return _get_positive_int("BILLING_SUSPENSION_CANCEL_DAYS", 30)


def get_trial_grace_days() -> int:
    """Days a finished trial without payment method waits before cancellation."""
    return _get_positive_int("BILLING_TRIAL_GRACE_DAYS", 3)


def get_tick_interval_minutes() -> int:
    return _get_positive_int("BILLING_TICK_INTERVAL_MINUTES", 15)


# ===============================================================================
# PAYMENT RETRY POLICY
# ===============================================================================


def get_payment_retry_hours() -> tuple[int, ...]:
    """Backoff schedule in hours, indexed by the number of failed rounds."""
    return _get_int_list("BILLING_PAYMENT_RETRY_HOURS", (1, 6, 24, 72))


def get_max_charge_rounds() -> int:
    return _get_positive_int("BILLING_MAX_CHARGE_ROUNDS", 4)


def retry_declined_payments() -> bool:
    return bool(getattr(settings, "BILLING_RETRY_DECLINED_PAYMENTS", False))


def get_charge_lease_seconds() -> int:
    return _get_positive_int("BILLING_CHARGE_LEASE_SECONDS", 300)


def get_gateway_timeout_seconds() -> int:
    return _get_positive_int("BILLING_GATEWAY_TIMEOUT_SECONDS", 30)


def get_pending_attempt_timeout_minutes() -> int:
    """Minutes a gateway may leave a charge unconfirmed before it counts as failed."""
    return _get_positive_int("BILLING_PENDING_ATTEMPT_TIMEOUT", 1440)


# ===============================================================================
# INVOICING
# ===============================================================================


def get_invoice_prefix() -> str:
    return str(getattr(settings, "BILLING_INVOICE_PREFIX", "INV") or "INV")


def get_default_payment_terms_days() -> int:
    return _get_positive_int("BILLING_DEFAULT_PAYMENT_TERMS_DAYS", 7)


# ===============================================================================
# TASK TIMEOUTS
# ===============================================================================

TASK_TIMEOUT_SHORT = 60
TASK_TIMEOUT_DEFAULT = 300
TASK_TIMEOUT_LONG = 1800
