"""
Billing engine exceptions.

Every error carries a machine-readable ``error_code`` and a ``context`` dict so
that callers (tasks, webhook processors, tenant-facing modules) can persist or
surface it without parsing messages.
"""

from __future__ import annotations

from typing import Any

from apps.common.types import BusinessError


class BillingError(BusinessError):
    """Base billing error with context"""

    error_code = "BILLING_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# ===============================================================================
# METERING
# ===============================================================================


class QuotaExceeded(BillingError):
    """Hard usage limit reached - the triggering action must be rejected upstream"""

    error_code = "QUOTA_EXCEEDED"

    def __init__(self, usage_type: str, limit: int, used: int, requested: int):
        self.usage_type = usage_type
        self.limit = limit
        self.used = used
        self.requested = requested
        super().__init__(
            f"Usage limit reached for {usage_type}: {used}/{limit} used, {requested} requested",
            {"usage_type": usage_type, "limit": limit, "used": used, "requested": requested},
        )


# ===============================================================================
# PRICING
# ===============================================================================


class PricingUnresolved(BillingError):
    """Missing or invalid plan/country configuration - blocks billing for the tenant"""

    error_code = "PRICING_UNRESOLVED"


# ===============================================================================
# GATEWAYS
# ===============================================================================


class GatewayError(BillingError):
    """Base class for failures reported by a payment gateway adapter"""

    error_code = "GATEWAY_ERROR"

    def __init__(self, message: str, gateway: str = "", code: str = ""):
        self.gateway = gateway
        self.code = code
        super().__init__(message, {"gateway": gateway, "code": code})


class GatewayTransient(GatewayError):
    """Network, timeout or provider-side failure - eligible for retry and fallback"""

    error_code = "GATEWAY_TRANSIENT"


class GatewayDeclined(GatewayError):
    """Card or business decline - terminal for the attempt"""

    error_code = "GATEWAY_DECLINED"


# ===============================================================================
# IDEMPOTENCY & CONCURRENCY
# ===============================================================================


class DuplicateEvent(BillingError):
    """Webhook idempotency hit - acknowledged, never reported as a failure"""

    error_code = "DUPLICATE_EVENT"


class ConcurrencyConflict(BillingError):
    """Lock or lease contention - the caller should retry with jitter"""

    error_code = "CONCURRENCY_CONFLICT"


# ===============================================================================
# STATE MACHINE
# ===============================================================================


class SubscriptionStateError(BillingError):
    """Illegal subscription lifecycle transition"""

    error_code = "SUBSCRIPTION_STATE"


class InvoiceStateError(BillingError):
    """Illegal mutation of an invoice in its current status"""

    error_code = "INVOICE_STATE"


class InvoiceNumberCollision(BillingError):
    """Two invoices resolved to the same number - numbering is broken"""

    error_code = "INVOICE_NUMBER_COLLISION"
