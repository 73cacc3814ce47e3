"""
Razorpay Payment Gateway for the billing engine
Recurring charges of saved tokens through the Razorpay REST API.
"""

from __future__ import annotations

import logging
from typing import Any

import requests
from django.conf import settings

from apps.billing.exceptions import GatewayDeclined, GatewayTransient

from .base import BasePaymentGateway, ChargeOutcome, ChargeRequest, PaymentGatewayFactory

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

# HTTP statuses worth retrying on another attempt or gateway
_TRANSIENT_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# Error sources that point at the customer's instrument rather than at Razorpay
_DECLINE_SOURCES = frozenset({"customer", "bank", "issuer"})


# ===============================================================================
# RAZORPAY GATEWAY IMPLEMENTATION
# ===============================================================================


class RazorpayGateway(BasePaymentGateway):
    """
    💳 Razorpay payment gateway implementation

    A charge creates an order and then a recurring payment on the saved token.
    Recurring payments are asynchronous, so accepted charges are reported as
    pending and settled by the ``payment.captured`` / ``payment.failed``
    webhooks.
    """

    def __init__(self, options: dict[str, Any] | None = None, timeout_seconds: int | None = None) -> None:
        super().__init__(options=options, timeout_seconds=timeout_seconds)
        self._session = requests.Session()
        self._session.auth = (
            getattr(settings, "RAZORPAY_KEY_ID", "") or "",
            getattr(settings, "RAZORPAY_KEY_SECRET", "") or "",
        )
        self._base_url = self.options.get("api_base", RAZORPAY_API_BASE)

    @property
    def gateway_name(self) -> str:
        return "razorpay"

    def validate_configuration(self) -> bool:
        key_id, key_secret = self._session.auth  # type: ignore[misc]
        if not key_id or not key_secret:
            self.logger.error("❌ Razorpay API keys not configured")
            return False
        return True

    def charge(self, request: ChargeRequest) -> ChargeOutcome:
        notes = {"invoice_id": request["invoice_id"], "attempt_number": str(request["attempt_number"])}

        order = self._post(
            "/orders",
            {
                "amount": request["amount_minor"],
                "currency": request["currency"].upper(),
                "receipt": request["idempotency_key"][:40],
                "notes": notes,
            },
        )
        payment = self._post(
            "/payments/create/recurring",
            {
                "email": request["email"],
                "contact": self.options.get("contact", ""),
                "amount": request["amount_minor"],
                "currency": request["currency"].upper(),
                "order_id": order["id"],
                "customer_id": request["customer_id"],
                "token": request["payment_method_ref"],
                "recurring": "1",
                "description": f"Invoice {request['invoice_number']}",
                "notes": notes,
            },
        )

        payment_id = payment.get("razorpay_payment_id") or payment.get("id", "")
        self.logger.info(f"💳 Razorpay payment {payment_id} submitted for {request['invoice_number']}")
        return ChargeOutcome(
            status="pending",
            gateway_payment_id=payment_id,
            amount_minor=request["amount_minor"],
            raw_status=payment.get("status", "created"),
        )

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._session.post(f"{self._base_url}{path}", json=body, timeout=self.timeout_seconds)
        except (requests.Timeout, requests.ConnectionError) as e:
            self.logger.warning(f"🔄 Razorpay unreachable on {path}: {e}")
            raise GatewayTransient(str(e), gateway=self.gateway_name, code=type(e).__name__) from e

        if response.status_code < 400:
            return response.json()

        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code") or f"HTTP_{response.status_code}"
        message = error.get("description") or response.text[:200]

        if response.status_code in _TRANSIENT_HTTP_STATUSES or response.status_code in (401, 403):
            self.logger.warning(f"🔄 Razorpay {response.status_code} on {path}: {message}")
            raise GatewayTransient(message, gateway=self.gateway_name, code=code)
        if error.get("source") in _DECLINE_SOURCES or error.get("reason"):
            self.logger.warning(f"❌ Razorpay declined on {path}: {error.get('reason') or code}")
            raise GatewayDeclined(message, gateway=self.gateway_name, code=error.get("reason") or code)

        self.logger.error(f"🔥 Razorpay rejected request on {path}: {code} {message}")
        raise GatewayTransient(message, gateway=self.gateway_name, code=code)


# Register Razorpay gateway with factory
PaymentGatewayFactory.register_gateway("razorpay", RazorpayGateway)
