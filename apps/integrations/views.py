import logging
from typing import Any

from django.http import HttpRequest, HttpResponseBadRequest, JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from .webhooks.base import ingest

logger = logging.getLogger(__name__)


# ===============================================================================
# WEBHOOK ENDPOINT VIEWS
# ===============================================================================


@method_decorator(csrf_exempt, name="dispatch")
class WebhookView(View):
    """
    🔄 Gateway webhook endpoint with deduplication

    - POST /integrations/webhooks/stripe/ → Stripe events
    - POST /integrations/webhooks/razorpay/ → Razorpay events

    The raw body is passed through untouched: signatures are computed over
    the exact bytes the gateway sent.
    """

    gateway_name: str | None = None  # Override in subclasses
    signature_header = ""

    def post(self, request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        """📨 Ingest the webhook and report the outcome"""
        if not self.gateway_name:
            return HttpResponseBadRequest("Webhook gateway not configured")

        signature = request.META.get(self.signature_header, "")
        result = ingest(self.gateway_name, request.body, signature)

        if result.is_ok():
            return JsonResponse({"status": "success", "message": result.unwrap()})

        # Non-2xx makes the gateway redeliver; failed rows are also replayed on our side
        logger.error(f"❌ {self.gateway_name} webhook rejected: {result.unwrap_err()}")
        return JsonResponse({"status": "error", "message": result.unwrap_err()}, status=400)


class StripeWebhookView(WebhookView):
    """💳 Stripe webhook endpoint"""

    gateway_name = "stripe"
    signature_header = "HTTP_STRIPE_SIGNATURE"


class RazorpayWebhookView(WebhookView):
    """💳 Razorpay webhook endpoint"""

    gateway_name = "razorpay"
    signature_header = "HTTP_X_RAZORPAY_SIGNATURE"
