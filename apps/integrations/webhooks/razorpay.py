import logging
from typing import Any

from django.conf import settings

from .base import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    REFUND_COMPLETED,
    SUBSCRIPTION_CANCELLED,
    BaseWebhookProcessor,
    NormalizedWebhookEvent,
    verify_hmac_signature,
)

logger = logging.getLogger(__name__)


# ===============================================================================
# RAZORPAY WEBHOOK PROCESSOR
# ===============================================================================


class RazorpayWebhookProcessor(BaseWebhookProcessor):
    """
    💳 Razorpay webhook processor

    Razorpay signs the raw body with HMAC-SHA256 (X-Razorpay-Signature) and
    wraps entities as ``payload.<entity>.entity``.
    """

    gateway_name = "razorpay"

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        webhook_secret = getattr(settings, "RAZORPAY_WEBHOOK_SECRET", "")
        return verify_hmac_signature(raw_body, signature, webhook_secret)

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        """
        Payload ``id`` when present, else ``<event>:<entity id>``.

        Ids come from the signed body only: the X-Razorpay-Event-Id header is
        not covered by the signature.
        """
        if payload.get("id"):
            return payload["id"]
        event_type = payload.get("event")
        entity = self._main_entity(payload)
        if event_type and entity.get("id"):
            return f"{event_type}:{entity['id']}"
        return None

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        return payload.get("event")

    def parse_event(self, payload: dict[str, Any]) -> NormalizedWebhookEvent:
        event_type = payload["event"]
        base = {
            "gateway": self.gateway_name,
            "event_id": self.extract_event_id(payload) or "",
            "event_type": event_type,
        }
        entity = self._main_entity(payload)
        notes = entity.get("notes") or {}
        if isinstance(notes, list):  # Razorpay sends [] for empty notes
            notes = {}

        if event_type == "payment.captured":
            return NormalizedWebhookEvent(
                **base,
                kind=PAYMENT_SUCCEEDED,
                gateway_payment_id=entity["id"],
                invoice_id=notes.get("invoice_id", ""),
                amount_minor=entity.get("amount"),
                currency=(entity.get("currency") or "").upper(),
                customer_ref=entity.get("customer_id") or "",
            )

        if event_type == "payment.failed":
            return NormalizedWebhookEvent(
                **base,
                kind=PAYMENT_FAILED,
                gateway_payment_id=entity["id"],
                invoice_id=notes.get("invoice_id", ""),
                error_code=entity.get("error_reason") or entity.get("error_code") or "payment_failed",
                error_message=entity.get("error_description") or "",
            )

        if event_type == "subscription.cancelled":
            return NormalizedWebhookEvent(
                **base, kind=SUBSCRIPTION_CANCELLED, customer_ref=entity.get("customer_id") or ""
            )

        if event_type == "refund.processed":
            return NormalizedWebhookEvent(
                **base,
                kind=REFUND_COMPLETED,
                gateway_payment_id=entity.get("payment_id") or "",
                invoice_id=notes.get("invoice_id", ""),
                amount_minor=entity.get("amount"),
                currency=(entity.get("currency") or "").upper(),
            )

        return NormalizedWebhookEvent(**base)

    @staticmethod
    def _main_entity(payload: dict[str, Any]) -> dict[str, Any]:
        """The entity the event is about: refund, then subscription, then payment"""
        body = payload.get("payload") or {}
        for key in ("refund", "subscription", "payment"):
            if key in body:
                return body[key].get("entity") or {}
        return {}
