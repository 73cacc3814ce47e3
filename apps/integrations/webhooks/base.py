import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.billing.exceptions import DuplicateEvent
from apps.common.types import Err, Ok, Result
from apps.integrations.models import WebhookEvent

logger = logging.getLogger(__name__)

# A pending row older than this was left behind by an interrupted ingestion
STALE_PENDING_SECONDS = 300


class SecurityError(Exception):
    """🔒 Security-related errors in webhook processing"""


# ===============================================================================
# NORMALIZED EVENTS
# ===============================================================================

# Billing-relevant webhook kinds; anything else is skipped
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELLED = "subscription_cancelled"
REFUND_COMPLETED = "refund_completed"


@dataclass(frozen=True)
class NormalizedWebhookEvent:
    """Gateway-independent view of a webhook event"""

    gateway: str
    event_id: str
    event_type: str
    kind: str = ""  # one of the kinds above, empty when irrelevant
    gateway_payment_id: str = ""
    invoice_id: str = ""
    amount_minor: int | None = None
    amount_is_cumulative: bool = False  # refund events reporting the running total
    currency: str = ""
    customer_ref: str = ""
    error_code: str = ""
    error_message: str = ""


# ===============================================================================
# BASE WEBHOOK PROCESSING
# ===============================================================================


class BaseWebhookProcessor(ABC):
    """
    🔧 Abstract base class for gateway webhook processing with deduplication

    Pipeline: parse body → verify signature → insert ``pending`` row under the
    (gateway, event_id) constraint → apply billing effects and mark processed
    in one transaction. Subclasses only parse and verify.
    """

    gateway_name: str = ""  # Override in subclasses

    def __init__(self) -> None:
        if not self.gateway_name:
            self.gateway_name = self.__class__.__name__.lower()

        # Validate that signature implementation is secure
        self._validate_signature_implementation()

    def ingest(self, raw_body: bytes, signature: str = "") -> Result[str, str]:
        """
        🔄 Main webhook processing pipeline

        Returns ``Ok(message)`` for processed, skipped and duplicate events and
        ``Err(message)`` when the event was rejected or its effects failed.
        """
        info = (
            self._parse_body(raw_body)
            .and_then(lambda payload: self._verify_signature(raw_body, signature, payload))
            .and_then(lambda payload: self._extract_event_info(payload))
        )
        if info.is_err():
            return info

        try:
            webhook_event = self._store_event(info.unwrap(), signature)
        except DuplicateEvent as e:
            return Ok(f"⏭️ Duplicate webhook skipped: {e.context['event_id']}")
        return self.apply(webhook_event)

    def _parse_body(self, raw_body: bytes) -> Result[dict[str, Any], str]:
        """Step 1: Decode the JSON body."""
        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Err("❌ Invalid JSON payload")
        if not isinstance(payload, dict):
            return Err("❌ Webhook payload must be a JSON object")
        return Ok(payload)

    def _verify_signature(
        self, raw_body: bytes, signature: str, payload: dict[str, Any]
    ) -> Result[dict[str, Any], str]:
        """Step 2: Verify webhook signature against the raw body."""
        if not self.verify_signature(raw_body, signature):
            logger.warning(f"🔒 Invalid {self.gateway_name} webhook signature")
            return Err("❌ Invalid webhook signature")
        return Ok(payload)

    def _extract_event_info(self, payload: dict[str, Any]) -> Result[dict[str, Any], str]:
        """Step 3: Validate payload and extract event information."""
        event_id = self.extract_event_id(payload)
        event_type = self.extract_event_type(payload)

        if not event_id:
            return Err("❌ Missing event ID in payload")

        if not event_type:
            return Err("❌ Missing event type in payload")

        return Ok({"event_id": event_id, "event_type": event_type, "payload": payload})

    def _store_event(self, info: dict[str, Any], signature: str) -> WebhookEvent:
        """Step 4: Insert the pending row; the unique constraint decides duplicates.

        The row is committed before any effect runs, so a crash during the
        effects leaves it ``pending`` for ``process_pending_webhooks``.

        Raises:
            DuplicateEvent: the (gateway, event_id) pair was already received
        """
        try:
            with transaction.atomic():
                return WebhookEvent.objects.create(
                    gateway=self.gateway_name,
                    event_id=info["event_id"],
                    event_type=info["event_type"],
                    payload=info["payload"],
                    signature_hash=WebhookEvent.hash_signature(signature),
                    status="pending",
                )
        except IntegrityError as e:
            # Redelivery or a concurrent request: pending/failed rows belong to the replay job
            logger.info(f"🔄 Duplicate webhook {self.gateway_name}:{info['event_id']} - skipping")
            raise DuplicateEvent(
                f"Webhook {self.gateway_name}:{info['event_id']} already received",
                {"gateway": self.gateway_name, "event_id": info["event_id"]},
            ) from e

    def apply(self, webhook_event: WebhookEvent) -> Result[str, str]:
        """Step 5: Apply billing effects and mark the row processed, all-or-nothing."""
        from apps.integrations.services import apply_webhook_effect  # noqa: PLC0415

        try:
            event = self.parse_event(webhook_event.payload)
        except (KeyError, TypeError, ValueError) as e:
            webhook_event.mark_failed(f"Malformed {self.gateway_name} event: {e}")
            logger.error(f"❌ Malformed {self.gateway_name} webhook {webhook_event.event_id}: {e}")
            return Err(f"❌ Malformed event: {e}")

        if not event.kind:
            webhook_event.mark_skipped(f"Unhandled event type: {webhook_event.event_type}")
            logger.info(f"⏭️ Skipping {self.gateway_name} event type: {webhook_event.event_type}")
            return Ok(f"Skipped event type: {webhook_event.event_type}")

        try:
            with transaction.atomic():
                message = apply_webhook_effect(event)
                webhook_event.mark_processed()
        except Exception as e:
            logger.exception(f"🔥 Error applying {self.gateway_name} webhook {webhook_event.event_id}")
            webhook_event.mark_failed(f"{type(e).__name__}: {e}")
            return Err(f"❌ Processing error: {type(e).__name__}")

        logger.info(f"✅ Processed {self.gateway_name} webhook {webhook_event.event_id}: {message}")
        return Ok(message)

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        """🔍 Extract unique event ID from payload - override in subclasses"""
        return payload.get("id")

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        """🏷️ Extract event type from payload - override in subclasses"""
        return payload.get("type")

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        """🔐 Verify webhook signature - must be implemented by subclasses"""

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> NormalizedWebhookEvent:
        """🎯 Map a gateway payload to a normalized event - must be implemented by subclasses"""

    # --- Security enforcement helpers ---
    def _validate_signature_implementation(self) -> None:
        """Raise SecurityError if verify_signature accepts obviously invalid signatures."""
        always_false_cases = [
            (b"{}", ""),
            (b'{"test": "data"}', "obviously_invalid_signature_12345"),
            (b"", "short"),
        ]
        for raw_body, signature in always_false_cases:
            if self.verify_signature(raw_body, signature):
                raise SecurityError("Overly permissive signature verification detected")


# ===============================================================================
# WEBHOOK SIGNATURE VERIFICATION UTILITIES
# ===============================================================================


def verify_hmac_signature(payload_body: bytes, signature: str, secret: str, algorithm: str = "sha256") -> bool:
    """
    🔐 Verify a hex HMAC signature of the raw body (timing-safe)
    """
    if not signature or not secret:
        return False

    expected_signature = hmac.new(secret.encode("utf-8"), payload_body, getattr(hashlib, algorithm)).hexdigest()
    return hmac.compare_digest(signature, expected_signature)


# ===============================================================================
# ENTRY POINT & PROCESSOR FACTORY
# ===============================================================================


def get_webhook_processor(gateway: str) -> BaseWebhookProcessor | None:
    """
    🏭 Factory function to get appropriate webhook processor
    """
    # Import here to avoid circular imports
    from .razorpay import RazorpayWebhookProcessor  # noqa: PLC0415
    from .stripe import StripeWebhookProcessor  # noqa: PLC0415

    processors: dict[str, type[BaseWebhookProcessor]] = {
        "stripe": StripeWebhookProcessor,
        "razorpay": RazorpayWebhookProcessor,
    }

    processor_class = processors.get(gateway)
    if processor_class:
        return processor_class()

    return None


def ingest(gateway: str, raw_event: bytes | str, signature: str = "") -> Result[str, str]:
    """🔗 Ingest one webhook delivery from ``gateway``"""
    processor = get_webhook_processor(gateway)
    if processor is None:
        return Err(f"❌ Unknown webhook gateway: {gateway}")

    raw_body = raw_event.encode("utf-8") if isinstance(raw_event, str) else raw_event
    return processor.ingest(raw_body, signature)


# ===============================================================================
# WEBHOOK PROCESSING QUEUE
# ===============================================================================


def _reapply(webhook_event: WebhookEvent, stats: dict[str, int], ok_key: str) -> None:
    processor = get_webhook_processor(webhook_event.gateway)
    if processor is None:
        webhook_event.mark_failed(f"No processor found for gateway: {webhook_event.gateway}")
        stats["failed"] += 1
        return

    result = processor.apply(webhook_event)
    webhook_event.refresh_from_db(fields=["status"])
    if result.is_err():
        stats["failed"] += 1
    elif webhook_event.status == "skipped":
        stats["skipped"] += 1
    else:
        stats[ok_key] += 1


def process_pending_webhooks(gateway: str | None = None, limit: int = 100) -> dict[str, int]:
    """
    🔄 Apply webhooks left ``pending`` by an interrupted ingestion

    Returns stats: {processed: int, failed: int, skipped: int}
    """
    stats = {"processed": 0, "failed": 0, "skipped": 0}
    received_before = timezone.now() - timedelta(seconds=STALE_PENDING_SECONDS)

    pending = WebhookEvent.get_pending_webhooks(received_before=received_before, gateway=gateway, limit=limit)
    for webhook_event in pending:
        _reapply(webhook_event, stats, "processed")

    if any(stats.values()):
        logger.info(f"🔄 Pending webhooks: {stats}")
    return stats


def replay_failed_webhooks(gateway: str | None = None) -> dict[str, int]:
    """
    🔄 Re-run effects of failed webhooks whose retry time has come

    Returns stats: {retried: int, failed: int, skipped: int}
    """
    stats = {"retried": 0, "failed": 0, "skipped": 0}

    for webhook_event in WebhookEvent.get_failed_webhooks_for_retry(gateway=gateway):
        _reapply(webhook_event, stats, "retried")

    for webhook_event in WebhookEvent.objects.filter(status="failed", next_retry_at__isnull=True):
        logger.error(
            f"❌ Webhook {webhook_event.gateway}:{webhook_event.event_id} exhausted retries, needs manual review"
        )

    if any(stats.values()):
        logger.info(f"🔄 Webhook replay: {stats}")
    return stats
