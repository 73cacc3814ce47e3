"""
Payment Orchestrator for the billing engine.

Charges open invoices through the country's gateways:
- one charge round per call, primary gateway first
- fallback to the secondary gateway only on transient gateway failures
- exponential retry schedule with a round cap
- per-invoice lease so two workers never charge the same invoice at once

Every gateway call is recorded as an immutable ``PaymentAttempt``. Invoice and
subscription state change only on a confirmed success.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import OuterRef, Subquery
from django.utils import timezone

from . import config as billing_config
from . import events
from .exceptions import (
    BillingError,
    ConcurrencyConflict,
    GatewayDeclined,
    GatewayError,
    GatewayTransient,
    PricingUnresolved,
)
from .gateways import ChargeOutcome, ChargeRequest, PaymentGatewayFactory
from .models import CountryBillingConfig, Invoice, InvoiceChargeLease, PaymentAttempt, Subscription
from .pricing_service import CountryBillingProfile, GatewaySettings, parse_country_config
from .subscription_service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)


# ===============================================================================
# DATA TYPES
# ===============================================================================


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one charge round"""

    invoice_id: str
    status: str  # succeeded, pending, failed, skipped
    charge_round: int = 0
    attempt_ids: tuple[str, ...] = ()
    next_retry_at: datetime | None = None
    error_code: str = ""
    requires_reconciliation: bool = False


@dataclass
class _AttemptDraft:
    gateway: str
    is_fallback: bool
    status: str
    outcome: ChargeOutcome | None = None
    error: GatewayError | None = None


def compute_next_retry(charge_round: int, declined: bool, now: datetime) -> datetime | None:
    """
    When the next charge round is due, or None when retries are over.

    Declines are retried only when the policy allows it; a new payment method
    triggers its own charge.
    """
    if charge_round >= billing_config.get_max_charge_rounds():
        return None
    if declined and not billing_config.retry_declined_payments():
        return None
    schedule = billing_config.get_payment_retry_hours()
    hours = schedule[min(charge_round - 1, len(schedule) - 1)]
    return now + timedelta(hours=hours)


# ===============================================================================
# ORCHESTRATOR
# ===============================================================================


class PaymentOrchestrator:
    """Submit invoice charges and apply their outcome"""

    def __init__(self, lifecycle: SubscriptionLifecycleManager | None = None) -> None:
        self.lifecycle = lifecycle or SubscriptionLifecycleManager()

    def charge(self, invoice_id: Any, now: datetime | None = None) -> AttemptResult:
        """
        Run one charge round for an invoice.

        Raises:
            ConcurrencyConflict: another worker holds the invoice lease
            PricingUnresolved: the invoice country has no usable gateway config
        """
        now = now or timezone.now()
        invoice = Invoice.objects.select_related("currency", "tenant", "subscription").get(pk=invoice_id)

        holder = uuid.uuid4().hex
        self._acquire_lease(invoice, holder, now)
        try:
            return self._charge_round(invoice, now)
        finally:
            InvoiceChargeLease.objects.filter(invoice=invoice, holder=holder).delete()

    # ===============================================================================
    # LEASE
    # ===============================================================================

    def _acquire_lease(self, invoice: Invoice, holder: str, now: datetime) -> None:
        expires_at = now + timedelta(seconds=billing_config.get_charge_lease_seconds())
        try:
            with transaction.atomic():
                InvoiceChargeLease.objects.create(
                    invoice=invoice, holder=holder, acquired_at=now, expires_at=expires_at
                )
            return
        except IntegrityError:
            pass

        # Take over an expired lease only
        taken = InvoiceChargeLease.objects.filter(invoice=invoice, expires_at__lte=now).update(
            holder=holder, acquired_at=now, expires_at=expires_at
        )
        if not taken:
            logger.info(f"🔄 [Payment] Invoice {invoice.number} is being charged by another worker")
            raise ConcurrencyConflict(
                f"Invoice {invoice.number} is already being charged", {"invoice_id": str(invoice.id)}
            )

    # ===============================================================================
    # CHARGE ROUND
    # ===============================================================================

    def _charge_round(self, invoice: Invoice, now: datetime) -> AttemptResult:
        invoice.refresh_from_db()
        if not invoice.is_open or invoice.amount_due <= 0:
            logger.info(f"💳 [Payment] Invoice {invoice.number} is {invoice.status}, nothing to charge")
            return AttemptResult(invoice_id=str(invoice.id), status="skipped")

        if invoice.payment_attempts.filter(status="pending").exists():
            logger.info(f"💳 [Payment] Invoice {invoice.number} has a payment awaiting confirmation")
            return AttemptResult(invoice_id=str(invoice.id), status="skipped")

        profile = self._country_profile(invoice)
        subscription = invoice.subscription

        last = invoice.payment_attempts.order_by("-attempt_number").first()
        charge_round = last.charge_round + 1 if last else 1
        first_attempt_number = last.attempt_number + 1 if last else 1

        drafts: list[_AttemptDraft] = []
        if not subscription.has_payment_method:
            drafts.append(
                _AttemptDraft(
                    gateway=profile.gateways[0].name,
                    is_fallback=False,
                    status="failed",
                    error=GatewayDeclined(
                        "No payment method on file", gateway=profile.gateways[0].name, code="no_payment_method"
                    ),
                )
            )
        else:
            for index, gateway_settings in enumerate(profile.gateways[:2]):
                request = ChargeRequest(
                    invoice_id=str(invoice.id),
                    invoice_number=invoice.number,
                    attempt_number=first_attempt_number + index,
                    amount_minor=invoice.currency.to_minor_units(invoice.amount_due),
                    currency=invoice.currency_id,
                    customer_id=subscription.gateway_customer_id,
                    payment_method_ref=subscription.payment_method_ref,
                    email=invoice.tenant.email,
                    idempotency_key=f"{invoice.id}-{first_attempt_number + index}",
                )
                draft = self._submit(gateway_settings, request, is_fallback=index > 0)
                drafts.append(draft)
                # Only provider-side failures move on to the fallback gateway
                if not isinstance(draft.error, GatewayTransient):
                    break

        return self._apply_outcome(invoice.pk, drafts, charge_round, now)

    def _country_profile(self, invoice: Invoice) -> CountryBillingProfile:
        config = CountryBillingConfig.objects.select_related("currency").filter(country=invoice.country).first()
        if config is None:
            raise PricingUnresolved(
                f"No billing configuration for country {invoice.country}", {"invoice_id": str(invoice.id)}
            )
        profile = parse_country_config(config)
        if not profile.gateways:
            raise PricingUnresolved(
                f"No payment gateway enabled for country {invoice.country}", {"invoice_id": str(invoice.id)}
            )
        return profile

    def _submit(self, gateway_settings: GatewaySettings, request: ChargeRequest, is_fallback: bool) -> _AttemptDraft:
        name = gateway_settings.name
        try:
            gateway = PaymentGatewayFactory.create_gateway(
                name, options=gateway_settings.options, timeout_seconds=gateway_settings.timeout_seconds
            )
            outcome = gateway.charge(request)
        except ValueError as e:
            logger.error(f"❌ [Payment] Gateway {name} unavailable: {e}")
            return _AttemptDraft(
                gateway=name,
                is_fallback=is_fallback,
                status="failed",
                error=GatewayTransient(str(e), gateway=name, code="not_configured"),
            )
        except GatewayError as e:
            logger.warning(f"❌ [Payment] {name} attempt for {request['invoice_number']} failed: {e.code} {e}")
            return _AttemptDraft(gateway=name, is_fallback=is_fallback, status="failed", error=e)

        return _AttemptDraft(gateway=name, is_fallback=is_fallback, status=outcome["status"], outcome=outcome)

    # ===============================================================================
    # EFFECTS
    # ===============================================================================

    def _apply_outcome(
        self, invoice_pk: Any, drafts: list[_AttemptDraft], charge_round: int, now: datetime
    ) -> AttemptResult:
        with transaction.atomic():
            subscription_id = Invoice.objects.values_list("subscription_id", flat=True).get(pk=invoice_pk)
            subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
            invoice = Invoice.objects.select_for_update().select_related("currency").get(pk=invoice_pk)

            # A webhook may have recorded this payment while the gateway call was in flight
            final = drafts[-1]
            recorded = self._recorded_attempt(invoice, final.gateway, final.outcome)
            if recorded is not None:
                logger.info(
                    f"💳 [Payment] {final.gateway} payment {recorded.gateway_payment_id} already recorded "
                    f"as attempt #{recorded.attempt_number} on {invoice.number}"
                )
                drafts = drafts[:-1]

            next_retry_at: datetime | None = None
            requires_reconciliation = False
            amount = Decimal(0)
            if recorded is None and final.outcome is None:
                declined = isinstance(final.error, GatewayDeclined)
                next_retry_at = compute_next_retry(charge_round, declined, now)
            elif recorded is None and final.status == "succeeded":
                # Cancelled or settled elsewhere while the gateway call was in flight
                requires_reconciliation = _needs_reconciliation(subscription, invoice, since=now)
                amount = invoice.currency.from_minor_units(final.outcome["amount_minor"])
                if not requires_reconciliation:
                    next_retry_at = _balance_retry_at(invoice, amount, charge_round, now)

            # Numbered under the lock; the webhook path takes numbers the same way
            last = invoice.payment_attempts.order_by("-attempt_number").first()
            first_attempt_number = last.attempt_number + 1 if last else 1

            attempts: list[PaymentAttempt] = []
            for offset, draft in enumerate(drafts):
                is_final = recorded is None and offset == len(drafts) - 1
                attempts.append(
                    PaymentAttempt.objects.create(
                        invoice=invoice,
                        tenant_id=invoice.tenant_id,
                        attempt_number=first_attempt_number + offset,
                        charge_round=charge_round,
                        gateway=draft.gateway,
                        is_fallback=draft.is_fallback,
                        amount=invoice.amount_due,
                        currency=invoice.currency,
                        status=draft.status,
                        failure_kind=_failure_kind(draft.error),
                        error_code=(draft.error.code if draft.error else "")[:100],
                        error_message=str(draft.error) if draft.error else "",
                        gateway_payment_id=draft.outcome["gateway_payment_id"] if draft.outcome else "",
                        next_retry_at=next_retry_at if is_final else None,
                        requires_reconciliation=requires_reconciliation and is_final,
                        created_at=now,
                        completed_at=now if draft.status != "pending" else None,
                    )
                )

            if recorded is not None:
                attempt = recorded
                attempts.append(recorded)
            elif final.outcome is None:
                attempt = attempts[-1]
                self._on_failure(subscription, invoice, attempt, next_retry_at, charge_round, now)
            elif final.status == "succeeded":
                attempt = attempts[-1]
                if requires_reconciliation:
                    logger.warning(
                        f"⚠️ [Payment] Collected {attempt.amount} on cancelled invoice/subscription "
                        f"({invoice.number}), refund decision required"
                    )
                    events.publish(events.payment_refund_required, attempt=attempt, reason="cancelled_during_charge")
                else:
                    self._on_success(subscription, invoice, amount, now)
            else:
                attempt = attempts[-1]
                logger.info(f"💳 [Payment] {attempt.gateway} is processing {invoice.number}, awaiting webhook")

        return AttemptResult(
            invoice_id=str(invoice.id),
            status=attempt.status,
            charge_round=charge_round,
            attempt_ids=tuple(str(a.id) for a in attempts),
            next_retry_at=attempt.next_retry_at,
            error_code=attempt.error_code,
            requires_reconciliation=attempt.requires_reconciliation,
        )

    @staticmethod
    def _recorded_attempt(invoice: Invoice, gateway: str, outcome: ChargeOutcome | None) -> PaymentAttempt | None:
        if outcome is None or not outcome["gateway_payment_id"]:
            return None
        return invoice.payment_attempts.filter(
            gateway=gateway, gateway_payment_id=outcome["gateway_payment_id"]
        ).first()

    def _on_success(self, subscription: Subscription, invoice: Invoice, amount: Decimal, now: datetime) -> None:
        """Apply a confirmed payment. Caller holds both row locks."""
        if not invoice.is_open:
            logger.warning(f"⚠️ [Payment] Invoice {invoice.number} is {invoice.status}, payment not applied")
            return

        invoice.apply_payment(amount, paid_at=now)
        if invoice.status == "paid":
            logger.info(f"✅ [Payment] Invoice {invoice.number} paid ({invoice.total_amount} {invoice.currency_id})")
            self.lifecycle.record_payment_success(subscription, now)
            events.publish(events.invoice_paid, invoice=invoice, amount=amount)
        else:
            logger.info(f"💳 [Payment] Invoice {invoice.number} partially paid, {invoice.amount_due} outstanding")

    def _on_failure(
        self,
        subscription: Subscription,
        invoice: Invoice,
        attempt: PaymentAttempt,
        next_retry_at: datetime | None,
        charge_round: int,
        now: datetime,
    ) -> None:
        exhausted = charge_round >= billing_config.get_max_charge_rounds()
        self.lifecycle.record_payment_failure(subscription, now, exhausted=exhausted)
        if next_retry_at:
            logger.info(f"🔄 [Payment] Invoice {invoice.number} retry scheduled at {next_retry_at:%Y-%m-%d %H:%M}")
        else:
            logger.warning(f"❌ [Payment] No further automatic retries for invoice {invoice.number}")
        events.publish(events.payment_failed, invoice=invoice, attempt=attempt, will_retry=next_retry_at is not None)

    # ===============================================================================
    # CONFIRMATIONS (webhooks)
    # ===============================================================================

    def confirm_attempt(
        self, attempt: PaymentAttempt, amount: Decimal | None = None, now: datetime | None = None
    ) -> None:
        """Settle a pending attempt reported successful by the gateway"""
        now = now or timezone.now()
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=attempt.invoice.subscription_id)
            invoice = Invoice.objects.select_for_update().select_related("currency").get(pk=attempt.invoice_id)
            attempt = PaymentAttempt.objects.get(pk=attempt.pk)
            if attempt.status != "pending":
                logger.info(f"💳 [Payment] Attempt {attempt.id} already {attempt.status}")
                return

            self._settle_pending(subscription, invoice, attempt, amount if amount is not None else attempt.amount, now)

    def _settle_pending(
        self, subscription: Subscription, invoice: Invoice, attempt: PaymentAttempt, amount: Decimal, now: datetime
    ) -> None:
        """Confirm a pending attempt. Caller holds both row locks."""
        if _needs_reconciliation(subscription, invoice, since=attempt.created_at):
            attempt.requires_reconciliation = True
            attempt.confirm(completed_at=now)
            events.publish(events.payment_refund_required, attempt=attempt, reason="confirmed_after_cancellation")
            return

        attempt.next_retry_at = _balance_retry_at(invoice, amount, attempt.charge_round, now)
        attempt.confirm(completed_at=now)
        self._on_success(subscription, invoice, amount, now)

    def record_external_success(
        self,
        invoice_id: Any,
        gateway: str,
        gateway_payment_id: str,
        amount: Decimal,
        now: datetime | None = None,
    ) -> PaymentAttempt:
        """
        Record a payment the gateway confirmed without a matching pending attempt
        (e.g. our side timed out after the charge went through).

        A charge the synchronous path recorded in the meantime is confirmed or
        returned as is, never recorded twice.
        """
        now = now or timezone.now()
        with transaction.atomic():
            subscription_id = Invoice.objects.values_list("subscription_id", flat=True).get(pk=invoice_id)
            subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
            invoice = Invoice.objects.select_for_update().select_related("currency").get(pk=invoice_id)

            existing = (
                invoice.payment_attempts.filter(gateway=gateway, gateway_payment_id=gateway_payment_id)
                .exclude(status="failed")
                .first()
            )
            if existing is not None:
                if existing.status == "pending":
                    self._settle_pending(subscription, invoice, existing, amount, now)
                else:
                    logger.info(f"💳 [Payment] {gateway} payment {gateway_payment_id} already recorded")
                return existing

            last = invoice.payment_attempts.order_by("-attempt_number").first()
            charge_round = last.charge_round if last else 1
            since = last.created_at if last else invoice.issued_at
            requires_reconciliation = _needs_reconciliation(subscription, invoice, since=since)
            attempt = PaymentAttempt.objects.create(
                invoice=invoice,
                tenant_id=invoice.tenant_id,
                attempt_number=last.attempt_number + 1 if last else 1,
                charge_round=charge_round,
                gateway=gateway,
                amount=amount,
                currency=invoice.currency,
                status="succeeded",
                gateway_payment_id=gateway_payment_id,
                next_retry_at=(
                    None if requires_reconciliation else _balance_retry_at(invoice, amount, charge_round, now)
                ),
                requires_reconciliation=requires_reconciliation,
                created_at=now,
                completed_at=now,
            )

            if requires_reconciliation:
                logger.warning(
                    f"⚠️ [Payment] {gateway} payment {gateway_payment_id} arrived for {invoice.status} "
                    f"invoice {invoice.number}, refund decision required"
                )
                events.publish(events.payment_refund_required, attempt=attempt, reason="paid_after_cancellation")
            else:
                self._on_success(subscription, invoice, amount, now)
        return attempt

    def fail_attempt(
        self,
        attempt: PaymentAttempt,
        error_code: str,
        error_message: str = "",
        now: datetime | None = None,
        failure_kind: str = "declined",
    ) -> bool:
        """Settle a pending attempt reported failed by the gateway. False when it was already settled."""
        now = now or timezone.now()
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(pk=attempt.invoice.subscription_id)
            invoice = Invoice.objects.select_for_update().get(pk=attempt.invoice_id)
            attempt = PaymentAttempt.objects.get(pk=attempt.pk)
            if attempt.status != "pending":
                logger.info(f"💳 [Payment] Attempt {attempt.id} already {attempt.status}")
                return False

            declined = failure_kind == "declined"
            attempt.next_retry_at = compute_next_retry(attempt.charge_round, declined=declined, now=now)
            attempt.fail(error_code or "payment_failed", error_message, failure_kind=failure_kind)
            if invoice.is_open and not subscription.is_terminal:
                self._on_failure(subscription, invoice, attempt, attempt.next_retry_at, attempt.charge_round, now)
        return True

    def expire_pending_attempts(self, now: datetime | None = None) -> int:
        """
        Fail attempts the gateway left unconfirmed past the pending timeout.

        They count as transient failures, so the invoice re-enters the retry
        schedule and dunning. A late success webhook is still recorded as an
        external payment.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(minutes=billing_config.get_pending_attempt_timeout_minutes())
        stale = PaymentAttempt.objects.select_related("invoice").filter(status="pending", created_at__lte=cutoff)

        expired = 0
        for attempt in stale:
            logger.warning(
                f"⏰ [Payment] {attempt.gateway} never confirmed attempt #{attempt.attempt_number} "
                f"for invoice {attempt.invoice.number}"
            )
            if self.fail_attempt(
                attempt,
                "confirmation_timeout",
                "Gateway did not confirm the charge in time",
                now=now,
                failure_kind="transient",
            ):
                expired += 1
        return expired

    # ===============================================================================
    # RETRIES
    # ===============================================================================

    def retry_due_payments(self, now: datetime | None = None) -> list[AttemptResult]:
        """Expire stale pending attempts, then charge every open invoice whose retry is due"""
        now = now or timezone.now()
        self.expire_pending_attempts(now=now)

        latest = PaymentAttempt.objects.filter(invoice=OuterRef("pk")).order_by("-attempt_number")
        due = (
            Invoice.objects.filter(
                status__in=Invoice.OPEN_STATUSES, subscription__status__in=("active", "past_due")
            )
            .annotate(
                latest_retry_at=Subquery(latest.values("next_retry_at")[:1]),
                latest_status=Subquery(latest.values("status")[:1]),
            )
            .filter(latest_retry_at__lte=now)
            .exclude(latest_status="pending")
            .values_list("id", flat=True)
        )

        results: list[AttemptResult] = []
        for invoice_id in list(due):
            try:
                results.append(self.charge(invoice_id, now=now))
            except ConcurrencyConflict:
                continue
            except BillingError as e:
                logger.error(f"❌ [Payment] Retry of invoice {invoice_id} failed: {e}")
        if results:
            logger.info(f"🔄 [Payment] Retried {len(results)} invoices")
        return results


def _needs_reconciliation(subscription: Subscription, invoice: Invoice, since: datetime) -> bool:
    """Money collected for an invoice that no longer expects it"""
    if not invoice.is_open:
        return True
    return (
        subscription.status == "cancelled"
        and subscription.cancelled_at is not None
        and subscription.cancelled_at >= since
    )


def _balance_retry_at(invoice: Invoice, amount: Decimal, charge_round: int, now: datetime) -> datetime | None:
    """Next charge for the balance a partial payment leaves open"""
    if not invoice.is_open or amount >= invoice.amount_due:
        return None
    return compute_next_retry(charge_round, declined=False, now=now)


def _failure_kind(error: GatewayError | None) -> str:
    if error is None:
        return ""
    return "declined" if isinstance(error, GatewayDeclined) else "transient"
