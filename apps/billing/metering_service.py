"""
Usage metering for the billing engine.

This service provides:
- ``emit``: fire-and-forget entry point for product modules (durably queued)
- ``UsageAggregator.record``: ledger append + atomic counter increment
- ``UsageAggregator.close_period``: idempotent counter close used by invoicing
- ``UsageAggregator.get_usage_summary``: per-tenant usage status

Counting is at-least-once. Only events that carry a ``dedup_key`` are
de-duplicated; a retried ``record`` without one counts twice.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from dateutil.relativedelta import relativedelta
from django.db import IntegrityError, transaction
from django.db.models import BigIntegerField, DecimalField, ExpressionWrapper, F, Value
from django.db.models.functions import Greatest
from django.utils import timezone

from apps.common.types import ValidationError

from . import config as billing_config
from .exceptions import PricingUnresolved, QuotaExceeded, SubscriptionStateError
from .models import USAGE_TYPE_CHOICES, Currency, Subscription, UsageEvent, UsagePeriodCounter
from .pricing_service import PricingResolver

logger = logging.getLogger(__name__)

VALID_USAGE_TYPES = frozenset(code for code, _label in USAGE_TYPE_CHOICES)

# A counter closed between lookup and increment pushes the event one period
# forward; more hops than this means the subscription periods are broken.
MAX_PERIOD_HOPS = 3


# ===============================================================================
# DATA TYPES
# ===============================================================================


@dataclass
class UsageEventData:
    """Data for recording a usage event"""

    tenant_id: str
    usage_type: str
    quantity: int
    occurred_at: datetime | None = None
    dedup_key: str | None = None
    resource_ref: str = ""
    unit_cost: Decimal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageAck:
    event_id: str
    counter_id: str
    period_start: datetime
    used_units: int
    included_units: int
    overage_units: int
    remaining_units: int | None
    duplicate: bool = False


@dataclass(frozen=True)
class UsageStatus:
    usage_type: str
    used_units: int
    included_units: int
    hard_limit: int | None
    remaining_units: int | None
    percentage_used: Decimal
    overage_units: int
    overage_cost: Decimal
    is_over_included: bool


class _CounterClosed(Exception):  # noqa: N818
    """Internal signal: the counter was billed before the increment landed"""


# ===============================================================================
# AGGREGATOR
# ===============================================================================


class UsageAggregator:
    """Roll ledger events into per-period counters"""

    def record(self, event: UsageEventData) -> UsageAck:
        """
        Append ``event`` to the ledger and count it.

        Raises ``QuotaExceeded`` when the hard limit would be crossed; the event
        is then neither stored nor counted.
        """
        self._validate(event)
        occurred_at = event.occurred_at or timezone.now()

        if event.dedup_key:
            existing = self._find_duplicate(event)
            if existing is not None:
                return existing

        skip_before: datetime | None = None
        for _hop in range(MAX_PERIOD_HOPS):
            try:
                with transaction.atomic():
                    ack = self._record_once(event, occurred_at, skip_before)
            except _CounterClosed as closed:
                skip_before = closed.args[0]
                continue
            except IntegrityError:
                # Concurrent writer inserted the same dedup key first
                if event.dedup_key:
                    existing = self._find_duplicate(event)
                    if existing is not None:
                        return existing
                raise

            logger.debug(
                f"📊 [Metering] {event.usage_type} +{event.quantity} for tenant {event.tenant_id} "
                f"-> {ack.used_units} used"
            )
            return ack

        raise SubscriptionStateError(
            f"Could not find an open usage period for tenant {event.tenant_id}",
            {"tenant_id": str(event.tenant_id), "usage_type": event.usage_type},
        )

    def _validate(self, event: UsageEventData) -> None:
        if event.usage_type not in VALID_USAGE_TYPES:
            raise ValidationError("usage_type", f"Unknown usage type: {event.usage_type}")
        if not isinstance(event.quantity, int) or isinstance(event.quantity, bool) or event.quantity <= 0:
            raise ValidationError("quantity", "Quantity must be a positive integer")

    def _find_duplicate(self, event: UsageEventData) -> UsageAck | None:
        existing = (
            UsageEvent.objects.select_related("counter")
            .filter(tenant_id=event.tenant_id, usage_type=event.usage_type, dedup_key=event.dedup_key)
            .first()
        )
        if existing is None:
            return None
        logger.info(f"📊 [Metering] Duplicate event ignored (dedup key): {event.dedup_key}")
        return _ack(existing, existing.counter, duplicate=True)

    def _record_once(self, event: UsageEventData, occurred_at: datetime, skip_before: datetime | None) -> UsageAck:
        subscription = Subscription.objects.select_related("tenant", "plan", "pending_plan").current_for(
            event.tenant_id
        )
        if subscription is None:
            raise PricingUnresolved(
                f"Tenant {event.tenant_id} has no subscription", {"tenant_id": str(event.tenant_id)}
            )
        if subscription.status not in Subscription.BILLABLE_STATUSES:
            raise SubscriptionStateError(
                f"Cannot meter usage on a {subscription.status} subscription",
                {"tenant_id": str(event.tenant_id), "status": subscription.status},
            )

        counter = self._open_counter(subscription, event.usage_type, occurred_at, skip_before)
        if not counter.is_enabled:
            raise QuotaExceeded(event.usage_type, 0, counter.used_units, event.quantity)

        if not self._increment(counter, event.quantity):
            counter.refresh_from_db()
            if counter.is_billed:
                raise _CounterClosed(counter.period_end)
            raise QuotaExceeded(event.usage_type, counter.hard_limit or 0, counter.used_units, event.quantity)

        usage_event = UsageEvent.objects.create(
            tenant_id=event.tenant_id,
            usage_type=event.usage_type,
            quantity=event.quantity,
            unit_cost=event.unit_cost,
            occurred_at=occurred_at,
            dedup_key=event.dedup_key or None,
            resource_ref=event.resource_ref,
            metadata=event.metadata,
            counter=counter,
        )
        counter.refresh_from_db()
        return _ack(usage_event, counter)

    def _increment(self, counter: UsagePeriodCounter, quantity: int) -> bool:
        """Atomic conditional increment; False when closed or over the ceiling"""
        queryset = UsagePeriodCounter.objects.filter(pk=counter.pk, is_billed=False)
        if counter.hard_limit is not None:
            queryset = queryset.filter(used_units__lte=counter.hard_limit - quantity)

        new_used = ExpressionWrapper(F("used_units") + quantity, output_field=BigIntegerField())
        overage = Greatest(
            ExpressionWrapper(new_used - F("included_units"), output_field=BigIntegerField()),
            Value(0),
            output_field=BigIntegerField(),
        )
        updated = queryset.update(
            used_units=new_used,
            event_count=F("event_count") + 1,
            overage_units=overage,
            overage_cost=ExpressionWrapper(
                overage * F("overage_rate"),
                output_field=DecimalField(
                    max_digits=billing_config.MONEY_MAX_DIGITS, decimal_places=billing_config.MONEY_DECIMAL_PLACES
                ),
            ),
            updated_at=timezone.now(),
        )
        return updated == 1

    # ===============================================================================
    # PERIODS
    # ===============================================================================

    def _open_counter(
        self, subscription: Subscription, usage_type: str, occurred_at: datetime, skip_before: datetime | None
    ) -> UsagePeriodCounter:
        start, end = _period_for(subscription, usage_type, occurred_at)
        if skip_before is not None and start < skip_before:
            start, end = _shift_period(subscription, skip_before)

        for _hop in range(MAX_PERIOD_HOPS):
            counter = self._get_or_create_counter(subscription, usage_type, start, end)
            if not counter.is_billed:
                return counter
            # Late event for an invoiced period: count it in the next one
            start, end = _shift_period(subscription, counter.period_end)

        raise SubscriptionStateError(
            f"No open usage period after {start:%Y-%m-%d} for tenant {subscription.tenant_id}",
            {"tenant_id": str(subscription.tenant_id)},
        )

    def _get_or_create_counter(
        self, subscription: Subscription, usage_type: str, start: datetime, end: datetime
    ) -> UsagePeriodCounter:
        counter = UsagePeriodCounter.objects.filter(
            tenant_id=subscription.tenant_id, usage_type=usage_type, period_start=start
        ).first()
        if counter is not None:
            return counter

        plan = subscription.plan
        if subscription.pending_plan is not None and start >= subscription.current_period_end:
            plan = subscription.pending_plan
        price = PricingResolver.resolve_for_plan(subscription.tenant, plan)
        rate = price.overage_for(usage_type)
        if rate is None:
            logger.warning(
                f"⚠️ [Metering] Plan {plan.code} has no limit for {usage_type}, tracking at no charge"
            )

        counter, created = UsagePeriodCounter.objects.get_or_create(
            tenant_id=subscription.tenant_id,
            usage_type=usage_type,
            period_start=start,
            defaults={
                "period_end": end,
                "included_units": rate.included_units if rate else 0,
                "hard_limit": rate.hard_limit if rate else None,
                "overage_rate": rate.overage_rate if rate else Decimal("0"),
                "is_enabled": rate.is_enabled if rate else True,
                "currency": Currency.objects.get(code=price.currency),
            },
        )
        if created:
            logger.info(
                f"📊 [Metering] Opened {usage_type} counter for tenant {subscription.tenant_id} "
                f"period {start:%Y-%m-%d}"
            )
        return counter

    # ===============================================================================
    # CLOSING
    # ===============================================================================

    def close_period(
        self, tenant_id: Any, usage_type: str, period_start: datetime, invoice: Any = None
    ) -> UsagePeriodCounter:
        """
        Close a counter for billing. Safe to call repeatedly: an already
        billed counter is returned untouched.
        """
        with transaction.atomic():
            counter = (
                UsagePeriodCounter.objects.select_for_update()
                .select_related("currency")
                .get(tenant_id=tenant_id, usage_type=usage_type, period_start=period_start)
            )
            if counter.is_billed:
                logger.debug(f"📊 [Metering] Counter {counter.id} already closed")
                return counter

            ledger_units = counter.events.total_quantity()
            if ledger_units != counter.used_units:
                # Billed from the counter either way; the ledger is kept for audit
                logger.error(
                    f"🔥 [Metering] Counter {counter.id} drifted from its ledger: "
                    f"{counter.used_units} counted, {ledger_units} recorded"
                )

            counter.overage_units = max(0, counter.used_units - counter.included_units)
            counter.overage_cost = counter.currency.quantize(counter.overage_units * counter.overage_rate)
            counter.is_billed = True
            counter.billed_at = timezone.now()
            if invoice is not None:
                counter.invoice = invoice
            counter.save(
                update_fields=["overage_units", "overage_cost", "is_billed", "billed_at", "invoice", "updated_at"]
            )

        logger.info(
            f"📊 [Metering] Closed {usage_type} for tenant {tenant_id}: "
            f"{counter.used_units} used, {counter.overage_units} overage = {counter.overage_cost}"
        )
        return counter

    # ===============================================================================
    # REPORTING
    # ===============================================================================

    def get_usage_summary(self, tenant_id: Any, as_of: datetime | None = None) -> list[UsageStatus]:
        """Usage of every metered type in the period containing ``as_of``"""
        as_of = as_of or timezone.now()
        subscription = Subscription.objects.select_related("tenant", "plan").current_for(tenant_id)
        if subscription is None:
            return []

        price = PricingResolver.resolve(tenant_id, as_of)
        counters = {
            c.usage_type: c
            for c in UsagePeriodCounter.objects.filter(
                tenant_id=tenant_id, period_start__lte=as_of, period_end__gt=as_of
            )
        }

        summary: list[UsageStatus] = []
        usage_types = sorted({r.usage_type for r in price.overage_rates} | set(counters))
        for usage_type in usage_types:
            counter = counters.get(usage_type)
            rate = price.overage_for(usage_type)
            if counter is not None:
                used, included, hard_limit = counter.used_units, counter.included_units, counter.hard_limit
                overage_units, overage_cost = counter.overage_units, counter.overage_cost
            else:
                used, overage_units, overage_cost = 0, 0, Decimal("0")
                included = rate.included_units if rate else 0
                hard_limit = rate.hard_limit if rate else None

            ceiling = hard_limit if hard_limit is not None else included
            percentage = (Decimal(used) * 100 / Decimal(ceiling)).quantize(Decimal("0.01")) if ceiling else Decimal("0")
            summary.append(
                UsageStatus(
                    usage_type=usage_type,
                    used_units=used,
                    included_units=included,
                    hard_limit=hard_limit,
                    remaining_units=None if hard_limit is None else max(0, hard_limit - used),
                    percentage_used=percentage,
                    overage_units=overage_units,
                    overage_cost=overage_cost,
                    is_over_included=used > included,
                )
            )
        return summary


# ===============================================================================
# HELPERS
# ===============================================================================


def _ack(event: UsageEvent, counter: UsagePeriodCounter, duplicate: bool = False) -> UsageAck:
    return UsageAck(
        event_id=str(event.id),
        counter_id=str(counter.id),
        period_start=counter.period_start,
        used_units=counter.used_units,
        included_units=counter.included_units,
        overage_units=counter.overage_units,
        remaining_units=counter.remaining_units,
        duplicate=duplicate,
    )


def _interval(subscription: Subscription) -> relativedelta:
    plan = subscription.pending_plan or subscription.plan
    return relativedelta(months=plan.billing_interval_months)


def _shift_period(subscription: Subscription, start: datetime) -> tuple[datetime, datetime]:
    return start, start + _interval(subscription)


def _period_for(subscription: Subscription, usage_type: str, occurred_at: datetime) -> tuple[datetime, datetime]:
    """Billing period an event belongs to, relative to the subscription's current period"""
    if occurred_at >= subscription.current_period_end:
        # Rollover has not run yet
        return subscription.next_period_bounds()

    if occurred_at < subscription.current_period_start:
        previous = (
            UsagePeriodCounter.objects.filter(
                tenant_id=subscription.tenant_id,
                usage_type=usage_type,
                period_start__lte=occurred_at,
                period_end__gt=occurred_at,
                is_billed=False,
            )
            .order_by("-period_start")
            .first()
        )
        if previous is not None:
            return previous.period_start, previous.period_end

    return subscription.current_period_start, subscription.current_period_end


# ===============================================================================
# EXTERNAL ENTRY POINT
# ===============================================================================


def emit(
    tenant_id: Any,
    usage_type: str,
    quantity: int,
    resource_ref: str = "",
    occurred_at: datetime | None = None,
) -> str:
    """
    Queue a usage event for recording and return its dedup key.

    The event is written to the django-q ORM broker before this returns, and
    the generated dedup key makes queue redelivery count it only once. If the
    queue is unavailable the event is recorded synchronously.
    """
    dedup_key = uuid.uuid4().hex
    payload = {
        "tenant_id": str(tenant_id),
        "usage_type": usage_type,
        "quantity": quantity,
        "resource_ref": resource_ref,
        "occurred_at": (occurred_at or timezone.now()).isoformat(),
        "dedup_key": dedup_key,
    }

    try:
        from django_q.tasks import async_task  # noqa: PLC0415

        async_task(
            "apps.billing.tasks.record_usage_event",
            payload,
            timeout=billing_config.TASK_TIMEOUT_SHORT,
        )
    except Exception as e:
        logger.warning(f"⚠️ [Metering] Could not queue usage event, recording synchronously: {e}")
        UsageAggregator().record(
            UsageEventData(
                tenant_id=str(tenant_id),
                usage_type=usage_type,
                quantity=quantity,
                occurred_at=occurred_at,
                dedup_key=dedup_key,
                resource_ref=resource_ref,
            )
        )
    return dedup_key
