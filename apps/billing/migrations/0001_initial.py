import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

USAGE_TYPE_CHOICES = [
    ("whatsapp_messages", "WhatsApp Messages"),
    ("bookings", "Bookings"),
    ("api_calls", "API Calls"),
    ("leads", "Leads"),
    ("properties", "Properties"),
    ("listings", "Listings"),
    ("site_visits", "Site Visits"),
    ("tour_packages", "Tour Packages"),
    ("tour_bookings", "Tour Bookings"),
    ("travelers", "Travelers"),
]

GATEWAY_CHOICES = [("stripe", "Stripe"), ("razorpay", "Razorpay")]


def money(**kwargs):  # type: ignore[no-untyped-def]
    return models.DecimalField(decimal_places=4, default=Decimal("0"), max_digits=18, **kwargs)


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("tenants", "0001_initial"),
    ]

    operations = [
        # ===============================================================================
        # CATALOG
        # ===============================================================================
        migrations.CreateModel(
            name="Currency",
            fields=[
                ("code", models.CharField(max_length=3, primary_key=True, serialize=False)),
                ("name", models.CharField(default="", max_length=50)),
                ("symbol", models.CharField(max_length=10)),
                ("decimals", models.SmallIntegerField(default=2)),
            ],
            options={"verbose_name": "Currency", "verbose_name_plural": "Currencies", "db_table": "currency"},
        ),
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.SlugField(unique=True)),
                ("name", models.CharField(max_length=100)),
                (
                    "tier",
                    models.CharField(
                        choices=[("free", "Free"), ("starter", "Starter"), ("pro", "Pro"), ("enterprise", "Enterprise")],
                        default="starter",
                        max_length=20,
                    ),
                ),
                (
                    "base_price",
                    models.DecimalField(
                        decimal_places=4,
                        max_digits=18,
                        validators=[django.core.validators.MinValueValidator(Decimal("0"))],
                    ),
                ),
                ("billing_interval_months", models.PositiveSmallIntegerField(default=1)),
                ("trial_days", models.PositiveSmallIntegerField(default=14)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "base_currency",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="plans", to="billing.currency"
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Plan",
                "verbose_name_plural": "Subscription Plans",
                "db_table": "subscription_plans",
            },
        ),
        migrations.CreateModel(
            name="PlanLocalPrice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("country", models.CharField(max_length=2)),
                (
                    "local_price",
                    models.DecimalField(
                        decimal_places=4,
                        help_text="Price in the country's billing currency",
                        max_digits=18,
                        validators=[django.core.validators.MinValueValidator(Decimal("0"))],
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="local_prices",
                        to="billing.subscriptionplan",
                    ),
                ),
            ],
            options={
                "db_table": "plan_local_prices",
                "constraints": [models.UniqueConstraint(fields=("plan", "country"), name="uniq_plan_local_price")],
            },
        ),
        migrations.CreateModel(
            name="PlanUsageLimit",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("business_type", models.CharField(blank=True, default="", max_length=20)),
                ("usage_type", models.CharField(choices=USAGE_TYPE_CHOICES, max_length=40)),
                ("included_units", models.PositiveBigIntegerField(default=0)),
                (
                    "overage_rate",
                    models.DecimalField(
                        decimal_places=6,
                        default=Decimal("0"),
                        max_digits=18,
                        validators=[django.core.validators.MinValueValidator(Decimal("0"))],
                    ),
                ),
                (
                    "hard_limit",
                    models.PositiveBigIntegerField(
                        blank=True, help_text="Absolute ceiling per period; empty means unlimited", null=True
                    ),
                ),
                ("is_enabled", models.BooleanField(default=True)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="usage_limits",
                        to="billing.subscriptionplan",
                    ),
                ),
            ],
            options={
                "db_table": "plan_usage_limits",
                "constraints": [
                    models.UniqueConstraint(
                        fields=("plan", "business_type", "usage_type"), name="uniq_plan_usage_limit"
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="CountryBillingConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("country", models.CharField(max_length=2, unique=True)),
                ("tax_name", models.CharField(default="VAT", max_length=30)),
                (
                    "tax_rate",
                    models.DecimalField(
                        decimal_places=4,
                        default=Decimal("0"),
                        help_text="Tax rate as a fraction: 0.1800 for 18%",
                        max_digits=6,
                        validators=[
                            django.core.validators.MinValueValidator(Decimal("0")),
                            django.core.validators.MaxValueValidator(Decimal("1")),
                        ],
                    ),
                ),
                ("primary_gateway", models.CharField(blank=True, choices=GATEWAY_CHOICES, max_length=20)),
                ("secondary_gateway", models.CharField(blank=True, choices=GATEWAY_CHOICES, max_length=20)),
                ("gateway_config", models.JSONField(blank=True, default=dict)),
                (
                    "exchange_rate",
                    models.DecimalField(
                        decimal_places=8,
                        default=Decimal("1"),
                        help_text="Units of the country currency per unit of plan base currency",
                        max_digits=18,
                    ),
                ),
                ("exchange_rate_updated_at", models.DateTimeField()),
                ("payment_terms_days", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "currency",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="country_configs",
                        to="billing.currency",
                    ),
                ),
            ],
            options={"verbose_name": "Country Billing Configuration", "db_table": "country_billing_configs"},
        ),
        # ===============================================================================
        # SUBSCRIPTIONS
        # ===============================================================================
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("trialing", "Trialing"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("suspended", "Suspended"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="trialing",
                        max_length=20,
                    ),
                ),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField()),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("payment_failure_count", models.PositiveIntegerField(default=0)),
                (
                    "next_payment_at",
                    models.DateTimeField(
                        blank=True, help_text="Deadline for settling the outstanding invoice", null=True
                    ),
                ),
                ("last_payment_at", models.DateTimeField(blank=True, null=True)),
                ("payment_method_ref", models.CharField(blank=True, max_length=255)),
                ("gateway_customer_id", models.CharField(blank=True, max_length=255)),
                ("suspended_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, max_length=100)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "pending_plan",
                    models.ForeignKey(
                        blank=True,
                        help_text="Plan that takes over at the next period boundary",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="pending_subscriptions",
                        to="billing.subscriptionplan",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.subscriptionplan",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="subscriptions", to="tenants.tenant"
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "subscriptions",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["status", "current_period_end"], name="sub_status_period_end_idx"),
                    models.Index(fields=["status", "next_payment_at"], name="sub_status_next_payment_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("current_period_end__gt", models.F("current_period_start"))),
                        name="subscription_period_ordered",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "cancelled"), _negated=True),
                        fields=("tenant",),
                        name="uniq_live_subscription_per_tenant",
                    ),
                ],
            },
        ),
        # ===============================================================================
        # INVOICES
        # ===============================================================================
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("last_value", models.BigIntegerField(default=0)),
                (
                    "tenant",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_sequence",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Invoice Sequence",
                "verbose_name_plural": "Invoice Sequences",
                "db_table": "invoice_sequences",
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("number", models.CharField(max_length=64)),
                ("sequence_number", models.BigIntegerField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("partial", "Partially Paid"),
                            ("overdue", "Overdue"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("country", models.CharField(max_length=2)),
                ("subtotal", money()),
                ("tax_name", models.CharField(blank=True, max_length=30)),
                ("tax_rate", models.DecimalField(decimal_places=4, default=Decimal("0"), max_digits=6)),
                ("tax_amount", money()),
                ("total_amount", money()),
                ("amount_paid", money()),
                ("amount_refunded", money()),
                ("amount_due", money()),
                ("exchange_rate", models.DecimalField(decimal_places=8, default=Decimal("1"), max_digits=18)),
                ("exchange_rate_updated_at", models.DateTimeField(blank=True, null=True)),
                ("pricing_snapshot", models.JSONField(blank=True, default=dict)),
                ("issued_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("due_date", models.DateTimeField()),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "currency",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="+", to="billing.currency"
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="invoices", to="tenants.tenant"
                    ),
                ),
            ],
            options={
                "verbose_name": "Invoice",
                "verbose_name_plural": "Invoices",
                "db_table": "invoices",
                "ordering": ("-period_start",),
                "indexes": [
                    models.Index(fields=["tenant", "-period_start"], name="invoice_tenant_period_idx"),
                    models.Index(fields=["status", "due_date"], name="invoice_status_due_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("subscription", "period_start"), name="uniq_invoice_period"),
                    models.UniqueConstraint(fields=("tenant", "number"), name="uniq_invoice_number_per_tenant"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceLine",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[("subscription", "Subscription"), ("usage", "Usage Overage")], max_length=20
                    ),
                ),
                ("description", models.CharField(max_length=255)),
                ("usage_type", models.CharField(blank=True, max_length=40)),
                ("quantity", models.BigIntegerField(default=1)),
                ("unit_price", models.DecimalField(decimal_places=6, max_digits=18)),
                ("amount", money()),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="lines", to="billing.invoice"
                    ),
                ),
            ],
            options={
                "verbose_name": "Invoice Line",
                "verbose_name_plural": "Invoice Lines",
                "db_table": "invoice_lines",
            },
        ),
        # ===============================================================================
        # METERING
        # ===============================================================================
        migrations.CreateModel(
            name="UsagePeriodCounter",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("usage_type", models.CharField(choices=USAGE_TYPE_CHOICES, max_length=40)),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("used_units", models.PositiveBigIntegerField(default=0)),
                ("event_count", models.PositiveIntegerField(default=0)),
                ("included_units", models.PositiveBigIntegerField(default=0)),
                ("hard_limit", models.PositiveBigIntegerField(blank=True, null=True)),
                (
                    "overage_rate",
                    models.DecimalField(
                        decimal_places=6,
                        default=Decimal("0"),
                        help_text="Per-unit overage price in the counter currency",
                        max_digits=18,
                    ),
                ),
                ("is_enabled", models.BooleanField(default=True)),
                ("overage_units", models.PositiveBigIntegerField(default=0)),
                ("overage_cost", money()),
                ("is_billed", models.BooleanField(db_index=True, default=False)),
                ("billed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "currency",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="+", to="billing.currency"
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="usage_counters",
                        to="billing.invoice",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="usage_counters",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Usage Period Counter",
                "verbose_name_plural": "Usage Period Counters",
                "db_table": "usage_period_counters",
                "indexes": [
                    models.Index(fields=["tenant", "is_billed", "period_start"], name="usage_counter_unbilled_idx")
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("tenant", "usage_type", "period_start"), name="uniq_usage_counter_period"
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="UsageEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("usage_type", models.CharField(choices=USAGE_TYPE_CHOICES, max_length=40)),
                (
                    "quantity",
                    models.PositiveBigIntegerField(validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("unit_cost", models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ("occurred_at", models.DateTimeField()),
                ("dedup_key", models.CharField(blank=True, max_length=255, null=True)),
                ("resource_ref", models.CharField(blank=True, max_length=255)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("recorded_at", models.DateTimeField(auto_now_add=True)),
                (
                    "counter",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="billing.usageperiodcounter",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="usage_events", to="tenants.tenant"
                    ),
                ),
            ],
            options={
                "verbose_name": "Usage Event",
                "verbose_name_plural": "Usage Events",
                "db_table": "usage_events",
                "indexes": [
                    models.Index(fields=["tenant", "usage_type", "occurred_at"], name="usage_event_lookup_idx")
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("dedup_key__isnull", False)),
                        fields=("tenant", "usage_type", "dedup_key"),
                        name="uniq_usage_event_dedup_key",
                    )
                ],
            },
        ),
        # ===============================================================================
        # PAYMENTS
        # ===============================================================================
        migrations.CreateModel(
            name="PaymentAttempt",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("attempt_number", models.PositiveIntegerField()),
                ("charge_round", models.PositiveIntegerField(help_text="Dunning round; a fallback shares its round")),
                ("gateway", models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ("is_fallback", models.BooleanField(default=False)),
                ("amount", models.DecimalField(decimal_places=4, max_digits=18)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending Confirmation"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                (
                    "failure_kind",
                    models.CharField(
                        blank=True,
                        choices=[("transient", "Gateway / Network"), ("declined", "Declined")],
                        max_length=20,
                    ),
                ),
                ("error_code", models.CharField(blank=True, max_length=100)),
                ("error_message", models.TextField(blank=True)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, max_length=255)),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                (
                    "requires_reconciliation",
                    models.BooleanField(
                        default=False, help_text="Money collected after cancellation, needs a refund decision"
                    ),
                ),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "currency",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="+", to="billing.currency"
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_attempts",
                        to="billing.invoice",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_attempts",
                        to="tenants.tenant",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Attempt",
                "verbose_name_plural": "Payment Attempts",
                "db_table": "payment_attempts",
                "ordering": ("invoice", "attempt_number"),
                "indexes": [models.Index(fields=["status", "next_retry_at"], name="payment_attempt_retry_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("invoice", "attempt_number"), name="uniq_payment_attempt_number")
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceChargeLease",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("holder", models.CharField(max_length=64)),
                ("acquired_at", models.DateTimeField()),
                ("expires_at", models.DateTimeField()),
                (
                    "invoice",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="charge_lease",
                        to="billing.invoice",
                    ),
                ),
            ],
            options={"db_table": "invoice_charge_leases"},
        ),
    ]
