import uuid

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Tenant",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("slug", models.SlugField(max_length=100, unique=True)),
                (
                    "business_type",
                    models.CharField(
                        choices=[
                            ("clinic", "Clinic"),
                            ("salon", "Salon"),
                            ("coworking", "Coworking"),
                            ("real_estate", "Real Estate"),
                            ("tourism", "Tourism"),
                            ("education", "Education"),
                            ("logistics", "Logistics"),
                            ("legal", "Legal"),
                        ],
                        max_length=20,
                    ),
                ),
                ("country", models.CharField(help_text="ISO 3166-1 alpha-2 country code", max_length=2)),
                ("email", models.EmailField(blank=True, max_length=254)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("suspended", "Suspended"), ("closed", "Closed")],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Tenant",
                "verbose_name_plural": "Tenants",
                "db_table": "tenants",
                "indexes": [
                    models.Index(fields=["country"], name="tenant_country_idx"),
                    models.Index(fields=["business_type"], name="tenant_business_type_idx"),
                ],
            },
        ),
    ]
