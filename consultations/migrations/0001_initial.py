# Generated manually

import django.db.models.deletion
from django.db import migrations, models

import consultations.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="ConsultationOrder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_id", models.CharField(default=consultations.models._new_order_id, max_length=64, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("INITIATED", "Initiated"),
                            ("CONNECTED", "Connected"),
                            ("COMPLETED", "Completed"),
                            ("CANCELLED", "Cancelled"),
                        ],
                        default="INITIATED",
                        max_length=20,
                    ),
                ),
                (
                    "consultation_type",
                    models.CharField(
                        choices=[("ON_DEMAND_CONSULTATION", "On-demand consultation")],
                        default="ON_DEMAND_CONSULTATION",
                        max_length=50,
                    ),
                ),
                ("category", models.CharField(blank=True, default="", max_length=50)),
                ("expert_rate_per_minute", models.DecimalField(decimal_places=2, max_digits=10)),
                ("currency", models.CharField(default="INR", max_length=3)),
                ("max_allowed_duration", models.PositiveIntegerField(help_text="Seconds the payer has paid for")),
                ("platform_fee_percent", models.DecimalField(blank=True, decimal_places=2, max_digits=5, null=True)),
                ("stream_call_cid", models.CharField(blank=True, db_index=True, default="", max_length=255)),
                ("user_joined_at", models.DateTimeField(blank=True, null=True)),
                ("expert_joined_at", models.DateTimeField(blank=True, null=True)),
                ("both_participants_joined_at", models.DateTimeField(blank=True, null=True)),
                ("user_intervals", models.JSONField(blank=True, null=True)),
                ("expert_intervals", models.JSONField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("start_time", models.DateTimeField(blank=True, null=True)),
                ("end_time", models.DateTimeField(blank=True, null=True)),
                ("duration_seconds", models.PositiveIntegerField(blank=True, null=True)),
                ("cost", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("platform_fee_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("expert_earnings", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                (
                    "expert",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="consultation_orders",
                        to="accounts.expertprofile",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="consultation_orders",
                        to="accounts.userprofile",
                    ),
                ),
            ],
            options={
                "verbose_name": "Consultation Order",
                "verbose_name_plural": "Consultation Orders",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["expert", "status"], name="consult_order_expert_status")],
            },
        ),
    ]
