from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ("jobs", "0001_initial"),
        ("payments", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="RunnerPayout",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount_sats", models.PositiveBigIntegerField()),
                ("fee_sats", models.PositiveBigIntegerField(default=0)),
                ("net_sats", models.PositiveBigIntegerField()),
                ("payment_request", models.TextField()),
                ("payment_hash", models.CharField(max_length=64, unique=True)),
                ("preimage", models.CharField(blank=True, max_length=64, null=True)),
                ("status", models.CharField(
                    choices=[
                        ("pending", "Pending"),
                        ("processing", "Processing"),
                        ("completed", "Completed"),
                        ("failed", "Failed"),
                    ],
                    default="pending",
                    max_length=16,
                )),
                ("error_message", models.TextField(blank=True, default="")),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("job", models.OneToOneField(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name="payout",
                    to="jobs.job",
                )),
                ("runner", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name="payouts",
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                "db_table": "runner_payouts",
                "indexes": [
                    models.Index(fields=["runner", "status"], name="runner_payo_runner__5c1e07_idx"),
                    models.Index(fields=["status", "created_at"], name="runner_payo_status_8b3f2d_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(net_sats__gt=0),
                        name="runner_payouts_net_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(preimage__isnull=True) | models.Q(status="completed"),
                        name="runner_payouts_preimage_requires_completed",
                    ),
                ],
            },
        ),
    ]
