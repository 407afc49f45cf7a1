from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="")),
                ("price_cents", models.PositiveBigIntegerField()),
                ("status", models.CharField(
                    choices=[
                        ("requested", "Requested"),
                        ("accepted", "Accepted"),
                        ("in_progress", "In progress"),
                        ("completed", "Completed"),
                        ("payment_confirmed", "Payment confirmed"),
                        ("disputed", "Disputed"),
                        ("cancelled", "Cancelled"),
                    ],
                    default="requested",
                    max_length=32,
                )),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("payment_confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("client", models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name="client_jobs",
                    to=settings.AUTH_USER_MODEL,
                )),
                ("runner", models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name="runner_jobs",
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                "db_table": "jobs",
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="jobs_status_6c4b0e_idx"),
                    models.Index(fields=["client", "status"], name="jobs_client__3f2a1d_idx"),
                    models.Index(fields=["runner", "status"], name="jobs_runner__8e7c5b_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(status__in=[
                            "requested", "accepted", "in_progress", "completed",
                            "payment_confirmed", "disputed", "cancelled",
                        ]),
                        name="jobs_status_check",
                    ),
                    models.CheckConstraint(
                        condition=(
                            models.Q(status="requested", runner__isnull=True)
                            | models.Q(status="cancelled")
                            | (~models.Q(status__in=["requested", "cancelled"]) & models.Q(runner__isnull=False))
                        ),
                        name="jobs_runner_matches_status",
                    ),
                ],
            },
        ),
    ]
