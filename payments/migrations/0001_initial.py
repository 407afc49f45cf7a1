from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("jobs", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("payment_hash", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("payment_request", models.TextField(blank=True, default="")),
                ("preimage", models.CharField(blank=True, max_length=64, null=True)),
                ("amount_sats", models.PositiveBigIntegerField()),
                ("verification_level", models.CharField(
                    blank=True,
                    choices=[
                        ("cryptographic", "Cryptographic"),
                        ("pending_manual", "Pending manual review"),
                        ("verified_manual", "Verified manually"),
                        ("disputed", "Disputed"),
                    ],
                    max_length=32,
                    null=True,
                )),
                ("method", models.CharField(
                    blank=True,
                    choices=[
                        ("webln", "WebLN"),
                        ("qr", "QR code"),
                        ("manual", "Manual preimage"),
                        ("upload", "Screenshot upload"),
                    ],
                    max_length=16,
                    null=True,
                )),
                ("proof", models.TextField(blank=True, default="")),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("job", models.OneToOneField(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name="payment",
                    to="jobs.job",
                )),
                ("verified_by", models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name="verified_payments",
                    to=settings.AUTH_USER_MODEL,
                )),
            ],
            options={
                "db_table": "payments",
                "indexes": [
                    models.Index(fields=["verification_level", "created_at"], name="payments_verific_2d9a7c_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_sats__gt=0),
                        name="payments_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=(
                            models.Q(preimage__isnull=True)
                            | models.Q(verification_level__in=["cryptographic", "verified_manual"])
                        ),
                        name="payments_preimage_requires_verification",
                    ),
                ],
            },
        ),
    ]
