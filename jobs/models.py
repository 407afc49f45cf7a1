from django.conf import settings
from django.db import models
from django.db.models import Q


class Job(models.Model):
    """
    Course/mission postée par un client et exécutée par un runner.
    - price_cents: prix convenu en unités mineures (jamais de float)
    - status: modifié exclusivement via jobs.services.lifecycle.JobLifecycle
    - un horodatage par transition (accepted_at, started_at, ...)
    """
    STATUS_REQUESTED = "requested"
    STATUS_ACCEPTED = "accepted"
    STATUS_IN_PROGRESS = "in_progress"
    STATUS_COMPLETED = "completed"
    STATUS_PAYMENT_CONFIRMED = "payment_confirmed"
    STATUS_DISPUTED = "disputed"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_REQUESTED, "Requested"),
        (STATUS_ACCEPTED, "Accepted"),
        (STATUS_IN_PROGRESS, "In progress"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_PAYMENT_CONFIRMED, "Payment confirmed"),
        (STATUS_DISPUTED, "Disputed"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    client = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="client_jobs")
    runner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True,
                               related_name="runner_jobs")
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    price_cents = models.PositiveBigIntegerField()
    status = models.CharField(max_length=32, choices=STATUS_CHOICES, default=STATUS_REQUESTED)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    payment_confirmed_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "jobs"
        indexes = [
            models.Index(fields=["status", "created_at"], name="jobs_status_6c4b0e_idx"),
            models.Index(fields=["client", "status"], name="jobs_client__3f2a1d_idx"),
            models.Index(fields=["runner", "status"], name="jobs_runner__8e7c5b_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(status__in=[
                    "requested", "accepted", "in_progress", "completed",
                    "payment_confirmed", "disputed", "cancelled",
                ]),
                name="jobs_status_check",
            ),
            models.CheckConstraint(
                condition=(
                    Q(status="requested", runner__isnull=True)
                    | Q(status="cancelled")
                    | (~Q(status__in=["requested", "cancelled"]) & Q(runner__isnull=False))
                ),
                name="jobs_runner_matches_status",
            ),
        ]

    def __str__(self):
        return f"Job#{self.id}({self.status})"
