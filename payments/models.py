from django.conf import settings
from django.db import models
from django.db.models import Q


class PaymentRecord(models.Model):
    """
    Paiement Lightning d'un job (au plus un par job).
    - payment_hash: SHA256 de la préimage, hex minuscule, unique s'il est présent
    - preimage: renseignée uniquement après vérification cryptographique
    - verification_level: null tant qu'aucune preuve n'a été soumise
    - proof: preuve manuelle stockée (data URL image / contenu QR)
    Jamais supprimé.
    """
    LEVEL_CRYPTOGRAPHIC = "cryptographic"
    LEVEL_PENDING_MANUAL = "pending_manual"
    LEVEL_VERIFIED_MANUAL = "verified_manual"
    LEVEL_DISPUTED = "disputed"
    LEVEL_CHOICES = [
        (LEVEL_CRYPTOGRAPHIC, "Cryptographic"),
        (LEVEL_PENDING_MANUAL, "Pending manual review"),
        (LEVEL_VERIFIED_MANUAL, "Verified manually"),
        (LEVEL_DISPUTED, "Disputed"),
    ]
    # niveaux qui valent règlement: le job passe en payment_confirmed
    SETTLED_LEVELS = (LEVEL_CRYPTOGRAPHIC, LEVEL_VERIFIED_MANUAL)

    METHOD_WEBLN = "webln"
    METHOD_QR = "qr"
    METHOD_MANUAL = "manual"
    METHOD_UPLOAD = "upload"
    METHOD_CHOICES = [
        (METHOD_WEBLN, "WebLN"),
        (METHOD_QR, "QR code"),
        (METHOD_MANUAL, "Manual preimage"),
        (METHOD_UPLOAD, "Screenshot upload"),
    ]

    job = models.OneToOneField("jobs.Job", on_delete=models.PROTECT, related_name="payment")
    payment_hash = models.CharField(max_length=64, unique=True, null=True, blank=True)
    payment_request = models.TextField(blank=True, default="")
    preimage = models.CharField(max_length=64, null=True, blank=True)
    amount_sats = models.PositiveBigIntegerField()

    verification_level = models.CharField(max_length=32, choices=LEVEL_CHOICES, null=True, blank=True)
    method = models.CharField(max_length=16, choices=METHOD_CHOICES, null=True, blank=True)
    proof = models.TextField(blank=True, default="")
    verified_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
                                    related_name="verified_payments")
    verified_at = models.DateTimeField(null=True, blank=True)

    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payments"
        indexes = [
            models.Index(fields=["verification_level", "created_at"], name="payments_verific_2d9a7c_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_sats__gt=0),
                name="payments_amount_positive",
            ),
            models.CheckConstraint(
                condition=Q(preimage__isnull=True) | Q(verification_level__in=["cryptographic", "verified_manual"]),
                name="payments_preimage_requires_verification",
            ),
        ]

    @property
    def is_settled(self) -> bool:
        return self.preimage is not None or self.verification_level in self.SETTLED_LEVELS

    def __str__(self):
        return f"Payment#{self.id}(job={self.job_id}, level={self.verification_level})"


class RunnerPayout(models.Model):
    """
    Versement Lightning au runner d'un job dont le paiement est réglé (au plus un par job).
    Le runner fournit une facture BOLT11 du montant net; send_payment la règle.
    pending -> processing -> completed | failed
    """
    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
    ]

    job = models.OneToOneField("jobs.Job", on_delete=models.PROTECT, related_name="payout")
    runner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payouts")
    amount_sats = models.PositiveBigIntegerField()
    fee_sats = models.PositiveBigIntegerField(default=0)
    net_sats = models.PositiveBigIntegerField()

    payment_request = models.TextField()
    payment_hash = models.CharField(max_length=64, unique=True)
    preimage = models.CharField(max_length=64, null=True, blank=True)

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING)
    error_message = models.TextField(blank=True, default="")

    processed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "runner_payouts"
        indexes = [
            models.Index(fields=["runner", "status"], name="runner_payo_runner__5c1e07_idx"),
            models.Index(fields=["status", "created_at"], name="runner_payo_status_8b3f2d_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(net_sats__gt=0),
                name="runner_payouts_net_positive",
            ),
            models.CheckConstraint(
                condition=Q(preimage__isnull=True) | Q(status="completed"),
                name="runner_payouts_preimage_requires_completed",
            ),
        ]

    def __str__(self):
        return f"Payout#{self.id}(job={self.job_id}, runner={self.runner_id}, status={self.status})"
