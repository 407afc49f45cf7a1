"""
Orchestrateur des paiements: chaque opération combine dans une même transaction
le verrou du paiement, le verrou du job, l'écriture ledger et la transition du
cycle de vie. Ordre des verrous: paiement puis job.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core import errors
from core.permissions.job_participant import is_admin, is_participant
from jobs.models import Job
from jobs.services.lifecycle import (
    EVENT_CONFIRM_PAYMENT,
    EVENT_CREATE_PAYMENT,
    EVENT_DISPUTE,
    JobLifecycle,
)
from ..models import PaymentRecord
from .conversion import expected_sats_for_job
from .invoice_validator import amount_tolerance, validate_invoice
from .ledger import PaymentLedger
from .lninvoice import InvalidInvoice, LightningInvoice
from .lninvoice import decode as decode_invoice
from .preimage import hash_prefix, is_hex32, normalize_hex32, verify_preimage
from .provider import BaseLightningProvider, get_lightning_provider

logger = logging.getLogger("errandbit.payments")

PREIMAGE_METHODS = (PaymentRecord.METHOD_WEBLN, PaymentRecord.METHOD_MANUAL)
MANUAL_METHODS = (PaymentRecord.METHOD_QR, PaymentRecord.METHOD_UPLOAD)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024  # 5MB
MAX_QR_PAYLOAD = 4096
_DATA_URL_RE = re.compile(r"\Adata:image/(png|jpeg|jpg|webp);base64,(.+)\Z", re.DOTALL)


@dataclass
class VerificationResult:
    verified: bool
    level: str
    message: str
    payment: Optional[PaymentRecord] = None


@dataclass
class IssuedInvoice:
    payment: PaymentRecord
    invoice: LightningInvoice


class PaymentService:
    def __init__(self, provider: Optional[BaseLightningProvider] = None,
                 ledger: Optional[PaymentLedger] = None,
                 lifecycle: Optional[JobLifecycle] = None) -> None:
        self.provider = provider or get_lightning_provider()
        self.ledger = ledger or PaymentLedger()
        self.lifecycle = lifecycle or JobLifecycle()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _require_participant(self, job: Job, actor) -> None:
        if actor is not None and not (is_admin(actor) or is_participant(job, actor)):
            raise errors.ConflictError("Only job participants can do this", "NOT_JOB_PARTICIPANT")

    def _check_amount_against_price(self, job: Job, amount_sats: int) -> None:
        expected = expected_sats_for_job(job)
        if abs(expected - amount_sats) > amount_tolerance(expected):
            logger.warning("Payment amount for job %s differs from price (%s sats, expected ~%s)",
                           job.id, amount_sats, expected)

    def _validate_manual_proof(self, method: str, proof: str) -> str:
        if not proof or not proof.strip():
            raise errors.ValidationError("Proof is required", "INVALID_PROOF")
        if method == PaymentRecord.METHOD_QR:
            if len(proof) > MAX_QR_PAYLOAD:
                raise errors.ValidationError("QR payload too large", "INVALID_PROOF")
            return proof.strip()

        m = _DATA_URL_RE.match(proof.strip())
        if not m:
            raise errors.ValidationError("Upload must be a PNG, JPEG or WEBP data URL", "INVALID_PROOF")
        try:
            raw = base64.b64decode(m.group(2), validate=True)
        except (binascii.Error, ValueError):
            raise errors.ValidationError("Upload is not valid base64", "INVALID_PROOF")
        if not raw or len(raw) > MAX_UPLOAD_BYTES:
            raise errors.ValidationError("Upload must be at most 5MB", "INVALID_PROOF")
        return proof.strip()

    # ------------------------------------------------------------------
    # création
    # ------------------------------------------------------------------
    def create_payment(self, job_id: int, amount_sats: int, payment_hash: Optional[str] = None,
                       payment_request: Optional[str] = None, actor=None) -> PaymentRecord:
        """
        Enregistre le paiement d'un job terminé. Le job reste "completed":
        seule une preuve vérifiée le fait passer en "payment_confirmed".
        """
        if payment_hash and not is_hex32(payment_hash):
            raise errors.ValidationError("Payment hash must be 64 hex characters", "INVALID_PAYMENT_HASH")

        with transaction.atomic():
            job = self.lifecycle.lock(job_id)
            if amount_sats is None or amount_sats <= 0:
                raise errors.ValidationError("Amount must be greater than 0", "INVALID_AMOUNT")
            self._require_participant(job, actor)
            self.lifecycle.require(job, EVENT_CREATE_PAYMENT)
            if self.ledger.exists_by_job_id(job.id):
                raise errors.ConflictError("Payment already exists for this job", "PAYMENT_EXISTS")

            if payment_request:
                validation = validate_invoice(payment_request, amount_sats, self.ledger)
                if not validation.is_valid:
                    exc_class = (errors.ConflictError if validation.error_code == "INVOICE_ALREADY_USED"
                                 else errors.ValidationError)
                    raise exc_class(validation.error, validation.error_code, details=validation.details)
                invoice = validation.invoice
                if payment_hash and normalize_hex32(payment_hash) != invoice.payment_hash:
                    raise errors.ValidationError("Payment hash does not match invoice", "INVALID_PAYMENT_HASH")
                payment_hash = invoice.payment_hash
                payment_request = invoice.payment_request

            self._check_amount_against_price(job, amount_sats)
            self.lifecycle.fire(job, EVENT_CREATE_PAYMENT, actor=actor)
            return self.ledger.create(job.id, amount_sats, payment_hash, payment_request or "")

    def create_invoice_for_job(self, job_id: int, amount_sats: int, requesting_user) -> IssuedInvoice:
        """
        Émet une facture Lightning pour le client du job et la rattache au paiement
        (créé au besoin). L'appel au backend se fait hors transaction.
        """
        max_sats = settings.MAX_INVOICE_SATS
        if amount_sats is None or amount_sats <= 0 or amount_sats > max_sats:
            raise errors.ValidationError(f"Amount must be between 1 and {max_sats} sats", "INVALID_AMOUNT")

        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            raise errors.NotFoundError(f"Job with ID {job_id} not found", "JOB_NOT_FOUND")
        if requesting_user is None or requesting_user.pk != job.client_id:
            raise errors.ConflictError("You can only create invoices for your own jobs", "NOT_JOB_OWNER")
        self.lifecycle.require(job, EVENT_CREATE_PAYMENT)

        existing = self.ledger.find_by_job_id(job.id)
        replaces = None
        if existing is not None:
            if existing.amount_sats != amount_sats:
                raise errors.ConflictError("Payment already exists for this job", "PAYMENT_EXISTS",
                                           details={"amount_sats": existing.amount_sats})
            current = self._outstanding_invoice(existing)
            if current is not None:
                return IssuedInvoice(payment=existing, invoice=current)
            replaces = existing.payment_hash

        invoice = self.provider.create_invoice(
            amount_sats=amount_sats,
            memo=f"ErrandBit job #{job.id}",
            expiry=settings.INVOICE_EXPIRY_S,
        )

        with transaction.atomic():
            job = self.lifecycle.lock(job_id)
            self.lifecycle.require(job, EVENT_CREATE_PAYMENT)
            if existing is None:
                self._check_amount_against_price(job, amount_sats)
                payment = self.ledger.create(job.id, amount_sats, invoice.payment_hash, invoice.payment_request)
            else:
                payment = self.ledger.attach_invoice(existing.id, invoice.payment_hash, invoice.payment_request,
                                                     replaces=replaces)

        logger.info("Invoice issued for job %s (payment %s, hash=%s)",
                    job.id, payment.id, hash_prefix(invoice.payment_hash))
        return IssuedInvoice(payment=payment, invoice=invoice)

    def _outstanding_invoice(self, payment: PaymentRecord) -> Optional[LightningInvoice]:
        """
        Facture déjà rattachée et encore payable: elle est renvoyée telle quelle.
        None si le paiement n'a pas de hash ou si sa facture a expiré sans être
        payée (remplaçable). Un hash sans facture BOLT11 stockée n'est jamais remplacé.
        """
        if not payment.payment_hash:
            return None
        if not payment.payment_request:
            raise errors.ConflictError("Payment already references an external invoice", "PAYMENT_EXISTS")
        try:
            invoice = decode_invoice(payment.payment_request)
        except InvalidInvoice:
            logger.error("Stored invoice of payment %s no longer decodes", payment.id)
            raise errors.ConflictError("Stored invoice is unreadable", "INVALID_INVOICE")
        if not invoice.is_expired(timezone.now()):
            return invoice

        # expirée: on ne remplace le hash que si le backend confirme l'absence de paiement
        status = self.provider.check_payment_status(payment.payment_hash)
        if status.paid:
            if self.reconcile_payment(payment.payment_hash).is_settled:
                raise errors.ConflictError("Previous invoice has been paid", "PAYMENT_ALREADY_CONFIRMED")
            raise errors.ConflictError("Previous invoice reported paid without a valid preimage",
                                       "PAYMENT_UNVERIFIED")
        return None

    # ------------------------------------------------------------------
    # confirmation
    # ------------------------------------------------------------------
    def confirm_payment(self, payment_id: int, preimage: str, actor=None) -> PaymentRecord:
        if not is_hex32(preimage):
            raise errors.ValidationError("Invalid preimage format", "INVALID_PREIMAGE")

        with transaction.atomic():
            payment = self.ledger.lock(payment_id)
            if payment.is_settled:
                raise errors.ConflictError("Payment already confirmed", "PAYMENT_ALREADY_CONFIRMED")
            job = self.lifecycle.lock(payment.job_id)
            self._require_participant(job, actor)
            self.lifecycle.require(job, EVENT_CONFIRM_PAYMENT)

            payment = self.ledger.confirm(payment.id, preimage)
            self.lifecycle.fire(job, EVENT_CONFIRM_PAYMENT, actor=actor, payment=payment)

        return payment

    def verify_payment(self, payment_hash: str, proof: str, method: str, actor=None) -> VerificationResult:
        if method not in PREIMAGE_METHODS + MANUAL_METHODS:
            raise errors.ValidationError("Unknown payment method", "INVALID_METHOD")
        if not is_hex32(payment_hash):
            raise errors.ValidationError("Payment hash must be 64 hex characters", "INVALID_PAYMENT_HASH")

        payment = self.ledger.find_by_payment_hash(payment_hash)
        if payment is None:
            raise errors.NotFoundError("Payment not found", "PAYMENT_NOT_FOUND")
        self._require_participant(payment.job, actor)

        if payment.is_settled:
            return VerificationResult(True, payment.verification_level, "Payment already verified", payment)

        if method in PREIMAGE_METHODS:
            if not is_hex32(proof):
                raise errors.ValidationError("Invalid preimage format", "INVALID_PREIMAGE")
            if not verify_preimage(payment.payment_hash, proof):
                logger.warning("Preimage proof rejected for payment %s (%s, hash=%s)",
                               payment.id, method, hash_prefix(payment.payment_hash))
                return VerificationResult(False, PaymentRecord.LEVEL_DISPUTED,
                                          "Preimage does not match payment hash", payment)
            payment = self.confirm_payment(payment.id, proof, actor=actor)
            return VerificationResult(True, PaymentRecord.LEVEL_CRYPTOGRAPHIC,
                                      "Payment verified cryptographically", payment)

        proof = self._validate_manual_proof(method, proof)
        with transaction.atomic():
            payment = self.ledger.lock(payment.id)
            job = self.lifecycle.lock(payment.job_id)
            self.lifecycle.require(job, EVENT_CREATE_PAYMENT)
            payment = self.ledger.record_manual_proof(payment, method, proof)
        return VerificationResult(False, PaymentRecord.LEVEL_PENDING_MANUAL,
                                  "Proof submitted for manual review", payment)

    def review_manual_proof(self, payment_id: int, reviewer, approve: bool) -> PaymentRecord:
        with transaction.atomic():
            payment = self.ledger.lock(payment_id)
            job = self.lifecycle.lock(payment.job_id)
            if not (is_admin(reviewer) or (reviewer is not None and reviewer.pk == job.runner_id)):
                raise errors.ConflictError("Only the runner or an admin can review payment proofs",
                                           "NOT_ASSIGNED_RUNNER")
            if payment.verification_level != PaymentRecord.LEVEL_PENDING_MANUAL:
                raise errors.ConflictError("Payment is not awaiting manual review", "PAYMENT_NOT_PENDING_REVIEW",
                                           details={"verification_level": payment.verification_level})

            if approve:
                self.lifecycle.require(job, EVENT_CONFIRM_PAYMENT)
                self.ledger.set_verification(payment, PaymentRecord.LEVEL_VERIFIED_MANUAL, reviewer)
                self.lifecycle.fire(job, EVENT_CONFIRM_PAYMENT, actor=reviewer, payment=payment)
            else:
                self.lifecycle.require(job, EVENT_DISPUTE)
                self.ledger.set_verification(payment, PaymentRecord.LEVEL_DISPUTED, reviewer)
                self.lifecycle.fire(job, EVENT_DISPUTE, actor=reviewer)

        logger.info("Manual proof for payment %s %s by user %s",
                    payment.id, "approved" if approve else "rejected", reviewer.pk)
        return payment

    def dispute_payment(self, payment_id: int, actor) -> PaymentRecord:
        with transaction.atomic():
            payment = self.ledger.lock(payment_id)
            job = self.lifecycle.lock(payment.job_id)
            if not (is_admin(actor) or is_participant(job, actor)):
                raise errors.ConflictError("Only job participants can do this", "NOT_JOB_PARTICIPANT")
            if payment.preimage is not None:
                raise errors.ConflictError("Payment was settled cryptographically and cannot be disputed",
                                           "PAYMENT_CRYPTOGRAPHICALLY_SETTLED")
            if payment.verification_level == PaymentRecord.LEVEL_DISPUTED:
                raise errors.ConflictError("Payment is already disputed", "PAYMENT_ALREADY_DISPUTED")

            self.lifecycle.require(job, EVENT_DISPUTE)
            self.ledger.set_verification(payment, PaymentRecord.LEVEL_DISPUTED, actor)
            self.lifecycle.fire(job, EVENT_DISPUTE, actor=actor)

        logger.warning("Payment %s disputed by user %s", payment.id, actor.pk)
        return payment

    def dispute_job(self, job_id: int, actor) -> Job:
        """
        Litige ouvert depuis le job. Le verrou du job est pris avant la lecture du
        paiement: create_payment prend le même verrou avant d'insérer, la décision
        "pas de paiement" ne peut donc pas être prise pendant une création.
        Un paiement existant n'est jamais supprimé: son litige passe par
        dispute_payment (ordre paiement puis job).
        """
        with transaction.atomic():
            job = self.lifecycle.lock(job_id)
            payment = self.ledger.find_by_job_id(job.id)
            if payment is None:
                self.lifecycle.fire(job, EVENT_DISPUTE, actor=actor)
                return job

        self.dispute_payment(payment.id, actor)
        job.refresh_from_db()
        return job

    # ------------------------------------------------------------------
    # réconciliation (tâche Celery / webhook)
    # ------------------------------------------------------------------
    def reconcile_payment(self, payment_hash: str) -> PaymentRecord:
        """
        Interroge le backend Lightning; une préimage retournée est vérifiée
        comme n'importe quelle preuve avant confirmation. Idempotent.
        """
        payment = self.ledger.find_by_payment_hash(payment_hash)
        if payment is None:
            raise errors.NotFoundError("Payment not found", "PAYMENT_NOT_FOUND")
        if payment.is_settled:
            return payment

        status = self.provider.check_payment_status(payment.payment_hash)
        if not status.paid:
            return payment
        if not status.preimage or not verify_preimage(payment.payment_hash, status.preimage):
            logger.error("Backend reported payment %s paid without a valid preimage (hash=%s)",
                         payment.id, hash_prefix(payment.payment_hash))
            return payment
        return self._confirm_idempotent(payment, status.preimage)

    def handle_settlement_notification(self, payment_hash: str, preimage: Optional[str] = None) -> PaymentRecord:
        """Notification du noeud Lightning: préimage fournie, sinon interrogation du backend."""
        if not is_hex32(payment_hash):
            raise errors.ValidationError("Payment hash must be 64 hex characters", "INVALID_PAYMENT_HASH")
        if not preimage:
            return self.reconcile_payment(payment_hash)

        payment = self.ledger.find_by_payment_hash(payment_hash)
        if payment is None:
            raise errors.NotFoundError("Payment not found", "PAYMENT_NOT_FOUND")
        if payment.is_settled:
            return payment
        return self._confirm_idempotent(payment, preimage)

    def _confirm_idempotent(self, payment: PaymentRecord, preimage: str) -> PaymentRecord:
        try:
            return self.confirm_payment(payment.id, preimage)
        except errors.ConflictError as e:
            if e.code != "PAYMENT_ALREADY_CONFIRMED":
                raise
            return self.ledger.get(payment.id)

    # ------------------------------------------------------------------
    # lecture
    # ------------------------------------------------------------------
    def get_payment(self, payment_id: int) -> PaymentRecord:
        return self.ledger.get(payment_id)

    def get_payment_for_job(self, job_id: int) -> PaymentRecord:
        payment = self.ledger.find_by_job_id(job_id)
        if payment is None:
            raise errors.NotFoundError(f"No payment for job {job_id}", "PAYMENT_NOT_FOUND")
        return payment

    def pending_verifications(self, runner):
        return self.ledger.pending_manual_for_runner(runner)

    def payment_stats(self) -> dict:
        return self.ledger.stats()

    def monitoring_report(self, stuck_after_s: int) -> dict:
        """
        État de santé des règlements:
        - stuck: factures non réglées plus anciennes que stuck_after_s
        - expired: parmi elles, celles dont la facture BOLT11 a expiré
        - lightning_ok: le backend Lightning répond
        """
        now = timezone.now()
        stuck = self.ledger.unsettled_older_than(now - timedelta(seconds=stuck_after_s))
        expired = []
        for payment in stuck:
            if not payment.payment_request:
                continue
            try:
                if decode_invoice(payment.payment_request).is_expired(now):
                    expired.append(payment)
            except InvalidInvoice:
                logger.error("Stored invoice of payment %s no longer decodes", payment.id)
                expired.append(payment)

        return {
            "stuck_payments": len(stuck),
            "expired_invoices": len(expired),
            "stuck_payment_ids": [p.id for p in stuck],
            "expired_payment_ids": [p.id for p in expired],
            "lightning_ok": self.provider.check_health(),
        }
