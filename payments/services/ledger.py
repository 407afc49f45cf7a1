"""
Registre des paiements: seule porte d'écriture sur PaymentRecord.
Les index uniques (job_id, payment_hash) restent le filet de sécurité: une
IntegrityError levée par une insertion concurrente est convertie en conflit.
"""
import logging
from typing import Optional

from django.db import IntegrityError, transaction
from django.db.models import Avg, Count, Q, Sum
from django.utils import timezone

from core import errors
from ..models import PaymentRecord
from .preimage import hash_prefix, is_hex32, normalize_hex32, verify_preimage

logger = logging.getLogger("errandbit.payments")


class PaymentLedger:

    # ---------------------------------------------------------------- lecture
    def get(self, payment_id: int) -> PaymentRecord:
        try:
            return PaymentRecord.objects.select_related("job").get(pk=payment_id)
        except PaymentRecord.DoesNotExist:
            raise errors.NotFoundError(f"Payment with ID {payment_id} not found", "PAYMENT_NOT_FOUND")

    def lock(self, payment_id: int) -> PaymentRecord:
        """À appeler dans transaction.atomic()."""
        try:
            return PaymentRecord.objects.select_for_update().get(pk=payment_id)
        except PaymentRecord.DoesNotExist:
            raise errors.NotFoundError(f"Payment with ID {payment_id} not found", "PAYMENT_NOT_FOUND")

    def find_by_job_id(self, job_id: int) -> Optional[PaymentRecord]:
        return PaymentRecord.objects.filter(job_id=job_id).first()

    def find_by_payment_hash(self, payment_hash: str) -> Optional[PaymentRecord]:
        if not payment_hash:
            return None
        return PaymentRecord.objects.filter(payment_hash=payment_hash.lower()).first()

    def exists_by_job_id(self, job_id: int) -> bool:
        return PaymentRecord.objects.filter(job_id=job_id).exists()

    # -------------------------------------------------------------- écriture
    def create(self, job_id: int, amount_sats: int, payment_hash: Optional[str] = None,
               payment_request: str = "") -> PaymentRecord:
        payment_hash = normalize_hex32(payment_hash) if payment_hash else None

        if self.exists_by_job_id(job_id):
            raise errors.ConflictError("Payment already exists for this job", "PAYMENT_EXISTS")
        if payment_hash and self.find_by_payment_hash(payment_hash) is not None:
            raise errors.ConflictError("Payment hash already used", "INVOICE_ALREADY_USED")

        try:
            with transaction.atomic():
                payment = PaymentRecord.objects.create(
                    job_id=job_id,
                    amount_sats=amount_sats,
                    payment_hash=payment_hash,
                    payment_request=payment_request or "",
                )
        except IntegrityError:
            # insertion concurrente: on identifie l'index violé
            if self.exists_by_job_id(job_id):
                raise errors.ConflictError("Payment already exists for this job", "PAYMENT_EXISTS")
            raise errors.ConflictError("Payment hash already used", "INVOICE_ALREADY_USED")

        logger.info("Payment %s created for job %s (%s sats, hash=%s)",
                    payment.id, job_id, amount_sats, hash_prefix(payment_hash))
        return payment

    def attach_invoice(self, payment_id: int, payment_hash: str, payment_request: str,
                       replaces: Optional[str] = None) -> PaymentRecord:
        """
        Rattache une nouvelle facture à un paiement non réglé. L'écriture est
        conditionnée au hash actuel (replaces, None si aucun): une facture
        rattachée entre-temps par un autre appel n'est jamais écrasée.
        """
        payment_hash = normalize_hex32(payment_hash)
        current = Q(payment_hash=replaces) if replaces else Q(payment_hash__isnull=True)
        try:
            with transaction.atomic():
                updated = (PaymentRecord.objects
                           .filter(current, pk=payment_id, preimage__isnull=True)
                           .exclude(verification_level__in=PaymentRecord.SETTLED_LEVELS)
                           .update(payment_hash=payment_hash, payment_request=payment_request,
                                   updated_at=timezone.now()))
        except IntegrityError:
            raise errors.ConflictError("Payment hash already used", "INVOICE_ALREADY_USED")
        if not updated:
            if self.get(payment_id).is_settled:
                raise errors.ConflictError("Payment already confirmed", "PAYMENT_ALREADY_CONFIRMED")
            raise errors.ConflictError("Another invoice was attached to this payment", "INVOICE_ALREADY_ISSUED")
        logger.info("Invoice attached to payment %s (hash=%s, replaces=%s)",
                    payment_id, hash_prefix(payment_hash), hash_prefix(replaces))
        return self.get(payment_id)

    def confirm(self, payment_id: int, preimage: str) -> PaymentRecord:
        """
        Enregistre une préimage vérifiée. L'écriture est conditionnelle
        (preimage IS NULL): de deux confirmations concurrentes une seule gagne.
        """
        payment = self.get(payment_id)
        if payment.is_settled:
            raise errors.ConflictError("Payment already confirmed", "PAYMENT_ALREADY_CONFIRMED")
        if not payment.payment_hash:
            raise errors.ConflictError("Payment has no hash to verify against", "PAYMENT_HASH_MISSING")
        if not verify_preimage(payment.payment_hash, preimage):
            raise errors.ValidationError("Preimage does not match payment hash", "PREIMAGE_MISMATCH")

        now = timezone.now()
        updated = (PaymentRecord.objects
                   .filter(pk=payment_id, preimage__isnull=True)
                   .exclude(verification_level__in=PaymentRecord.SETTLED_LEVELS)
                   .update(
                       preimage=normalize_hex32(preimage),
                       verification_level=PaymentRecord.LEVEL_CRYPTOGRAPHIC,
                       paid_at=now,
                       verified_at=now,
                       updated_at=now,
                   ))
        if updated == 0:
            raise errors.ConflictError("Payment already confirmed", "PAYMENT_ALREADY_CONFIRMED")

        logger.info("Payment %s confirmed cryptographically (hash=%s)",
                    payment_id, hash_prefix(payment.payment_hash))
        payment.refresh_from_db()
        return payment

    def record_manual_proof(self, payment: PaymentRecord, method: str, proof: str) -> PaymentRecord:
        if payment.is_settled:
            raise errors.ConflictError("Payment already confirmed", "PAYMENT_ALREADY_CONFIRMED")
        payment.method = method
        payment.proof = proof
        payment.verification_level = PaymentRecord.LEVEL_PENDING_MANUAL
        payment.save(update_fields=["method", "proof", "verification_level", "updated_at"])
        logger.info("Manual proof (%s) stored for payment %s", method, payment.id)
        return payment

    def set_verification(self, payment: PaymentRecord, level: str, verifier=None) -> PaymentRecord:
        now = timezone.now()
        payment.verification_level = level
        payment.verified_by = verifier
        payment.verified_at = now
        update_fields = ["verification_level", "verified_by", "verified_at", "updated_at"]
        if level == PaymentRecord.LEVEL_VERIFIED_MANUAL and payment.paid_at is None:
            payment.paid_at = now
            update_fields.append("paid_at")
        payment.save(update_fields=update_fields)
        logger.info("Payment %s verification level -> %s", payment.id, level)
        return payment

    # ------------------------------------------------------------- requêtes
    def pending_manual_for_runner(self, runner):
        return (PaymentRecord.objects.select_related("job")
                .filter(job__runner=runner, verification_level=PaymentRecord.LEVEL_PENDING_MANUAL)
                .order_by("-created_at"))

    def _unsettled_qs(self):
        return (PaymentRecord.objects
                .filter(preimage__isnull=True, payment_hash__isnull=False)
                .exclude(verification_level__in=(PaymentRecord.LEVEL_DISPUTED, PaymentRecord.LEVEL_VERIFIED_MANUAL)))

    def unsettled(self, limit: int = 100):
        """Paiements avec facture mais sans préimage (candidats à la réconciliation)."""
        return list(self._unsettled_qs().order_by("created_at")[:limit])

    def unsettled_older_than(self, cutoff, limit: int = 500):
        return list(self._unsettled_qs().filter(created_at__lt=cutoff).order_by("created_at")[:limit])

    def stats(self) -> dict:
        agg = PaymentRecord.objects.aggregate(
            total_payments=Count("id"),
            total_volume_sats=Sum("amount_sats"),
            average_amount_sats=Avg("amount_sats"),
            cryptographic=Count("id", filter=Q(verification_level=PaymentRecord.LEVEL_CRYPTOGRAPHIC)),
            pending_manual=Count("id", filter=Q(verification_level=PaymentRecord.LEVEL_PENDING_MANUAL)),
            verified_manual=Count("id", filter=Q(verification_level=PaymentRecord.LEVEL_VERIFIED_MANUAL)),
            disputed=Count("id", filter=Q(verification_level=PaymentRecord.LEVEL_DISPUTED)),
        )
        return {
            "total_payments": agg["total_payments"],
            "total_volume_sats": agg["total_volume_sats"] or 0,
            "average_amount_sats": round(agg["average_amount_sats"] or 0),
            "by_level": {
                level: agg[level]
                for level in ("cryptographic", "pending_manual", "verified_manual", "disputed")
            },
        }
