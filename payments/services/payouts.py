"""
Versements aux runners.

Le runner d'un job réglé (payment_confirmed) soumet une facture BOLT11 du
montant net (montant payé moins la commission PLATFORM_FEE_PERCENT). Le
versement est ensuite réglé hors requête (tâche Celery) via send_payment;
la préimage renvoyée par le backend est vérifiée avant de le marquer payé.
"""
import logging
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from core import errors
from jobs.models import Job
from jobs.services.lifecycle import JobLifecycle
from ..models import RunnerPayout
from .ledger import PaymentLedger
from .lninvoice import InvalidInvoice
from .lninvoice import decode as decode_invoice
from .preimage import hash_prefix, verify_preimage
from .provider import BaseLightningProvider, get_lightning_provider

logger = logging.getLogger("errandbit.payouts")


def platform_fee(amount_sats: int) -> int:
    return amount_sats * settings.PLATFORM_FEE_PERCENT // 100


class PayoutService:
    def __init__(self, provider: Optional[BaseLightningProvider] = None,
                 lifecycle: Optional[JobLifecycle] = None) -> None:
        self.provider = provider or get_lightning_provider()
        self.lifecycle = lifecycle or JobLifecycle()
        self.ledger = PaymentLedger()

    def request_payout(self, job_id: int, runner, payment_request: str) -> RunnerPayout:
        with transaction.atomic():
            job = self.lifecycle.lock(job_id)
            if runner is None or runner.pk != job.runner_id:
                raise errors.ConflictError("You are not assigned to this job", "NOT_ASSIGNED_RUNNER")
            payment = self.ledger.find_by_job_id(job.id)
            if job.status != Job.STATUS_PAYMENT_CONFIRMED or payment is None or not payment.is_settled:
                raise errors.ConflictError("Job payment is not confirmed", "JOB_NOT_PAID",
                                           details={"status": job.status})
            if RunnerPayout.objects.filter(job=job).exists():
                raise errors.ConflictError("Payout already requested for this job", "PAYOUT_EXISTS")

            fee = platform_fee(payment.amount_sats)
            net = payment.amount_sats - fee
            invoice = self._validate_payout_invoice(payment_request, net)

            try:
                with transaction.atomic():
                    payout = RunnerPayout.objects.create(
                        job=job,
                        runner=runner,
                        amount_sats=payment.amount_sats,
                        fee_sats=fee,
                        net_sats=net,
                        payment_request=invoice.payment_request,
                        payment_hash=invoice.payment_hash,
                    )
            except IntegrityError:
                raise errors.ConflictError("Payout already requested for this job", "PAYOUT_EXISTS")

        logger.info("Payout %s requested for job %s (%s sats net, fee %s, hash=%s)",
                    payout.id, job.id, net, fee, hash_prefix(invoice.payment_hash))
        return payout

    def _validate_payout_invoice(self, payment_request: str, net_sats: int):
        try:
            invoice = decode_invoice(payment_request)
        except InvalidInvoice as e:
            raise errors.ValidationError("Invalid payout invoice", "INVALID_INVOICE", details={"reason": str(e)})
        if invoice.is_expired(timezone.now()):
            raise errors.ValidationError("Payout invoice expired", "INVOICE_EXPIRED")
        if invoice.amount_sats != net_sats:
            raise errors.ValidationError("Payout invoice must be for the net amount", "INVOICE_AMOUNT_MISMATCH",
                                         details={"invoice_amount_sats": invoice.amount_sats,
                                                  "expected_amount_sats": net_sats})
        # une facture déjà connue (paiement client ou autre versement) ne peut pas servir de versement
        if (self.ledger.find_by_payment_hash(invoice.payment_hash) is not None
                or RunnerPayout.objects.filter(payment_hash=invoice.payment_hash).exists()):
            raise errors.ConflictError("Invoice already used", "INVOICE_ALREADY_USED")
        return invoice

    def process_payout(self, payout_id: int) -> RunnerPayout:
        with transaction.atomic():
            try:
                payout = RunnerPayout.objects.select_for_update().get(pk=payout_id)
            except RunnerPayout.DoesNotExist:
                raise errors.NotFoundError(f"Payout with ID {payout_id} not found", "PAYOUT_NOT_FOUND")
            if payout.status != RunnerPayout.STATUS_PENDING:
                raise errors.ConflictError("Payout is not pending", "PAYOUT_NOT_PENDING",
                                           details={"status": payout.status})
            payout.status = RunnerPayout.STATUS_PROCESSING
            payout.processed_at = timezone.now()
            payout.save(update_fields=["status", "processed_at", "updated_at"])

        # hors transaction: l'état "processing" est visible pendant l'appel au backend
        try:
            sent = self.provider.send_payment(payout.payment_request)
        except errors.ServiceUnavailableError as e:
            return self._fail(payout, str(e.detail))

        if not sent.preimage or not verify_preimage(payout.payment_hash, sent.preimage):
            return self._fail(payout, "Lightning backend did not return a valid preimage")

        payout.status = RunnerPayout.STATUS_COMPLETED
        payout.preimage = sent.preimage.lower()
        payout.completed_at = timezone.now()
        payout.save(update_fields=["status", "preimage", "completed_at", "updated_at"])
        logger.info("Payout %s completed (%s sats, hash=%s)",
                    payout.id, payout.net_sats, hash_prefix(payout.payment_hash))
        return payout

    def _fail(self, payout: RunnerPayout, message: str) -> RunnerPayout:
        payout.status = RunnerPayout.STATUS_FAILED
        payout.error_message = message
        payout.failed_at = timezone.now()
        payout.save(update_fields=["status", "error_message", "failed_at", "updated_at"])
        logger.error("Payout %s failed: %s", payout.id, message)
        return payout

    def earnings(self, runner) -> dict:
        agg = RunnerPayout.objects.filter(runner=runner).aggregate(
            total_earned_sats=Sum("net_sats", filter=Q(status=RunnerPayout.STATUS_COMPLETED)),
            pending_sats=Sum("net_sats", filter=Q(status__in=[RunnerPayout.STATUS_PENDING,
                                                               RunnerPayout.STATUS_PROCESSING])),
            fees_sats=Sum("fee_sats", filter=Q(status=RunnerPayout.STATUS_COMPLETED)),
            completed=Count("id", filter=Q(status=RunnerPayout.STATUS_COMPLETED)),
            failed=Count("id", filter=Q(status=RunnerPayout.STATUS_FAILED)),
        )
        return {key: value or 0 for key, value in agg.items()}

    def history(self, runner, limit: int = 50):
        return RunnerPayout.objects.filter(runner=runner).order_by("-created_at")[:limit]
