import logging

from celery import shared_task
from django.conf import settings

from core import errors
from .services.payment_service import PaymentService
from .services.payouts import PayoutService

logger = logging.getLogger("errandbit.payments")


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def reconcile_pending_payments(self, limit: int = 100) -> int:
    """
    Tâche périodique (beat): interroge le backend Lightning pour les factures
    non réglées et confirme celles dont la préimage est vérifiée.
    Retourne le nombre de paiements confirmés.
    """
    svc = PaymentService()
    confirmed = 0
    for payment in svc.ledger.unsettled(limit):
        try:
            result = svc.reconcile_payment(payment.payment_hash)
        except errors.ServiceUnavailableError as e:
            logger.warning("Lightning backend unavailable during reconciliation, retrying")
            raise self.retry(exc=e)
        except errors.AppError as e:
            logger.warning("Reconciliation skipped payment %s: %s", payment.id, e)
            continue
        if result.preimage is not None:
            confirmed += 1

    if confirmed:
        logger.info("Reconciliation confirmed %s payment(s)", confirmed)
    return confirmed


@shared_task
def monitor_payments() -> dict:
    """
    Tâche périodique (beat): factures bloquées ou expirées, santé du backend.
    N'écrit rien; le rapport est journalisé et retourné.
    """
    report = PaymentService().monitoring_report(settings.STUCK_PAYMENT_AFTER_S)
    if report["stuck_payments"]:
        logger.warning("%s payment(s) unsettled for more than %ss: %s", report["stuck_payments"],
                       settings.STUCK_PAYMENT_AFTER_S, report["stuck_payment_ids"])
    if report["expired_invoices"]:
        logger.warning("%s unsettled invoice(s) expired: %s",
                       report["expired_invoices"], report["expired_payment_ids"])
    if not report["lightning_ok"]:
        logger.error("Lightning backend health check failed")
    return report


@shared_task
def process_runner_payout(payout_id: int) -> str:
    """Règle un versement en attente; retourne son statut final."""
    try:
        payout = PayoutService().process_payout(payout_id)
    except errors.ConflictError as e:
        # déjà traité par un autre worker
        logger.warning("Payout %s not processed: %s", payout_id, e)
        return "skipped"
    return payout.status
